import threading

import pytest

from shellfleet.constants import InstanceState
from shellfleet.exceptions import InstanceTerminatedError, WaitTimeoutError
from shellfleet.group import InstanceGroup
from shellfleet.poller import InstanceStatePoller, security_groups
from shellfleet.types import Instance
from shellfleet.wait import PollPolicy, Sleeper, poll_until
from tests.fakes import FakeClock, FakeCloud, make_instance

pytestmark = [pytest.mark.unit]


class Timeout(Exception):
    pass


class Terminal(Exception):
    pass


class TestPollUntil:
    def test_sleeps_before_first_poll(self, clock: FakeClock):
        values = iter([True])
        policy = PollPolicy(interval=5.0, timeout=60.0, ready=bool)
        result = poll_until(
            lambda: next(values),
            policy,
            on_terminal=lambda _: Terminal(),
            on_timeout=lambda _: Timeout(),
            clock=clock,
            sleep=clock.sleep,
        )
        assert result is True
        assert clock.sleeps == [5.0]

    def test_returns_first_ready_value(self, clock: FakeClock):
        values = iter([1, 2, 3])
        policy = PollPolicy(interval=1.0, timeout=60.0, ready=lambda v: v >= 2)
        result = poll_until(
            lambda: next(values),
            policy,
            on_terminal=lambda _: Terminal(),
            on_timeout=lambda _: Timeout(),
            clock=clock,
            sleep=clock.sleep,
        )
        assert result == 2

    def test_times_out_after_deadline(self, clock: FakeClock):
        policy = PollPolicy(interval=10.0, timeout=60.0, ready=lambda _: False)
        with pytest.raises(Timeout):
            poll_until(
                lambda: None,
                policy,
                on_terminal=lambda _: Terminal(),
                on_timeout=lambda _: Timeout(),
                clock=clock,
                sleep=clock.sleep,
            )
        assert clock.now == 60.0
        assert len(clock.sleeps) == 6

    def test_terminal_fails_immediately(self, clock: FakeClock):
        policy = PollPolicy(interval=10.0, timeout=600.0, ready=lambda _: False, terminal=lambda v: v == "dead")
        with pytest.raises(Terminal):
            poll_until(
                lambda: "dead",
                policy,
                on_terminal=lambda _: Terminal(),
                on_timeout=lambda _: Timeout(),
                clock=clock,
                sleep=clock.sleep,
            )
        assert clock.sleeps == [10.0]

    def test_timeout_error_gets_last_value(self, clock: FakeClock):
        values = iter(range(100))
        seen = []

        def _timeout(value: int) -> Exception:
            seen.append(value)
            return Timeout()

        policy = PollPolicy(interval=10.0, timeout=30.0, ready=lambda _: False)
        with pytest.raises(Timeout):
            poll_until(
                lambda: next(values),
                policy,
                on_terminal=lambda _: Terminal(),
                on_timeout=_timeout,
                clock=clock,
                sleep=clock.sleep,
            )
        assert seen == [2]


class TestSleeper:
    def test_wake_cuts_sleep_short(self):
        sleeper = Sleeper()
        timer = threading.Timer(0.05, sleeper.wake)
        timer.start()
        done = threading.Event()

        def _sleep() -> None:
            sleeper(30.0)
            done.set()

        worker = threading.Thread(target=_sleep)
        worker.start()
        assert done.wait(5.0)
        worker.join()

    def test_wake_is_consumed(self):
        sleeper = Sleeper()
        sleeper.wake()
        sleeper(0.0)
        assert not sleeper._event.is_set()


class TestInstanceStatePoller:
    def test_security_groups_in_first_seen_order(self):
        instances = [
            Instance("i-1", InstanceState.RUNNING, security_groups=("b", "a")),
            Instance("i-2", InstanceState.RUNNING, security_groups=("a", "c")),
        ]
        assert security_groups(instances) == ["b", "a", "c"]

    def test_waits_until_all_running(self, clock: FakeClock):
        snapshots = iter([
            (make_instance(0, InstanceState.PENDING), make_instance(1)),
            (make_instance(0), make_instance(1)),
        ])
        poller = InstanceStatePoller(lambda: next(snapshots), interval=10.0, clock=clock, sleep=clock.sleep)
        members = poller.wait_until_running((make_instance(0, InstanceState.PENDING),), timeout=600)
        assert all(m.is_running for m in members)
        assert clock.now == 20.0

    def test_terminated_instance_fails_without_waiting_out_deadline(self, clock: FakeClock):
        dead = Instance("i-0", InstanceState.TERMINATED, security_groups=("g",), state_reason="Server.SpotInstanceTermination")
        poller = InstanceStatePoller(lambda: (dead,), interval=10.0, clock=clock, sleep=clock.sleep)
        with pytest.raises(InstanceTerminatedError, match="i-0.*Server.SpotInstanceTermination"):
            poller.wait_until_running((dead,), timeout=600)
        assert clock.now == 10.0

    def test_timeout_names_pending_states(self, clock: FakeClock):
        pending = (make_instance(0, InstanceState.PENDING), make_instance(1))
        poller = InstanceStatePoller(lambda: pending, interval=10.0, clock=clock, sleep=clock.sleep)
        with pytest.raises(WaitTimeoutError, match=r"after 60s, some are in: \['pending'\]"):
            poller.wait_until_running(pending, timeout=60)


class TestAttachWaitsForRunning:
    def test_never_running_times_out_after_deadline(self, clock: FakeClock):
        cloud = FakeCloud([make_instance(0, InstanceState.PENDING)])
        group = InstanceGroup(cloud, poll_interval=10.0, clock=clock, sleep=clock.sleep)

        with pytest.raises(WaitTimeoutError) as exc_info:
            group.attach_by_name("testGroup", timeout=60)

        assert exc_info.value.timeout == 60
        assert 60.0 <= clock.now < 70.0
        assert len([c for c in cloud.calls if c[0] == "describe"]) == 6

    def test_pending_then_running(self, clock: FakeClock):
        cloud = FakeCloud(
            [make_instance(0, InstanceState.PENDING)],
            timeline=[{"i-0": InstanceState.PENDING}, {"i-0": InstanceState.RUNNING}],
        )
        group = InstanceGroup(cloud, poll_interval=10.0, clock=clock, sleep=clock.sleep)
        group.attach_by_name("testGroup")
        assert group.members()[0].is_running
        assert clock.now == 20.0


class WakingCloud(FakeCloud):
    """Advances the clock on every refresh and wakes the group right away."""

    def __init__(self, clock: FakeClock, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.clock = clock
        self.group: InstanceGroup | None = None

    def describe(self, instance_ids):
        self.clock.now += 10.0
        self.group.wake()
        return super().describe(instance_ids)


class TestWakeDuringAttach:
    def test_wake_keeps_polling_until_deadline(self, clock: FakeClock):
        cloud = WakingCloud(clock, [make_instance(0, InstanceState.PENDING)])
        # an hour-long interval: only wakes let the loop make progress
        group = InstanceGroup(cloud, poll_interval=3600.0, clock=clock)
        cloud.group = group
        group.wake()

        with pytest.raises(WaitTimeoutError):
            group.attach_by_name("testGroup", timeout=60)

        assert len([c for c in cloud.calls if c[0] == "describe"]) == 6
        assert clock.now == 60.0

    def test_wake_then_running(self, clock: FakeClock):
        cloud = WakingCloud(
            clock,
            [make_instance(0, InstanceState.PENDING)],
            timeline=[{"i-0": InstanceState.PENDING}, {"i-0": InstanceState.RUNNING}],
        )
        group = InstanceGroup(cloud, poll_interval=3600.0, clock=clock)
        cloud.group = group
        group.wake()

        group.attach_by_name("testGroup")

        assert group.members()[0].is_running
