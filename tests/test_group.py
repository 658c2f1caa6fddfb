import threading
from dataclasses import replace
from pathlib import Path

import pytest

from shellfleet.constants import InstanceState
from shellfleet.exceptions import (
    AssociationStateError,
    ConnectivityError,
    InstanceLifecycleError,
    InstanceNotFoundError,
    InstanceTerminatedError,
    PermissionError,
    ValidationError,
    WaitTimeoutError,
)
from shellfleet.group import InstanceGroup
from shellfleet.types import FirewallRule, LaunchSpec, Reservation
from tests.fakes import FakeClock, FakeCloud, FakeTransport, make_instance

pytestmark = [pytest.mark.unit]


def _group(cloud: FakeCloud, transport: FakeTransport, clock: FakeClock, **kwargs) -> InstanceGroup:
    return InstanceGroup(cloud, transport, clock=clock, sleep=clock.sleep, **kwargs)


class TestAssociation:
    def test_unattached_group_refuses_member_access(self, group: InstanceGroup):
        assert not group.is_associated
        with pytest.raises(AssociationStateError, match="not yet associated"):
            group.member_count()
        with pytest.raises(AssociationStateError):
            group.terminate()

    def test_attach_twice_fails(self, group: InstanceGroup):
        group.attach_by_name("testGroup")
        with pytest.raises(AssociationStateError, match="already associated"):
            group.attach_by_name("testGroup")
        with pytest.raises(AssociationStateError):
            group.launch(LaunchSpec("ami-1"))

    def test_attach_by_name_not_found(self, group: InstanceGroup):
        with pytest.raises(InstanceNotFoundError, match="group 'nope'"):
            group.attach_by_name("nope")
        assert not group.is_associated

    def test_attach_by_name_running_does_not_wait(self, group, clock: FakeClock):
        group.attach_by_name("testGroup")
        assert group.member_count() == 1
        assert clock.sleeps == []

    def test_attach_ignores_stopped_instances(self, transport, clock):
        cloud = FakeCloud([make_instance(0), make_instance(1, InstanceState.STOPPED)])
        group = _group(cloud, transport, clock)
        group.attach_by_name("testGroup")
        assert [i.id for i in group.members()] == ["i-0"]

    def test_first_reservation_only(self, transport, clock):
        cloud = FakeCloud([make_instance(0), make_instance(1, reservation="r-2"), make_instance(2)])
        group = _group(cloud, transport, clock)
        group.attach_by_name("testGroup")
        assert [i.id for i in group.members()] == ["i-0", "i-2"]

    def test_multiple_reservations(self, transport, clock):
        cloud = FakeCloud([make_instance(0), make_instance(1, reservation="r-2")])
        group = _group(cloud, transport, clock, include_multiple_reservations=True)
        group.attach_by_name("testGroup")
        assert group.member_count() == 2

    def test_attach_by_reservation_refreshes(self, group, cloud: FakeCloud):
        stale = replace(make_instance(0), state=InstanceState.PENDING)
        group.attach_by_reservation(Reservation("r-1", (stale,)))
        assert group.members()[0].is_running
        assert ("describe", ("i-0",)) in cloud.calls


class TestMembers:
    def test_members_returns_same_snapshot(self, group: InstanceGroup):
        group.attach_by_name("testGroup")
        assert group.members() is group.members()

    def test_refresh_keeps_tracked_order(self, transport, clock):
        cloud = FakeCloud([make_instance(n) for n in range(4)])
        group = _group(cloud, transport, clock)
        group.attach_by_name("testGroup")
        before = [i.id for i in group.members()]
        after = [i.id for i in group.members(refresh=True)]
        assert before == after == ["i-0", "i-1", "i-2", "i-3"]

    def test_refresh_swaps_snapshot(self, group, cloud: FakeCloud):
        group.attach_by_name("testGroup")
        old = group.members()
        cloud.instances["i-0"] = replace(cloud.instances["i-0"], public_address="new.example.com")
        new = group.members(refresh=True)
        assert old is not new
        assert old[0].public_address == "host0.example.com"
        assert new[0].public_address == "new.example.com"


class TestLaunchAndTerminate:
    def test_launch_without_wait(self, group, cloud: FakeCloud, clock: FakeClock):
        spec = LaunchSpec("ami-1", min_count=2, max_count=2, security_groups=("workers",))
        reservation = group.launch(spec)
        assert reservation.id == "r-new"
        assert [i.id for i in reservation.instances] == ["i-100", "i-101"]
        assert group.member_count() == 2
        assert clock.sleeps == []

    def test_launch_waits_until_running(self, group, cloud: FakeCloud, clock: FakeClock):
        cloud.timeline = [{"i-100": InstanceState.RUNNING}]
        reservation = group.launch(LaunchSpec("ami-1", security_groups=("workers",)), timeout=120)
        assert reservation.instances[0].is_running
        assert clock.now == 10.0

    def test_terminate_clears_association(self, group, cloud: FakeCloud):
        group.attach_by_name("testGroup")
        group.terminate()
        assert not group.is_associated
        assert ("terminate", ("i-0",)) in cloud.calls
        # a terminated group can be attached again
        cloud.instances.clear()
        with pytest.raises(InstanceNotFoundError):
            group.attach_by_name("testGroup")


class TestCreateConnection:
    def test_success_verifies_each_member(self, transport, clock):
        cloud = FakeCloud([make_instance(0), make_instance(1)])
        group = _group(cloud, transport, clock)
        group.attach_by_name("testGroup")
        handle = group.create_connection("ubuntu", key_file=Path("/keys/k.pem"))
        assert handle.addresses == ("host0.example.com", "host1.example.com")
        assert transport.calls == [("verify", "host0.example.com"), ("verify", "host1.example.com")]

    def test_requires_association(self, group):
        with pytest.raises(AssociationStateError):
            group.create_connection("ubuntu", password="pw")

    def test_requires_one_credential(self, group):
        group.attach_by_name("testGroup")
        with pytest.raises(ValidationError):
            group.create_connection("ubuntu")
        with pytest.raises(ValidationError):
            group.create_connection("ubuntu", key_file=Path("k"), password="pw")

    def test_requires_transport(self, cloud, clock):
        group = InstanceGroup(cloud, clock=clock, sleep=clock.sleep)
        group.attach_by_name("testGroup")
        with pytest.raises(AssociationStateError, match="no shell transport"):
            group.create_connection("ubuntu", password="pw")

    def test_member_not_running(self, group, cloud: FakeCloud, transport: FakeTransport):
        group.attach_by_name("testGroup")
        cloud.instances["i-0"] = replace(cloud.instances["i-0"], state=InstanceState.STOPPING)
        with pytest.raises(InstanceLifecycleError, match="not in state 'running' but in state 'stopping'"):
            group.create_connection("ubuntu", password="pw")
        assert transport.calls == []

    def test_missing_address(self, group, cloud: FakeCloud, transport: FakeTransport):
        group.attach_by_name("testGroup")
        cloud.instances["i-0"] = replace(cloud.instances["i-0"], public_address=None)
        with pytest.raises(ConnectivityError, match="no public address"):
            group.create_connection("ubuntu", password="pw")
        assert transport.calls == []

    def test_port_mismatch_skips_verification(self, transport, clock):
        rule = FirewallRule("tcp", 8000, 8080, ("0.0.0.0/0",), group="testGroup")
        cloud = FakeCloud([make_instance(0)], rules=[rule])
        group = _group(cloud, transport, clock)
        group.attach_by_name("testGroup")
        with pytest.raises(PermissionError, match="8000-8080"):
            group.create_connection("ubuntu", key_file=Path("/keys/k.pem"))
        assert transport.calls == []

    def test_unreachable_member(self, transport, clock):
        cloud = FakeCloud([make_instance(0), make_instance(1)])
        transport.unreachable.add("host0.example.com")
        group = _group(cloud, transport, clock)
        group.attach_by_name("testGroup")
        with pytest.raises(ConnectivityError, match="Cannot connect to host0.example.com"):
            group.create_connection("ubuntu", password="pw")
        assert transport.calls == [("verify", "host0.example.com")]


class BlockingCloud(FakeCloud):
    """Holds every ``describe`` call until ``release`` is set."""

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.entered = threading.Event()
        self.release = threading.Event()

    def describe(self, instance_ids):
        self.entered.set()
        assert self.release.wait(5.0)
        return super().describe(instance_ids)


class TestSnapshotConsistency:
    def test_readers_see_old_snapshot_during_refresh(self, transport, clock):
        cloud = BlockingCloud([make_instance(n) for n in range(3)])
        group = _group(cloud, transport, clock)
        group.attach_by_name("testGroup")
        old = group.members()
        for instance_id in ("i-0", "i-1", "i-2"):
            cloud.instances[instance_id] = replace(cloud.instances[instance_id], public_address=f"{instance_id}.new")

        refreshed: list = []
        worker = threading.Thread(target=lambda: refreshed.append(group.members(refresh=True)))
        worker.start()
        assert cloud.entered.wait(5.0)

        during = group.members()
        assert during is old
        assert [i.public_address for i in during] == [f"host{n}.example.com" for n in range(3)]

        cloud.release.set()
        worker.join(5.0)
        after = group.members()
        assert after is refreshed[0]
        assert [i.public_address for i in after] == ["i-0.new", "i-1.new", "i-2.new"]


class TestAttachFailure:
    def test_timed_out_attach_leaves_group_unattached(self, transport, clock):
        cloud = FakeCloud([make_instance(0, InstanceState.PENDING)])
        group = _group(cloud, transport, clock, poll_interval=10.0)
        with pytest.raises(WaitTimeoutError):
            group.attach_by_name("testGroup", timeout=30)
        assert not group.is_associated

        cloud.instances["i-0"] = replace(cloud.instances["i-0"], state=InstanceState.RUNNING)
        group.attach_by_name("testGroup")
        assert group.member_count() == 1

    def test_terminated_during_attach_leaves_group_unattached(self, transport, clock):
        cloud = FakeCloud(
            [make_instance(0, InstanceState.PENDING)],
            timeline=[{"i-0": InstanceState.TERMINATED}],
        )
        group = _group(cloud, transport, clock)
        with pytest.raises(InstanceTerminatedError):
            group.attach_by_name("testGroup")
        assert not group.is_associated
