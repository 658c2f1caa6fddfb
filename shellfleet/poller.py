"""Instance state poller: wait for a set of instances to enter 'running'."""

from __future__ import annotations

import time
from collections.abc import Callable, Sequence

from loguru import logger

from shellfleet.constants import POLL_INTERVAL
from shellfleet.exceptions import InstanceTerminatedError, WaitTimeoutError
from shellfleet.types import Instance
from shellfleet.wait import PollPolicy, Sleeper, poll_until

type Members = tuple[Instance, ...]


def security_groups(instances: Sequence[Instance]) -> list[str]:
    """Distinct security groups of the instances, in first-seen order."""
    groups: dict[str, None] = {}
    for instance in instances:
        for group in instance.security_groups:
            groups.setdefault(group, None)
    return list(groups)


def all_running(instances: Members) -> bool:
    return all(i.is_running for i in instances)


def any_terminated(instances: Members) -> bool:
    return any(i.is_terminated for i in instances)


class InstanceStatePoller:
    """Re-fetches instance descriptions until all of them run.

    Polls at a fixed cadence: sleep, refresh, classify. A terminated
    instance fails immediately; instances still pending when the deadline
    passes fail with a timeout naming their states.
    """

    def __init__(
        self,
        refresh: Callable[[], Members],
        *,
        interval: float = POLL_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        self._refresh = refresh
        self._interval = interval
        self._clock = clock
        self._sleeper = Sleeper()
        self._sleep = sleep or self._sleeper

    def wake(self) -> None:
        """Interrupt the current sleep; polling continues."""
        self._sleeper.wake()

    def wait_until_running(self, current: Members, timeout: float) -> Members:
        groups = security_groups(current)

        def _poll() -> Members:
            logger.info(
                f"Waiting on instances of {groups} to enter 'running' "
                f"(polled every {self._interval:.0f}s)"
            )
            return self._refresh()

        def _terminated(instances: Members) -> InstanceTerminatedError:
            instance = next(i for i in instances if i.is_terminated)
            return InstanceTerminatedError(instance.id, instance.security_groups, instance.state_reason or "unknown")

        def _timed_out(instances: Members) -> WaitTimeoutError:
            states = [str(i.state) for i in instances if not i.is_running]
            return WaitTimeoutError(security_groups(instances) or groups, states, timeout)

        policy: PollPolicy[Members] = PollPolicy(
            interval=self._interval,
            timeout=timeout,
            ready=all_running,
            terminal=any_terminated,
        )
        return poll_until(
            _poll,
            policy,
            on_terminal=_terminated,
            on_timeout=_timed_out,
            clock=self._clock,
            sleep=self._sleep,
        )
