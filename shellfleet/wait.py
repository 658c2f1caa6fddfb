"""Generic wait/polling utilities.

Fixed-cadence polling with a hard deadline. The clock and the sleep are
injectable so the loop can be driven by a fake clock in tests.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from loguru import logger


@dataclass(frozen=True, slots=True)
class PollPolicy[T]:
    """How often to poll, for how long, and what counts as done.

    Args:
        interval: Seconds to sleep before every poll.
        timeout: Seconds after which polling gives up.
        ready: Returns True once the polled value is final.
        terminal: Returns True if the polled value is a failure that must
            not be retried.
    """

    interval: float
    timeout: float
    ready: Callable[[T], bool]
    terminal: Callable[[T], bool] = field(default=lambda _: False)


class Sleeper:
    """Interruptible sleep.

    ``wake()`` cuts the current sleep short. An interrupted sleep does not
    abort polling; the loop refreshes and checks the deadline as usual.
    """

    __slots__ = ("_event",)

    def __init__(self) -> None:
        self._event = threading.Event()

    def __call__(self, seconds: float) -> None:
        try:
            if self._event.wait(seconds):
                logger.debug("Sleep interrupted, polling again")
        except InterruptedError:
            logger.debug("Sleep interrupted by signal, polling again")
        finally:
            self._event.clear()

    def wake(self) -> None:
        self._event.set()


def poll_until[T](
    poll_fn: Callable[[], T],
    policy: PollPolicy[T],
    *,
    on_terminal: Callable[[T], Exception],
    on_timeout: Callable[[T], Exception],
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Poll until ``policy.ready`` holds, a terminal value shows up, or time runs out.

    Every round sleeps first, then polls. A terminal value fails at once;
    otherwise the loop keeps going while the deadline has not passed.

    Args:
        poll_fn: Fetches the current value.
        policy: Cadence, deadline and predicates.
        on_terminal: Builds the error raised for a terminal value.
        on_timeout: Builds the error raised with the last value seen.
        clock: Monotonic clock in seconds.
        sleep: Sleep function.

    Returns:
        The first value that satisfies ``policy.ready``.
    """
    deadline = clock() + policy.timeout

    while True:
        sleep(policy.interval)
        result = poll_fn()

        if policy.terminal(result):
            raise on_terminal(result)

        if policy.ready(result):
            return result

        if clock() >= deadline:
            raise on_timeout(result)
