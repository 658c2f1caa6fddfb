"""Remote connection verifier: prove every member accepts a login."""

from __future__ import annotations

from collections.abc import Sequence

from loguru import logger
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_delay,
    wait_fixed,
)

from shellfleet.constants import CONNECT_TIMEOUT, POLL_INTERVAL
from shellfleet.exceptions import ConnectivityError
from shellfleet.types import Credentials, ShellTransport


def _log_retry(state: RetryCallState) -> None:
    error = state.outcome.exception() if state.outcome else None
    logger.warning(f"Connection attempt {state.attempt_number} failed: {error}. Retrying...")


def verify_connections(
    transport: ShellTransport,
    addresses: Sequence[str],
    credentials: Credentials,
    *,
    timeout: float = CONNECT_TIMEOUT,
    retry: bool = False,
    retry_interval: float = POLL_INTERVAL,
) -> None:
    """Open and close one connection per address, in order.

    Any failure aborts the whole check. With ``retry`` the attempts for
    one address are repeated at a fixed interval until ``timeout``.

    Raises:
        ConnectivityError: For the first address that cannot be reached.
    """
    logger.info(f"Checking ssh connections of {credentials.username}@{list(addresses)}")

    for address in addresses:
        if not retry:
            transport.open_and_verify(address, credentials, timeout)
            continue

        for attempt in Retrying(
            stop=stop_after_delay(timeout),
            wait=wait_fixed(retry_interval),
            retry=retry_if_exception_type(ConnectivityError),
            before_sleep=_log_retry,
            reraise=True,
        ):
            with attempt:
                transport.open_and_verify(address, credentials, timeout)

    logger.debug(f"All {len(addresses)} ssh connections verified")
