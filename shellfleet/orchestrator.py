"""Ordered execution of steps against an instance group.

Example:
    >>> bindings = run(
    ...     [Execute("hostname", output="host"), Execute("echo $host")],
    ...     "workers",
    ...     Credentials("ubuntu", key_file=Path("~/.ssh/id_rsa")),
    ...     cloud=EC2Cloud(region="eu-west-1"),
    ...     transport=ParamikoTransport(),
    ... )
"""

from __future__ import annotations

from collections.abc import MutableMapping, Sequence
from dataclasses import dataclass

from loguru import logger

from shellfleet.constants import CONNECT_TIMEOUT, POLL_INTERVAL, WAIT_FOR_RUNNING_TIMEOUT
from shellfleet.exceptions import RunError
from shellfleet.group import InstanceGroup
from shellfleet.operations import Step, as_step, describe, dispatch, validate_sequence
from shellfleet.types import CloudClient, Credentials, ExternalTask, ShellTransport

type OutputBindings = dict[str, str]


@dataclass(frozen=True, slots=True)
class RunOptions:
    """Knobs for attaching to and connecting with a group.

    Args:
        wait_timeout: Seconds to wait for discovered instances to run.
        poll_interval: Seconds between state refreshes while waiting.
        connect_timeout: Seconds allowed for each verification connection.
        connect_retries: Retry verification connections until the timeout.
        include_multiple_reservations: Attach to every matching launch
            batch instead of only the first one.
    """

    wait_timeout: float = WAIT_FOR_RUNNING_TIMEOUT
    poll_interval: float = POLL_INTERVAL
    connect_timeout: float = CONNECT_TIMEOUT
    connect_retries: bool = False
    include_multiple_reservations: bool = False


class Orchestrator:
    """Runs a step sequence against one group.

    Target indices of every step are checked against the member count
    before anything runs. Steps then run strictly in order; the first
    failure aborts the rest. Output bindings reach ``properties`` only
    after the last step succeeded.
    """

    def __init__(
        self,
        group: InstanceGroup,
        name: str,
        credentials: Credentials,
        properties: MutableMapping[str, str] | None = None,
    ) -> None:
        self._group = group
        self._name = name
        self._credentials = credentials
        self._properties = properties

    def run(self, sequence: Sequence[Step | ExternalTask]) -> OutputBindings:
        """Execute ``sequence`` and return the captured output bindings.

        Every line logged during the run is tagged with the group name, and
        with the step index while a step runs.

        Raises:
            RunError: Wrapping the first failure; the original error is
                the ``__cause__``.
        """
        with logger.contextualize(group=self._name):
            logger.info(f"Executing {len(sequence)} steps")
            bindings = self._run_steps(sequence)
            self._publish(bindings)
        return bindings

    def _run_steps(self, sequence: Sequence[Step | ExternalTask]) -> OutputBindings:
        bindings: OutputBindings = {}
        current: int | None = None

        try:
            steps = [as_step(entry) for entry in sequence]
            if not self._group.is_associated:
                self._group.attach_by_name(self._name)
            validate_sequence(steps, self._group.member_count())

            with self._group.connect(self._credentials) as handle:
                for index, step in enumerate(steps):
                    current = index
                    with logger.contextualize(step=index):
                        logger.info(describe(step))
                        dispatch(step, handle, bindings)
        except Exception as e:
            raise RunError(self._name, str(e), step=current) from e

        return bindings

    def _publish(self, bindings: OutputBindings) -> None:
        if self._properties is None:
            return
        for name, value in bindings.items():
            if name in self._properties:
                logger.warning(f"Property '{name}' already set, not overriding it")
                continue
            self._properties[name] = value


def run(
    sequence: Sequence[Step | ExternalTask],
    group_name: str,
    credentials: Credentials,
    options: RunOptions | None = None,
    *,
    cloud: CloudClient,
    transport: ShellTransport,
    properties: MutableMapping[str, str] | None = None,
) -> OutputBindings:
    """Attach to ``group_name`` and run ``sequence`` against its members."""
    options = options or RunOptions()
    group = InstanceGroup(
        cloud,
        transport,
        include_multiple_reservations=options.include_multiple_reservations,
        wait_timeout=options.wait_timeout,
        poll_interval=options.poll_interval,
        connect_timeout=options.connect_timeout,
        connect_retries=options.connect_retries,
    )
    return Orchestrator(group, group_name, credentials, properties).run(sequence)
