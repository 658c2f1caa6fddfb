"""Instance group manager.

Tracks a named set of cloud instances, waits for them to run, and hands
out connection handles once shell access is proven.

Example:
    >>> group = InstanceGroup(EC2Cloud(region="eu-west-1"), ParamikoTransport())
    >>> group.attach_by_name("workers")
    >>> with group.create_connection("ubuntu", key_file=Path("~/.ssh/id_rsa")) as conn:
    ...     conn.execute("uptime")
    >>> group.terminate()
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Sequence
from pathlib import Path

from loguru import logger

from shellfleet.connection import ConnectionHandle
from shellfleet.constants import (
    CONNECT_TIMEOUT,
    DISCOVERABLE_STATES,
    POLL_INTERVAL,
    WAIT_FOR_RUNNING_TIMEOUT,
    InstanceState,
)
from shellfleet.exceptions import (
    AssociationStateError,
    ConnectivityError,
    InstanceLifecycleError,
    InstanceNotFoundError,
)
from shellfleet.permissions import SshPermission, check_ssh_permission
from shellfleet.poller import InstanceStatePoller, security_groups
from shellfleet.types import (
    CloudClient,
    Credentials,
    Instance,
    LaunchSpec,
    Reservation,
    ShellTransport,
)
from shellfleet.verify import verify_connections

type Members = tuple[Instance, ...]


class InstanceGroup:
    """Stateful view of a group of instances.

    A group is either unattached or associated with a list of members.
    ``attach_by_name``, ``attach_by_reservation`` and ``launch`` need an
    unattached group; everything else needs an associated one.

    The member list is a tuple replaced as a whole on every refresh, under
    a lock, so readers always see one complete snapshot.
    """

    def __init__(
        self,
        cloud: CloudClient,
        transport: ShellTransport | None = None,
        *,
        include_multiple_reservations: bool = False,
        wait_timeout: float = WAIT_FOR_RUNNING_TIMEOUT,
        poll_interval: float = POLL_INTERVAL,
        connect_timeout: float = CONNECT_TIMEOUT,
        connect_retries: bool = False,
        permission: SshPermission | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        self._cloud = cloud
        self._transport = transport
        self._include_multiple_reservations = include_multiple_reservations
        self._wait_timeout = wait_timeout
        self._connect_timeout = connect_timeout
        self._connect_retries = connect_retries
        self._permission = permission or SshPermission()
        self._members: Members | None = None
        self._lock = threading.Lock()
        self._poller = InstanceStatePoller(
            self._refresh, interval=poll_interval, clock=clock, sleep=sleep,
        )

    # -------------------------------------------------------------------------
    # Association
    # -------------------------------------------------------------------------

    @property
    def is_associated(self) -> bool:
        return self._members is not None

    def _check_association(self, should_be_associated: bool) -> Members:
        members = self._members
        if should_be_associated and members is None:
            raise AssociationStateError("Instance group is not yet associated with instances")
        if not should_be_associated and members is not None:
            raise AssociationStateError("Instance group already associated with instances")
        return members or ()

    def attach_by_name(self, name: str, timeout: float | None = None) -> None:
        """Associate with the pending or running instances of group ``name``.

        Blocks until all of them run if the first one is not running yet.

        Raises:
            InstanceNotFoundError: If no instance matches.
            InstanceLifecycleError: If an instance terminates or the wait times
                out; the group is left unattached.
        """
        self._check_association(False)
        logger.info(f"Connecting to instances of group '{name}'")

        found = self._cloud.find_instances(name, DISCOVERABLE_STATES)
        if found and not self._include_multiple_reservations:
            first = found[0].reservation_id
            found = [i for i in found if i.reservation_id == first]
        if not found:
            raise InstanceNotFoundError(name)

        self._members = tuple(found)
        logger.info(f"Found {len(found)} instances of group '{name}': {[i.id for i in found]}")

        if not found[0].is_running:
            try:
                self._wait_until_running(timeout if timeout is not None else self._wait_timeout)
            except InstanceLifecycleError:
                with self._lock:
                    self._members = None
                raise

    def attach_by_reservation(self, reservation: Reservation) -> None:
        """Associate with the instances of an existing launch and refresh them."""
        self._check_association(False)
        logger.info(f"Connecting to reservation '{reservation.id}'")
        self._members = tuple(reservation.instances)
        self._refresh()

    def launch(self, spec: LaunchSpec, timeout: float | None = None) -> Reservation:
        """Start new instances and associate with them.

        Args:
            spec: What to launch.
            timeout: If given, wait up to this many seconds for the
                instances to run.

        Returns:
            The reservation with refreshed instance descriptions.
        """
        self._check_association(False)
        logger.info(
            f"Starting {spec.min_count} to {spec.max_count} instances with {spec.image_id} "
            f"in groups {list(spec.security_groups)}..."
        )
        reservation = self._cloud.launch(spec)
        self._members = tuple(reservation.instances)
        ids = [i.id for i in reservation.instances]
        logger.info(f"Triggered start of {len(ids)} instances: {ids}")

        if timeout is not None:
            members = self._wait_until_running(timeout)
            logger.info(
                f"Started {len(ids)} instances: {ids} / {[i.public_address for i in members]}"
            )

        return Reservation(id=reservation.id, instances=self._refresh())

    def terminate(self) -> None:
        """Terminate every member and drop the association."""
        members = self._check_association(True)
        result = self._cloud.terminate([i.id for i in members])
        with self._lock:
            self._members = None
        logger.info(f"Stopped {len(result.terminating)} instances")

    # -------------------------------------------------------------------------
    # Members
    # -------------------------------------------------------------------------

    def member_count(self) -> int:
        return len(self._check_association(True))

    def members(self, refresh: bool = False) -> Members:
        self._check_association(True)
        if refresh:
            return self._refresh()
        return self._members or ()

    def _refresh(self) -> Members:
        with self._lock:
            current = self._check_association(True)
            described = {i.id: i for i in self._cloud.describe([i.id for i in current])}
            # keep tracked order so target indices stay stable
            fresh = tuple(described.get(i.id, i) for i in current)
            self._members = fresh
            return fresh

    def _wait_until_running(self, timeout: float) -> Members:
        members = self._check_association(True)
        return self._poller.wait_until_running(members, timeout)

    def wake(self) -> None:
        """Interrupt the poller's current sleep."""
        self._poller.wake()

    # -------------------------------------------------------------------------
    # Connections
    # -------------------------------------------------------------------------

    def create_connection(
        self,
        username: str,
        *,
        key_file: Path | None = None,
        password: str | None = None,
    ) -> ConnectionHandle:
        """Verify shell access to every member and return a handle bound to them.

        Raises:
            InstanceLifecycleError: If a member is not running.
            PermissionError: If the security groups do not open SSH.
            ConnectivityError: If any member refuses the login.
        """
        credentials = Credentials(username=username, key_file=key_file, password=password)
        return self.connect(credentials)

    def connect(self, credentials: Credentials) -> ConnectionHandle:
        """Same as ``create_connection`` for prebuilt credentials."""
        if self._transport is None:
            raise AssociationStateError("Instance group has no shell transport")
        self._check_association(True)
        members = self._refresh()
        self._check_state(members, InstanceState.RUNNING)
        addresses = self._addresses(members)

        check_ssh_permission(self._cloud, security_groups(members), self._permission)
        verify_connections(
            self._transport,
            addresses,
            credentials,
            timeout=self._connect_timeout,
            retry=self._connect_retries,
        )
        return ConnectionHandle(self._transport, credentials, addresses)

    @staticmethod
    def _check_state(members: Sequence[Instance], desired: InstanceState) -> None:
        for instance in members:
            if instance.state != desired:
                raise InstanceLifecycleError(
                    f"Instance {instance.id} is not in state '{desired}' but in state '{instance.state}'"
                )

    @staticmethod
    def _addresses(members: Sequence[Instance]) -> list[str]:
        addresses = []
        for instance in members:
            if not instance.public_address:
                raise ConnectivityError(instance.id, "instance has no public address")
            addresses.append(instance.public_address)
        return addresses
