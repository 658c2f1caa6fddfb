"""Core data types and collaborator protocols.

The cloud control plane and the remote shell transport are consumed through
the ``CloudClient`` and ``ShellTransport`` protocols; ``providers.aws`` and
``ssh`` hold the concrete implementations.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol, runtime_checkable

from shellfleet.constants import InstanceState
from shellfleet.exceptions import ValidationError

__all__ = [
    "Instance",
    "Reservation",
    "LaunchSpec",
    "FirewallRule",
    "TerminationResult",
    "Credentials",
    "CommandResult",
    "CloudClient",
    "ShellTransport",
    "ExternalTask",
]


# =============================================================================
# Cloud Model
# =============================================================================


@dataclass(frozen=True, slots=True)
class Instance:
    """Cached description of one cloud compute instance."""

    id: str
    state: InstanceState
    public_address: str | None = None
    security_groups: tuple[str, ...] = ()
    reservation_id: str | None = None
    state_reason: str = ""

    @property
    def is_running(self) -> bool:
        return self.state == InstanceState.RUNNING

    @property
    def is_terminated(self) -> bool:
        return self.state == InstanceState.TERMINATED


@dataclass(frozen=True, slots=True)
class Reservation:
    """A batch of instances created by one launch request."""

    id: str
    instances: tuple[Instance, ...] = ()


@dataclass(frozen=True, slots=True)
class LaunchSpec:
    """Request to create instances.

    Args:
        image_id: Machine image to boot.
        instance_type: Instance size, e.g. ``t3.micro``.
        min_count: Minimum number of instances to launch.
        max_count: Maximum number of instances to launch.
        security_groups: Security group names the instances join.
        key_name: Key pair injected into the instances.
        tags: Tags applied to the instances.
        user_data: Boot script.
    """

    image_id: str
    instance_type: str = "t3.micro"
    min_count: int = 1
    max_count: int = 1
    security_groups: tuple[str, ...] = ()
    key_name: str | None = None
    tags: Mapping[str, str] = field(default_factory=dict)
    user_data: str | None = None


@dataclass(frozen=True, slots=True)
class FirewallRule:
    """One inbound permission of a security group."""

    protocol: str
    from_port: int | None
    to_port: int | None
    sources: tuple[str, ...] = ()
    group: str = ""


@dataclass(frozen=True, slots=True)
class TerminationResult:
    """Instances the control plane accepted for termination."""

    terminating: tuple[str, ...] = ()


# =============================================================================
# Remote Shell Model
# =============================================================================


@dataclass(frozen=True, slots=True)
class Credentials:
    """Login for the remote shell: a private key file or a password."""

    username: str
    key_file: Path | None = None
    password: str | None = field(default=None, repr=False)

    def __post_init__(self) -> None:
        if not self.username:
            raise ValidationError("username is required")
        if (self.key_file is None) == (self.password is None):
            raise ValidationError("exactly one of key_file or password is required")
        if self.key_file is not None and not isinstance(self.key_file, Path):
            object.__setattr__(self, "key_file", Path(self.key_file))


@dataclass(frozen=True, slots=True)
class CommandResult:
    """Outcome of one remote command on one target."""

    exit_status: int
    output: str
    stderr: str = ""

    @property
    def success(self) -> bool:
        return self.exit_status == 0


# =============================================================================
# Collaborator Protocols
# =============================================================================


class CloudClient(Protocol):
    """Cloud control plane consumed by the instance group manager."""

    def find_instances(
        self, group: str, states: Sequence[InstanceState] = ...,
    ) -> list[Instance]:
        """Instances whose group matches, ordered by reservation then launch index."""
        ...

    def describe(self, instance_ids: Sequence[str]) -> list[Instance]: ...

    def launch(self, spec: LaunchSpec) -> Reservation: ...

    def terminate(self, instance_ids: Sequence[str]) -> TerminationResult: ...

    def list_firewall_rules(self, groups: Sequence[str], protocol: str) -> list[FirewallRule]: ...


class ShellTransport(Protocol):
    """Remote shell and file transfer against a single address."""

    def open_and_verify(self, address: str, credentials: Credentials, timeout: float) -> None:
        """Open a connection and close it again.

        Raises:
            ConnectivityError: If the connection cannot be established.
        """
        ...

    def execute_command(self, address: str, credentials: Credentials, command: str) -> CommandResult: ...

    def upload_file(
        self, address: str, credentials: Credentials, local_path: Path, remote_path: str,
    ) -> None: ...

    def download_file(
        self,
        address: str,
        credentials: Credentials,
        remote_path: str,
        local_path: Path,
        overwrite: bool,
    ) -> None: ...

    def close(self) -> None: ...


@runtime_checkable
class ExternalTask(Protocol):
    """Opaque unit of work interleaved with remote steps."""

    def perform(self) -> None: ...
