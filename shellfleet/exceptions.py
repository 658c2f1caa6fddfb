"""Custom exception hierarchy for shellfleet.

All shellfleet-specific exceptions inherit from ShellFleetError, enabling
users to catch all shellfleet exceptions with a single except clause.
"""

from __future__ import annotations

from collections.abc import Sequence


class ShellFleetError(Exception):
    """Base exception for all shellfleet errors."""


class ValidationError(ShellFleetError):
    """Raised for bad target indices or malformed step declarations.

    Always raised before any side effect takes place.
    """


class ConfigurationError(ShellFleetError):
    """Raised for invalid configuration or missing required settings."""


class AssociationStateError(ShellFleetError):
    """Raised when a group is used in the wrong attached/unattached state."""


class InstanceNotFoundError(ShellFleetError):
    """Raised when discovery finds no instance for a group."""

    def __init__(self, group: str) -> None:
        self.group = group
        super().__init__(f"No pending or running instances found for group '{group}'")


class InstanceLifecycleError(ShellFleetError):
    """Raised when instances do not reach (or leave) the running state."""


class InstanceTerminatedError(InstanceLifecycleError):
    """Raised when an instance was terminated - never retried."""

    def __init__(self, instance_id: str, groups: Sequence[str] = (), reason: str = "unknown") -> None:
        self.instance_id = instance_id
        self.groups = tuple(groups)
        self.reason = reason
        super().__init__(
            f"Instance {instance_id} of groups {list(self.groups)} terminated: {reason}"
        )


class WaitTimeoutError(InstanceLifecycleError):
    """Raised when instances are still not running after the deadline."""

    def __init__(self, groups: Sequence[str], states: Sequence[str], timeout: float) -> None:
        self.groups = tuple(groups)
        self.states = tuple(states)
        self.timeout = timeout
        super().__init__(
            f"Not all instances of groups {list(self.groups)} are 'running' after "
            f"{timeout:.0f}s, some are in: {list(self.states)}"
        )


class PermissionError(ShellFleetError):  # noqa: A001
    """Raised when the firewall rules do not open the remote shell port."""


class ConnectivityError(ShellFleetError):
    """Raised when a verification connection to an instance fails."""

    def __init__(self, address: str, reason: str = "unknown") -> None:
        self.address = address
        self.reason = reason
        super().__init__(f"Cannot connect to {address}: {reason}")


class ExecutionError(ShellFleetError):
    """Raised when a remote command or file transfer fails on a target."""


class RunError(ShellFleetError):
    """Terminal failure of an orchestrated run.

    The underlying error is available as ``__cause__``.
    """

    def __init__(self, group: str, message: str, step: int | None = None) -> None:
        self.group = group
        self.step = step
        where = f"group '{group}'" if step is None else f"group '{group}', step {step}"
        super().__init__(f"Run failed ({where}): {message}")


class CloudError(ShellFleetError):
    """Raised when a cloud control-plane request fails."""

    def __init__(self, action: str, reason: str) -> None:
        self.action = action
        self.reason = reason
        super().__init__(f"Cloud request '{action}' failed: {reason}")
