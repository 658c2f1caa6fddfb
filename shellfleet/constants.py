"""Centralized constants and enums for shellfleet.

Timeouts, polling cadence and state names live here so the group manager,
the poller and the CLI agree on them.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Final

# =============================================================================
# EC2 Instance States
# =============================================================================


class InstanceState(StrEnum):
    """EC2 instance state names."""

    PENDING = "pending"
    RUNNING = "running"
    SHUTTING_DOWN = "shutting-down"
    TERMINATED = "terminated"
    STOPPING = "stopping"
    STOPPED = "stopped"
    OTHER = "other"

    @classmethod
    def parse(cls, name: str | None) -> InstanceState:
        try:
            return cls((name or "").lower())
        except ValueError:
            return cls.OTHER


# States considered during discovery by group name
DISCOVERABLE_STATES: Final = (InstanceState.PENDING, InstanceState.RUNNING)


# =============================================================================
# Timeouts (in seconds)
# =============================================================================

POLL_INTERVAL: Final = 10.0
WAIT_FOR_RUNNING_TIMEOUT: Final = 600.0
CONNECT_TIMEOUT: Final = 300.0
COMMAND_TIMEOUT: Final = 3600.0


# =============================================================================
# Remote Shell
# =============================================================================

SSH_PROTOCOL: Final = "tcp"
SSH_PORT: Final = 22
