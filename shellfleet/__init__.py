"""shellfleet: ordered remote shell steps against a group of cloud instances.

Example:
    from pathlib import Path

    from shellfleet import Credentials, EC2Cloud, Execute, ParamikoTransport, Upload, run

    bindings = run(
        [
            Upload(Path("app.tar.gz"), "/tmp/app.tar.gz"),
            Execute("tar xzf /tmp/app.tar.gz -C /opt && hostname", output="host"),
            Execute("echo deployed on $host", targets="1"),
        ],
        "workers",
        Credentials("ubuntu", key_file=Path("~/.ssh/workers.pem")),
        cloud=EC2Cloud(region="eu-west-1"),
        transport=ParamikoTransport(),
    )
"""

from shellfleet.connection import ConnectionHandle
from shellfleet.constants import InstanceState
from shellfleet.exceptions import (
    AssociationStateError,
    CloudError,
    ConfigurationError,
    ConnectivityError,
    ExecutionError,
    InstanceLifecycleError,
    InstanceNotFoundError,
    InstanceTerminatedError,
    PermissionError,
    RunError,
    ShellFleetError,
    ValidationError,
    WaitTimeoutError,
)
from shellfleet.group import InstanceGroup
from shellfleet.logging import setup_logging, teardown_logging
from shellfleet.operations import ALL, Download, Execute, Step, Subtask, TargetSpec, Upload
from shellfleet.orchestrator import Orchestrator, OutputBindings, RunOptions, run
from shellfleet.permissions import SshPermission
from shellfleet.providers.aws import EC2Cloud
from shellfleet.ssh import ParamikoTransport
from shellfleet.types import (
    CloudClient,
    CommandResult,
    Credentials,
    ExternalTask,
    FirewallRule,
    Instance,
    LaunchSpec,
    Reservation,
    ShellTransport,
    TerminationResult,
)

__all__ = [
    "ALL",
    "AssociationStateError",
    "CloudClient",
    "CloudError",
    "CommandResult",
    "ConfigurationError",
    "ConnectionHandle",
    "ConnectivityError",
    "Credentials",
    "Download",
    "EC2Cloud",
    "Execute",
    "ExecutionError",
    "ExternalTask",
    "FirewallRule",
    "Instance",
    "InstanceGroup",
    "InstanceLifecycleError",
    "InstanceNotFoundError",
    "InstanceState",
    "InstanceTerminatedError",
    "LaunchSpec",
    "Orchestrator",
    "OutputBindings",
    "ParamikoTransport",
    "PermissionError",
    "Reservation",
    "RunError",
    "RunOptions",
    "ShellFleetError",
    "ShellTransport",
    "SshPermission",
    "Step",
    "Subtask",
    "TargetSpec",
    "TerminationResult",
    "Upload",
    "ValidationError",
    "WaitTimeoutError",
    "run",
    "setup_logging",
    "teardown_logging",
]
