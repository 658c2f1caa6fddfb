"""Command line front end.

    python -m shellfleet run deploy.toml --profile prod
    python -m shellfleet members workers
    python -m shellfleet terminate workers --profile dev
"""

from __future__ import annotations

import argparse
import sys
from collections.abc import Sequence
from pathlib import Path

from rich.console import Console
from rich.table import Table

from shellfleet.config import Profile, resolve_profile
from shellfleet.exceptions import ShellFleetError, ValidationError
from shellfleet.group import InstanceGroup
from shellfleet.logging import setup_logging, teardown_logging
from shellfleet.orchestrator import run
from shellfleet.providers.aws import EC2Cloud
from shellfleet.script import load_script
from shellfleet.ssh import ParamikoTransport


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="shellfleet",
        description="Run ordered remote shell steps against a group of EC2 instances",
    )
    parser.add_argument(
        "--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"],
    )
    parser.add_argument("--log-file", default=None, help="Also write a debug log to this file")
    sub = parser.add_subparsers(dest="command", required=True)

    run_cmd = sub.add_parser("run", help="Execute a step script")
    run_cmd.add_argument("script", type=Path)
    run_cmd.add_argument("--profile", default="default")
    run_cmd.add_argument("--group", default=None, help="Overrides the script's group")

    members_cmd = sub.add_parser("members", help="List the instances of a group")
    members_cmd.add_argument("group")
    members_cmd.add_argument("--profile", default="default")

    terminate_cmd = sub.add_parser("terminate", help="Terminate the instances of a group")
    terminate_cmd.add_argument("group")
    terminate_cmd.add_argument("--profile", default="default")

    return parser


def _cloud(profile: Profile) -> EC2Cloud:
    return EC2Cloud(profile.region, profile=profile.aws_profile, match=profile.match)


def _group(profile: Profile) -> InstanceGroup:
    return InstanceGroup(
        _cloud(profile),
        include_multiple_reservations=profile.include_multiple_reservations,
        wait_timeout=profile.wait_timeout,
        poll_interval=profile.poll_interval,
    )


def _run(args: argparse.Namespace, console: Console) -> None:
    profile = resolve_profile(args.profile)
    script = load_script(args.script)
    group = args.group or script.group
    if not group:
        raise ValidationError("No group given; set 'group' in the script or pass --group")

    transport = ParamikoTransport()
    try:
        bindings = run(
            script.steps,
            group,
            profile.credentials(),
            profile.options(),
            cloud=_cloud(profile),
            transport=transport,
        )
    finally:
        transport.close()

    for name, value in bindings.items():
        console.print(f"{name}={value}", markup=False, highlight=False)


def _members(args: argparse.Namespace, console: Console) -> None:
    group = _group(resolve_profile(args.profile))
    group.attach_by_name(args.group)

    table = Table(title=f"Group '{args.group}'")
    for column in ("#", "Instance", "State", "Address", "Security groups"):
        table.add_column(column)
    for index, instance in enumerate(group.members(), start=1):
        table.add_row(
            str(index),
            instance.id,
            str(instance.state),
            instance.public_address or "-",
            ", ".join(instance.security_groups),
        )
    console.print(table)


def _terminate(args: argparse.Namespace, console: Console) -> None:
    group = _group(resolve_profile(args.profile))
    group.attach_by_name(args.group)
    count = group.member_count()
    group.terminate()
    console.print(f"Terminating {count} instances of group '{args.group}'")


_COMMANDS = {"run": _run, "members": _members, "terminate": _terminate}


def main(argv: Sequence[str] | None = None) -> int:
    args = _parser().parse_args(argv)
    handlers = setup_logging(args.log_level, args.log_file)
    console = Console()
    try:
        _COMMANDS[args.command](args, console)
    except ShellFleetError as e:
        Console(stderr=True).print(f"[red]error:[/red] {e}", highlight=False)
        return 1
    finally:
        teardown_logging(handlers)
    return 0


if __name__ == "__main__":
    sys.exit(main())
