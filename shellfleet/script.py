"""TOML step scripts.

A script names the group and lists its steps in order:

    group = "workers"

    [[steps]]
    exec = "hostname"
    output = "hosts"

    [[steps]]
    upload = { local = "dist/app.tar.gz", remote = "/tmp/app.tar.gz" }
    targets = "1,3-5"

    [[steps]]
    local = "make report"

    [[steps]]
    download = { remote = "/var/log/app.log", local = "logs", overwrite = true }
"""

from __future__ import annotations

import subprocess
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from loguru import logger

from shellfleet.exceptions import ExecutionError, ValidationError
from shellfleet.operations import Download, Execute, Step, Subtask, Upload

_KINDS = ("exec", "upload", "download", "local")


@dataclass(frozen=True, slots=True)
class LocalCommand:
    """Sub-task running a shell command on this machine."""

    command: str
    cwd: Path | None = None

    def perform(self) -> None:
        logger.info(f"[local] $ {self.command}")
        result = subprocess.run(
            self.command, shell=True, cwd=self.cwd, capture_output=True, text=True,
        )
        for line in result.stdout.splitlines():
            logger.info(f"[local] {line}")
        if result.returncode != 0:
            raise ExecutionError(
                f"Local command '{self.command}' failed with exit status "
                f"{result.returncode}: {result.stderr.strip()}"
            )


@dataclass(frozen=True, slots=True)
class Script:
    group: str | None
    steps: tuple[Step, ...]


def _string(value: Any, what: str) -> str | None:
    if value is not None and not isinstance(value, str):
        raise ValidationError(f"{what} must be a string, got {type(value).__name__}")
    return value


def _require(table: Any, key: str, kind: str) -> str:
    if not isinstance(table, dict) or not table.get(key):
        raise ValidationError(f"{kind} requires '{key}'")
    return _string(table[key], f"{kind} {key}")


def parse_step(raw: dict[str, Any], base_dir: Path | None = None) -> Step:
    if not isinstance(raw, dict):
        raise ValidationError(f"Step must be a table, got {type(raw).__name__}")
    kinds = [k for k in _KINDS if k in raw]
    if len(kinds) != 1:
        raise ValidationError(f"Step needs exactly one of {', '.join(_KINDS)}, got {kinds or 'none'}")
    kind = kinds[0]
    allowed = {kind, "targets", "output"} if kind == "exec" else {kind, "targets"}
    extra = sorted(set(raw) - allowed)
    if extra:
        raise ValidationError(f"Unexpected keys for {kind}: {', '.join(extra)}")
    # targets are one-based expressions; arrays are rejected
    targets = _string(raw.get("targets"), "targets")

    match kind:
        case "exec":
            return Execute(
                _string(raw["exec"], "exec"),
                output=_string(raw.get("output"), "output"),
                targets=targets,
            )
        case "upload":
            table = raw["upload"]
            return Upload(
                _resolve(_require(table, "local", kind), base_dir),
                _require(table, "remote", kind),
                targets=targets,
            )
        case "download":
            table = raw["download"]
            overwrite = table.get("overwrite", False) if isinstance(table, dict) else False
            if not isinstance(overwrite, bool):
                raise ValidationError(f"download overwrite must be true or false, got {overwrite!r}")
            return Download(
                _require(table, "remote", kind),
                _resolve(_require(table, "local", kind), base_dir),
                overwrite=overwrite,
                targets=targets,
            )
        case _:
            if targets is not None:
                raise ValidationError("local steps run on this machine and take no targets")
            command = _string(raw["local"], "local")
            if not command or not command.strip():
                raise ValidationError("local requires a command")
            return Subtask(LocalCommand(command, cwd=base_dir), name=f"local '{command}'")


def _resolve(path: str, base_dir: Path | None) -> Path:
    p = Path(path).expanduser()
    return p if p.is_absolute() or base_dir is None else base_dir / p


def parse_script(raw: dict[str, Any], base_dir: Path | None = None) -> Script:
    steps = []
    for index, step in enumerate(raw.get("steps", [])):
        try:
            steps.append(parse_step(step, base_dir))
        except ValidationError as e:
            raise ValidationError(f"Step {index}: {e}") from None
    return Script(group=_string(raw.get("group"), "group"), steps=tuple(steps))


def load_script(path: Path) -> Script:
    """Read a script file; relative local paths resolve against its directory."""
    with path.open("rb") as f:
        try:
            raw = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ValidationError(f"Invalid script {path}: {e}") from e
    return parse_script(raw, path.parent)
