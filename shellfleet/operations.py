"""Remote operation model.

A run is an ordered list of steps. Remote steps (``Execute``, ``Upload``,
``Download``) address a subset of the group's members by index; a
``Subtask`` wraps any object with a ``perform()`` method.

Target expressions are one-based, as users write them:

    >>> TargetSpec.parse("1,3-5").indices
    (0, 2, 3, 4)
    >>> TargetSpec.parse("all").indices is None
    True
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping, MutableMapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from loguru import logger

from shellfleet.connection import ConnectionHandle
from shellfleet.exceptions import ValidationError
from shellfleet.types import ExternalTask

__all__ = [
    "TargetSpec",
    "ALL",
    "Execute",
    "Upload",
    "Download",
    "Subtask",
    "Step",
    "as_step",
    "validate_sequence",
    "substitute",
    "dispatch",
]


# =============================================================================
# Targets
# =============================================================================

_RANGE = re.compile(r"^(\d+)\s*-\s*(\d+)$")


@dataclass(frozen=True, slots=True)
class TargetSpec:
    """Zero-based member indices a step runs on; ``None`` means all members."""

    indices: tuple[int, ...] | None = None

    @classmethod
    def parse(cls, expression: str | Sequence[int] | TargetSpec | None) -> TargetSpec:
        """Build from ``"all"``, ``"1,3-5"`` (one-based) or zero-based ints."""
        match expression:
            case TargetSpec():
                return expression
            case None:
                return ALL
            case str():
                return cls._parse_expression(expression)
            case [*indices] if indices and all(_is_index(i) for i in indices):
                return cls(indices=_unique(indices))
            case [*_]:
                raise ValidationError(f"Target list must hold at least one integer index, got {expression!r}")
            case _:
                raise ValidationError(f"Unsupported target expression {expression!r}")

    @classmethod
    def _parse_expression(cls, expression: str) -> TargetSpec:
        text = expression.strip()
        if not text or text.lower() == "all":
            return ALL

        indices: list[int] = []
        for token in (t.strip() for t in text.split(",")):
            if token.isdigit():
                indices.append(int(token) - 1)
                continue
            if m := _RANGE.match(token):
                start, end = int(m.group(1)), int(m.group(2))
                if start > end:
                    raise ValidationError(f"Invalid target range '{token}' in '{expression}'")
                indices.extend(range(start - 1, end))
                continue
            raise ValidationError(f"Invalid target expression '{token}' in '{expression}'")
        return cls(indices=_unique(indices))

    def verify(self, count: int) -> None:
        """Check every index lies in ``[0, count)``.

        Raises:
            ValidationError: Naming the first out-of-range index (one-based).
        """
        for index in self.indices or ():
            if not 0 <= index < count:
                raise ValidationError(
                    f"Target {index + 1} out of range, group has {count} instances"
                )

    def __str__(self) -> str:
        if self.indices is None:
            return "all"
        return ",".join(str(i + 1) for i in self.indices)


ALL = TargetSpec()


def _unique(indices: Iterable[int]) -> tuple[int, ...]:
    return tuple(dict.fromkeys(indices))


def _is_index(value: object) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


# =============================================================================
# Steps
# =============================================================================


@dataclass(frozen=True, slots=True)
class Execute:
    """Run a shell command; optionally bind its trimmed stdout to ``output``."""

    command: str
    output: str | None = None
    targets: TargetSpec = field(default=ALL)

    def __post_init__(self) -> None:
        if not isinstance(self.command, str) or not self.command.strip():
            raise ValidationError("exec requires a command")
        if self.output is not None and (not isinstance(self.output, str) or not self.output.strip()):
            raise ValidationError("exec output name must not be blank")
        object.__setattr__(self, "targets", TargetSpec.parse(self.targets))


@dataclass(frozen=True, slots=True)
class Upload:
    """Copy a local file to ``remote_path`` on each target."""

    local_path: Path
    remote_path: str
    targets: TargetSpec = field(default=ALL)

    def __post_init__(self) -> None:
        if not str(self.local_path) or not self.remote_path:
            raise ValidationError("upload requires a local path and a remote path")
        object.__setattr__(self, "local_path", Path(self.local_path))
        object.__setattr__(self, "targets", TargetSpec.parse(self.targets))


@dataclass(frozen=True, slots=True)
class Download:
    """Copy ``remote_path`` from each target to a local file."""

    remote_path: str
    local_path: Path
    overwrite: bool = False
    targets: TargetSpec = field(default=ALL)

    def __post_init__(self) -> None:
        if not self.remote_path or not str(self.local_path):
            raise ValidationError("download requires a remote path and a local path")
        object.__setattr__(self, "local_path", Path(self.local_path))
        object.__setattr__(self, "targets", TargetSpec.parse(self.targets))


@dataclass(frozen=True, slots=True)
class Subtask:
    """An opaque task run locally between remote steps."""

    task: ExternalTask
    name: str = ""

    def __str__(self) -> str:
        return self.name or type(self.task).__name__


type Step = Execute | Upload | Download | Subtask


def as_step(entry: object) -> Step:
    """Accept a step, or wrap anything with ``perform()`` as a ``Subtask``."""
    match entry:
        case Execute() | Upload() | Download() | Subtask():
            return entry
        case ExternalTask():
            return Subtask(entry)
        case _:
            raise ValidationError(f"Type '{type(entry).__name__}' not supported here")


def describe(step: Step) -> str:
    match step:
        case Execute(command=command):
            return f"exec '{command}'"
        case Upload(local_path=local, remote_path=remote):
            return f"upload {local} -> {remote}"
        case Download(remote_path=remote, local_path=local):
            return f"download {remote} -> {local}"
        case Subtask():
            return f"task {step}"


def validate_sequence(steps: Sequence[Step], count: int) -> None:
    """Check the targets of every remote step before anything runs.

    Raises:
        ValidationError: For the first step with an out-of-range target.
    """
    for index, step in enumerate(steps):
        if isinstance(step, Subtask):
            continue
        try:
            step.targets.verify(count)
        except ValidationError as e:
            raise ValidationError(f"Step {index} ({describe(step)}): {e}") from None


# =============================================================================
# Substitution
# =============================================================================


def substitute(command: str, bindings: Mapping[str, str]) -> str:
    """Replace ``$name`` and ``${name}`` for every bound name.

    References to unbound names, like ``$HOME``, are left alone. Longer
    names win over shorter ones sharing a prefix.
    """
    if not bindings:
        return command
    names = "|".join(re.escape(n) for n in sorted(bindings, key=len, reverse=True))
    pattern = re.compile(rf"\$\{{({names})\}}|\$({names})(?!\w)")
    return pattern.sub(lambda m: bindings[m.group(1) or m.group(2)], command)


# =============================================================================
# Dispatch
# =============================================================================


def dispatch(step: Step, handle: ConnectionHandle, bindings: MutableMapping[str, str]) -> None:
    """Run one step; ``Execute`` outputs land in ``bindings``."""
    match step:
        case Execute(command=command, output=output, targets=targets):
            results = handle.execute(substitute(command, bindings), targets.indices)
            if output is not None:
                bindings[output] = "".join(r.output for r in results).strip()
                logger.debug(f"Bound '{output}' = {bindings[output]!r}")
        case Upload(local_path=local, remote_path=remote, targets=targets):
            handle.upload(local, remote, targets.indices)
        case Download(remote_path=remote, local_path=local, overwrite=overwrite, targets=targets):
            handle.download(remote, local, overwrite, targets.indices)
        case Subtask(task=task):
            task.perform()
