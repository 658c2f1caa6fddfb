"""Logging for shellfleet runs.

Logging stays disabled until ``setup_logging`` is called, which the CLI
does. Lines emitted inside an orchestrated run carry the group name and,
while a step runs, its index, so the output of several targets stays
readable:

    12:00:01.123 | INFO     | [workers #2] [host1.example.com] installed

The orchestrator sets that context with ``logger.contextualize``; any code
called from a step (connection handle, transport, sub-tasks) inherits it.

Example:
    handlers = setup_logging("DEBUG", file="shellfleet.log")
    try:
        ...
    finally:
        teardown_logging(handlers)
"""

from __future__ import annotations

import sys
from collections.abc import Callable
from typing import TYPE_CHECKING, Any, Literal

from loguru import logger

if TYPE_CHECKING:
    from loguru import Record

logger.disable("shellfleet")

type LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR"]

CONSOLE_TIME = "<green>{time:HH:mm:ss.SSS}</green>"
FILE_TIME = "{time:YYYY-MM-DD HH:mm:ss.SSS}"
SOURCE = "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "


def run_label(extra: dict[str, Any]) -> str:
    """``[group]`` or ``[group #step]`` for lines logged inside a run."""
    group = extra.get("group")
    if group is None:
        return ""
    step = extra.get("step")
    return f"[{group}]" if step is None else f"[{group} #{step}]"


def _formatter(time_format: str, with_source: bool) -> Callable[[Record], str]:
    template = (
        f"{time_format} | <level>{{level: <8}}</level> | "
        + (SOURCE if with_source else "")
        + "<magenta>{extra[run]}</magenta><level>{message}</level>\n{exception}"
    )

    def _format(record: Record) -> str:
        # group names go through extra so braces in them are never parsed
        label = run_label(record["extra"])
        record["extra"]["run"] = f"{label} " if label else ""
        return template

    return _format


def setup_logging(
    level: LogLevel = "INFO",
    file: str | None = None,
    *,
    console: bool = True,
) -> list[int]:
    """Enable shellfleet logging and return handler IDs for cleanup.

    Args:
        level: Minimum console level. Source locations are shown at DEBUG.
        file: Also write every line, DEBUG included, to this file.
        console: Log to stderr.
    """
    logger.enable("shellfleet")
    handler_ids: list[int] = []

    if console:
        handler_ids.append(
            logger.add(
                sys.stderr,
                level=level,
                format=_formatter(CONSOLE_TIME, with_source=level == "DEBUG"),
                colorize=True,
                filter="shellfleet",
            )
        )

    if file:
        handler_ids.append(
            logger.add(
                file,
                level="DEBUG",
                format=_formatter(FILE_TIME, with_source=True),
                rotation="50 MB",
                retention=10,
                diagnose=False,  # keeps passwords out of tracebacks
                enqueue=True,
                filter="shellfleet",
            )
        )

    return handler_ids


def teardown_logging(handler_ids: list[int]) -> None:
    """Remove handlers and disable logging again."""
    for hid in handler_ids:
        logger.remove(hid)
    logger.disable("shellfleet")
