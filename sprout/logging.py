"""Log sinks for the sprout CLI.

Library modules never configure logging. They log through
``logger.bind(component=...)`` and the bound keys (instance id, poller state,
volume, SSH host, bootstrap step) are rendered after the level as
``[component=poller instance_id=i-0abc state=awaiting-system-status]``.

Warnings from paramiko and botocore go through the stdlib ``logging`` module;
they are forwarded into the same sinks so SSH and API trouble shows up next
to the poller's own output.

Example:
    from sprout.logging import LogConfig, setup_logging, teardown_logging

    handler_ids = setup_logging(LogConfig.from_flags(verbose=1, log_file="launch.log"))
    try:
        ...
    finally:
        teardown_logging(handler_ids)
"""

from __future__ import annotations

import logging
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal

from loguru import logger

type LogLevel = Literal["TRACE", "DEBUG", "INFO", "WARNING", "ERROR"]

# Order in which bound extras are rendered.
CONTEXT_KEYS = (
    "component", "provider", "instance_id", "state", "volume_id", "host", "step",
)

# stdlib loggers whose warnings are worth seeing during a launch
FORWARDED_LOGGERS = ("paramiko", "botocore", "boto3")

CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss}</green> "
    "<level>{level: <7}</level>"
    "<dim>{extra[_ctx]}</dim> "
    "<level>{message}</level>"
)

FILE_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | "
    "{name}:{function}:{line}{extra[_ctx]} - {message}"
)


def _render_context(record: Any) -> str:
    extra = record["extra"]
    parts = [f"{k}={extra[k]}" for k in CONTEXT_KEYS if extra.get(k) is not None]
    return f" [{' '.join(parts)}]" if parts else ""


def _patch(record: Any) -> None:
    record["extra"]["_ctx"] = _render_context(record)


class _ForwardHandler(logging.Handler):
    """Hands stdlib log records to loguru, keeping their level and origin."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level: str | int = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno
        logger.bind(component=record.name).opt(exception=record.exc_info).log(level, record.getMessage())


@dataclass(frozen=True, slots=True)
class LogConfig:
    """Sinks to install for one CLI run.

    Attributes:
        level: Minimum console level.
        file: Debug log file. None disables it.
        console: Whether to write to stderr.
        rotation: When the log file rolls over (e.g. "10 MB", "1 day").
        retention: Rolled-over files to keep.
    """

    level: LogLevel = "INFO"
    file: str | None = None
    console: bool = True
    rotation: str = "10 MB"
    retention: int = 5

    @classmethod
    def from_flags(cls, verbose: int = 0, quiet: bool = False, log_file: str | None = None) -> LogConfig:
        """Map ``-v`` / ``-vv`` / ``-q`` to a console level."""
        if quiet:
            level: LogLevel = "WARNING"
        elif verbose >= 2:
            level = "TRACE"
        elif verbose == 1:
            level = "DEBUG"
        else:
            level = "INFO"
        return cls(level=level, file=log_file)


def setup_logging(config: LogConfig) -> list[int]:
    """Install sinks and return their handler ids."""
    logger.remove()
    logger.configure(patcher=_patch)

    handler_ids: list[int] = []

    if config.console:
        handler_ids.append(
            logger.add(sys.stderr, level=config.level, format=CONSOLE_FORMAT, colorize=True)
        )

    if config.file:
        path = Path(config.file).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        handler_ids.append(
            logger.add(
                str(path),
                level="DEBUG",
                format=FILE_FORMAT,
                rotation=config.rotation,
                retention=config.retention,
                compression="zip",
                diagnose=False,
            )
        )

    forward = _ForwardHandler(level=logging.WARNING)
    for name in FORWARDED_LOGGERS:
        stdlib_logger = logging.getLogger(name)
        if not any(isinstance(h, _ForwardHandler) for h in stdlib_logger.handlers):
            stdlib_logger.addHandler(forward)

    return handler_ids


def teardown_logging(handler_ids: list[int]) -> None:
    """Remove sinks installed by ``setup_logging`` and stop forwarding."""
    for hid in handler_ids:
        logger.remove(hid)
    for name in FORWARDED_LOGGERS:
        stdlib_logger = logging.getLogger(name)
        for handler in [h for h in stdlib_logger.handlers if isinstance(h, _ForwardHandler)]:
            stdlib_logger.removeHandler(handler)
