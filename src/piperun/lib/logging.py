"""Structlog setup for the piperun CLI.

Child stdout is forwarded to our own stdout unchanged, so every log line goes
to stderr. CI runners usually capture stderr through a pipe; colors are only
enabled when the stream is a terminal.
"""

from __future__ import annotations

import logging as std_logging
import sys
from typing import TextIO

import structlog

_LEVELS = (std_logging.ERROR, std_logging.WARNING, std_logging.INFO, std_logging.DEBUG)


def level_for_verbosity(verbosity: int) -> int:
    """-1 (quiet) is ERROR, 0 WARNING, 1 INFO, 2 or more DEBUG."""

    index = min(max(verbosity + 1, 0), len(_LEVELS) - 1)
    return _LEVELS[index]


def _is_terminal(stream: TextIO) -> bool:
    isatty = getattr(stream, "isatty", None)
    return bool(isatty is not None and isatty())


def configure_logging(
    json_mode: bool = False,
    verbosity: int = 0,
    *,
    stream: TextIO | None = None,
) -> None:
    level = level_for_verbosity(verbosity)
    target = stream if stream is not None else sys.stderr

    # Config-loader warnings use stdlib logging; keep them on the same stream.
    handler = std_logging.StreamHandler(target)
    handler.setFormatter(std_logging.Formatter("%(levelname)s %(message)s"))
    std_logging.basicConfig(level=level, handlers=[handler], force=True)

    renderer: structlog.typing.Processor = (
        structlog.processors.JSONRenderer()
        if json_mode
        else structlog.dev.ConsoleRenderer(colors=_is_terminal(target))
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(file=target),
        cache_logger_on_first_use=True,
    )
