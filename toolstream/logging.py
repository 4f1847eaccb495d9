"""Structured logging for toolstream.

Modules log through ``get_logger(__name__)``. Applications call
``configure_logging()`` once; the agent loop binds a ``loop_id`` context
variable so every line emitted while one loop runs can be grouped.
"""

import logging
import sys
from typing import Callable, TextIO

import structlog

from toolstream.config import LoggingConfig, get_config


class _LineSink:
    """Text stream that hands each complete rendered line to a callback."""

    def __init__(self, callback: Callable[[str], None]):
        self._callback = callback
        self._partial = ""

    def write(self, text: str) -> int:
        lines = (self._partial + text).split("\n")
        self._partial = lines.pop()
        for line in lines:
            if line:
                self._callback(line)
        return len(text)

    def flush(self) -> None:
        if self._partial:
            self._callback(self._partial)
            self._partial = ""


def _renderer(fmt: str) -> list[structlog.typing.Processor]:
    if fmt == "json":
        return [structlog.processors.dict_tracebacks, structlog.processors.JSONRenderer()]
    return [structlog.dev.ConsoleRenderer()]


def configure_logging(
    settings: LoggingConfig | None = None,
    sink: Callable[[str], None] | None = None,
) -> None:
    """Configure structlog from the ``logging`` config section.

    Args:
        settings: Level and format; defaults to the global config
        sink: Receives each rendered line instead of stderr
    """
    settings = settings or get_config().logging
    level = logging.getLevelName(settings.level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    output: TextIO | _LineSink = _LineSink(sink) if sink else sys.stderr
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            *_renderer(settings.format),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=output),
        cache_logger_on_first_use=False,
    )


def get_logger(name: str | None = None) -> structlog.BoundLogger:
    """Get a logger, usually with ``__name__``."""
    return structlog.get_logger(name) if name else structlog.get_logger()
