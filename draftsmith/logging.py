"""Logging configuration for Draftsmith.

Logs are always written to stderr: the engine process reserves stdout for the
line-delimited JSON protocol.
"""

import logging
import sys
from typing import TextIO

import structlog
from structlog.types import Processor

from draftsmith.config import get_config

# Libraries that log every request at INFO through stdlib logging.
_NOISY_LOGGERS = ("httpx", "httpcore")


def _renderer(fmt: str, stream: TextIO) -> Processor:
    if fmt == "json":
        return structlog.processors.JSONRenderer()
    isatty = getattr(stream, "isatty", None)
    return structlog.dev.ConsoleRenderer(colors=bool(isatty and isatty()))


def configure_logging(level: str | None = None, stream: TextIO | None = None) -> None:
    """Configure structlog for this process.

    Args:
        level: Overrides ``config.logging.level``
        stream: Overrides stderr (tests capture logs this way)
    """
    config = get_config()
    target = stream or sys.stderr
    log_level = getattr(logging, (level or config.logging.level or "WARNING").upper(), logging.WARNING)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(log_level, logging.WARNING))

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            _renderer(config.logging.format, target),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=target),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.BoundLogger:
    if name:
        return structlog.get_logger(name)
    return structlog.get_logger()


log = get_logger(__name__)
