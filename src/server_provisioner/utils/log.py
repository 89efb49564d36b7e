"""Structured logging setup."""

import atexit
import logging
import sys
from pathlib import Path
from typing import Optional, TextIO

import structlog

_log_file: Optional[TextIO] = None


def close_log_file() -> None:
    """Close the log file opened by :func:`configure_logging`, if any."""
    global _log_file
    if _log_file is not None:
        _log_file.close()
        _log_file = None


atexit.register(close_log_file)


def configure_logging(level: str = "INFO", file: Optional[Path] = None) -> None:
    """Configure structlog for console or file output.

    Args:
        level: Minimum level name to emit
        file: Append plain key/value lines to this file instead of stderr
    """
    global _log_file
    close_log_file()

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]

    if file is not None:
        file.parent.mkdir(parents=True, exist_ok=True)
        _log_file = open(file, "a")
        logger_factory = structlog.WriteLoggerFactory(file=_log_file)
        processors.append(structlog.processors.KeyValueRenderer(key_order=["timestamp", "level", "event"]))
    else:
        logger_factory = structlog.PrintLoggerFactory(file=sys.stderr)
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(level.upper())
        ),
        logger_factory=logger_factory,
        cache_logger_on_first_use=False,
    )
