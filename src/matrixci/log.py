"""Structured diagnostic logging for matrixci.

Diagnostics go to stderr through structlog so that stdout carries only the
run's live output and the final report.

Usage:
    from matrixci.log import configure_logging, get_logger

    configure_logging(level="DEBUG", fmt="console")
    logger = get_logger(__name__)
    logger.info("run_started", workflow="CI", instances=4)
"""

from __future__ import annotations

import logging
import sys
from typing import Any, List, Optional, TextIO

import structlog
from structlog.types import EventDict, Processor

LOG_FORMATS = ("console", "json")


def add_log_level(logger: logging.Logger, method_name: str, event_dict: EventDict) -> EventDict:
    if method_name == "warn":
        method_name = "warning"
    event_dict["level"] = method_name
    return event_dict


def configure_logging(level: str = "WARNING", fmt: str = "console", stream: Optional[TextIO] = None) -> None:
    """Configure stdlib logging and structlog.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR)
        fmt: "console" for human readable lines, "json" for one JSON object per line
        stream: Destination, stderr by default
    """
    logging_level = getattr(logging, level.upper(), logging.WARNING)

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setLevel(logging_level)
    handler.setFormatter(logging.Formatter("%(message)s"))

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(logging_level)
    root_logger.addHandler(handler)

    shared_processors: List[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]

    if fmt == "json":
        shared_processors.append(structlog.processors.format_exc_info)
        renderer: Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=False)

    structlog.configure(
        processors=shared_processors + [renderer],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )


def get_logger(name: str) -> Any:
    """Get a structured logger. Output follows whatever configure_logging() set up."""
    return structlog.get_logger(name)


def bind_run_context(**values: Any) -> None:
    """Attach values (e.g. workflow name) to every log line of the current context."""
    structlog.contextvars.bind_contextvars(**values)


def clear_run_context() -> None:
    structlog.contextvars.clear_contextvars()
