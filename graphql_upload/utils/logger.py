"""Structured logging utilities for graphql-upload.

This module provides async-safe structured logging using structlog.
Per-request context (path, method) is bound through contextvars so every
event emitted while a multipart request is processed carries it.

The package never configures structlog on import; host applications keep
their own configuration, or opt into this one with configure_logging().
"""

import logging
import sys
from typing import Any

import structlog
from structlog.types import Processor


def configure_logging(
    log_level: str = "INFO",
    json_output: bool = True
) -> None:
    """Configure structlog for applications without their own setup.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_output: If True, output JSON format. If False, use console format.
    """
    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt=None),
        structlog.processors.add_log_level,
        structlog.processors.format_exc_info,
    ]

    if json_output:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=False))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper())
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = "graphql_upload") -> Any:
    """Get a logger bound to ``name``; resolved against the host's structlog config."""
    return structlog.get_logger(name)


def bind_request_context(path: str, method: str) -> None:
    """Bind request identity to the log context for the current task."""
    structlog.contextvars.bind_contextvars(path=path, method=method)


def clear_request_context() -> None:
    """Remove request identity from the log context."""
    structlog.contextvars.unbind_contextvars("path", "method")
