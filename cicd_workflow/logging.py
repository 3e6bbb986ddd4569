"""Structured logging configuration.

Uses structlog for JSON-formatted logs when running as a service and
human-readable logs on a terminal.
"""

import logging
import sys
from typing import Any, List, Optional

import structlog


def configure_logging(
    json_format: bool = True,
    level: str = "INFO",
    add_timestamp: bool = True,
) -> None:
    """Configure structured logging for the application.

    Logs go to stderr so rendered manifests on stdout stay machine-readable.

    Args:
        json_format: If True, output JSON logs; otherwise use console format.
        level: Log level (DEBUG, INFO, WARNING, ERROR).
        add_timestamp: Whether to add timestamps to log entries.
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=getattr(logging, level.upper()),
    )

    shared_processors: List[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if add_timestamp:
        shared_processors.insert(0, structlog.processors.TimeStamper(fmt="iso"))

    if json_format:
        shared_processors.append(structlog.processors.format_exc_info)
        shared_processors.append(structlog.processors.JSONRenderer())
    else:
        shared_processors.append(
            structlog.dev.ConsoleRenderer(
                colors=True,
                exception_formatter=structlog.dev.plain_traceback,
            )
        )

    structlog.configure(
        processors=shared_processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: Optional[str] = None) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance.

    Args:
        name: Logger name (usually __name__).

    Returns:
        A bound structlog logger.
    """
    return structlog.get_logger(name)


def bind_context(**kwargs: Any) -> None:
    """Bind context variables included in all subsequent logs of this submission.

    Args:
        **kwargs: Context variables to bind, e.g. workflow_id, pipeline_id.
    """
    structlog.contextvars.bind_contextvars(**kwargs)


def clear_context() -> None:
    """Clear all bound context variables."""
    structlog.contextvars.clear_contextvars()
