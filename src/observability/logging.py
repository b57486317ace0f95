"""
Structured logging setup using structlog.

Modules log through the standard library (``logging.getLogger(__name__)``
with ``extra={...}`` fields); structlog renders those records as JSON or
console output.
"""

import logging
import sys
from enum import Enum
from typing import Any
from uuid import UUID

import structlog
from opentelemetry import trace

from src.config import get_settings


def add_trace_context(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """
    Add OpenTelemetry trace context to log records.

    Args:
        logger: The logger instance.
        method_name: The method name being called.
        event_dict: The event dictionary.

    Returns:
        The event dictionary with trace context added.
    """
    span = trace.get_current_span()
    if span and span.is_recording():
        ctx = span.get_span_context()
        event_dict["trace_id"] = format(ctx.trace_id, "032x")
        event_dict["span_id"] = format(ctx.span_id, "016x")
    return event_dict


class ServiceContext:
    """Stamp every record with the service, its role, and the queue it serves."""

    def __init__(self, role: str | None, queue: str):
        self._fields = {"service": get_settings().otel_service_name, "queue": queue}
        if role:
            self._fields["role"] = role

    def __call__(self, logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
        for key, value in self._fields.items():
            event_dict.setdefault(key, value)
        return event_dict


def stringify_identifiers(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Render delivery tags, task ids and enum values as plain strings."""
    for key, value in event_dict.items():
        if isinstance(value, UUID):
            event_dict[key] = str(value)
        elif isinstance(value, Enum):
            event_dict[key] = value.value
    return event_dict


# Third-party loggers that drown out delivery logs at INFO
_QUIET_LOGGERS = (
    "uvicorn.access",
    "sqlalchemy.engine",
    "sqlalchemy.pool",
    "aiosqlite",
    "asyncpg",
    "asyncio",
    "opentelemetry",
)


def setup_logging(role: str | None = None) -> None:
    """
    Configure structured logging for the process.

    Sets up structlog with JSON or console output based on configuration.
    Integrates with standard library logging.

    Args:
        role: Process role (api, worker, reaper) added to every record.
    """
    settings = get_settings()

    log_level = getattr(logging, settings.log_level.upper(), logging.INFO)

    shared_processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        add_trace_context,
        ServiceContext(role, settings.queue_name),
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.stdlib.ExtraAdder(),
        stringify_identifiers,
    ]

    if settings.log_format == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=True)

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(log_level)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def bind_context(**kwargs: Any) -> None:
    """
    Bind context variables to all subsequent log messages.

    Args:
        **kwargs: Key-value pairs to add to log context.
    """
    structlog.contextvars.bind_contextvars(**kwargs)
