"""
OpenTelemetry tracing setup.
"""

import logging
import os
import socket
from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.trace import Tracer

from src import __version__
from src.config import get_settings

logger = logging.getLogger(__name__)

# Global tracer instance
_tracer: Tracer | None = None


def service_resource(role: str | None = None) -> Resource:
    """
    Describe this process to the trace backend.

    The api, worker and reaper report as separate services within one
    namespace, so their spans can be told apart.
    """
    settings = get_settings()
    name = settings.otel_service_name
    return Resource.create(
        {
            "service.namespace": name,
            "service.name": f"{name}-{role}" if role else name,
            "service.version": __version__,
            "service.instance.id": f"{socket.gethostname()}-{os.getpid()}",
            "messaging.destination.name": settings.queue_name,
        }
    )


def setup_tracing(role: str | None = None, enable_console_export: bool = False) -> Tracer:
    """
    Set up OpenTelemetry tracing.

    Spans are exported over OTLP only when otel_enabled is set; otherwise
    they are recorded for log correlation and dropped.

    Args:
        role: Process role (api, worker, reaper).
        enable_console_export: If True, also export spans to console.

    Returns:
        Tracer: The tracer instance.
    """
    global _tracer

    settings = get_settings()

    provider = TracerProvider(resource=service_resource(role))

    if settings.otel_enabled:
        otlp_exporter = OTLPSpanExporter(
            endpoint=settings.otel_exporter_otlp_endpoint,
            insecure=True,
        )
        provider.add_span_processor(BatchSpanProcessor(otlp_exporter))
        logger.info(
            "OTLP span export enabled",
            extra={"endpoint": settings.otel_exporter_otlp_endpoint},
        )

    if enable_console_export:
        provider.add_span_processor(
            BatchSpanProcessor(ConsoleSpanExporter())
        )

    trace.set_tracer_provider(provider)

    _tracer = trace.get_tracer(settings.otel_service_name)

    return _tracer


def instrument_fastapi(app: Any) -> None:
    """
    Instrument FastAPI application with OpenTelemetry.

    Args:
        app: The FastAPI application instance.
    """
    FastAPIInstrumentor.instrument_app(app)


def instrument_sqlalchemy(engine: Any) -> None:
    """
    Instrument a SQLAlchemy engine with OpenTelemetry.

    Args:
        engine: The SQLAlchemy engine instance (sync engine of an AsyncEngine).
    """
    SQLAlchemyInstrumentor().instrument(engine=engine)


def get_tracer() -> Tracer:
    """
    Get the tracer instance, setting tracing up on first use.

    Returns:
        Tracer: The tracer instance.
    """
    global _tracer
    if _tracer is None:
        _tracer = setup_tracing()
    return _tracer


def messaging_attributes(
    operation: str,
    queue: str,
    message_id: str,
    delivery_tag: str | None = None,
    delivery_count: int | None = None,
    redelivered: bool | None = None,
) -> dict[str, Any]:
    """
    Span attributes for a publish or a delivery, in OpenTelemetry messaging
    conventions.
    """
    attributes: dict[str, Any] = {
        "messaging.system": "task-dispatch",
        "messaging.operation": operation,
        "messaging.destination.name": queue,
        "messaging.message.id": message_id,
    }
    if delivery_tag is not None:
        attributes["messaging.delivery_tag"] = delivery_tag
    if delivery_count is not None:
        attributes["messaging.delivery_count"] = delivery_count
    if redelivered is not None:
        attributes["messaging.redelivered"] = redelivered
    return attributes
