"""
OpenTelemetry tracing.

Spans are opened around enqueue and around each handler execution. Without
``tracing_enabled`` the global provider stays the SDK's no-op one, so spans
cost nothing and the logging processor finds no trace ids to attach.
"""

from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.trace import Span, Tracer

from taskq import __version__
from taskq.config import get_settings
from taskq.types.task import Task

_tracer: Tracer | None = None


def _build_provider(service_name: str, otlp_endpoint: str | None, console: bool) -> TracerProvider:
    provider = TracerProvider(
        resource=Resource.create({"service.name": service_name, "service.version": __version__})
    )
    if otlp_endpoint:
        exporter = OTLPSpanExporter(endpoint=otlp_endpoint, insecure=True)
        provider.add_span_processor(BatchSpanProcessor(exporter))
    if console:
        provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))
    return provider


def setup_tracing(enable_console_export: bool = False) -> Tracer:
    """
    Install the tracer provider for this process and return its tracer.

    Args:
        enable_console_export: Also print finished spans to stdout.
    """
    global _tracer

    settings = get_settings()
    if settings.tracing_enabled or enable_console_export:
        endpoint = settings.otel_exporter_otlp_endpoint if settings.tracing_enabled else None
        trace.set_tracer_provider(
            _build_provider(settings.otel_service_name, endpoint, enable_console_export)
        )

    _tracer = trace.get_tracer(settings.otel_service_name)
    return _tracer


def get_tracer() -> Tracer:
    """Return the process tracer, falling back to the global provider's."""
    global _tracer
    if _tracer is None:
        _tracer = trace.get_tracer(get_settings().otel_service_name)
    return _tracer


@contextmanager
def task_span(name: str, task: Task) -> Iterator[Span]:
    """Open a span tagged with the task's id, type, queue and attempt."""
    with get_tracer().start_as_current_span(name) as span:
        span.set_attribute("task_id", task.id)
        span.set_attribute("task_type", task.type)
        span.set_attribute("queue", task.queue)
        span.set_attribute("attempt", task.attempt)
        yield span


def instrument_fastapi(app: Any) -> None:
    FastAPIInstrumentor.instrument_app(app)


def instrument_sqlalchemy(engine: Any) -> None:
    """Trace statements on ``engine`` (the sync engine behind an AsyncEngine)."""
    SQLAlchemyInstrumentor().instrument(engine=engine)
