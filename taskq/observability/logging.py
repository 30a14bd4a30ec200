"""
Structured logging setup using structlog.

Modules log through the standard library (``logging.getLogger(__name__)``
with ``extra={...}`` fields); the structlog ProcessorFormatter renders those
records together with any task context bound by the scheduler.
"""

import logging
import sys
from typing import Any

import structlog
from opentelemetry import trace

from taskq.config import Settings, get_settings

# Loggers that are chatty at INFO and never carry task information
QUIET_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "httpx", "httpcore", "aiosqlite")


def add_trace_context(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Attach the current span's trace and span ids, if a span is recording."""
    span = trace.get_current_span()
    if span and span.is_recording():
        ctx = span.get_span_context()
        event_dict["trace_id"] = format(ctx.trace_id, "032x")
        event_dict["span_id"] = format(ctx.span_id, "016x")
    return event_dict


def _service_tagger(service_name: str) -> structlog.types.Processor:
    def add_service(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
        event_dict.setdefault("service", service_name)
        return event_dict

    return add_service


def setup_logging(settings: Settings | None = None) -> None:
    """
    Route all process logging through structlog.

    Every line carries the service name, the task fields bound by the
    scheduler for the current worker (task_id, task_type, queue, attempt)
    and, when tracing is on, the trace and span ids.

    Args:
        settings: Source of ``log_level``, ``log_format`` and
            ``otel_service_name``. Defaults to the cached settings.
    """
    settings = settings or get_settings()
    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    pre_chain: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        _service_tagger(settings.otel_service_name),
        add_trace_context,
        structlog.stdlib.add_logger_name,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.stdlib.ExtraAdder(),
    ]

    renderer: structlog.types.Processor
    if settings.log_format == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())

    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=pre_chain,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                renderer,
            ],
        )
    )

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def bind_task_context(**kwargs: Any) -> None:
    """
    Bind task fields to every log line emitted by the current asyncio task.

    Each worker loop runs in its own asyncio task, so bindings made while
    one worker processes a task never leak into another worker's logs.
    """
    structlog.contextvars.bind_contextvars(**kwargs)


def clear_task_context() -> None:
    """Clear all bound context variables."""
    structlog.contextvars.clear_contextvars()
