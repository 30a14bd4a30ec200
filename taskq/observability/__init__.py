"""
Observability module.
structlog logging with per-task context, Prometheus metrics and
OpenTelemetry tracing.
"""

from taskq.observability.logging import bind_task_context, clear_task_context, setup_logging
from taskq.observability.metrics import MetricsCollector, get_metrics, setup_metrics
from taskq.observability.tracing import get_tracer, setup_tracing

__all__ = [
    "setup_logging",
    "bind_task_context",
    "clear_task_context",
    "MetricsCollector",
    "setup_metrics",
    "get_metrics",
    "setup_tracing",
    "get_tracer",
]
