"""
Prometheus metrics collection.
"""

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

from taskq.constants import (
    METRIC_BROKER_ERRORS,
    METRIC_LEASE_ACQUIRED,
    METRIC_LEASE_EXPIRED,
    METRIC_QUEUE_DEPTH,
    METRIC_TASK_DURATION,
    METRIC_TASK_RETRIES,
    METRIC_TASKS_COMPLETED,
    METRIC_TASKS_DEAD_LETTERED,
    METRIC_TASKS_ENQUEUED,
)

# Global metrics instance
_metrics: "MetricsCollector | None" = None


class MetricsCollector:
    """
    Prometheus metrics collector for the task scheduler.

    Collects metrics for:
    - Queue depth
    - Task enqueues, completions, retries and dead-letters
    - Task execution duration
    - Lease operations
    - Queue store failures
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """
        Initialize the metrics collector.

        Args:
            registry: Optional custom registry. Uses default if not provided.
        """
        self._registry = registry or REGISTRY

        self.queue_depth = Gauge(
            METRIC_QUEUE_DEPTH,
            "Number of pending tasks in the queue",
            ["queue"],
            registry=self._registry,
        )

        self.tasks_enqueued = Counter(
            METRIC_TASKS_ENQUEUED,
            "Total number of tasks enqueued",
            ["queue", "task_type"],
            registry=self._registry,
        )

        # status: succeeded, retried, dead_lettered, dropped
        self.tasks_completed = Counter(
            METRIC_TASKS_COMPLETED,
            "Total number of task attempts finished",
            ["queue", "status"],
            registry=self._registry,
        )

        self.task_duration = Histogram(
            METRIC_TASK_DURATION,
            "Task execution duration in seconds",
            ["queue", "status"],
            buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 20.0, 30.0, 60.0, 120.0),
            registry=self._registry,
        )

        self.task_retries = Counter(
            METRIC_TASK_RETRIES,
            "Total number of task retries scheduled",
            ["queue"],
            registry=self._registry,
        )

        self.tasks_dead_lettered = Counter(
            METRIC_TASKS_DEAD_LETTERED,
            "Total number of tasks moved to the dead-letter set",
            ["queue", "kind"],
            registry=self._registry,
        )

        self.lease_expired = Counter(
            METRIC_LEASE_EXPIRED,
            "Total number of expired leases recovered",
            registry=self._registry,
        )

        self.lease_acquired = Counter(
            METRIC_LEASE_ACQUIRED,
            "Total number of leases acquired",
            ["worker_id", "queue"],
            registry=self._registry,
        )

        self.broker_errors = Counter(
            METRIC_BROKER_ERRORS,
            "Total number of failed queue store operations",
            ["operation"],
            registry=self._registry,
        )

    def record_task_enqueued(self, queue: str, task_type: str) -> None:
        self.tasks_enqueued.labels(queue=queue, task_type=task_type).inc()

    def record_task_finished(
        self,
        queue: str,
        status: str,
        duration_seconds: float,
    ) -> None:
        """Record the end of one attempt."""
        self.tasks_completed.labels(queue=queue, status=status).inc()
        self.task_duration.labels(queue=queue, status=status).observe(
            duration_seconds
        )

    def record_retry(self, queue: str) -> None:
        self.task_retries.labels(queue=queue).inc()

    def record_dead_letter(self, queue: str, kind: str) -> None:
        self.tasks_dead_lettered.labels(queue=queue, kind=kind).inc()

    def record_lease_expired(self, count: int = 1) -> None:
        self.lease_expired.inc(count)

    def record_lease_acquired(self, worker_id: str, queue: str) -> None:
        self.lease_acquired.labels(worker_id=worker_id, queue=queue).inc()

    def record_broker_error(self, operation: str) -> None:
        self.broker_errors.labels(operation=operation).inc()

    def update_queue_depth(self, queue: str, depth: int) -> None:
        self.queue_depth.labels(queue=queue).set(depth)

    def get_metrics(self) -> bytes:
        """Get all metrics in Prometheus format."""
        return generate_latest(self._registry)

    def get_content_type(self) -> str:
        """Get the content type for metrics response."""
        return CONTENT_TYPE_LATEST


def setup_metrics() -> MetricsCollector:
    """
    Set up and return the process-wide metrics collector.
    """
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector()
    return _metrics


def get_metrics() -> MetricsCollector:
    """
    Get the process-wide metrics collector, creating it on first use.
    """
    if _metrics is None:
        return setup_metrics()
    return _metrics
