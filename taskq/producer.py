"""
Producer: validates enqueue requests and pushes tasks to the queue store.

Enqueue is fire-and-forget. Callers only ever see validation and broker
errors; how the task eventually runs is visible through the dead-letter
listing, logs and metrics.
"""

import json
import logging
import math
from collections.abc import Iterable
from typing import Any

from taskq.config import Settings
from taskq.constants import (
    DEFAULT_MAX_RETRIES,
    DEFAULT_QUEUE,
    DEFAULT_TIMEOUT_SECONDS,
    MAX_TIMEOUT_SECONDS,
    SPAN_ENQUEUE_TASK,
)
from taskq.exceptions import UnknownTypeError, ValidationError
from taskq.observability.metrics import MetricsCollector, get_metrics
from taskq.observability.tracing import task_span
from taskq.store.base import QueueStore
from taskq.store.retrying import call_with_retry
from taskq.types.task import Task
from taskq.worker.registry import HandlerRegistry

logger = logging.getLogger(__name__)


def encode_payload(payload: Any) -> bytes:
    """
    Normalize a payload to bytes.

    bytes-like values pass through, strings are UTF-8 encoded, dicts and
    lists are JSON encoded.

    Raises:
        ValidationError: If the payload cannot be serialized.
    """
    if isinstance(payload, (bytes, bytearray, memoryview)):
        return bytes(payload)
    if isinstance(payload, str):
        return payload.encode("utf-8")
    if isinstance(payload, (dict, list)):
        try:
            return json.dumps(payload, separators=(",", ":")).encode("utf-8")
        except (TypeError, ValueError) as e:
            raise ValidationError(f"payload is not JSON serializable: {e}") from e
    raise ValidationError(
        f"payload must be bytes, str, dict or list, got {type(payload).__name__}"
    )


class Producer:
    """
    Builds tasks and pushes them to the queue store.

    When constructed with a registry, unregistered task types are rejected
    at enqueue time; without one the check is deferred to dispatch, where
    unknown types are dead-lettered on their first lease.
    """

    def __init__(
        self,
        store: QueueStore,
        *,
        queues: Iterable[str] | None = None,
        default_queue: str = DEFAULT_QUEUE,
        default_timeout: float = DEFAULT_TIMEOUT_SECONDS,
        default_max_retries: int = DEFAULT_MAX_RETRIES,
        registry: HandlerRegistry | None = None,
        broker_retry_attempts: int = 3,
        broker_retry_max_seconds: float = 1.0,
        metrics: MetricsCollector | None = None,
    ):
        self._store = store
        self._queues = frozenset(queues) if queues is not None else None
        self._default_queue = default_queue
        self._default_timeout = default_timeout
        self._default_max_retries = default_max_retries
        self._registry = registry
        self._broker_retry_attempts = broker_retry_attempts
        self._broker_retry_max_seconds = broker_retry_max_seconds
        self._metrics = metrics or get_metrics()

    @classmethod
    def from_settings(
        cls,
        store: QueueStore,
        settings: Settings,
        registry: HandlerRegistry | None = None,
        metrics: MetricsCollector | None = None,
    ) -> "Producer":
        return cls(
            store,
            queues=settings.queues.keys(),
            default_queue=settings.default_queue,
            default_timeout=settings.default_timeout_seconds,
            default_max_retries=settings.default_max_retries,
            registry=registry,
            broker_retry_attempts=settings.broker_retry_attempts,
            broker_retry_max_seconds=settings.broker_retry_max_seconds,
            metrics=metrics,
        )

    @property
    def default_queue(self) -> str:
        return self._default_queue

    def build_task(
        self,
        task_type: str,
        payload: Any,
        *,
        queue: str | None = None,
        max_retries: int | None = None,
        timeout: float | None = None,
    ) -> Task:
        """
        Validate an enqueue request and build the task, applying defaults.

        Raises:
            ValidationError: On a malformed request.
            UnknownTypeError: If a registry is attached and has no handler.
        """
        if not isinstance(task_type, str) or not task_type.strip():
            raise ValidationError("task type must be a non-empty string")
        if self._registry is not None and task_type not in self._registry:
            raise UnknownTypeError(task_type)

        queue = queue if queue is not None else self._default_queue
        if not queue:
            raise ValidationError("queue name must be non-empty")
        if self._queues is not None and queue not in self._queues:
            raise ValidationError(f"unknown queue: {queue}")

        max_retries = self._default_max_retries if max_retries is None else max_retries
        if isinstance(max_retries, bool) or not isinstance(max_retries, int) or max_retries < 0:
            raise ValidationError(f"max_retries must be a non-negative integer, got {max_retries!r}")

        timeout = self._default_timeout if timeout is None else timeout
        if (
            isinstance(timeout, bool)
            or not isinstance(timeout, (int, float))
            or not math.isfinite(timeout)
            or not 0 < timeout <= MAX_TIMEOUT_SECONDS
        ):
            raise ValidationError(
                f"timeout must be a number of seconds in (0, {MAX_TIMEOUT_SECONDS:g}], got {timeout!r}"
            )

        return Task(
            type=task_type,
            payload=encode_payload(payload),
            queue=queue,
            max_retries=max_retries,
            timeout=float(timeout),
        )

    async def enqueue(
        self,
        task_type: str,
        payload: Any,
        *,
        queue: str | None = None,
        max_retries: int | None = None,
        timeout: float | None = None,
    ) -> str:
        """
        Enqueue a task.

        The task is in the queue store before this returns.

        Returns:
            The new task id.

        Raises:
            ValidationError: On a malformed request.
            UnknownTypeError: If a registry is attached and has no handler.
            BrokerUnavailableError: If every push attempt failed.
        """
        task = self.build_task(
            task_type,
            payload,
            queue=queue,
            max_retries=max_retries,
            timeout=timeout,
        )

        with task_span(SPAN_ENQUEUE_TASK, task):
            await call_with_retry(
                "push",
                self._store.push,
                task,
                attempts=self._broker_retry_attempts,
                max_wait=self._broker_retry_max_seconds,
                metrics=self._metrics,
            )

        self._metrics.record_task_enqueued(task.queue, task.type)
        logger.info(
            "Enqueued task",
            extra={
                "task_id": task.id,
                "task_type": task.type,
                "queue": task.queue,
                "max_retries": task.max_retries,
                "timeout": task.timeout,
            },
        )
        return task.id
