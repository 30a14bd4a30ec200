"""
In-process queue store.

Reference implementation of the QueueStore contract backed by dicts and
deques guarded by a single asyncio lock. Suitable for tests and for a
single-process deployment where the API and workers share an event loop.
Nothing survives a process restart.
"""

import asyncio
import logging
from collections import deque
from collections.abc import Sequence
from dataclasses import replace
from datetime import timedelta
from uuid import uuid4

from taskq.constants import REASON_INVALID_TIMEOUT, REASON_LEASE_EXPIRED, TaskState
from taskq.observability.metrics import MetricsCollector, get_metrics
from taskq.store.base import QueueStore, lease_deadline
from taskq.types.task import DeadLetterEntry, Lease, Task, utcnow

logger = logging.getLogger(__name__)


class InMemoryQueueStore(QueueStore):
    """
    Queue store holding all state in memory.

    All mutations happen under one lock, which is what makes lease
    acquisition exclusive between concurrent workers.
    """

    def __init__(self, metrics: MetricsCollector | None = None) -> None:
        self._lock = asyncio.Lock()
        self._metrics = metrics or get_metrics()
        self._succeeded = 0
        self._tasks: dict[str, Task] = {}
        self._queues: dict[str, deque[str]] = {}
        self._leases: dict[str, Lease] = {}
        self._dead_letters: dict[str, DeadLetterEntry] = {}

    async def push(self, task: Task) -> None:
        async with self._lock:
            stored = replace(task, state=TaskState.PENDING)
            self._tasks[stored.id] = stored
            self._queues.setdefault(stored.queue, deque()).append(stored.id)

        logger.debug(
            "Pushed task",
            extra={"task_id": task.id, "queue": task.queue, "task_type": task.type},
        )

    async def lease_next(
        self,
        queue_names: Sequence[str],
        worker_id: str,
        visibility_margin: float,
    ) -> tuple[Task, Lease] | None:
        async with self._lock:
            self._recover_expired_locked()
            now = utcnow()

            for name in queue_names:
                pending = self._queues.get(name)
                if not pending:
                    continue

                for task_id in list(pending):
                    task = self._tasks[task_id]
                    if task.visible_at is not None and task.visible_at > now:
                        continue

                    deadline = lease_deadline(now, task.timeout, visibility_margin)
                    pending.remove(task_id)
                    if deadline is None:
                        self._dead_letter_locked(task, f"{REASON_INVALID_TIMEOUT}: {task.timeout!r}")
                        logger.error(
                            "Task timeout cannot produce a lease deadline, task dead-lettered",
                            extra={"task_id": task.id, "timeout": task.timeout},
                        )
                        continue

                    task.attempt += 1
                    task.state = TaskState.LEASED

                    lease = Lease(
                        token=uuid4().hex,
                        task_id=task.id,
                        worker_id=worker_id,
                        deadline=deadline,
                    )
                    self._leases[lease.token] = lease
                    return replace(task), replace(lease)

        return None

    async def ack(self, token: str) -> bool:
        async with self._lock:
            task = self._take_leased_locked(token)
            if task is None:
                return False

            del self._tasks[task.id]
            self._succeeded += 1
            return True

    async def retry_later(
        self,
        token: str,
        delay: float,
        error: str | None = None,
    ) -> bool:
        async with self._lock:
            task = self._take_leased_locked(token)
            if task is None:
                return False

            task.state = TaskState.PENDING
            task.visible_at = utcnow() + timedelta(seconds=delay)
            task.last_error = error
            self._queues.setdefault(task.queue, deque()).append(task.id)
            return True

    async def dead_letter(self, token: str, reason: str) -> bool:
        async with self._lock:
            task = self._take_leased_locked(token)
            if task is None:
                return False

            self._dead_letter_locked(task, reason)
            return True

    async def extend_lease(self, token: str, seconds: float) -> bool:
        async with self._lock:
            lease = self._leases.get(token)
            if lease is None:
                return False
            lease.deadline = utcnow() + timedelta(seconds=seconds)
            return True

    async def recover_expired_leases(self) -> int:
        async with self._lock:
            return self._recover_expired_locked()

    async def list_dead_letters(self, limit: int = 100) -> list[DeadLetterEntry]:
        async with self._lock:
            # Newest insertion first so equal timestamps keep that order
            entries = sorted(
                reversed(self._dead_letters.values()),
                key=lambda entry: entry.dead_lettered_at,
                reverse=True,
            )
            return entries[:limit]

    async def get_task(self, task_id: str) -> Task | None:
        async with self._lock:
            task = self._tasks.get(task_id)
            return replace(task) if task is not None else None

    async def queue_depth(self, queue: str) -> int:
        async with self._lock:
            return len(self._queues.get(queue, ()))

    async def stats(self) -> dict[str, int]:
        async with self._lock:
            counts = {state.value: 0 for state in TaskState}
            for task in self._tasks.values():
                counts[task.state.value] += 1
            counts[TaskState.SUCCEEDED.value] = self._succeeded
            return counts

    def _take_leased_locked(self, token: str) -> Task | None:
        """Resolve and consume a lease token. Caller holds the lock."""
        lease = self._leases.pop(token, None)
        if lease is None:
            logger.debug("Ignoring stale lease token", extra={"lease_token": token})
            return None

        task = self._tasks.get(lease.task_id)
        if task is None or task.state is not TaskState.LEASED:
            return None
        return task

    def _dead_letter_locked(self, task: Task, reason: str) -> None:
        task.state = TaskState.DEAD_LETTERED
        task.last_error = reason
        self._dead_letters[task.id] = DeadLetterEntry(
            id=task.id,
            type=task.type,
            queue=task.queue,
            attempt=task.attempt,
            max_retries=task.max_retries,
            last_error=reason,
            dead_lettered_at=utcnow(),
        )

    def _recover_expired_locked(self) -> int:
        expired = [lease for lease in self._leases.values() if lease.is_expired]

        for lease in expired:
            del self._leases[lease.token]
            task = self._tasks.get(lease.task_id)
            if task is None or task.state is not TaskState.LEASED:
                continue

            if task.attempts_exhausted:
                self._dead_letter_locked(task, REASON_LEASE_EXPIRED)
                logger.warning(
                    "Lease expired on final attempt, task dead-lettered",
                    extra={"task_id": task.id, "attempt": task.attempt},
                )
                continue

            task.state = TaskState.PENDING
            task.visible_at = None
            self._queues.setdefault(task.queue, deque()).append(task.id)

        if expired:
            self._metrics.record_lease_expired(len(expired))
            logger.info(f"Recovered {len(expired)} expired leases")
        return len(expired)
