"""
Queue store interface.

The queue store is the single source of truth for task and lease state.
It is the only component that needs atomic operations; the scheduler relies
on it for lease exclusivity and visibility timeouts.
"""

from abc import ABC, abstractmethod
from collections.abc import Sequence
from datetime import datetime, timedelta

from taskq.types.task import DeadLetterEntry, Lease, Task


def lease_deadline(now: datetime, timeout: float, margin: float) -> datetime | None:
    """
    Deadline for a lease taken at ``now``.

    Returns None when the deadline is not a representable datetime, so the
    caller can dead-letter the task instead of failing the lease call.
    """
    try:
        return now + timedelta(seconds=timeout + margin)
    except (OverflowError, ValueError):
        return None


class QueueStore(ABC):
    """
    Durable, ordered storage for tasks keyed by queue name.

    Every method that takes a lease token is a no-op returning False when the
    token is stale (the lease expired and was handed to another worker) or
    the task is already terminal. Callers must not treat that as an error.
    """

    @abstractmethod
    async def push(self, task: Task) -> None:
        """Append a task to the back of ``task.queue``."""

    @abstractmethod
    async def lease_next(
        self,
        queue_names: Sequence[str],
        worker_id: str,
        visibility_margin: float,
    ) -> tuple[Task, Lease] | None:
        """
        Lease the first available task, scanning queues in the given order.

        The attempt counter is incremented and the lease deadline is set to
        ``now + task.timeout + visibility_margin``. Tasks whose previous lease
        expired are available again unless they already used their final
        attempt, in which case they are dead-lettered instead.

        Returns:
            ``(task, lease)`` or None if no queue has an available task.
        """

    @abstractmethod
    async def ack(self, token: str) -> bool:
        """
        Complete the leased task and remove it from the store.

        Only the per-store ``succeeded`` count in stats() remembers it.
        """

    @abstractmethod
    async def retry_later(
        self,
        token: str,
        delay: float,
        error: str | None = None,
    ) -> bool:
        """Return the leased task to the back of its queue after ``delay`` seconds."""

    @abstractmethod
    async def dead_letter(self, token: str, reason: str) -> bool:
        """Move the leased task to the dead-letter set."""

    @abstractmethod
    async def extend_lease(self, token: str, seconds: float) -> bool:
        """Push the lease deadline to ``now + seconds`` (heartbeat)."""

    @abstractmethod
    async def recover_expired_leases(self) -> int:
        """
        Return tasks with expired leases to pending.

        Returns:
            Number of leases recovered (including ones dead-lettered because
            they were on their final attempt).
        """

    @abstractmethod
    async def list_dead_letters(self, limit: int = 100) -> list[DeadLetterEntry]:
        """List dead-lettered tasks, most recent first."""

    @abstractmethod
    async def get_task(self, task_id: str) -> Task | None:
        """Get a task by id, in whatever state it is in."""

    @abstractmethod
    async def queue_depth(self, queue: str) -> int:
        """Number of pending tasks in a queue."""

    @abstractmethod
    async def stats(self) -> dict[str, int]:
        """Task counts by state; ``succeeded`` counts acks seen by this store."""

    async def close(self) -> None:
        """Release any resources held by the store."""
