"""
SQL-backed queue store.

Implements the QueueStore contract on top of the ``tasks`` table. Lease
acquisition selects a candidate with FOR UPDATE SKIP LOCKED (Postgres) and
then claims it with a conditional UPDATE; the row count of that UPDATE is
what decides ownership, so exclusivity also holds on databases that ignore
row locks (SQLite).

Acked tasks are deleted; dead-lettered rows stay for inspection.
"""

import logging
import time
from collections.abc import AsyncGenerator, Sequence
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from uuid import uuid4

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from taskq.constants import REASON_INVALID_TIMEOUT, REASON_LEASE_EXPIRED, TaskState
from taskq.db.connection import Database
from taskq.db.models import TaskRecord
from taskq.exceptions import BrokerUnavailableError
from taskq.observability.metrics import MetricsCollector, get_metrics
from taskq.store.base import QueueStore, lease_deadline
from taskq.types.task import DeadLetterEntry, Lease, Task

logger = logging.getLogger(__name__)


def _now() -> datetime:
    """Naive UTC, matching the DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _aware(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    return value.replace(tzinfo=timezone.utc)


def _naive(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _to_task(record: TaskRecord) -> Task:
    return Task(
        id=record.id,
        type=record.type,
        payload=record.payload,
        queue=record.queue,
        max_retries=record.max_retries,
        timeout=record.timeout_seconds,
        attempt=record.attempt,
        created_at=_aware(record.created_at),
        state=TaskState(record.state),
        visible_at=_aware(record.visible_at),
        last_error=record.last_error,
    )


class SqlQueueStore(QueueStore):
    """
    Queue store persisting tasks through SQLAlchemy.

    Every public method runs in its own transaction.
    """

    def __init__(self, database: Database, metrics: MetricsCollector | None = None):
        self._db = database
        self._metrics = metrics or get_metrics()
        self._succeeded = 0

    @asynccontextmanager
    async def _session(self, operation: str) -> AsyncGenerator[AsyncSession]:
        try:
            async with self._db.session() as session:
                yield session
        except (SQLAlchemyError, OSError) as e:
            raise BrokerUnavailableError(operation, e) from e

    async def push(self, task: Task) -> None:
        now = _now()
        async with self._session("push") as session:
            session.add(
                TaskRecord(
                    id=task.id,
                    seq=time.time_ns(),
                    queue=task.queue,
                    type=task.type,
                    payload=task.payload,
                    state=TaskState.PENDING,
                    attempt=task.attempt,
                    max_retries=task.max_retries,
                    timeout_seconds=task.timeout,
                    visible_at=_naive(task.visible_at) if task.visible_at else None,
                    created_at=_naive(task.created_at),
                    updated_at=now,
                )
            )

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
        async with self._session("lease_next") as session:
            await self._recover_expired(session)
            now = _now()

            for name in queue_names:
                # Keep selecting in this queue until a claim wins or it is empty
                while (record := await self._next_candidate(session, name, now)) is not None:
                    leased = await self._claim(session, record, worker_id, visibility_margin, now)
                    if leased is not None:
                        return leased

        return None

    async def _next_candidate(
        self,
        session: AsyncSession,
        queue: str,
        now: datetime,
    ) -> TaskRecord | None:
        candidate = (
            select(TaskRecord)
            .where(
                and_(
                    TaskRecord.queue == queue,
                    TaskRecord.state == TaskState.PENDING,
                    or_(
                        TaskRecord.visible_at.is_(None),
                        TaskRecord.visible_at <= now,
                    ),
                )
            )
            .order_by(TaskRecord.seq)
            .limit(1)
            .with_for_update(skip_locked=True)
            .execution_options(populate_existing=True)
        )
        return (await session.execute(candidate)).scalar_one_or_none()

    async def _claim(
        self,
        session: AsyncSession,
        record: TaskRecord,
        worker_id: str,
        visibility_margin: float,
        now: datetime,
    ) -> tuple[Task, Lease] | None:
        """
        Lease ``record`` if it is still pending at the attempt we read.

        Returns None when another worker won the row, or when the task's
        timeout cannot produce a deadline and it was dead-lettered instead.
        """
        unchanged = and_(
            TaskRecord.id == record.id,
            TaskRecord.state == TaskState.PENDING,
            TaskRecord.attempt == record.attempt,
        )

        deadline = lease_deadline(now, record.timeout_seconds, visibility_margin)
        if deadline is None:
            await session.execute(
                update(TaskRecord)
                .where(unchanged)
                .values(
                    state=TaskState.DEAD_LETTERED,
                    last_error=f"{REASON_INVALID_TIMEOUT}: {record.timeout_seconds!r}",
                    completed_at=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            logger.error(
                "Task timeout cannot produce a lease deadline, task dead-lettered",
                extra={"task_id": record.id, "timeout": record.timeout_seconds},
            )
            return None

        token = uuid4().hex
        claim = (
            update(TaskRecord)
            .where(unchanged)
            .values(
                state=TaskState.LEASED,
                attempt=record.attempt + 1,
                lease_token=token,
                lease_owner=worker_id,
                lease_expires_at=deadline,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(claim)
        if result.rowcount != 1:
            return None

        task = _to_task(record)
        task.attempt = record.attempt + 1
        task.state = TaskState.LEASED
        lease = Lease(
            token=token,
            task_id=record.id,
            worker_id=worker_id,
            deadline=_aware(deadline),
        )
        return task, lease

    async def ack(self, token: str) -> bool:
        async with self._session("ack") as session:
            stmt = (
                delete(TaskRecord)
                .where(
                    and_(
                        TaskRecord.lease_token == token,
                        TaskRecord.state == TaskState.LEASED,
                    )
                )
                .execution_options(synchronize_session=False)
            )
            result = await session.execute(stmt)

        if result.rowcount != 1:
            logger.debug(
                "Ignoring stale lease token",
                extra={"lease_token": token, "operation": "ack"},
            )
            return False
        self._succeeded += 1
        return True

    async def retry_later(
        self,
        token: str,
        delay: float,
        error: str | None = None,
    ) -> bool:
        now = _now()
        return await self._finish(
            "retry_later",
            token,
            state=TaskState.PENDING,
            seq=time.time_ns(),
            visible_at=now + timedelta(seconds=delay),
            last_error=error,
            updated_at=now,
        )

    async def dead_letter(self, token: str, reason: str) -> bool:
        now = _now()
        return await self._finish(
            "dead_letter",
            token,
            state=TaskState.DEAD_LETTERED,
            last_error=reason,
            completed_at=now,
            updated_at=now,
        )

    async def extend_lease(self, token: str, seconds: float) -> bool:
        now = _now()
        async with self._session("extend_lease") as session:
            stmt = (
                update(TaskRecord)
                .where(
                    and_(
                        TaskRecord.lease_token == token,
                        TaskRecord.state == TaskState.LEASED,
                    )
                )
                .values(
                    lease_expires_at=now + timedelta(seconds=seconds),
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            result = await session.execute(stmt)
            return result.rowcount > 0

    async def recover_expired_leases(self) -> int:
        async with self._session("recover_expired_leases") as session:
            return await self._recover_expired(session)

    async def list_dead_letters(self, limit: int = 100) -> list[DeadLetterEntry]:
        async with self._session("list_dead_letters") as session:
            stmt = (
                select(TaskRecord)
                .where(TaskRecord.state == TaskState.DEAD_LETTERED)
                .order_by(TaskRecord.completed_at.desc())
                .limit(limit)
            )
            records = (await session.execute(stmt)).scalars().all()

        return [
            DeadLetterEntry(
                id=record.id,
                type=record.type,
                queue=record.queue,
                attempt=record.attempt,
                max_retries=record.max_retries,
                last_error=record.last_error,
                dead_lettered_at=_aware(record.completed_at),
            )
            for record in records
        ]

    async def get_task(self, task_id: str) -> Task | None:
        async with self._session("get_task") as session:
            record = await session.get(TaskRecord, task_id)
            return _to_task(record) if record is not None else None

    async def queue_depth(self, queue: str) -> int:
        async with self._session("queue_depth") as session:
            stmt = select(func.count()).select_from(TaskRecord).where(
                and_(
                    TaskRecord.queue == queue,
                    TaskRecord.state == TaskState.PENDING,
                )
            )
            return (await session.execute(stmt)).scalar() or 0

    async def stats(self) -> dict[str, int]:
        async with self._session("stats") as session:
            stmt = select(TaskRecord.state, func.count()).group_by(TaskRecord.state)
            rows = (await session.execute(stmt)).all()

        counts = {state.value: 0 for state in TaskState}
        for state, count in rows:
            counts[TaskState(state).value] = count
        counts[TaskState.SUCCEEDED.value] = self._succeeded
        return counts

    async def close(self) -> None:
        await self._db.dispose()

    async def _finish(self, operation: str, token: str, **values) -> bool:
        """Apply a lease-ending transition if the token still owns the task."""
        async with self._session(operation) as session:
            stmt = (
                update(TaskRecord)
                .where(
                    and_(
                        TaskRecord.lease_token == token,
                        TaskRecord.state == TaskState.LEASED,
                    )
                )
                .values(
                    lease_token=None,
                    lease_owner=None,
                    lease_expires_at=None,
                    **values,
                )
                .execution_options(synchronize_session=False)
            )
            result = await session.execute(stmt)

        if result.rowcount != 1:
            logger.debug(
                "Ignoring stale lease token",
                extra={"lease_token": token, "operation": operation},
            )
            return False
        return True

    async def _recover_expired(self, session: AsyncSession) -> int:
        now = _now()
        expired = and_(
            TaskRecord.state == TaskState.LEASED,
            TaskRecord.lease_expires_at < now,
        )
        cleared_lease = {
            "lease_token": None,
            "lease_owner": None,
            "lease_expires_at": None,
            "updated_at": now,
        }

        exhausted = await session.execute(
            update(TaskRecord)
            .where(and_(expired, TaskRecord.attempt >= TaskRecord.max_retries + 1))
            .values(
                state=TaskState.DEAD_LETTERED,
                last_error=REASON_LEASE_EXPIRED,
                completed_at=now,
                **cleared_lease,
            )
            .execution_options(synchronize_session=False)
        )
        requeued = await session.execute(
            update(TaskRecord)
            .where(expired)
            .values(
                state=TaskState.PENDING,
                seq=time.time_ns(),
                visible_at=None,
                **cleared_lease,
            )
            .execution_options(synchronize_session=False)
        )

        count = exhausted.rowcount + requeued.rowcount
        if count > 0:
            self._metrics.record_lease_expired(count)
            logger.info(
                f"Recovered {count} expired leases",
                extra={"dead_lettered": exhausted.rowcount},
            )
        return count
