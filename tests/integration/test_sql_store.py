"""
Integration tests for the SQL queue store on SQLite.
"""

import asyncio

import pytest

from taskq.constants import REASON_INVALID_TIMEOUT, REASON_LEASE_EXPIRED, TaskState
from taskq.producer import Producer
from taskq.store import create_store
from taskq.store.memory import InMemoryQueueStore
from taskq.store.sql import SqlQueueStore
from taskq.types.task import Task

QUEUES = ["critical", "default", "low"]


def make_task(**kwargs) -> Task:
    kwargs.setdefault("type", "echo")
    kwargs.setdefault("payload", b"payload")
    return Task(**kwargs)


class TestSqlQueueStore:
    """Tests for the tasks-table backed store."""

    @pytest.mark.asyncio
    async def test_push_and_get(self, sql_store: SqlQueueStore):
        """Test a pushed task round-trips through the table."""
        task = make_task(queue="critical", max_retries=4, timeout=7.5)
        await sql_store.push(task)

        stored = await sql_store.get_task(task.id)

        assert stored is not None
        assert stored.type == "echo"
        assert stored.payload == b"payload"
        assert stored.queue == "critical"
        assert stored.max_retries == 4
        assert stored.timeout == 7.5
        assert stored.attempt == 0
        assert stored.state is TaskState.PENDING
        assert stored.created_at.tzinfo is not None

    @pytest.mark.asyncio
    async def test_get_missing(self, sql_store: SqlQueueStore):
        assert await sql_store.get_task("does-not-exist") is None

    @pytest.mark.asyncio
    async def test_lease_and_ack(self, sql_store: SqlQueueStore):
        """Test the lease/ack cycle and that tokens are single-use."""
        task = make_task()
        await sql_store.push(task)

        leased = await sql_store.lease_next(QUEUES, "w1", visibility_margin=1.0)
        assert leased is not None
        leased_task, lease = leased
        assert leased_task.id == task.id
        assert leased_task.attempt == 1
        assert leased_task.state is TaskState.LEASED
        assert lease.deadline.tzinfo is not None

        assert await sql_store.lease_next(QUEUES, "w2", 1.0) is None

        assert await sql_store.ack(lease.token) is True
        assert await sql_store.ack(lease.token) is False
        assert await sql_store.get_task(task.id) is None
        assert (await sql_store.stats())["succeeded"] == 1

    @pytest.mark.asyncio
    async def test_fifo_and_queue_order(self, sql_store: SqlQueueStore):
        """Test FIFO within a queue and the caller's queue order across queues."""
        low = make_task(queue="low")
        first = make_task()
        second = make_task()
        for task in (low, first, second):
            await sql_store.push(task)

        order = []
        for _ in range(3):
            leased_task, _ = await sql_store.lease_next(["default", "low"], "w1", 1.0)
            order.append(leased_task.id)

        assert order == [first.id, second.id, low.id]

    @pytest.mark.asyncio
    async def test_retry_later(self, sql_store: SqlQueueStore):
        """Test a delayed retry hides the task and records the error."""
        task = make_task()
        await sql_store.push(task)
        _, lease = await sql_store.lease_next(QUEUES, "w1", 1.0)

        assert await sql_store.retry_later(lease.token, 60, error="boom") is True

        assert await sql_store.lease_next(QUEUES, "w1", 1.0) is None
        assert await sql_store.queue_depth("default") == 1
        stored = await sql_store.get_task(task.id)
        assert stored.state is TaskState.PENDING
        assert stored.last_error == "boom"
        assert stored.visible_at is not None

    @pytest.mark.asyncio
    async def test_retry_later_zero_delay(self, sql_store: SqlQueueStore):
        task = make_task()
        await sql_store.push(task)
        _, lease = await sql_store.lease_next(QUEUES, "w1", 1.0)
        await sql_store.retry_later(lease.token, 0)

        leased_task, _ = await sql_store.lease_next(QUEUES, "w1", 1.0)

        assert leased_task.id == task.id
        assert leased_task.attempt == 2

    @pytest.mark.asyncio
    async def test_dead_letter_listing(self, sql_store: SqlQueueStore):
        """Test dead-lettered tasks are listed with their reason."""
        task = make_task(type="video:compress")
        await sql_store.push(task)
        _, lease = await sql_store.lease_next(QUEUES, "w1", 1.0)

        assert await sql_store.dead_letter(lease.token, "unsupported content-type") is True
        assert await sql_store.dead_letter(lease.token, "again") is False

        entries = await sql_store.list_dead_letters()
        assert len(entries) == 1
        assert entries[0].id == task.id
        assert entries[0].type == "video:compress"
        assert entries[0].attempt == 1
        assert entries[0].last_error == "unsupported content-type"
        assert entries[0].dead_lettered_at.tzinfo is not None

    @pytest.mark.asyncio
    async def test_expired_lease_recovery(self, sql_store: SqlQueueStore):
        """Test a lapsed lease is requeued and its token goes stale."""
        task = make_task(timeout=0.01)
        await sql_store.push(task)
        _, old_lease = await sql_store.lease_next(QUEUES, "w1", visibility_margin=0)

        await asyncio.sleep(0.05)

        assert await sql_store.recover_expired_leases() == 1
        assert (await sql_store.get_task(task.id)).state is TaskState.PENDING
        assert await sql_store.ack(old_lease.token) is False

        leased_task, _ = await sql_store.lease_next(QUEUES, "w2", 0)
        assert leased_task.attempt == 2

    @pytest.mark.asyncio
    async def test_expired_final_attempt_dead_lettered(self, sql_store: SqlQueueStore):
        """Test a lapsed lease on the final attempt dead-letters the task."""
        task = make_task(timeout=0.01, max_retries=0)
        await sql_store.push(task)
        await sql_store.lease_next(QUEUES, "w1", visibility_margin=0)

        await asyncio.sleep(0.05)

        # Recovery also runs lazily on lease
        assert await sql_store.lease_next(QUEUES, "w1", 0) is None

        stored = await sql_store.get_task(task.id)
        assert stored.state is TaskState.DEAD_LETTERED
        assert stored.last_error == REASON_LEASE_EXPIRED

    @pytest.mark.asyncio
    async def test_lazy_recovery_counts_expired_leases(self, sql_store: SqlQueueStore, read_metric):
        """Test a lapsed lease found while leasing is counted like a reaped one."""
        await sql_store.push(make_task(timeout=0.01))
        await sql_store.lease_next(QUEUES, "w1", visibility_margin=0)

        await asyncio.sleep(0.05)
        leased_task, _ = await sql_store.lease_next(QUEUES, "w2", 1.0)

        assert leased_task.attempt == 2
        assert read_metric("taskq_lease_expired_total") == 1

    @pytest.mark.asyncio
    async def test_unrepresentable_deadline_is_dead_lettered(self, sql_store: SqlQueueStore):
        """Test a task whose lease deadline overflows is dead-lettered and leasing moves on."""
        bad = make_task(timeout=1e12)
        good = make_task()
        await sql_store.push(bad)
        await sql_store.push(good)

        leased_task, _ = await sql_store.lease_next(QUEUES, "w1", 1.0)

        assert leased_task.id == good.id
        stored = await sql_store.get_task(bad.id)
        assert stored.state is TaskState.DEAD_LETTERED
        assert stored.attempt == 0
        assert stored.last_error.startswith(REASON_INVALID_TIMEOUT)
        assert await sql_store.lease_next(QUEUES, "w1", 1.0) is None

    @pytest.mark.asyncio
    async def test_concurrent_leases_are_exclusive(self, sql_store: SqlQueueStore):
        """Test concurrent lease calls hand out every task exactly once."""
        tasks = [make_task() for _ in range(20)]
        for task in tasks:
            await sql_store.push(task)

        results = await asyncio.gather(
            *(sql_store.lease_next(QUEUES, f"w{i}", 1.0) for i in range(30))
        )

        leased = [result for result in results if result is not None]
        assert len(leased) == 20
        assert {leased_task.id for leased_task, _ in leased} == {task.id for task in tasks}
        assert len({lease.token for _, lease in leased}) == 20
        assert await sql_store.queue_depth("default") == 0

    @pytest.mark.asyncio
    async def test_extend_lease(self, sql_store: SqlQueueStore):
        """Test an extended lease survives past its original deadline."""
        task = make_task(timeout=0.01)
        await sql_store.push(task)
        _, lease = await sql_store.lease_next(QUEUES, "w1", visibility_margin=0)

        assert await sql_store.extend_lease(lease.token, 60) is True
        await asyncio.sleep(0.05)

        assert await sql_store.recover_expired_leases() == 0
        assert await sql_store.ack(lease.token) is True
        assert await sql_store.extend_lease(lease.token, 60) is False

    @pytest.mark.asyncio
    async def test_stats(self, sql_store: SqlQueueStore):
        """Test task counts by state."""
        for _ in range(3):
            await sql_store.push(make_task())
        _, lease = await sql_store.lease_next(QUEUES, "w1", 1.0)
        await sql_store.ack(lease.token)
        await sql_store.lease_next(QUEUES, "w1", 1.0)

        assert await sql_store.stats() == {
            "pending": 1,
            "leased": 1,
            "succeeded": 1,
            "dead_lettered": 0,
        }

    @pytest.mark.asyncio
    async def test_end_to_end_with_scheduler(self, sql_store: SqlQueueStore, make_scheduler, metrics):
        """Test the scheduler retries and dead-letters against the SQL store."""
        producer = Producer(sql_store, metrics=metrics)
        ok_id = await producer.enqueue("echo", b"")
        flaky_id = await producer.enqueue("fail", b"", max_retries=1)
        scheduler = make_scheduler(store=sql_store)

        processed = 0
        while await scheduler.run_once():
            processed += 1

        assert processed == 3
        assert await sql_store.get_task(ok_id) is None
        flaky = await sql_store.get_task(flaky_id)
        assert flaky.state is TaskState.DEAD_LETTERED
        assert flaky.attempt == 2


class TestCreateStore:
    """Tests for store selection from settings."""

    @pytest.mark.asyncio
    async def test_memory_backend(self, test_settings):
        store = await create_store(test_settings)

        assert isinstance(store, InMemoryQueueStore)

    @pytest.mark.asyncio
    async def test_sql_backend(self, test_settings):
        """Test the SQL backend creates its tables on startup."""
        settings = test_settings.model_copy(update={"store_backend": "sql"})

        store = await create_store(settings)
        try:
            assert isinstance(store, SqlQueueStore)
            task = make_task()
            await store.push(task)
            assert (await store.get_task(task.id)).id == task.id
        finally:
            await store.close()
