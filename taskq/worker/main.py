"""
Worker process: the scheduler/dispatcher loop.

A Scheduler runs ``concurrency`` identical worker loops on one event loop.
Each loop repeatedly:

    1. picks a queue order with its own weighted selector
    2. leases the next task from the queue store
    3. looks up the handler for the task type
    4. runs it under the task's timeout
    5. acks on success, or hands the failure to the retry policy

Handler failures of any kind are classified and never end a worker loop.
Queue store failures are retried with backoff; if a store call still fails
the worker moves on and the task's lease expires, so it is redelivered
rather than lost.
"""

import asyncio
import logging
import os
import signal
import time
from collections.abc import Awaitable, Callable, Mapping
from typing import Any, TypeVar

from taskq.config import Settings, get_settings
from taskq.constants import SPAN_EXECUTE_TASK, OutcomeKind, RetryAction
from taskq.exceptions import BrokerUnavailableError, ConfigurationError, UnknownTypeError
from taskq.observability.logging import bind_task_context, clear_task_context, setup_logging
from taskq.observability.metrics import MetricsCollector, get_metrics
from taskq.observability.tracing import setup_tracing, task_span
from taskq.store.base import QueueStore
from taskq.store.retrying import call_with_retry
from taskq.types.task import Lease, Outcome, Task, TaskContext
from taskq.worker.registry import HandlerRegistry, run_handler
from taskq.worker.retry import RetryPolicy, classify_exception
from taskq.worker.selector import WeightedQueueSelector

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Scheduler:
    """
    Pulls tasks from weighted queues and executes them.

    Features:
    - Weighted round-robin queue selection per worker
    - Per-attempt timeout enforcement
    - Transient/permanent failure classification with backoff and dead-lettering
    - Heartbeat to extend leases of in-flight tasks
    - Graceful shutdown: in-flight tasks finish before start() returns

    The scheduler shares nothing mutable between worker loops except the
    in-flight table, where each worker only ever writes its own slot.
    """

    def __init__(
        self,
        store: QueueStore,
        registry: HandlerRegistry,
        *,
        queues: Mapping[str, int],
        concurrency: int = 10,
        retry_policy: RetryPolicy | None = None,
        worker_id: str | None = None,
        poll_interval: float = 1.0,
        lease_margin: float = 5.0,
        heartbeat_interval: float = 10.0,
        broker_retry_attempts: int = 5,
        broker_retry_max_seconds: float = 10.0,
        metrics: MetricsCollector | None = None,
    ):
        """
        Initialize the scheduler.

        Args:
            store: Queue store holding all task and lease state.
            registry: Task type -> handler mapping.
            queues: Queue name -> weight (each weight >= 1).
            concurrency: Number of worker loops (execution slots).
            retry_policy: Failure policy. Defaults to RetryPolicy().
            worker_id: Identifier of this process. Defaults to hostname + PID.
            poll_interval: Seconds to idle when every queue is empty.
            lease_margin: Seconds added to a task's timeout for its lease.
            heartbeat_interval: Seconds between lease extensions.
            broker_retry_attempts: Attempts per queue store operation.
            broker_retry_max_seconds: Cap on the backoff between them.
            metrics: Metrics collector. Defaults to the process-wide one.
        """
        if concurrency < 1:
            raise ConfigurationError(f"concurrency must be >= 1, got {concurrency}")
        if broker_retry_attempts < 1:
            raise ConfigurationError("broker_retry_attempts must be >= 1")

        self.store = store
        self.registry = registry
        self.queues = dict(queues)
        self.concurrency = concurrency
        self.retry_policy = retry_policy or RetryPolicy()
        self.worker_id = worker_id or f"{os.uname().nodename}-{os.getpid()}"
        self.poll_interval = poll_interval
        self.lease_margin = lease_margin
        self.heartbeat_interval = heartbeat_interval
        self.broker_retry_attempts = broker_retry_attempts
        self.broker_retry_max_seconds = broker_retry_max_seconds

        # Validates the weights; one selector per worker loop
        self._selectors = [
            WeightedQueueSelector(self.queues) for _ in range(concurrency)
        ]
        self._in_flight: dict[int, tuple[Lease, Task]] = {}
        self._stop_event = asyncio.Event()
        self._running = False
        self._metrics = metrics or get_metrics()

    @classmethod
    def from_settings(
        cls,
        store: QueueStore,
        registry: HandlerRegistry,
        settings: Settings,
        metrics: MetricsCollector | None = None,
    ) -> "Scheduler":
        return cls(
            store,
            registry,
            queues=settings.queues,
            concurrency=settings.worker_concurrency,
            retry_policy=RetryPolicy(
                backoff_base=settings.backoff_base_seconds,
                backoff_max=settings.backoff_max_seconds,
                retain_dead_letters=settings.retain_dead_letters,
            ),
            worker_id=settings.worker_id,
            poll_interval=settings.worker_poll_interval_seconds,
            lease_margin=settings.lease_margin_seconds,
            heartbeat_interval=settings.worker_heartbeat_interval_seconds,
            broker_retry_attempts=settings.broker_retry_attempts,
            broker_retry_max_seconds=settings.broker_retry_max_seconds,
            metrics=metrics,
        )

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """
        Run the worker loops until stop() is called.

        Unknown task types are not checked here; they are dead-lettered on
        their first lease.
        """
        if self._running:
            raise RuntimeError("scheduler is already running")
        if len(self.registry) == 0:
            logger.warning(
                "Starting with no registered handlers; every task will be dead-lettered"
            )

        logger.info(
            "Scheduler starting",
            extra={
                "worker_id": self.worker_id,
                "concurrency": self.concurrency,
                "queues": self.queues,
                "task_types": self.registry.types(),
            },
        )

        self._running = True
        self._stop_event.clear()

        heartbeat = asyncio.create_task(self._heartbeat_loop(), name="taskq-heartbeat")
        workers = [
            asyncio.create_task(self._worker_loop(index), name=f"taskq-worker-{index}")
            for index in range(self.concurrency)
        ]

        try:
            await asyncio.gather(*workers)
        finally:
            for worker in workers:
                worker.cancel()
            heartbeat.cancel()
            await asyncio.gather(heartbeat, *workers, return_exceptions=True)
            self._running = False
            logger.info("Scheduler stopped", extra={"worker_id": self.worker_id})

    async def stop(self) -> None:
        """Stop the scheduler gracefully; in-flight tasks run to completion."""
        logger.info("Scheduler stopping", extra={"worker_id": self.worker_id})
        self._stop_event.set()

    async def run_once(self, worker_index: int = 0) -> bool:
        """
        Lease and process at most one task.

        Returns:
            True if a task was processed, False if every queue was empty.

        Raises:
            BrokerUnavailableError: If leasing failed after all retries.
        """
        selector = self._selectors[worker_index]
        worker_name = f"{self.worker_id}/{worker_index}"

        leased = await self._call_store(
            "lease_next",
            self.store.lease_next,
            selector.next_order(),
            worker_name,
            self.lease_margin,
        )
        if leased is None:
            return False

        task, lease = leased
        self._metrics.record_lease_acquired(self.worker_id, task.queue)
        self._in_flight[worker_index] = (lease, task)
        bind_task_context(
            task_id=task.id,
            task_type=task.type,
            queue=task.queue,
            attempt=task.attempt,
        )

        try:
            await self._process(task, lease, worker_name)
        finally:
            self._in_flight.pop(worker_index, None)
            clear_task_context()

        return True

    async def _worker_loop(self, index: int) -> None:
        while not self._stop_event.is_set():
            try:
                processed = await self.run_once(index)
            except BrokerUnavailableError as e:
                logger.error(f"Queue store unavailable: {e}", extra={"worker": index})
                processed = False
            except Exception as e:
                logger.exception(f"Error in worker loop: {e}", extra={"worker": index})
                processed = False

            if not processed:
                await self._idle()

    async def _idle(self) -> None:
        """Wait for the poll interval, waking early on shutdown."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=self.poll_interval)
        except asyncio.TimeoutError:
            pass

    async def _process(self, task: Task, lease: Lease, worker_name: str) -> None:
        logger.info(
            "Executing task",
            extra={"task_id": task.id, "attempt": task.attempt, "worker": worker_name},
        )

        start_time = time.monotonic()
        outcome = await self._execute(task, lease, worker_name)
        duration = time.monotonic() - start_time

        try:
            await self._apply(task, lease, outcome, duration)
        except BrokerUnavailableError as e:
            # The lease will expire and the task will be delivered again
            logger.error(
                f"Could not record task outcome: {e}",
                extra={"task_id": task.id, "outcome": outcome.kind.value},
            )

    async def _execute(self, task: Task, lease: Lease, worker_name: str) -> Outcome:
        """
        Run the handler for a task and classify the result.

        Never raises for handler-originated failures.
        """
        handler = self.registry.get(task.type)
        if handler is None:
            logger.error("No handler for task type", extra={"task_id": task.id})
            return classify_exception(UnknownTypeError(task.type))

        context = TaskContext(
            task_id=task.id,
            task_type=task.type,
            queue=task.queue,
            attempt=task.attempt,
            max_retries=task.max_retries,
            worker_id=worker_name,
            lease_deadline=lease.deadline,
        )

        with task_span(SPAN_EXECUTE_TASK, task):
            try:
                result = await asyncio.wait_for(
                    run_handler(handler, context, task.payload),
                    timeout=task.timeout,
                )
            except asyncio.TimeoutError:
                logger.warning(
                    "Task timed out",
                    extra={"task_id": task.id, "timeout": task.timeout},
                )
                return Outcome.transient(f"timed out after {task.timeout:g}s")
            except asyncio.CancelledError:
                current = asyncio.current_task()
                if current is not None and current.cancelling():
                    raise
                # Raised by the handler itself, not a shutdown of this worker
                logger.warning("Handler cancelled itself", extra={"task_id": task.id})
                return Outcome.transient("handler was cancelled")
            except Exception as e:
                outcome = classify_exception(e)
                logger.warning(
                    "Handler raised",
                    exc_info=outcome.kind is OutcomeKind.TRANSIENT,
                    extra={
                        "task_id": task.id,
                        "kind": outcome.kind.value,
                        "error": outcome.error,
                        "last_attempt": context.is_last_attempt,
                    },
                )
                return outcome

        if isinstance(result, Outcome):
            return result
        return Outcome.success()

    async def _apply(
        self,
        task: Task,
        lease: Lease,
        outcome: Outcome,
        duration: float,
    ) -> None:
        """Record the outcome of an attempt in the queue store."""
        if outcome.is_success:
            acked = await self._call_store("ack", self.store.ack, lease.token)
            if not acked:
                logger.warning(
                    "Lease lost before ack; task may run again",
                    extra={"task_id": task.id},
                )
            logger.info(
                "Task completed successfully",
                extra={"task_id": task.id, "duration": f"{duration:.2f}s"},
            )
            self._metrics.record_task_finished(task.queue, "succeeded", duration)
            return

        decision = self.retry_policy.decide(outcome, task.attempt, task.max_retries)

        if decision.action is RetryAction.RETRY:
            await self._call_store(
                "retry_later",
                self.store.retry_later,
                lease.token,
                decision.delay_seconds,
                outcome.error,
            )
            logger.info(
                "Task queued for retry",
                extra={
                    "task_id": task.id,
                    "attempt": task.attempt,
                    "max_retries": task.max_retries,
                    "delay": decision.delay_seconds,
                    "error": outcome.error,
                },
            )
            self._metrics.record_retry(task.queue)
            self._metrics.record_task_finished(task.queue, "retried", duration)

        elif decision.action is RetryAction.DEAD_LETTER:
            await self._call_store(
                "dead_letter",
                self.store.dead_letter,
                lease.token,
                decision.reason,
            )
            logger.warning(
                f"Task dead-lettered after {task.attempt} attempts",
                extra={"task_id": task.id, "reason": decision.reason},
            )
            self._metrics.record_dead_letter(task.queue, outcome.kind.value)
            self._metrics.record_task_finished(task.queue, "dead_lettered", duration)

        else:
            await self._call_store("ack", self.store.ack, lease.token)
            logger.warning(
                "Task dropped",
                extra={"task_id": task.id, "reason": decision.reason},
            )
            self._metrics.record_task_finished(task.queue, "dropped", duration)

    async def _call_store(
        self,
        operation: str,
        func: Callable[..., Awaitable[T]],
        *args: Any,
    ) -> T:
        """Call a queue store operation with the configured broker retry."""
        return await call_with_retry(
            operation,
            func,
            *args,
            attempts=self.broker_retry_attempts,
            max_wait=self.broker_retry_max_seconds,
            metrics=self._metrics,
        )

    async def _heartbeat_loop(self) -> None:
        """
        Periodically extend leases on in-flight tasks and refresh queue depth.

        Keeps leases alive while this process is; they only lapse when the
        worker dies.
        """
        while not self._stop_event.is_set():
            try:
                await asyncio.sleep(self.heartbeat_interval)

                for lease, task in list(self._in_flight.values()):
                    extended = await self.store.extend_lease(
                        lease.token, task.timeout + self.lease_margin
                    )
                    if extended:
                        logger.debug("Extended lease", extra={"task_id": task.id})

                for name in self.queues:
                    self._metrics.update_queue_depth(name, await self.store.queue_depth(name))

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.exception(f"Error in heartbeat loop: {e}")


async def run_async() -> None:
    """Run the worker process asynchronously."""
    from taskq.handlers import build_default_registry
    from taskq.store import create_store

    settings = get_settings()
    setup_logging(settings)
    setup_tracing()

    store = await create_store(settings)
    scheduler = Scheduler.from_settings(store, build_default_registry(settings), settings)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda: asyncio.create_task(scheduler.stop()))

    try:
        await scheduler.start()
    finally:
        await store.close()


def run() -> None:
    """Run the worker process."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
