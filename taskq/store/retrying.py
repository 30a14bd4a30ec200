"""
Bounded retry of queue store calls.

Used by the producer for pushes and by the scheduler for every store call
it makes on a worker's behalf.
"""

import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from tenacity import AsyncRetrying, RetryError, stop_after_attempt, wait_exponential

from taskq.exceptions import BrokerUnavailableError
from taskq.observability.metrics import MetricsCollector

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def call_with_retry(
    operation: str,
    func: Callable[..., Awaitable[T]],
    *args: Any,
    attempts: int,
    max_wait: float,
    metrics: MetricsCollector,
) -> T:
    """
    Call a queue store operation, retrying failures with exponential backoff.

    Every failed try counts one ``broker_errors_total{operation}``.

    Raises:
        BrokerUnavailableError: Once all attempts have failed.
    """
    retrying = AsyncRetrying(
        stop=stop_after_attempt(attempts),
        wait=wait_exponential(multiplier=0.1, max=max_wait),
    )
    try:
        async for attempt in retrying:
            with attempt:
                try:
                    return await func(*args)
                except Exception as e:
                    metrics.record_broker_error(operation)
                    logger.warning(
                        f"Queue store operation failed: {e}",
                        extra={
                            "operation": operation,
                            "attempt": attempt.retry_state.attempt_number,
                        },
                    )
                    raise
    except RetryError as e:
        cause = e.last_attempt.exception()
        if isinstance(cause, BrokerUnavailableError):
            raise cause
        raise BrokerUnavailableError(operation, cause) from cause
    raise BrokerUnavailableError(operation)
