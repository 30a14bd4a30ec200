"""
Retry policy: decides what happens when a task attempt fails.

Failures come in two kinds:
1. PERMANENT -> dead-letter now, whatever the attempt count
2. TRANSIENT -> retry with exponential backoff while attempt <= max_retries,
   dead-letter once retries are exhausted

Lifecycle on failure:
    LEASED -> (transient) -> PENDING          (attempt <= max_retries)
    LEASED -> (transient) -> DEAD_LETTERED    (attempt >  max_retries)
    LEASED -> (permanent) -> DEAD_LETTERED

``attempt`` counts every lease including the first, so max_retries=2 means
at most three executions.

The policy itself is pure: it never touches the queue store. The scheduler
applies the decision.
"""

import asyncio

from taskq.constants import (
    REASON_RETRIES_EXHAUSTED,
    REASON_UNKNOWN_TYPE,
    OutcomeKind,
    RetryAction,
)
from taskq.exceptions import PermanentExecutionError, UnknownTypeError
from taskq.types.task import Outcome, RetryDecision


def classify_exception(exc: BaseException) -> Outcome:
    """
    Map an exception raised by a handler to a classified outcome.

    Anything not explicitly permanent is assumed transient, including
    timeouts and unexpected faults.
    """
    if isinstance(exc, UnknownTypeError):
        return Outcome.permanent(f"{REASON_UNKNOWN_TYPE}: {exc.task_type}")
    if isinstance(exc, PermanentExecutionError):
        return Outcome.permanent(str(exc) or type(exc).__name__)
    if isinstance(exc, (TimeoutError, asyncio.TimeoutError)):
        return Outcome.transient(str(exc) or "timed out")
    return Outcome.transient(f"{type(exc).__name__}: {exc}")


class RetryPolicy:
    """
    Exponential backoff with a cap: ``min(base * 2 ** attempt, cap)``.
    """

    def __init__(
        self,
        backoff_base: float = 1.0,
        backoff_max: float = 300.0,
        retain_dead_letters: bool = True,
    ):
        if backoff_base < 0 or backoff_max < 0:
            raise ValueError("backoff values must be non-negative")
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.retain_dead_letters = retain_dead_letters

    def backoff(self, attempt: int) -> float:
        """Delay in seconds before the next lease after a failed ``attempt``."""
        # Clamp the exponent; the cap is reached long before it matters
        return min(self.backoff_base * (2 ** min(attempt, 32)), self.backoff_max)

    def decide(self, outcome: Outcome, attempt: int, max_retries: int) -> RetryDecision:
        """
        Decide the fate of a failed attempt.

        Args:
            outcome: The classified failure (must not be SUCCESS).
            attempt: The attempt that just failed (1 for the first lease).
            max_retries: The task's retry budget.

        Returns:
            RetryDecision with the action, the delay for retries, and the
            reason recorded for terminal failures.
        """
        if outcome.kind is OutcomeKind.SUCCESS:
            raise ValueError("decide() called with a successful outcome")

        if outcome.kind is OutcomeKind.PERMANENT:
            return self._terminal(outcome.error or "permanent failure")

        if attempt <= max_retries:
            return RetryDecision(
                action=RetryAction.RETRY,
                delay_seconds=self.backoff(attempt),
                reason=outcome.error,
            )

        reason = REASON_RETRIES_EXHAUSTED
        if outcome.error:
            reason = f"{REASON_RETRIES_EXHAUSTED}: {outcome.error}"
        return self._terminal(reason)

    def _terminal(self, reason: str) -> RetryDecision:
        action = RetryAction.DEAD_LETTER if self.retain_dead_letters else RetryAction.DROP
        return RetryDecision(action=action, reason=reason)
