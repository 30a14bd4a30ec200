"""
Unit tests for failure classification and the retry policy.
"""

import asyncio

import pytest

from taskq.constants import OutcomeKind, RetryAction
from taskq.exceptions import (
    PermanentExecutionError,
    TransientExecutionError,
    UnknownTypeError,
)
from taskq.types.task import Outcome
from taskq.worker.retry import RetryPolicy, classify_exception


class TestClassifyException:
    """Tests for mapping handler exceptions to outcomes."""

    def test_permanent_error(self):
        """Test PermanentExecutionError is permanent."""
        outcome = classify_exception(PermanentExecutionError("bad payload"))

        assert outcome.kind is OutcomeKind.PERMANENT
        assert outcome.error == "bad payload"

    def test_unknown_type_is_permanent(self):
        """Test an unknown task type is permanent with a recognizable reason."""
        outcome = classify_exception(UnknownTypeError("nope"))

        assert outcome.kind is OutcomeKind.PERMANENT
        assert outcome.error == "unknown type: nope"

    def test_transient_error(self):
        """Test TransientExecutionError is transient."""
        outcome = classify_exception(TransientExecutionError("503"))

        assert outcome.kind is OutcomeKind.TRANSIENT
        assert "503" in outcome.error

    def test_timeout_is_transient(self):
        """Test timeouts are transient."""
        assert classify_exception(asyncio.TimeoutError()).kind is OutcomeKind.TRANSIENT
        assert classify_exception(TimeoutError("slow")).kind is OutcomeKind.TRANSIENT

    def test_unexpected_exception_is_transient(self):
        """Test unclassified faults default to transient and keep the type name."""
        outcome = classify_exception(KeyError("missing"))

        assert outcome.kind is OutcomeKind.TRANSIENT
        assert outcome.error.startswith("KeyError")


class TestRetryPolicy:
    """Tests for RetryPolicy decisions."""

    def test_backoff_grows_exponentially(self):
        """Test backoff doubles with each attempt."""
        policy = RetryPolicy(backoff_base=1.0, backoff_max=1000.0)

        assert policy.backoff(1) == 2.0
        assert policy.backoff(2) == 4.0
        assert policy.backoff(3) == 8.0

    def test_backoff_is_capped(self):
        """Test backoff never exceeds the cap, even for huge attempt counts."""
        policy = RetryPolicy(backoff_base=1.0, backoff_max=30.0)

        assert policy.backoff(10) == 30.0
        assert policy.backoff(10_000) == 30.0

    def test_negative_backoff_rejected(self):
        """Test negative backoff configuration is rejected."""
        with pytest.raises(ValueError):
            RetryPolicy(backoff_base=-1)

    def test_transient_with_retries_left(self):
        """Test a transient failure is retried while attempt <= max_retries."""
        policy = RetryPolicy(backoff_base=1.0, backoff_max=60.0)

        decision = policy.decide(Outcome.transient("boom"), attempt=2, max_retries=2)

        assert decision.action is RetryAction.RETRY
        assert decision.delay_seconds == 4.0

    def test_transient_retries_exhausted(self):
        """Test a transient failure on the final attempt is dead-lettered."""
        policy = RetryPolicy()

        decision = policy.decide(Outcome.transient("boom"), attempt=3, max_retries=2)

        assert decision.action is RetryAction.DEAD_LETTER
        assert decision.reason == "retries exhausted: boom"

    def test_zero_retries(self):
        """Test max_retries=0 dead-letters on the first failure."""
        decision = RetryPolicy().decide(Outcome.transient("x"), attempt=1, max_retries=0)

        assert decision.action is RetryAction.DEAD_LETTER

    def test_permanent_ignores_retry_budget(self):
        """Test a permanent failure is dead-lettered on the first attempt."""
        decision = RetryPolicy().decide(
            Outcome.permanent("invalid input"), attempt=1, max_retries=10
        )

        assert decision.action is RetryAction.DEAD_LETTER
        assert decision.reason == "invalid input"

    def test_drop_when_dead_letters_not_retained(self):
        """Test terminal failures are dropped when dead letters are disabled."""
        policy = RetryPolicy(retain_dead_letters=False)

        decision = policy.decide(Outcome.permanent("x"), attempt=1, max_retries=2)

        assert decision.action is RetryAction.DROP

    def test_success_is_not_a_failure(self):
        """Test decide() refuses a successful outcome."""
        with pytest.raises(ValueError):
            RetryPolicy().decide(Outcome.success(), attempt=1, max_retries=2)
