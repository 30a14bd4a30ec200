"""
Unit tests for task types.
"""

from datetime import timedelta

from taskq.constants import OutcomeKind, RetryAction
from taskq.types.task import Lease, Outcome, RetryDecision, Task, TaskContext, utcnow


class TestTask:

    def test_defaults(self):
        """Test a new task starts pending with no attempts."""
        task = Task(type="echo", payload=b"")

        assert task.attempt == 0
        assert task.max_retries == 2
        assert task.max_attempts == 3
        assert task.id
        assert task.created_at.tzinfo is not None

    def test_attempts_exhausted(self):
        task = Task(type="echo", payload=b"", max_retries=1)

        task.attempt = 1
        assert not task.attempts_exhausted
        task.attempt = 2
        assert task.attempts_exhausted


class TestTaskContext:

    def make(self, attempt: int, max_retries: int = 2) -> TaskContext:
        return TaskContext(
            task_id="t",
            task_type="echo",
            queue="default",
            attempt=attempt,
            max_retries=max_retries,
            worker_id="w/0",
            lease_deadline=utcnow(),
        )

    def test_last_attempt(self):
        """Test is_last_attempt flips on the attempt after the final retry budget."""
        assert not self.make(attempt=1).is_last_attempt
        assert not self.make(attempt=2).is_last_attempt
        assert self.make(attempt=3).is_last_attempt


class TestLease:

    def test_expiry(self):
        live = Lease(token="a", task_id="t", worker_id="w", deadline=utcnow() + timedelta(seconds=30))
        dead = Lease(token="b", task_id="t", worker_id="w", deadline=utcnow() - timedelta(seconds=1))

        assert not live.is_expired
        assert dead.is_expired


class TestOutcome:

    def test_constructors(self):
        assert Outcome.success().is_success
        assert Outcome.transient("x").kind is OutcomeKind.TRANSIENT
        assert Outcome.permanent("y") == Outcome(OutcomeKind.PERMANENT, "y")

    def test_retry_decision_defaults(self):
        decision = RetryDecision(action=RetryAction.RETRY)

        assert decision.delay_seconds == 0.0
        assert decision.reason is None
