"""
Task-related type definitions for internal use.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from uuid import uuid4

from pydantic import BaseModel

from taskq.constants import DEFAULT_QUEUE, OutcomeKind, RetryAction, TaskState


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def new_task_id() -> str:
    return uuid4().hex


@dataclass
class Task:
    """
    A unit of schedulable work.

    Everything except ``attempt`` and the store bookkeeping fields
    (``state``, ``visible_at``, ``last_error``) is fixed at enqueue time.
    The payload is opaque to the scheduler.
    """

    type: str
    payload: bytes
    queue: str = DEFAULT_QUEUE
    max_retries: int = 2
    timeout: float = 20.0
    id: str = field(default_factory=new_task_id)
    attempt: int = 0
    created_at: datetime = field(default_factory=utcnow)
    state: TaskState = TaskState.PENDING
    visible_at: datetime | None = None
    last_error: str | None = None

    @property
    def max_attempts(self) -> int:
        """Total number of leases this task may receive."""
        return self.max_retries + 1

    @property
    def attempts_exhausted(self) -> bool:
        return self.attempt >= self.max_attempts


@dataclass
class Lease:
    """
    Exclusive, time-bounded ownership of a task by one worker.
    The token is what the worker presents to ack/retry/dead-letter.
    """

    token: str
    task_id: str
    worker_id: str
    deadline: datetime

    @property
    def is_expired(self) -> bool:
        return utcnow() > self.deadline


@dataclass
class TaskContext:
    """
    Context passed to task handlers during execution.
    """

    task_id: str
    task_type: str
    queue: str
    attempt: int
    max_retries: int
    worker_id: str
    lease_deadline: datetime

    @property
    def is_last_attempt(self) -> bool:
        """Check if a transient failure now would dead-letter the task."""
        return self.attempt > self.max_retries


@dataclass(frozen=True)
class Outcome:
    """
    Classified result of one execution attempt.

    Handlers may return one of these directly; returning ``None`` means
    success and raising is mapped by the scheduler.
    """

    kind: OutcomeKind
    error: str | None = None

    @classmethod
    def success(cls) -> "Outcome":
        return cls(OutcomeKind.SUCCESS)

    @classmethod
    def transient(cls, error: str) -> "Outcome":
        return cls(OutcomeKind.TRANSIENT, error)

    @classmethod
    def permanent(cls, error: str) -> "Outcome":
        return cls(OutcomeKind.PERMANENT, error)

    @property
    def is_success(self) -> bool:
        return self.kind is OutcomeKind.SUCCESS


@dataclass(frozen=True)
class RetryDecision:
    """What to do with a failed attempt."""

    action: RetryAction
    delay_seconds: float = 0.0
    reason: str | None = None


class DeadLetterEntry(BaseModel):
    """
    A terminally failed task, kept for operator inspection.
    """

    id: str
    type: str
    queue: str
    attempt: int
    max_retries: int
    last_error: str | None = None
    dead_lettered_at: datetime
