"""
SQLAlchemy database models.
Defines the tasks table backing SqlQueueStore.
"""

from datetime import datetime

from sqlalchemy import (
    BigInteger,
    DateTime,
    Enum,
    Float,
    Index,
    Integer,
    LargeBinary,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from taskq.constants import TaskState


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class TaskRecord(Base):
    """
    A task row. This is the authoritative source of truth for task state.

    Datetimes are stored as naive UTC so comparisons behave the same on
    Postgres and SQLite.

    Key columns:
    - state/visible_at/seq drive lease selection (FIFO by seq within a queue)
    - lease_token/lease_owner/lease_expires_at track the current lease
    """

    __tablename__ = "tasks"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)

    # Monotonic enqueue order; bumped on retry so retries go to the back
    seq: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)

    queue: Mapped[str] = mapped_column(String(255), nullable=False)
    type: Mapped[str] = mapped_column(String(255), nullable=False)
    payload: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)

    state: Mapped[TaskState] = mapped_column(
        Enum(
            TaskState,
            name="task_state",
            create_constraint=True,
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
        default=TaskState.PENDING,
        index=True,
    )

    # Retry tracking
    attempt: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, nullable=False, default=2)
    timeout_seconds: Mapped[float] = mapped_column(Float, nullable=False)

    # Lease management
    lease_token: Mapped[str | None] = mapped_column(String(32), nullable=True, unique=True)
    lease_owner: Mapped[str | None] = mapped_column(String(255), nullable=True)
    lease_expires_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    visible_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Error tracking
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("ix_tasks_queue_poll", "queue", "state", "seq"),
        Index("ix_tasks_lease_expiry", "state", "lease_expires_at"),
    )

    def __repr__(self) -> str:
        return (
            f"TaskRecord(id={self.id}, queue={self.queue}, type={self.type}, "
            f"state={self.state}, attempt={self.attempt}/{self.max_retries + 1})"
        )
