"""
Type definitions for the task scheduler.
Contains input/output type definitions for all functions, grouped by module.
"""

from taskq.types.api import (
    DeadLetterListResponse,
    EnqueueTaskRequest,
    EnqueueTaskResponse,
    HealthResponse,
    QueueInfo,
    QueueStatsResponse,
)
from taskq.types.task import (
    DeadLetterEntry,
    Lease,
    Outcome,
    RetryDecision,
    Task,
    TaskContext,
)

__all__ = [
    # API types
    "EnqueueTaskRequest",
    "EnqueueTaskResponse",
    "DeadLetterListResponse",
    "QueueInfo",
    "QueueStatsResponse",
    "HealthResponse",
    # Task types
    "Task",
    "Lease",
    "TaskContext",
    "Outcome",
    "RetryDecision",
    "DeadLetterEntry",
]
