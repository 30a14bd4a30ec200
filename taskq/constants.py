"""
Application constants.
Centralized location for all constant values used across the application.
"""

from enum import StrEnum


class TaskState(StrEnum):
    """
    Task lifecycle states.

    State transitions:
    - PENDING -> LEASED (lease acquired, attempt + 1)
    - LEASED -> SUCCEEDED (ack; the record is then removed)
    - LEASED -> PENDING (transient failure with retries left, or lease expired)
    - LEASED -> DEAD_LETTERED (permanent failure or retries exhausted)
    """

    PENDING = "pending"
    LEASED = "leased"
    SUCCEEDED = "succeeded"
    DEAD_LETTERED = "dead_lettered"



class OutcomeKind(StrEnum):
    """Classification of a single execution attempt."""

    SUCCESS = "success"
    TRANSIENT = "transient"
    PERMANENT = "permanent"


class RetryAction(StrEnum):
    """What the scheduler does with a failed attempt."""

    RETRY = "retry"
    DEAD_LETTER = "dead_letter"
    DROP = "drop"


# Default values
DEFAULT_QUEUE = "default"
DEFAULT_MAX_RETRIES = 2
DEFAULT_TIMEOUT_SECONDS = 20.0
MAX_TIMEOUT_SECONDS = 7 * 24 * 3600.0
DEFAULT_QUEUE_WEIGHTS: dict[str, int] = {
    "critical": 6,
    "default": 3,
    "low": 1,
}

# Dead-letter reasons
REASON_UNKNOWN_TYPE = "unknown type"
REASON_RETRIES_EXHAUSTED = "retries exhausted"
REASON_LEASE_EXPIRED = "lease expired after final attempt"
REASON_INVALID_TIMEOUT = "invalid timeout"

# API constants
API_V1_PREFIX = "/v1"

# Metrics names
METRIC_QUEUE_DEPTH = "taskq_queue_depth"
METRIC_TASKS_ENQUEUED = "taskq_tasks_enqueued_total"
METRIC_TASKS_COMPLETED = "taskq_tasks_completed_total"
METRIC_TASK_DURATION = "taskq_task_duration_seconds"
METRIC_TASK_RETRIES = "taskq_task_retries_total"
METRIC_TASKS_DEAD_LETTERED = "taskq_tasks_dead_lettered_total"
METRIC_LEASE_EXPIRED = "taskq_lease_expired_total"
METRIC_LEASE_ACQUIRED = "taskq_lease_acquired_total"
METRIC_BROKER_ERRORS = "taskq_broker_errors_total"

# Trace span names
SPAN_ENQUEUE_TASK = "enqueue_task"
SPAN_EXECUTE_TASK = "execute_task"
