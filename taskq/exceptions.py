"""
Error taxonomy for the task scheduler.

Only ValidationError, UnknownTypeError and BrokerUnavailableError ever reach
an enqueue caller. Execution errors are classified by the scheduler and
surface through the dead-letter listing and logs.
"""


class TaskqError(Exception):
    """Base class for all scheduler errors."""


class ValidationError(TaskqError):
    """Malformed enqueue request; rejected before it reaches a queue."""


class ConfigurationError(TaskqError):
    """Invalid scheduler configuration (queues, weights, concurrency)."""


class UnknownTypeError(TaskqError):
    """No handler is registered for a task type. Never retried."""

    def __init__(self, task_type: str):
        super().__init__(f"no handler registered for task type: {task_type}")
        self.task_type = task_type


class TransientExecutionError(TaskqError):
    """Handler failure that may succeed on a later attempt."""


class PermanentExecutionError(TaskqError):
    """
    Handler failure that can never succeed.

    Raise this from a handler to skip all remaining retries.
    """


class BrokerUnavailableError(TaskqError):
    """A queue store operation failed."""

    def __init__(self, operation: str, cause: BaseException | None = None):
        message = f"queue store operation '{operation}' failed"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)
        self.operation = operation
        self.cause = cause
