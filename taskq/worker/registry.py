"""
Handler registry.

Maps a task type to the callable that executes it. The scheduler only ever
looks handlers up by type, so new task types register here without touching
the scheduler.

Handlers must be idempotent - they may be executed more than once for the
same task when a worker crashes or a lease expires.
"""

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from typing import Union

from taskq.exceptions import UnknownTypeError, ValidationError
from taskq.types.task import Outcome, TaskContext

logger = logging.getLogger(__name__)

HandlerResult = Union[Outcome, None]

# Async handlers get cooperative cancellation on timeout. Sync handlers run
# in a worker thread and keep running after a timeout until they return.
TaskHandler = Callable[
    [TaskContext, bytes],
    Union[Awaitable[HandlerResult], HandlerResult],
]


class HandlerRegistry:
    """
    Registry of task type -> handler.

    Example:
        registry = HandlerRegistry()

        @registry.handler("video:compress")
        async def compress(context: TaskContext, payload: bytes) -> None:
            ...
    """

    def __init__(self) -> None:
        self._handlers: dict[str, TaskHandler] = {}

    def register(self, task_type: str, handler: TaskHandler) -> TaskHandler:
        """
        Register a handler for a task type, replacing any previous one.
        """
        if not task_type:
            raise ValidationError("task type must be a non-empty string")
        if not callable(handler):
            raise ValidationError(f"handler for {task_type!r} is not callable")

        if task_type in self._handlers:
            logger.warning(f"Replacing handler for task type: {task_type}")
        self._handlers[task_type] = handler
        logger.info(f"Registered handler for task type: {task_type}")
        return handler

    def handler(self, task_type: str) -> Callable[[TaskHandler], TaskHandler]:
        """Decorator form of register()."""

        def decorator(func: TaskHandler) -> TaskHandler:
            return self.register(task_type, func)

        return decorator

    def get(self, task_type: str) -> TaskHandler | None:
        return self._handlers.get(task_type)

    def resolve(self, task_type: str) -> TaskHandler:
        """
        Get the handler for a task type.

        Raises:
            UnknownTypeError: If nothing is registered for the type.
        """
        handler = self._handlers.get(task_type)
        if handler is None:
            raise UnknownTypeError(task_type)
        return handler

    def types(self) -> list[str]:
        """List all registered task types."""
        return list(self._handlers)

    def __contains__(self, task_type: object) -> bool:
        return task_type in self._handlers

    def __len__(self) -> int:
        return len(self._handlers)


def _is_async(handler: TaskHandler) -> bool:
    return inspect.iscoroutinefunction(handler) or inspect.iscoroutinefunction(
        getattr(handler, "__call__", None)
    )


async def run_handler(
    handler: TaskHandler,
    context: TaskContext,
    payload: bytes,
) -> HandlerResult:
    """
    Invoke a handler, async or sync, and return whatever it returns.
    """
    if _is_async(handler):
        return await handler(context, payload)

    result = await asyncio.to_thread(handler, context, payload)
    if inspect.isawaitable(result):
        return await result
    return result
