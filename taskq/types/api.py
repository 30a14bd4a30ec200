"""
API request and response type definitions.
"""

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

from taskq.constants import MAX_TIMEOUT_SECONDS
from taskq.types.task import DeadLetterEntry


class EnqueueTaskRequest(BaseModel):
    """Request body for enqueueing a task."""

    type: str = Field(..., min_length=1, description="Task type selecting the handler")
    payload: str | dict[str, Any] | list[Any] = Field(
        default="", description="Task payload; text, base64 text, or a JSON value"
    )
    payload_encoding: Literal["text", "base64"] = Field(
        default="text", description="How a string payload is encoded"
    )
    queue: str | None = Field(default=None, description="Target queue")
    max_retries: int | None = Field(default=None, ge=0, description="Retry budget")
    timeout_seconds: float | None = Field(
        default=None,
        gt=0,
        le=MAX_TIMEOUT_SECONDS,
        allow_inf_nan=False,
        description="Bound for one execution attempt",
    )


class EnqueueTaskResponse(BaseModel):
    """Response body after enqueueing a task."""

    id: str
    type: str
    queue: str
    message: str = "Task enqueued"


class DeadLetterListResponse(BaseModel):
    """Dead-lettered tasks, most recent first."""

    items: list[DeadLetterEntry]
    count: int


class QueueInfo(BaseModel):
    name: str
    weight: int
    depth: int


class QueueStatsResponse(BaseModel):
    """Per-queue depth and task counts by state."""

    queues: list[QueueInfo]
    states: dict[str, int]


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    store: str
    timestamp: datetime
