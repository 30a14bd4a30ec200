"""
Task management routes.
"""

import base64
import binascii
import logging

from fastapi import APIRouter, HTTPException, Query, status

from taskq.api.dependencies import ProducerDep, SettingsDep, StoreDep
from taskq.constants import API_V1_PREFIX
from taskq.exceptions import BrokerUnavailableError, UnknownTypeError, ValidationError
from taskq.handlers.video import new_video_compression_task
from taskq.types.api import (
    DeadLetterListResponse,
    EnqueueTaskRequest,
    EnqueueTaskResponse,
    QueueInfo,
    QueueStatsResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Tasks"])


def _decode_request_payload(request: EnqueueTaskRequest) -> bytes | str | dict | list:
    if request.payload_encoding != "base64":
        return request.payload
    if not isinstance(request.payload, str):
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="base64 payload must be a string",
        )
    try:
        return base64.b64decode(request.payload, validate=True)
    except binascii.Error as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"invalid base64 payload: {e}",
        )


async def _enqueue(producer: ProducerDep, task_type: str, payload, **options) -> EnqueueTaskResponse:
    try:
        task_id = await producer.enqueue(task_type, payload, **options)
    except (ValidationError, UnknownTypeError) as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(e),
        )
    except BrokerUnavailableError as e:
        logger.error(f"Enqueue failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="queue store unavailable",
        )

    queue = options.get("queue") or producer.default_queue
    return EnqueueTaskResponse(id=task_id, type=task_type, queue=queue)


@router.post(
    f"{API_V1_PREFIX}/tasks",
    response_model=EnqueueTaskResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Enqueue a task",
    description="Enqueue a task for background execution by type.",
)
async def enqueue_task(
    request: EnqueueTaskRequest,
    producer: ProducerDep,
) -> EnqueueTaskResponse:
    """
    Enqueue a task.

    The task is durably in the queue store before the response is sent;
    execution happens later on a worker.
    """
    payload = _decode_request_payload(request)
    return await _enqueue(
        producer,
        request.type,
        payload,
        queue=request.queue,
        max_retries=request.max_retries,
        timeout=request.timeout_seconds,
    )


@router.get(
    "/big_task",
    response_model=EnqueueTaskResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Compress a video",
    description="Enqueue a video compression task for the given URL.",
)
async def big_task(
    producer: ProducerDep,
    video_url: str | None = Query(default=None),
) -> EnqueueTaskResponse:
    if not video_url:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="video_url query parameter is required",
        )

    task = new_video_compression_task(video_url)
    return await _enqueue(
        producer,
        task["task_type"],
        task["payload"],
        max_retries=task["max_retries"],
        timeout=task["timeout"],
    )


@router.get(
    f"{API_V1_PREFIX}/dead-letters",
    response_model=DeadLetterListResponse,
    summary="List dead-lettered tasks",
)
async def list_dead_letters(
    store: StoreDep,
    limit: int = Query(default=100, ge=1, le=1000),
) -> DeadLetterListResponse:
    try:
        items = await store.list_dead_letters(limit=limit)
    except BrokerUnavailableError:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="queue store unavailable",
        )
    return DeadLetterListResponse(items=items, count=len(items))


@router.get(
    f"{API_V1_PREFIX}/queues",
    response_model=QueueStatsResponse,
    summary="Queue statistics",
    description="Per-queue pending depth and weight, and task counts by state.",
)
async def queue_stats(store: StoreDep, settings: SettingsDep) -> QueueStatsResponse:
    try:
        queues = [
            QueueInfo(name=name, weight=weight, depth=await store.queue_depth(name))
            for name, weight in settings.queues.items()
        ]
        states = await store.stats()
    except BrokerUnavailableError:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="queue store unavailable",
        )
    return QueueStatsResponse(queues=queues, states=states)
