"""
Built-in task handlers, mostly for diagnostics and testing.

Payloads are JSON objects; an empty payload is treated as ``{}``.
"""

import asyncio
import json
import logging
from typing import Any

import httpx

from taskq.exceptions import PermanentExecutionError, TransientExecutionError
from taskq.types.task import Outcome, TaskContext
from taskq.worker.registry import HandlerRegistry

logger = logging.getLogger(__name__)


def decode_json_payload(payload: bytes) -> dict[str, Any]:
    """
    Decode a JSON object payload.

    Raises:
        PermanentExecutionError: If the payload is not a JSON object; a
            malformed payload will not get better on retry.
    """
    if not payload:
        return {}
    try:
        data = json.loads(payload)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise PermanentExecutionError(f"payload is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise PermanentExecutionError("payload must be a JSON object")
    return data


async def handle_echo(context: TaskContext, payload: bytes) -> None:
    """Log the payload and succeed."""
    logger.info(
        "Echo task executing",
        extra={"task_id": context.task_id, "payload": payload.decode("utf-8", "replace")},
    )


async def handle_sleep(context: TaskContext, payload: bytes) -> None:
    """
    Sleep for ``duration_seconds`` (default 1). Useful to exercise timeouts.
    """
    raw = decode_json_payload(payload).get("duration_seconds", 1)
    try:
        duration = float(raw)
    except (TypeError, ValueError) as e:
        raise PermanentExecutionError(f"duration_seconds must be a number, got {raw!r}") from e
    logger.info(
        "Sleep task starting",
        extra={"task_id": context.task_id, "duration": duration},
    )
    await asyncio.sleep(duration)


async def handle_fail(context: TaskContext, payload: bytes) -> Outcome:
    """
    Fail on purpose, for exercising retry and dead-letter handling.

    Payload:
    - permanent: fail permanently instead of transiently
    - succeed_on_attempt: succeed from this attempt on
    """
    data = decode_json_payload(payload)

    succeed_on = data.get("succeed_on_attempt")
    if succeed_on is not None:
        try:
            succeed_on = int(succeed_on)
        except (TypeError, ValueError) as e:
            raise PermanentExecutionError(
                f"succeed_on_attempt must be an integer, got {succeed_on!r}"
            ) from e
        if context.attempt >= succeed_on:
            return Outcome.success()

    message = f"Intentional failure on attempt {context.attempt}"
    if data.get("permanent"):
        return Outcome.permanent(message)
    return Outcome.transient(message)


async def handle_http_request(context: TaskContext, payload: bytes) -> None:
    """
    Make an HTTP request.

    Payload:
    - url: The URL to request
    - method: HTTP method (GET, POST, etc.)
    - headers: Optional headers
    - body: Optional JSON body
    """
    data = decode_json_payload(payload)
    url = data.get("url")
    if not url:
        raise PermanentExecutionError("missing 'url' in payload")

    method = data.get("method", "GET").upper()
    logger.info(
        "HTTP request task",
        extra={"task_id": context.task_id, "method": method, "url": url},
    )

    try:
        async with httpx.AsyncClient(timeout=30.0) as client:
            response = await client.request(
                method=method,
                url=url,
                headers=data.get("headers") or {},
                json=data.get("body") if method in ("POST", "PUT", "PATCH") else None,
            )
    except httpx.HTTPError as e:
        raise TransientExecutionError(f"HTTP request failed: {e}") from e

    if response.status_code >= 500 or response.status_code in (408, 429):
        raise TransientExecutionError(f"HTTP {response.status_code}")
    if response.is_error:
        raise PermanentExecutionError(f"HTTP {response.status_code}")


def register_builtin_handlers(registry: HandlerRegistry) -> HandlerRegistry:
    registry.register("echo", handle_echo)
    registry.register("sleep", handle_sleep)
    registry.register("fail", handle_fail)
    registry.register("http_request", handle_http_request)
    return registry
