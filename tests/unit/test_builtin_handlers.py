"""
Unit tests for the built-in task handlers.
"""

import json
from datetime import datetime, timezone

import httpx
import pytest

from taskq.constants import OutcomeKind
from taskq.exceptions import PermanentExecutionError, TransientExecutionError
from taskq.handlers import builtin
from taskq.handlers.builtin import (
    decode_json_payload,
    handle_echo,
    handle_fail,
    handle_http_request,
    handle_sleep,
    register_builtin_handlers,
)
from taskq.types.task import TaskContext
from taskq.worker.registry import HandlerRegistry


def make_context(attempt: int = 1) -> TaskContext:
    return TaskContext(
        task_id="task-1",
        task_type="test",
        queue="default",
        attempt=attempt,
        max_retries=2,
        worker_id="test-worker/0",
        lease_deadline=datetime.now(timezone.utc),
    )


@pytest.fixture
def mock_http(monkeypatch):
    """Route httpx.AsyncClient in the builtin handlers through a MockTransport."""
    real_client = httpx.AsyncClient

    def install(handler):
        def factory(**kwargs):
            return real_client(transport=httpx.MockTransport(handler), **kwargs)

        monkeypatch.setattr(builtin.httpx, "AsyncClient", factory)

    return install


class TestDecodeJsonPayload:

    def test_empty_payload(self):
        assert decode_json_payload(b"") == {}

    def test_object(self):
        assert decode_json_payload(b'{"a": 1}') == {"a": 1}

    def test_invalid_json_is_permanent(self):
        """Test malformed JSON is a permanent failure."""
        with pytest.raises(PermanentExecutionError):
            decode_json_payload(b"{not json")

    def test_non_object_is_permanent(self):
        with pytest.raises(PermanentExecutionError):
            decode_json_payload(b"[1, 2]")


class TestBuiltinHandlers:
    """Tests for the diagnostic handlers."""

    def test_register_builtin_handlers(self):
        """Test all built-in types are registered."""
        registry = register_builtin_handlers(HandlerRegistry())

        assert set(registry.types()) == {"echo", "sleep", "fail", "http_request"}

    @pytest.mark.asyncio
    async def test_echo(self):
        assert await handle_echo(make_context(), b"hello") is None

    @pytest.mark.asyncio
    async def test_sleep(self):
        assert await handle_sleep(make_context(), b'{"duration_seconds": 0.01}') is None

    @pytest.mark.asyncio
    async def test_fail_transient_by_default(self):
        """Test the fail handler fails transiently."""
        outcome = await handle_fail(make_context(), b"")

        assert outcome.kind is OutcomeKind.TRANSIENT
        assert "attempt 1" in outcome.error

    @pytest.mark.asyncio
    async def test_fail_permanent(self):
        outcome = await handle_fail(make_context(), b'{"permanent": true}')

        assert outcome.kind is OutcomeKind.PERMANENT

    @pytest.mark.asyncio
    async def test_sleep_malformed_duration_is_permanent(self):
        """Test a duration that is not a number fails permanently."""
        with pytest.raises(PermanentExecutionError):
            await handle_sleep(make_context(), b'{"duration_seconds": "soon"}')

        with pytest.raises(PermanentExecutionError):
            await handle_sleep(make_context(), b'{"duration_seconds": [1]}')

    @pytest.mark.asyncio
    @pytest.mark.parametrize("value", ["second", {"n": 2}, [2]])
    async def test_fail_malformed_succeed_on_attempt_is_permanent(self, value):
        payload = json.dumps({"succeed_on_attempt": value}).encode()

        with pytest.raises(PermanentExecutionError):
            await handle_fail(make_context(), payload)

    @pytest.mark.asyncio
    async def test_fail_succeeds_on_attempt(self):
        """Test succeed_on_attempt turns later attempts into successes."""
        payload = json.dumps({"succeed_on_attempt": 2}).encode()

        assert (await handle_fail(make_context(attempt=1), payload)).is_success is False
        assert (await handle_fail(make_context(attempt=2), payload)).is_success is True


class TestHttpRequestHandler:
    """Tests for the http_request handler classification."""

    @pytest.mark.asyncio
    async def test_success(self, mock_http):
        """Test a 2xx response succeeds and the body is forwarded."""
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["method"] = request.method
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"ok": True})

        mock_http(handler)
        payload = json.dumps(
            {"url": "http://svc.test/hook", "method": "post", "body": {"a": 1}}
        ).encode()

        await handle_http_request(make_context(), payload)

        assert seen == {"method": "POST", "body": {"a": 1}}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status_code", [500, 503, 408, 429])
    async def test_retryable_status_is_transient(self, mock_http, status_code):
        mock_http(lambda request: httpx.Response(status_code))

        with pytest.raises(TransientExecutionError):
            await handle_http_request(make_context(), b'{"url": "http://svc.test/"}')

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status_code", [400, 404, 422])
    async def test_client_error_is_permanent(self, mock_http, status_code):
        mock_http(lambda request: httpx.Response(status_code))

        with pytest.raises(PermanentExecutionError):
            await handle_http_request(make_context(), b'{"url": "http://svc.test/"}')

    @pytest.mark.asyncio
    async def test_connection_error_is_transient(self, mock_http):
        """Test network failures are transient."""

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        mock_http(handler)

        with pytest.raises(TransientExecutionError):
            await handle_http_request(make_context(), b'{"url": "http://svc.test/"}')

    @pytest.mark.asyncio
    async def test_missing_url_is_permanent(self):
        with pytest.raises(PermanentExecutionError):
            await handle_http_request(make_context(), b"{}")
