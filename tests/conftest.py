"""
Pytest configuration and shared fixtures.
"""

from collections.abc import AsyncGenerator, Callable
from typing import Any

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from prometheus_client import CollectorRegistry

from taskq.api.main import create_app
from taskq.config import Settings
from taskq.db.connection import Database
from taskq.handlers import build_default_registry
from taskq.handlers.builtin import register_builtin_handlers
from taskq.observability.metrics import MetricsCollector
from taskq.producer import Producer
from taskq.store.memory import InMemoryQueueStore
from taskq.store.sql import SqlQueueStore
from taskq.worker.main import Scheduler
from taskq.worker.registry import HandlerRegistry
from taskq.worker.retry import RetryPolicy

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

TEST_QUEUES = {"critical": 6, "default": 3, "low": 1}


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    """Create test settings."""
    return Settings(
        store_backend="memory",
        database_url=TEST_DATABASE_URL,
        api_embedded_worker=False,
        queues=dict(TEST_QUEUES),
        log_level="DEBUG",
        log_format="console",
        worker_concurrency=2,
        worker_poll_interval_seconds=0.01,
        worker_heartbeat_interval_seconds=0.05,
        reaper_interval_seconds=0.05,
        backoff_base_seconds=0,
        broker_retry_attempts=2,
        broker_retry_max_seconds=0.01,
        video_work_dir=str(tmp_path / "video"),
        video_static_dir=str(tmp_path / "video" / "static"),
    )


@pytest.fixture
def metrics() -> MetricsCollector:
    """Metrics collector on a private registry so tests do not share counters."""
    return MetricsCollector(CollectorRegistry())


@pytest.fixture
def memory_store(metrics: MetricsCollector) -> InMemoryQueueStore:
    return InMemoryQueueStore(metrics)


@pytest_asyncio.fixture
async def sql_store(metrics: MetricsCollector) -> AsyncGenerator[SqlQueueStore]:
    """SQL store on a fresh in-memory SQLite database."""
    database = Database.from_url(TEST_DATABASE_URL)
    await database.create_all()
    store = SqlQueueStore(database, metrics)

    yield store

    await store.close()


@pytest.fixture
def registry() -> HandlerRegistry:
    """Registry with the built-in handlers."""
    return register_builtin_handlers(HandlerRegistry())


@pytest.fixture
def producer(memory_store: InMemoryQueueStore, metrics: MetricsCollector) -> Producer:
    """Producer without a registry: unknown types are accepted at enqueue."""
    return Producer(memory_store, queues=TEST_QUEUES, metrics=metrics)


@pytest.fixture
def make_scheduler(
    memory_store: InMemoryQueueStore,
    registry: HandlerRegistry,
    metrics: MetricsCollector,
) -> Callable[..., Scheduler]:
    """
    Build a scheduler with fast timings and zero backoff.

    Keyword arguments override the defaults.
    """

    def factory(**overrides: Any) -> Scheduler:
        options: dict[str, Any] = {
            "store": memory_store,
            "registry": registry,
            "queues": TEST_QUEUES,
            "concurrency": 1,
            "retry_policy": RetryPolicy(backoff_base=0, backoff_max=0),
            "worker_id": "test-worker",
            "poll_interval": 0.01,
            "lease_margin": 1.0,
            "heartbeat_interval": 0.05,
            "broker_retry_attempts": 3,
            "broker_retry_max_seconds": 0.01,
            "metrics": metrics,
        }
        options.update(overrides)
        store = options.pop("store")
        registry_ = options.pop("registry")
        return Scheduler(store, registry_, **options)

    return factory


@pytest.fixture
def app(
    test_settings: Settings,
    memory_store: InMemoryQueueStore,
    metrics: MetricsCollector,
) -> FastAPI:
    """FastAPI app wired to the in-memory store with the default handlers."""
    return create_app(
        settings=test_settings,
        store=memory_store,
        registry=build_default_registry(test_settings),
        metrics=metrics,
    )


@pytest_asyncio.fixture
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient]:
    """Create an async HTTP client for testing."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
def read_metric(metrics: MetricsCollector) -> Callable[..., float]:
    """Read a sample from the test collector, 0 when never observed."""

    def read(name: str, **labels: str) -> float:
        return metrics._registry.get_sample_value(name, labels) or 0.0

    return read
