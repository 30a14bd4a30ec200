"""
Queue store implementations.
"""

from taskq.config import Settings
from taskq.db.connection import Database
from taskq.observability.metrics import MetricsCollector
from taskq.observability.tracing import instrument_sqlalchemy
from taskq.store.base import QueueStore
from taskq.store.memory import InMemoryQueueStore
from taskq.store.sql import SqlQueueStore


async def create_store(settings: Settings, metrics: MetricsCollector | None = None) -> QueueStore:
    """
    Build the queue store selected by ``settings.store_backend``.
    """
    if settings.store_backend == "sql":
        database = Database.from_url(
            settings.database_url,
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
        )
        if settings.tracing_enabled:
            instrument_sqlalchemy(database.engine.sync_engine)
        await database.create_all()
        return SqlQueueStore(database, metrics)
    return InMemoryQueueStore(metrics)


__all__ = [
    "QueueStore",
    "InMemoryQueueStore",
    "SqlQueueStore",
    "create_store",
]
