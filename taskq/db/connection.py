"""
Database connection management.
Handles async SQLAlchemy engine and session creation.
"""

import asyncio
import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager, nullcontext

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from taskq.db.models import Base

logger = logging.getLogger(__name__)


def create_engine_for_url(
    database_url: str,
    pool_size: int = 10,
    max_overflow: int = 20,
    echo: bool = False,
) -> AsyncEngine:
    """
    Create an async engine suited to the database URL.

    SQLite (used for tests and local runs) gets a single shared connection
    so an in-memory database is visible to every session.
    """
    if database_url.startswith("sqlite"):
        return create_async_engine(
            database_url,
            echo=echo,
            poolclass=StaticPool,
        )

    return create_async_engine(
        database_url,
        pool_size=pool_size,
        max_overflow=max_overflow,
        echo=echo,
        pool_pre_ping=True,
    )


class Database:
    """
    Owns one engine and its session factory.
    """

    def __init__(self, engine: AsyncEngine):
        self.engine = engine
        self.session_factory = async_sessionmaker(
            bind=engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
        # Sessions on SQLite share one connection, so transactions must not interleave
        self._sqlite_lock = asyncio.Lock() if engine.dialect.name == "sqlite" else None

    @classmethod
    def from_url(cls, database_url: str, **engine_kwargs) -> "Database":
        return cls(create_engine_for_url(database_url, **engine_kwargs))

    async def create_all(self) -> None:
        """Create tables that do not exist yet (tests and local runs)."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables ensured")

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession]:
        """
        Transactional session scope: commits on success, rolls back on error.
        """
        async with self._sqlite_lock or nullcontext(), self.session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def dispose(self) -> None:
        await self.engine.dispose()
        logger.info("Database connection closed")
