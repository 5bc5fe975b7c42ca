"""
Database Session Factory
Creates async SQLAlchemy sessions with proper configuration
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from inboxflow.shared.infrastructure.database.base_model import Base
from inboxflow.shared.infrastructure.observability.logger import get_logger

logger = get_logger(__name__)


def _engine_kwargs(database_url: str, pool_size: int, max_overflow: int) -> dict[str, Any]:
    if database_url.startswith("sqlite"):
        kwargs: dict[str, Any] = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in database_url or database_url.rstrip("/").endswith("sqlite+aiosqlite:"):
            # one shared connection so every session sees the same in-memory database
            kwargs["poolclass"] = StaticPool
        return kwargs
    return {
        "pool_size": pool_size,
        "max_overflow": max_overflow,
        "pool_pre_ping": True,
        "pool_recycle": 3600,
    }


class DatabaseSessionFactory:
    """
    Factory for creating async database sessions.

    Manages the async engine and session maker. Workers open one session per
    unit of work through ``session()``; ``transaction()`` additionally
    commits on success and rolls back on error.
    """

    def __init__(self, database_url: str, echo: bool = False, pool_size: int = 5, max_overflow: int = 10) -> None:
        self.database_url = database_url
        self.echo = echo

        self.engine: AsyncEngine = create_async_engine(
            database_url,
            echo=echo,
            **_engine_kwargs(database_url, pool_size, max_overflow),
        )

        self.session_factory: async_sessionmaker[AsyncSession] = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,  # Don't expire objects after commit
            autoflush=False,  # Manual flushing for better control
        )

        logger.info(
            "database_session_factory_initialized",
            backend=self.engine.dialect.name,
            pool_size=pool_size,
        )

    def session(self) -> AsyncSession:
        """Create a new async session (caller owns commit/close)."""
        return self.session_factory()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        """
        One session, one transaction.

        Usage:
            async with factory.transaction() as session:
                session.add(row)
        """
        async with self.session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception as e:
                await session.rollback()
                logger.warning("session_rolled_back", error=str(e))
                raise

    async def create_all(self) -> None:
        """Create tables from the ORM metadata (local runs and tests; production uses Alembic)."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self) -> None:
        """Close all connections and dispose of the engine."""
        await self.engine.dispose()
        logger.info("database_engine_disposed")
