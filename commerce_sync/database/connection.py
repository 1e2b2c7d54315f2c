"""Database connection and session management."""
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

import structlog
from fastapi import Request
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from commerce_sync.database.models import Base

logger = structlog.get_logger(__name__)


class Database:
    """
    Explicitly constructed engine + session factory.

    One instance is created at process start, passed to every component that
    needs persistence, and disposed at shutdown.
    """

    def __init__(
        self,
        url: str,
        echo: bool = False,
        pool_size: Optional[int] = None,
        max_overflow: Optional[int] = None,
        **engine_kwargs: Any,
    ):
        """
        Initialize the engine.

        Args:
            url: SQLAlchemy async database URL
            echo: Echo SQL queries
            pool_size: Connection pool size (ignored for SQLite)
            max_overflow: Max pool overflow (ignored for SQLite)
            **engine_kwargs: Extra create_async_engine arguments
        """
        kwargs: Dict[str, Any] = {"echo": echo, "pool_pre_ping": True}
        if not url.startswith("sqlite"):
            kwargs["pool_recycle"] = 3600  # Recycle connections after 1 hour
            if pool_size is not None:
                kwargs["pool_size"] = pool_size
            if max_overflow is not None:
                kwargs["max_overflow"] = max_overflow
        kwargs.update(engine_kwargs)

        self.url = url
        self.engine: AsyncEngine = create_async_engine(url, **kwargs)
        self.session_factory: async_sessionmaker[AsyncSession] = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    @classmethod
    def from_settings(cls, settings: Any) -> "Database":
        return cls(
            settings.database_url,
            echo=settings.database_echo,
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
        )

    def session(self) -> AsyncSession:
        """Open a new session. Callers own its transaction."""
        return self.session_factory()

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator[AsyncSession, Any]:
        """
        Session scoped to one transaction: commit on success, rollback on error.

        Example:
            async with database.transaction() as db:
                db.add(order)
        """
        async with self.session_factory() as session:
            try:
                yield session
                await session.commit()
            except BaseException:
                await session.rollback()
                raise

    async def create_all(self) -> None:
        """
        Initialize database tables.

        Creates all tables defined in models if they don't exist.
        """
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("database_tables_created")

    async def drop_all(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)

    async def dispose(self) -> None:
        """Close database connections and dispose of the engine."""
        await self.engine.dispose()
        logger.info("database_connections_closed")


async def get_db(request: Request) -> AsyncGenerator[AsyncSession, Any]:
    """
    Dependency for getting database sessions.

    Yields:
        AsyncSession: Database session

    Example:
        @router.get("/sync/{channel}/status")
        async def status(db: AsyncSession = Depends(get_db)):
            ...
    """
    database: Database = request.app.state.services.database
    async with database.session() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
