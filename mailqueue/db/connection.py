"""
Database connection management.
Handles async SQLAlchemy engine and session creation.
"""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy.engine import make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from mailqueue.config import Settings
from mailqueue.db.models import Base
from mailqueue.errors import StoreError

logger = logging.getLogger(__name__)


def create_engine_from_settings(settings: Settings) -> AsyncEngine:
    """
    Create the async database engine.

    SQLite URLs get a NullPool since pool sizing does not apply to them.

    Args:
        settings: Application settings.

    Returns:
        AsyncEngine: The SQLAlchemy async engine instance.
    """
    url = make_url(settings.database_url)
    if url.get_backend_name() == "sqlite":
        return create_async_engine(
            url,
            poolclass=NullPool,
            echo=settings.log_level == "DEBUG",
        )

    return create_async_engine(
        url,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
        echo=settings.log_level == "DEBUG",
        pool_pre_ping=True,
    )


class Database:
    """
    Owns the engine and session factory for one process.

    Built once at startup and passed to the repositories' callers, so every
    component shares the same pool without module-level globals.
    """

    def __init__(self, engine: AsyncEngine):
        self.engine = engine
        self._session_factory = async_sessionmaker(
            bind=engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "Database":
        """Create a database handle from application settings."""
        database = cls(create_engine_from_settings(settings))
        logger.info("Database connection initialized")
        return database

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession]:
        """
        Transactional session scope.

        Commits on success. On a persistence failure the transaction is
        rolled back and the error is re-raised as StoreError.

        Yields:
            AsyncSession: An async database session.
        """
        async with self._session_factory() as session:
            try:
                yield session
                await session.commit()
            except SQLAlchemyError as e:
                await session.rollback()
                raise StoreError(str(e)) from e
            except BaseException:
                await session.rollback()
                raise

    async def ping(self) -> None:
        """
        Check that the database is reachable.

        Raises:
            StoreError: If a connection cannot be established.
        """
        try:
            async with self.engine.connect() as conn:
                await conn.exec_driver_sql("SELECT 1")
        except (SQLAlchemyError, OSError) as e:
            raise StoreError(f"Database unreachable: {e}") from e

    async def create_all(self) -> None:
        """Create all tables (local development and tests; production uses alembic)."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def drop_all(self) -> None:
        """Drop all tables."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)

    async def dispose(self) -> None:
        """Close the database connection pool."""
        await self.engine.dispose()
        logger.info("Database connection closed")
