"""
Database Session Management with Connection Pooling

This module handles async database connections using SQLAlchemy's async engine.
Uses a database abstraction layer to support different database backends.

Key Features:
- Database abstraction: SQLite by default, PostgreSQL by URL
- Async session management for request-scoped work (get_session)
- TrackingUnitOfWork: one transaction for device upsert, session
  resolution and event insert
"""

from types import TracebackType
from typing import AsyncGenerator, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlmodel.ext.asyncio.session import AsyncSession as SQLModelAsyncSession

from linkpulse.core.setting import settings
from linkpulse.db.interface import WRITE_INTENT_OPTION, DatabaseAdapter
from linkpulse.db.postgres_adapter import PostgreSQLAdapter
from linkpulse.db.sqlite_adapter import SQLiteAdapter


def get_database_adapter(database_url: str) -> DatabaseAdapter:
    """
    Factory function to get the database adapter for a connection string.

    Returns:
        DatabaseAdapter instance
    """
    if database_url.startswith("postgresql"):
        return PostgreSQLAdapter(
            statement_timeout_ms=settings.DB_STATEMENT_TIMEOUT_MS,
            pool_size=settings.DB_POOL_SIZE,
            max_overflow=settings.DB_MAX_OVERFLOW,
        )
    return SQLiteAdapter(statement_timeout_ms=settings.DB_STATEMENT_TIMEOUT_MS)


def build_session_maker(engine) -> async_sessionmaker:
    return async_sessionmaker(
        engine,
        class_=SQLModelAsyncSession,
        expire_on_commit=False,  # Prevents SQLAlchemy from expiring objects after commit
        autoflush=False,
    )


db_adapter = get_database_adapter(settings.DATABASE_URL)

engine = db_adapter.create_engine(settings.DATABASE_URL)

async_session_maker = build_session_maker(engine)


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Dependency function for FastAPI to get database session.

    - Commits on success
    - Rolls back on exception
    - Closes session automatically (context manager handles it)
    """
    async with async_session_maker() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


class TrackingUnitOfWork:
    """
    One transaction spanning the identity + session + event writes of a
    single request.

    Usage:
        async with TrackingUnitOfWork() as uow:
            device = await DeviceService(uow.session).upsert_device(...)
            ...
        # committed here, rolled back if the block raised

    The session factory is looked up at construction time so tests can swap
    the module-level async_session_maker.

    On SQLite the transaction starts with BEGIN IMMEDIATE, so concurrent units
    of work queue on the busy timeout instead of failing with SQLITE_BUSY.
    """

    def __init__(self, session_factory: Optional[async_sessionmaker] = None):
        self._session_factory = session_factory or async_session_maker
        self.session: Optional[AsyncSession] = None

    async def __aenter__(self) -> "TrackingUnitOfWork":
        self.session = self._session_factory()
        try:
            await self.session.begin()
            # Bind the connection now so the transaction opens with write intent
            await self.session.connection(execution_options={WRITE_INTENT_OPTION: True})
        except Exception:
            await self.session.close()
            raise
        return self

    async def __aexit__(
        self,
        exc_type: Optional[type[BaseException]],
        exc: Optional[BaseException],
        traceback: Optional[TracebackType],
    ) -> None:
        try:
            if exc_type is None:
                await self.session.commit()
            else:
                await self.session.rollback()
        finally:
            await self.session.close()
