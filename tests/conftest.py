"""Shared pytest fixtures: per-test SQLite database, queue and API client."""

import os
from typing import AsyncGenerator

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./linkpulse_test.db")
os.environ.setdefault("QUEUE_BACKEND", "memory")
os.environ.setdefault("JWT_SECRET", "test-secret")

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlmodel import SQLModel

from linkpulse.core import resources
from linkpulse.core.rate_limit import limiter
from linkpulse.db import session as db_session
from linkpulse.db.sqlite_adapter import SQLiteAdapter
from linkpulse.main import app
from linkpulse.queue.strategies import InMemoryQueue


@pytest_asyncio.fixture(scope="function")
async def session_maker(tmp_path, monkeypatch) -> AsyncGenerator[async_sessionmaker, None]:
    """
    Fresh SQLite file per test, wired in place of the application's session
    factory (request sessions, background tasks and units of work all use it).
    """
    database_url = f"sqlite+aiosqlite:///{tmp_path / 'linkpulse.db'}"
    engine = SQLiteAdapter(statement_timeout_ms=5000).create_engine(database_url)

    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    maker = db_session.build_session_maker(engine)
    monkeypatch.setattr(db_session, "async_session_maker", maker)

    yield maker

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def db(session_maker):
    """Plain session for arranging and inspecting rows."""
    async with session_maker() as session:
        yield session


@pytest.fixture
def event_queue() -> InMemoryQueue:
    queue = InMemoryQueue()
    resources.set_event_queue(queue)
    yield queue
    resources.set_event_queue(None)


@pytest_asyncio.fixture(scope="function")
async def client(session_maker, event_queue) -> AsyncGenerator[AsyncClient, None]:
    """
    API client over ASGITransport.

    Background tasks finish before each call returns, so tests can inspect
    tracking results right after a request.
    """
    limiter.enabled = False
    transport = ASGITransport(app=app, client=("203.0.113.10", 51000))
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    limiter.enabled = True
