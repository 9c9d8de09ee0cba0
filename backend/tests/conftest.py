"""Pytest configuration and fixtures for async testing."""
from pathlib import Path
from typing import Any, AsyncGenerator

import httpx
import pytest
import pytest_asyncio
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine

from webhook_delivery.database import SessionFactory, build_session_factory
from webhook_delivery.models import Base

from tests.utils.fakes import Clock, FakeRedis, RecordingTransport


@pytest_asyncio.fixture(scope="function")
async def test_engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    """
    Create a SQLite engine backed by a temporary file.

    Every transaction starts with ``BEGIN IMMEDIATE`` so concurrent sessions
    serialize on the write lock, which is what queue claims rely on when the
    database has no row locks.

    Yields:
        AsyncEngine: Engine with all tables created
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'webhooks.db'}",
        connect_args={"timeout": 30},
    )

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection: Any, connection_record: Any) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn: Any) -> None:
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture(scope="function")
def session_factory(test_engine: AsyncEngine) -> SessionFactory:
    """Session factory bound to the test engine."""
    return build_session_factory(test_engine)


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory: SessionFactory) -> AsyncGenerator[AsyncSession, None]:
    """
    Create a database session for each test.

    Yields:
        AsyncSession: Database session for testing
    """
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture(scope="function")
def clock() -> Clock:
    """Manually advanced clock."""
    return Clock()


@pytest.fixture(scope="function")
def fake_redis(clock: Clock) -> FakeRedis:
    """In-memory Redis sharing the test clock."""
    return FakeRedis(clock=clock)


@pytest.fixture(scope="function")
def transport() -> RecordingTransport:
    """Transport answering 200 OK."""
    return RecordingTransport()


@pytest_asyncio.fixture(scope="function")
async def http_client(transport: RecordingTransport) -> AsyncGenerator[httpx.AsyncClient, None]:
    """HTTP client routed through the recording transport."""
    async with httpx.AsyncClient(transport=transport) as client:
        yield client
