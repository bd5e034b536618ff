"""
Pytest configuration and fixtures
"""

import os

# Settings are read at import time; keep the suite off external services
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ["PACING_DELAY_MS"] = "0"
os.environ.pop("ADMIN_API_KEY", None)

from typing import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import NullPool

from core.database import configure_sqlite
from ingestion.checkpoint_store import CheckpointStore
from ingestion.runner import SyncRunner
from ingestion.state_machine import RunStateMachine
from models.base import Base


def sqlite_url(tmp_path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'sync_test.db'}"


@pytest_asyncio.fixture(scope="function")
async def test_engine(tmp_path):
    """Create test database engine (file-backed so concurrent sessions share it)"""
    engine = create_async_engine(
        sqlite_url(tmp_path),
        echo=False,
        poolclass=NullPool,  # Every session gets its own connection
    )
    configure_sqlite(engine)

    # Create all tables
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    # Drop all tables after test
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine) -> async_sessionmaker:
    return async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create database session for tests"""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def store(session_factory) -> CheckpointStore:
    return CheckpointStore(session_factory)


@pytest.fixture
def state(store) -> RunStateMachine:
    return RunStateMachine(store)


@pytest_asyncio.fixture(scope="function")
async def runner(session_factory):
    """Runner with fast timings; tasks still running at teardown are stopped"""
    sync_runner = SyncRunner(
        session_factory,
        chunk_timeout=5.0,
        max_consecutive_failures=3,
        transient_retries=1,
        retry_delay=0.0,
        pacing_delay=0.0,
    )
    yield sync_runner
    await sync_runner.shutdown()

