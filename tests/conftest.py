"""Pytest configuration and shared fixtures.

Database-backed tests run against a temporary SQLite file through
aiosqlite, created from the model metadata. Set TEST_DATABASE_URL to run
them against PostgreSQL instead (the schema is created and dropped per
test).

Broker-backed tests use kombu's in-process memory transport.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import AsyncGenerator, Awaitable, Callable
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from jobrelay.db import build_engine, build_session_factory, create_schema
from jobrelay.db.models import Base
from jobrelay.services.job_store import JobStoreService
from jobrelay.worker.registry import HandlerRegistry


# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
def database_url(tmp_path) -> str:
    """Test database URL: TEST_DATABASE_URL or a fresh SQLite file."""
    return os.environ.get("TEST_DATABASE_URL", f"sqlite:///{tmp_path / 'jobrelay.db'}")


@pytest.fixture
async def engine(database_url: str) -> AsyncGenerator[AsyncEngine, None]:
    """Async engine with the jobs table created."""
    engine = build_engine(database_url)
    await create_schema(engine)
    yield engine
    if not database_url.startswith("sqlite"):
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the test engine."""
    return build_session_factory(engine)


@pytest.fixture
def create_job(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[..., Awaitable[uuid.UUID]]:
    """Insert and commit a 'new' job, returning its ID."""

    async def _create(
        job_type: str = "resize_image",
        queue: str = "default",
        data: dict[str, Any] | None = None,
    ) -> uuid.UUID:
        async with session_factory() as session:
            job = await JobStoreService(session).create(job_type, queue, data)
            await session.commit()
            return job.job_id

    return _create


@pytest.fixture
def get_job(session_factory: async_sessionmaker[AsyncSession]):
    """Load a job in a fresh session."""

    async def _get(job_id: uuid.UUID):
        async with session_factory() as session:
            return await JobStoreService(session).get(job_id)

    return _get


@pytest.fixture
def wait_for_status(get_job):
    """Poll the store until a job reaches one of the given statuses."""

    async def _wait(job_id: uuid.UUID, *statuses, timeout: float = 10.0):
        deadline = asyncio.get_running_loop().time() + timeout
        while True:
            job = await get_job(job_id)
            if job.status in statuses:
                return job
            if asyncio.get_running_loop().time() > deadline:
                pytest.fail(f"Job {job_id} stuck in {job.status.value}")
            await asyncio.sleep(0.05)

    return _wait


# ---------------------------------------------------------------------------
# Mock session fixtures (unit tests without a database)
# ---------------------------------------------------------------------------
@pytest.fixture
def mock_session() -> AsyncMock:
    """Mock AsyncSession for service unit tests."""
    session = AsyncMock()
    session.add = MagicMock()
    return session


@pytest.fixture
def mock_session_factory(mock_session: AsyncMock) -> MagicMock:
    """Session factory whose context manager yields mock_session."""
    factory = MagicMock()
    factory.return_value.__aenter__ = AsyncMock(return_value=mock_session)
    factory.return_value.__aexit__ = AsyncMock(return_value=None)
    return factory


# ---------------------------------------------------------------------------
# Handler fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
def registry() -> HandlerRegistry:
    """Registry with a resize_image handler that reports progress."""
    registry = HandlerRegistry()

    @registry.handler("resize_image")
    async def resize_image(data, progress):
        await progress.update(50, {"stage": "decoded"})
        return {"width": data.get("width", 100) // 2}

    return registry
