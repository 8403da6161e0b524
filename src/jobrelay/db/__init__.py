"""jobrelay database module.

- SQLAlchemy 2.x async engine and session factory construction
- Alembic migration configuration (db/migrations)
- Connection pooling via psycopg (PostgreSQL) or aiosqlite (SQLite)
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from jobrelay.db.models import Base

if TYPE_CHECKING:
    from jobrelay.core.config import DatabaseSettings


def normalize_database_url(url: str) -> str:
    """Rewrite a plain database URL to use an async driver.

    Args:
        url: postgresql://, postgres:// or sqlite:// URL, with or without driver.

    Returns:
        URL using postgresql+psycopg or sqlite+aiosqlite.
    """
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+psycopg://", 1)
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+psycopg://", 1)
    if url.startswith("sqlite://"):
        return url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    return url


def _enable_sqlite_immediate_transactions(engine: AsyncEngine) -> None:
    """Make every SQLite transaction take the write lock at BEGIN.

    SQLite upgrades deferred transactions lazily and may then fail with
    'database is locked' instead of waiting. BEGIN IMMEDIATE makes
    concurrent claimers queue on the busy timeout.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection: Any, _connection_record: Any) -> None:
        # Stop the driver from emitting its own BEGIN
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn: Any) -> None:
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def build_engine(
    url: str,
    *,
    pool_size: int = 5,
    max_overflow: int = 10,
    pool_timeout: int = 30,
    echo: bool = False,
) -> AsyncEngine:
    """Create an async engine for the job store.

    Args:
        url: Database URL (driver is added when missing).
        pool_size: Connection pool size (ignored for SQLite).
        max_overflow: Overflow connections (ignored for SQLite).
        pool_timeout: Seconds to wait for a pooled connection (ignored for SQLite).
        echo: Enable SQL statement logging.

    Returns:
        Configured AsyncEngine.
    """
    url = normalize_database_url(url)

    if url.startswith("sqlite"):
        engine = create_async_engine(url, echo=echo)
        _enable_sqlite_immediate_transactions(engine)
        return engine

    return create_async_engine(
        url,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_timeout=pool_timeout,
        pool_pre_ping=True,
        echo=echo,
    )


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory used by the enqueuer, worker, and progress reporter."""
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


def engine_from_settings(settings: DatabaseSettings) -> AsyncEngine:
    """Create an engine from DatabaseSettings."""
    return build_engine(
        settings.url,
        pool_size=settings.pool_size,
        max_overflow=settings.max_overflow,
        pool_timeout=settings.pool_timeout,
        echo=settings.echo,
    )


async def create_schema(engine: AsyncEngine) -> None:
    """Create the jobs table directly from model metadata.

    Production databases are migrated with Alembic; this is meant for
    development databases and tests.
    """
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

