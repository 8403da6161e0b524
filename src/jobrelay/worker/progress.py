"""Progress reporting for running handlers.

Each update is committed in its own session so clients polling the job
store see it while the handler is still running. Updates against a job
that already reached a terminal status are dropped.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

from jobrelay.services.job_store import JobStoreService

if TYPE_CHECKING:
    import uuid

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = logging.getLogger(__name__)


class ProgressReporter:
    """Progress callback handed to coroutine handlers.

    Attributes:
        job_id: The job being reported on.
        last_progress: Last percentage recorded by this reporter.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        job_id: uuid.UUID,
    ) -> None:
        self.job_id = job_id
        self.last_progress: int | None = None
        self._session_factory = session_factory

    async def update(self, progress: int, detail: Any | None = None) -> bool:
        """Record percentage complete and an optional partial result.

        Args:
            progress: Percentage complete, 0..100.
            detail: JSON-serializable partial result.

        Returns:
            False if the job is no longer started.
        """
        async with self._session_factory() as session:
            updated = await JobStoreService(session).update_progress(self.job_id, progress, detail)
            await session.commit()

        if updated:
            self.last_progress = progress
            logger.debug("Job progress: job_id=%s, progress=%d", self.job_id, progress)
        return updated

    def bind_sync(self, loop: asyncio.AbstractEventLoop) -> SyncProgressReporter:
        """Reporter usable from a handler running in a worker thread."""
        return SyncProgressReporter(self, loop)


class SyncProgressReporter:
    """Blocking wrapper around ProgressReporter for thread-based handlers."""

    def __init__(self, reporter: ProgressReporter, loop: asyncio.AbstractEventLoop) -> None:
        self._reporter = reporter
        self._loop = loop

    @property
    def job_id(self) -> uuid.UUID:
        return self._reporter.job_id

    def update(self, progress: int, detail: Any | None = None) -> bool:
        """Record progress from a worker thread; blocks until committed."""
        future = asyncio.run_coroutine_threadsafe(
            self._reporter.update(progress, detail),
            self._loop,
        )
        return future.result()
