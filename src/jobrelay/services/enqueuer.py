"""Enqueue interface consumed by application code.

Usage:
    from jobrelay.services.enqueuer import create_enqueuer

    enqueuer = create_enqueuer(get_settings())
    job_id = await enqueuer.enqueue("resize_image", "long_tasks", {"image_id": 42})
    await enqueuer.close()
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

from jobrelay.db import build_session_factory, engine_from_settings
from jobrelay.services.job_store import JobStoreService
from jobrelay.services.notifier import build_notifier

if TYPE_CHECKING:
    import uuid

    from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

    from jobrelay.core.config import Settings
    from jobrelay.db.models.jobs import Job
    from jobrelay.services.notifier import Notifier

logger = logging.getLogger(__name__)


class Enqueuer:
    """Creates job records and announces them through the notifier.

    The row is committed before the notification goes out, so a subscriber
    that reacts immediately always finds it. Publishing is best effort and
    never changes the return value.

    Attributes:
        notifier: Broker or disabled notifier, resolved once at startup.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        notifier: Notifier,
        *,
        engine: AsyncEngine | None = None,
    ) -> None:
        """Initialize the enqueuer.

        Args:
            session_factory: Factory for job store sessions.
            notifier: Notifier chosen for this process.
            engine: Engine owned by the enqueuer, disposed on close().
        """
        self._session_factory = session_factory
        self.notifier = notifier
        self._engine = engine

    async def enqueue(
        self,
        job_type: str,
        queue: str,
        data: Any | None = None,
    ) -> uuid.UUID:
        """Record a job and notify workers.

        Args:
            job_type: Handler selector.
            queue: Queue name.
            data: Handler input.

        Returns:
            The new job ID.

        Raises:
            StorageUnavailableError: If the job cannot be recorded.
        """
        async with self._session_factory() as session:
            job = await self.enqueue_in(session, job_type, queue, data)
            await session.commit()

        await self.notify(job)
        return job.job_id

    async def enqueue_in(
        self,
        session: AsyncSession,
        job_type: str,
        queue: str,
        data: Any | None = None,
    ) -> Job:
        """Record a job inside a caller-owned transaction.

        Nothing is published; call notify() after committing.
        """
        return await JobStoreService(session).create(job_type, queue, data)

    async def notify(self, job: Job) -> bool:
        """Publish a job-ready notification for a committed job.

        Returns:
            True if the broker accepted the notification.
        """
        if not self.notifier.enabled:
            return False

        # kombu publishes are blocking I/O
        published = await asyncio.to_thread(self.notifier.publish, job.job_id, job.queue)
        if not published:
            logger.info(
                "Job left to polling: job_id=%s, queue=%s",
                job.job_id,
                job.queue,
            )
        return published

    async def close(self) -> None:
        """Release the broker connection and any engine owned by the enqueuer."""
        self.notifier.close()
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None


def create_enqueuer(settings: Settings) -> Enqueuer:
    """Build an Enqueuer from settings.

    The notification mode is resolved here, once; a broker that cannot be
    reached leaves the enqueuer in polling mode for the process lifetime.
    """
    engine = engine_from_settings(settings.database)
    notifier = build_notifier(settings.notification_mode, settings.broker)
    return Enqueuer(build_session_factory(engine), notifier, engine=engine)
