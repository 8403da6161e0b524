"""Stale-claim reclamation.

A worker that crashes mid-job leaves its row in 'started' forever. When a
staleness window is configured, the reaper requeues started jobs whose
row has not been written (claim or progress update) for longer than the
window. Handlers that run longer than the window must report progress to
keep their claim.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from jobrelay.services.job_store import JobStoreService

if TYPE_CHECKING:
    import uuid

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = logging.getLogger(__name__)


class Reaper:
    """Requeues stale claims.

    Attributes:
        staleness_seconds: Seconds without a write before a claim is stale.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        staleness_seconds: int,
    ) -> None:
        if staleness_seconds <= 0:
            msg = "staleness_seconds must be positive"
            raise ValueError(msg)
        self.staleness_seconds = staleness_seconds
        self._session_factory = session_factory

    async def run_once(self) -> list[uuid.UUID]:
        """Requeue every stale claim and commit.

        Returns:
            IDs of the requeued jobs.
        """
        async with self._session_factory() as session:
            reclaimed = await JobStoreService(session).reclaim_stale(self.staleness_seconds)
            await session.commit()

        if reclaimed:
            logger.warning(
                "Reclaimed %d stale jobs (staleness_seconds=%d)",
                len(reclaimed),
                self.staleness_seconds,
            )
        return reclaimed
