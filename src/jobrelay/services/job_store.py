"""Durable job store service.

The jobs table is the sole source of truth for job existence and terminal
state. This service owns every status transition:

- create: insert a job with status 'new'
- claim_next: atomically move the oldest 'new' job of a queue to 'started'
- update_progress: record percentage complete while 'started'
- finish / fail: move 'started' to a terminal status, exactly once
- requeue / reclaim_stale: administrative reset back to 'new'

Claiming is a single conditional UPDATE guarded on status='new', with the
candidate row picked by a SELECT ... FOR UPDATE SKIP LOCKED subquery on
PostgreSQL. Concurrent claimers can never both win the same row.

The caller owns the transaction: every method flushes, none commits.

Usage:
    from jobrelay.services.job_store import JobStoreService

    async with session_factory() as session:
        store = JobStoreService(session)
        job = await store.claim_next("default", "worker-1")
        await session.commit()
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError

from jobrelay.db.models.base import JobStatus, transition_sources, utcnow
from jobrelay.db.models.jobs import Job

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


class JobStoreError(Exception):
    """Base exception for job store operations."""


class JobNotFoundError(JobStoreError):
    """Raised when a job cannot be found."""


class InvalidTransitionError(JobStoreError):
    """Raised when a status change would break the job state machine.

    Seeing this in normal processing means a logic bug upstream, e.g. a
    worker finishing a job another worker already failed.
    """


class StorageUnavailableError(JobStoreError):
    """Raised when the database cannot be reached or rejects a statement.

    Fatal to the worker: the dispatch loop stops instead of spinning on a
    dead store.
    """


class JobStatusView(BaseModel):
    """Client-facing snapshot of a job.

    progress and result are reported only once the job has started.
    """

    model_config = ConfigDict(frozen=True)

    job_id: uuid.UUID = Field(..., description="Job identifier")
    job_type: str = Field(..., description="Handler selector")
    queue: str = Field(..., description="Queue the job was enqueued on")
    status: JobStatus = Field(..., description="Current status")
    progress: int | None = Field(None, description="Percentage complete (0..100)")
    progress_detail: Any | None = Field(None, description="Partial result reported with progress")
    result: Any | None = Field(None, description="Handler output (finished jobs)")
    message: str | None = Field(None, description="Failure detail (failed jobs)")
    claimed_by: str | None = Field(None, description="Worker holding the claim")
    retry_count: int = Field(0, description="Number of administrative requeues")
    enqueued_at: datetime | None = Field(None, description="When the job was created")
    started_at: datetime | None = Field(None, description="When a worker claimed the job")
    ended_at: datetime | None = Field(None, description="When the job reached a terminal status")

    @classmethod
    def from_job(cls, job: Job) -> JobStatusView:
        """Build the view from a Job row."""
        started = job.status != JobStatus.NEW
        return cls(
            job_id=job.job_id,
            job_type=job.job_type,
            queue=job.queue,
            status=job.status,
            progress=job.progress if started else None,
            progress_detail=job.progress_detail_json if started else None,
            result=job.result_json if job.status == JobStatus.FINISHED else None,
            message=job.message if job.status == JobStatus.FAILED else None,
            claimed_by=job.claimed_by,
            retry_count=job.retry_count,
            enqueued_at=job.enqueued_at,
            started_at=job.started_at,
            ended_at=job.ended_at,
        )

    @property
    def result_or_message(self) -> Any | None:
        """The terminal outcome, whichever side applies."""
        return self.message if self.status == JobStatus.FAILED else self.result


class JobStoreService:
    """Job store backed by a SQLAlchemy async session.

    Attributes:
        session: SQLAlchemy async session for database operations.
    """

    def __init__(self, session: AsyncSession) -> None:
        """Initialize the job store service.

        Args:
            session: SQLAlchemy async session for database operations.
        """
        self.session = session

    async def create(
        self,
        job_type: str,
        queue: str,
        data: Any | None = None,
    ) -> Job:
        """Insert a new job.

        Args:
            job_type: Handler selector.
            queue: Queue name.
            data: Handler input.

        Returns:
            The created Job with status 'new'.

        Raises:
            StorageUnavailableError: If the insert fails.
        """
        now = utcnow()
        job = Job(
            job_type=job_type,
            queue=queue,
            status=JobStatus.NEW,
            data_json=data,
            enqueued_at=now,
            updated_at=now,
        )

        try:
            self.session.add(job)
            await self.session.flush()
        except SQLAlchemyError as e:
            logger.error("Failed to create job: job_type=%s, queue=%s: %s", job_type, queue, e)
            raise StorageUnavailableError(f"Failed to create job: {e}") from e

        logger.info(
            "Job created: job_id=%s, job_type=%s, queue=%s",
            job.job_id,
            job_type,
            queue,
        )
        return job

    async def claim_next(self, queue: str, worker_id: str) -> Job | None:
        """Claim the oldest 'new' job of a queue.

        The candidate is picked by enqueued_at (FIFO, best effort across
        workers) and claimed with a compare-and-swap on status='new'. When
        another worker wins the race the update matches no row and None is
        returned.

        Args:
            queue: Queue to claim from.
            worker_id: Identifier recorded in claimed_by.

        Returns:
            The claimed Job, or None if nothing was claimable.

        Raises:
            StorageUnavailableError: If the claim statement fails.
        """
        now = utcnow()

        # FOR UPDATE SKIP LOCKED renders on PostgreSQL and is dropped on SQLite
        candidate = (
            select(Job.job_id)
            .where(Job.queue == queue, Job.status == JobStatus.NEW)
            .order_by(Job.enqueued_at, Job.job_id)
            .limit(1)
            .with_for_update(skip_locked=True)
            .scalar_subquery()
        )
        stmt = (
            update(Job)
            .where(Job.job_id == candidate, Job.status == JobStatus.NEW)
            .values(
                status=JobStatus.STARTED,
                claimed_by=worker_id,
                started_at=now,
                updated_at=now,
            )
            .returning(Job.job_id)
            .execution_options(synchronize_session=False)
        )

        try:
            result = await self.session.execute(stmt)
            job_id = result.scalar_one_or_none()
            if job_id is None:
                return None
            job = await self.session.get(Job, job_id, populate_existing=True)
        except SQLAlchemyError as e:
            logger.error("Failed to claim job: queue=%s, worker_id=%s: %s", queue, worker_id, e)
            raise StorageUnavailableError(f"Failed to claim job: {e}") from e

        logger.info(
            "Job claimed: job_id=%s, worker_id=%s, job_type=%s, queue=%s",
            job_id,
            worker_id,
            job.job_type if job else None,
            queue,
        )
        return job

    async def update_progress(
        self,
        job_id: uuid.UUID,
        progress: int,
        detail: Any | None = None,
    ) -> bool:
        """Record progress for a started job.

        Progress writes race with terminal transitions; when the job is no
        longer 'started' the write is dropped so the terminal state wins.

        Args:
            job_id: Job to update.
            progress: Percentage complete, 0..100.
            detail: Optional partial result stored alongside the percentage.

        Returns:
            True if the progress was recorded, False if the job was not started.

        Raises:
            ValueError: If progress is outside 0..100.
            StorageUnavailableError: If the update fails.
        """
        if not 0 <= progress <= 100:
            msg = f"Progress must be within 0..100, got {progress}"
            raise ValueError(msg)

        values: dict[str, Any] = {"progress": progress, "updated_at": utcnow()}
        if detail is not None:
            values["progress_detail_json"] = detail

        stmt = (
            update(Job)
            .where(Job.job_id == job_id, Job.status == JobStatus.STARTED)
            .values(**values)
            .returning(Job.job_id)
            .execution_options(synchronize_session=False)
        )

        try:
            result = await self.session.execute(stmt)
            updated = result.scalar_one_or_none() is not None
        except SQLAlchemyError as e:
            logger.error("Failed to update progress for job %s: %s", job_id, e)
            raise StorageUnavailableError(f"Failed to update progress: {e}") from e

        if not updated:
            logger.debug("Progress update ignored: job_id=%s is not started", job_id)
        return updated

    async def finish(
        self,
        job_id: uuid.UUID,
        result: Any | None = None,
        *,
        worker_id: str | None = None,
    ) -> Job:
        """Mark a started job as finished.

        Args:
            job_id: Job to finish.
            result: Handler output to record.
            worker_id: When given, only the worker holding the claim may finish the job.

        Returns:
            The finished Job.

        Raises:
            JobNotFoundError: If the job does not exist.
            InvalidTransitionError: If the job is not started and not already finished.
            StorageUnavailableError: If the update fails.
        """
        return await self._terminate(job_id, JobStatus.FINISHED, worker_id, result=result)

    async def fail(
        self,
        job_id: uuid.UUID,
        message: str,
        *,
        worker_id: str | None = None,
    ) -> Job:
        """Mark a started job as failed.

        Args:
            job_id: Job to fail.
            message: Failure detail to record.
            worker_id: When given, only the worker holding the claim may fail the job.

        Returns:
            The failed Job.

        Raises:
            JobNotFoundError: If the job does not exist.
            InvalidTransitionError: If the job is not started and not already failed.
            StorageUnavailableError: If the update fails.
        """
        return await self._terminate(job_id, JobStatus.FAILED, worker_id, message=message)

    async def get(self, job_id: uuid.UUID) -> Job:
        """Retrieve a job by ID.

        Raises:
            JobNotFoundError: If the job does not exist.
            StorageUnavailableError: If the query fails.
        """
        job = await self._get_job(job_id)
        if job is None:
            raise JobNotFoundError(f"Job not found: {job_id}")
        return job

    async def get_status(self, job_id: uuid.UUID) -> JobStatusView:
        """Client-facing status snapshot of a job.

        Raises:
            JobNotFoundError: If the job does not exist.
        """
        return JobStatusView.from_job(await self.get(job_id))

    async def requeue(self, job_id: uuid.UUID) -> Job:
        """Administrative reset of a job back to 'new'.

        Clears the claim and every field written after creation, and
        increments retry_count. This is the only path from a started or
        terminal job back to 'new'.

        Args:
            job_id: Job to requeue.

        Returns:
            The requeued Job.

        Raises:
            JobNotFoundError: If the job does not exist.
            InvalidTransitionError: If the job is still 'new'.
        """
        job = await self.get(job_id)
        if job.status == JobStatus.NEW:
            raise InvalidTransitionError(f"Job {job_id} is already new")

        previous = job.status
        self._reset(job)

        try:
            await self.session.flush()
        except SQLAlchemyError as e:
            logger.error("Failed to requeue job %s: %s", job_id, e)
            raise StorageUnavailableError(f"Failed to requeue job: {e}") from e

        logger.warning(
            "Job requeued: job_id=%s, job_type=%s, previous_status=%s, retry_count=%d",
            job_id,
            job.job_type,
            previous.value,
            job.retry_count,
        )
        return job

    async def find_stale(self, staleness_seconds: int) -> list[Job]:
        """Started jobs with no write for longer than the staleness window.

        Args:
            staleness_seconds: Seconds since the last claim or progress write.

        Returns:
            Stale jobs, oldest first.
        """
        threshold = utcnow() - timedelta(seconds=staleness_seconds)
        stmt = (
            select(Job)
            .where(Job.status == JobStatus.STARTED, Job.updated_at < threshold)
            .order_by(Job.updated_at)
        )

        try:
            result = await self.session.execute(stmt)
        except SQLAlchemyError as e:
            logger.error("Failed to scan for stale jobs: %s", e)
            raise StorageUnavailableError(f"Failed to scan for stale jobs: {e}") from e
        return list(result.scalars().all())

    async def reclaim_stale(self, staleness_seconds: int) -> list[uuid.UUID]:
        """Requeue every stale started job.

        Each row is reset with a conditional UPDATE guarded on its observed
        updated_at, so a job that reported progress or reached a terminal
        status in the meantime is left alone.

        Args:
            staleness_seconds: Seconds since the last claim or progress write.

        Returns:
            IDs of the requeued jobs.
        """
        reclaimed: list[uuid.UUID] = []
        for job in await self.find_stale(staleness_seconds):
            stmt = (
                update(Job)
                .where(
                    Job.job_id == job.job_id,
                    Job.status == JobStatus.STARTED,
                    Job.updated_at == job.updated_at,
                )
                .values(
                    status=JobStatus.NEW,
                    claimed_by=None,
                    started_at=None,
                    ended_at=None,
                    progress=None,
                    progress_detail_json=None,
                    result_json=None,
                    message=None,
                    retry_count=Job.retry_count + 1,
                    updated_at=utcnow(),
                )
                .returning(Job.job_id)
                .execution_options(synchronize_session=False)
            )
            try:
                result = await self.session.execute(stmt)
            except SQLAlchemyError as e:
                logger.error("Failed to reclaim stale job %s: %s", job.job_id, e)
                raise StorageUnavailableError(f"Failed to reclaim stale job: {e}") from e

            if result.scalar_one_or_none() is not None:
                reclaimed.append(job.job_id)
                logger.warning(
                    "Stale job requeued: job_id=%s, job_type=%s, claimed_by=%s, last_update=%s",
                    job.job_id,
                    job.job_type,
                    job.claimed_by,
                    job.updated_at.isoformat(),
                )

        return reclaimed

    async def count_by_status(self, queue: str | None = None) -> dict[JobStatus, int]:
        """Count jobs per status.

        Args:
            queue: Optional queue to filter by.

        Returns:
            Mapping with an entry for every status.
        """
        stmt = select(Job.status, func.count()).group_by(Job.status)
        if queue:
            stmt = stmt.where(Job.queue == queue)

        try:
            result = await self.session.execute(stmt)
        except SQLAlchemyError as e:
            logger.error("Failed to count jobs: %s", e)
            raise StorageUnavailableError(f"Failed to count jobs: {e}") from e

        counts = dict.fromkeys(JobStatus, 0)
        for status, count in result.all():
            counts[status] = count
        return counts

    async def _terminate(
        self,
        job_id: uuid.UUID,
        status: JobStatus,
        worker_id: str | None,
        *,
        result: Any | None = None,
        message: str | None = None,
    ) -> Job:
        """Move a started job to a terminal status.

        A repeated call with the same terminal status from the worker that
        recorded it is a no-op. Any other call against a job that is not
        started, or against a claim held by another worker, raises
        InvalidTransitionError.
        """
        now = utcnow()
        values: dict[str, Any] = {"status": status, "ended_at": now, "updated_at": now}
        if status == JobStatus.FINISHED:
            values["result_json"] = result
        else:
            values["message"] = message

        stmt = (
            update(Job)
            .where(Job.job_id == job_id, Job.status.in_(list(transition_sources(status))))
            .values(**values)
            .returning(Job.job_id)
            .execution_options(synchronize_session=False)
        )
        if worker_id is not None:
            stmt = stmt.where(Job.claimed_by == worker_id)

        try:
            updated = (await self.session.execute(stmt)).scalar_one_or_none()
            job = await self.session.get(Job, job_id, populate_existing=True)
        except SQLAlchemyError as e:
            logger.error("Failed to mark job %s as %s: %s", job_id, status.value, e)
            raise StorageUnavailableError(f"Failed to mark job as {status.value}: {e}") from e

        if job is None:
            raise JobNotFoundError(f"Job not found: {job_id}")

        if updated is None:
            if job.status == status and worker_id in (None, job.claimed_by):
                logger.debug("Job already %s: job_id=%s", status.value, job_id)
                return job
            raise InvalidTransitionError(
                f"Cannot mark job {job_id} as {status.value}: status is {job.status.value}, "
                f"claimed_by={job.claimed_by}"
            )

        duration_ms = None
        if job.started_at is not None and job.ended_at is not None:
            duration_ms = int((job.ended_at - job.started_at).total_seconds() * 1000)

        if status == JobStatus.FINISHED:
            logger.info(
                "Job finished: job_id=%s, job_type=%s, duration_ms=%s",
                job_id,
                job.job_type,
                duration_ms,
            )
        else:
            logger.warning(
                "Job failed: job_id=%s, job_type=%s, duration_ms=%s, message=%s",
                job_id,
                job.job_type,
                duration_ms,
                message,
            )
        return job

    @staticmethod
    def _reset(job: Job) -> None:
        job.status = JobStatus.NEW
        job.claimed_by = None
        job.started_at = None
        job.ended_at = None
        job.progress = None
        job.progress_detail_json = None
        job.result_json = None
        job.message = None
        job.retry_count += 1
        job.updated_at = utcnow()

    async def _get_job(self, job_id: uuid.UUID) -> Job | None:
        """Internal method to retrieve a job by ID."""
        stmt = select(Job).where(Job.job_id == job_id)
        try:
            result = await self.session.execute(stmt)
        except SQLAlchemyError as e:
            logger.error("Failed to load job %s: %s", job_id, e)
            raise StorageUnavailableError(f"Failed to load job: {e}") from e
        return result.scalar_one_or_none()
