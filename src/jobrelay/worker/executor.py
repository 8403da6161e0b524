"""Execution of claimed jobs.

For every claimed job exactly one of finish/fail is recorded:
- unknown job type: failed immediately, not retried
- handler returns: finished with the return value as result
- handler raises: failed with the error as message
- handler exits or is cancelled: failed, then the exit is re-raised

The job data is passed to the handler as stored. Apart from re-raised
exits, only StorageUnavailableError escapes, since a dead store is fatal
to the worker.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from typing import TYPE_CHECKING, Any

from jobrelay.db.models.base import JobStatus
from jobrelay.services.job_store import (
    InvalidTransitionError,
    JobNotFoundError,
    JobStoreService,
    StorageUnavailableError,
)
from jobrelay.worker.progress import ProgressReporter

if TYPE_CHECKING:
    import uuid

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from jobrelay.db.models.jobs import Job
    from jobrelay.worker.registry import HandlerRegistry

logger = logging.getLogger(__name__)

UNKNOWN_JOB_TYPE_MESSAGE = "unknown job type: {job_type}"


class JobExecutor:
    """Runs handlers for claimed jobs and records the outcome."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        registry: HandlerRegistry,
        worker_id: str | None = None,
    ) -> None:
        self._session_factory = session_factory
        self.registry = registry
        self.worker_id = worker_id

    async def execute(self, job: Job) -> JobStatus:
        """Execute a job claimed by this worker.

        Args:
            job: A job in status 'started' claimed by this worker.

        Returns:
            The terminal status recorded for the job.

        Raises:
            StorageUnavailableError: If the outcome cannot be recorded.
        """
        handler = self.registry.get(job.job_type)
        if handler is None:
            message = UNKNOWN_JOB_TYPE_MESSAGE.format(job_type=job.job_type)
            logger.error("No handler registered: job_id=%s, job_type=%s", job.job_id, job.job_type)
            await self._record(job.job_id, JobStatus.FAILED, message=message)
            return JobStatus.FAILED

        reporter = ProgressReporter(self._session_factory, job.job_id)
        data = job.data_json if job.data_json is not None else {}

        try:
            if inspect.iscoroutinefunction(handler):
                result = await handler(data, reporter)
            else:
                loop = asyncio.get_running_loop()
                result = await asyncio.to_thread(handler, data, reporter.bind_sync(loop))
                if inspect.isawaitable(result):
                    result = await result
            _ensure_serializable(result)
        except StorageUnavailableError:
            raise
        except Exception as e:
            logger.exception(
                "Handler raised: job_id=%s, job_type=%s, error=%s",
                job.job_id,
                job.job_type,
                e,
            )
            await self._record(job.job_id, JobStatus.FAILED, message=_describe(e))
            return JobStatus.FAILED
        except BaseException as e:
            # Record the failure before the exit or cancellation propagates
            logger.error(
                "Handler aborted: job_id=%s, job_type=%s, error=%s",
                job.job_id,
                job.job_type,
                _describe(e),
            )
            await asyncio.shield(
                self._record(job.job_id, JobStatus.FAILED, message=_describe(e))
            )
            raise

        await self._record(job.job_id, JobStatus.FINISHED, result=result)
        return JobStatus.FINISHED

    async def _record(
        self,
        job_id: uuid.UUID,
        status: JobStatus,
        *,
        result: Any | None = None,
        message: str | None = None,
    ) -> None:
        """Commit the terminal transition in a fresh session.

        A job requeued or removed by an operator while its handler ran is
        no longer ours; the outcome is logged and dropped.
        """
        async with self._session_factory() as session:
            store = JobStoreService(session)
            try:
                if status == JobStatus.FINISHED:
                    await store.finish(job_id, result, worker_id=self.worker_id)
                else:
                    await store.fail(job_id, message or "", worker_id=self.worker_id)
            except (InvalidTransitionError, JobNotFoundError) as e:
                await session.rollback()
                logger.error(
                    "Outcome not recorded: job_id=%s, outcome=%s: %s",
                    job_id,
                    status.value,
                    e,
                )
                return
            await session.commit()


def _describe(error: BaseException) -> str:
    detail = str(error)
    return f"{type(error).__name__}: {detail}" if detail else type(error).__name__


def _ensure_serializable(result: Any) -> None:
    """Reject results the JSON column cannot store."""
    try:
        json.dumps(result)
    except (TypeError, ValueError) as e:
        msg = f"Handler result is not JSON serializable: {e}"
        raise TypeError(msg) from e
