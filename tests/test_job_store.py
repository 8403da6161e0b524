"""Tests for the durable job store service.

Tests cover:
- Job creation and retrieval
- Atomic claiming (FIFO, queue isolation, concurrent claimers)
- Terminal transitions and their idempotency
- Progress updates racing terminal transitions
- Client-facing status views
- Administrative requeue and stale claim reclamation
- Storage error wrapping
"""

from __future__ import annotations

import asyncio
import uuid
from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from sqlalchemy import update
from sqlalchemy.exc import OperationalError

from jobrelay.db.models.base import ALLOWED_TRANSITIONS, JobStatus, transition_sources, utcnow
from jobrelay.db.models.jobs import Job
from jobrelay.services.job_store import (
    InvalidTransitionError,
    JobNotFoundError,
    JobStatusView,
    JobStoreService,
    StorageUnavailableError,
)


def _db_error() -> OperationalError:
    return OperationalError("SELECT 1", {}, Exception("connection refused"))


async def _claim(session_factory, queue="default", worker_id="worker-1"):
    async with session_factory() as session:
        job = await JobStoreService(session).claim_next(queue, worker_id)
        await session.commit()
        return job


class TestJobStatus:
    """Tests for the job status enum and transition table."""

    def test_status_values(self):
        """Test the stored status strings."""
        assert [s.value for s in JobStatus] == ["new", "started", "finished", "failed"]

    def test_transition_sources(self):
        """Only started jobs reach a terminal status; only new jobs start."""
        assert transition_sources(JobStatus.FINISHED) == frozenset({JobStatus.STARTED})
        assert transition_sources(JobStatus.FAILED) == frozenset({JobStatus.STARTED})
        assert transition_sources(JobStatus.STARTED) == frozenset({JobStatus.NEW})
        assert transition_sources(JobStatus.NEW) == frozenset()

    def test_terminal_statuses_have_no_transitions(self):
        """Terminal statuses are absorbing in normal processing."""
        assert ALLOWED_TRANSITIONS[JobStatus.FINISHED] == frozenset()
        assert ALLOWED_TRANSITIONS[JobStatus.FAILED] == frozenset()
        assert ALLOWED_TRANSITIONS[JobStatus.NEW] == frozenset({JobStatus.STARTED})


class TestCreate:
    """Tests for job creation."""

    @pytest.mark.asyncio
    async def test_create_job(self, session_factory):
        """A created job is new with no claim and no outcome."""
        async with session_factory() as session:
            job = await JobStoreService(session).create(
                "resize_image", "long_tasks", {"image_id": 42}
            )
            await session.commit()

        assert isinstance(job.job_id, uuid.UUID)
        assert job.status == JobStatus.NEW
        assert job.queue == "long_tasks"
        assert job.data_json == {"image_id": 42}
        assert job.claimed_by is None
        assert job.started_at is None
        assert job.retry_count == 0
        assert job.enqueued_at is not None

    @pytest.mark.asyncio
    async def test_create_wraps_database_errors(self, mock_session):
        """Database failures surface as StorageUnavailableError."""
        mock_session.flush.side_effect = _db_error()

        with pytest.raises(StorageUnavailableError):
            await JobStoreService(mock_session).create("resize_image", "default")

    @pytest.mark.asyncio
    async def test_get_unknown_job(self, session_factory):
        """Looking up an unknown ID raises JobNotFoundError."""
        async with session_factory() as session:
            with pytest.raises(JobNotFoundError):
                await JobStoreService(session).get(uuid.uuid4())


class TestClaimNext:
    """Tests for atomic claiming."""

    @pytest.mark.asyncio
    async def test_claim_moves_job_to_started(self, session_factory, create_job):
        """Claiming records the worker and the start time."""
        job_id = await create_job()

        job = await _claim(session_factory, worker_id="worker-a")

        assert job.job_id == job_id
        assert job.status == JobStatus.STARTED
        assert job.claimed_by == "worker-a"
        assert job.started_at is not None

    @pytest.mark.asyncio
    async def test_claim_empty_queue(self, session_factory):
        """Nothing to claim returns None."""
        assert await _claim(session_factory) is None

    @pytest.mark.asyncio
    async def test_claim_is_fifo(self, session_factory, create_job):
        """Jobs are claimed oldest first."""
        first = await create_job(data={"n": 1})
        second = await create_job(data={"n": 2})

        assert (await _claim(session_factory)).job_id == first
        assert (await _claim(session_factory)).job_id == second
        assert await _claim(session_factory) is None

    @pytest.mark.asyncio
    async def test_claim_respects_queue(self, session_factory, create_job):
        """A worker only claims from the queue it asks for."""
        long_job = await create_job(queue="long_tasks")

        assert await _claim(session_factory, queue="default") is None
        assert (await _claim(session_factory, queue="long_tasks")).job_id == long_job

    @pytest.mark.asyncio
    async def test_started_job_is_not_claimed_again(self, session_factory, create_job):
        """A claimed job is invisible to later claimers."""
        await create_job()
        await _claim(session_factory, worker_id="worker-a")

        assert await _claim(session_factory, worker_id="worker-b") is None

    @pytest.mark.asyncio
    async def test_concurrent_claims_single_winner(self, session_factory, create_job):
        """Two workers racing for one job: exactly one wins."""
        job_id = await create_job()

        results = await asyncio.gather(
            _claim(session_factory, worker_id="worker-a"),
            _claim(session_factory, worker_id="worker-b"),
        )

        winners = [job for job in results if job is not None]
        assert len(winners) == 1
        assert winners[0].job_id == job_id

    @pytest.mark.asyncio
    async def test_concurrent_claims_distinct_jobs(self, session_factory, create_job):
        """Many claimers over many jobs never share a job."""
        job_ids = {await create_job() for _ in range(5)}

        results = await asyncio.gather(
            *(_claim(session_factory, worker_id=f"worker-{i}") for i in range(8))
        )

        claimed = [job.job_id for job in results if job is not None]
        assert len(claimed) == 5
        assert set(claimed) == job_ids

    @pytest.mark.asyncio
    async def test_claim_wraps_database_errors(self, mock_session):
        """Database failures surface as StorageUnavailableError."""
        mock_session.execute.side_effect = _db_error()

        with pytest.raises(StorageUnavailableError):
            await JobStoreService(mock_session).claim_next("default", "worker-1")


class TestTerminalTransitions:
    """Tests for finish and fail."""

    @pytest.mark.asyncio
    async def test_finish_records_result(self, session_factory, create_job, get_job):
        """Finishing stores the result and end time."""
        job_id = await create_job()
        await _claim(session_factory)

        async with session_factory() as session:
            await JobStoreService(session).finish(job_id, {"width": 50})
            await session.commit()

        job = await get_job(job_id)
        assert job.status == JobStatus.FINISHED
        assert job.result_json == {"width": 50}
        assert job.ended_at is not None
        assert job.message is None

    @pytest.mark.asyncio
    async def test_fail_records_message(self, session_factory, create_job, get_job):
        """Failing stores the message and end time."""
        job_id = await create_job()
        await _claim(session_factory)

        async with session_factory() as session:
            await JobStoreService(session).fail(job_id, "RuntimeError: boom")
            await session.commit()

        job = await get_job(job_id)
        assert job.status == JobStatus.FAILED
        assert job.message == "RuntimeError: boom"
        assert job.result_json is None

    @pytest.mark.asyncio
    async def test_finish_twice_is_noop(self, session_factory, create_job, get_job):
        """Repeating the same terminal transition changes nothing."""
        job_id = await create_job()
        await _claim(session_factory)

        async with session_factory() as session:
            store = JobStoreService(session)
            first = await store.finish(job_id, {"n": 1})
            ended_at = first.ended_at
            await session.commit()

        async with session_factory() as session:
            again = await JobStoreService(session).finish(job_id, {"n": 2})
            await session.commit()

        assert again.status == JobStatus.FINISHED
        job = await get_job(job_id)
        assert job.result_json == {"n": 1}
        assert job.ended_at == ended_at

    @pytest.mark.asyncio
    async def test_fail_after_finish_conflicts(self, session_factory, create_job, get_job):
        """A different terminal outcome is rejected."""
        job_id = await create_job()
        await _claim(session_factory)

        async with session_factory() as session:
            await JobStoreService(session).finish(job_id, None)
            await session.commit()

        async with session_factory() as session:
            with pytest.raises(InvalidTransitionError):
                await JobStoreService(session).fail(job_id, "late failure")

        assert (await get_job(job_id)).status == JobStatus.FINISHED

    @pytest.mark.asyncio
    async def test_finish_new_job_conflicts(self, session_factory, create_job):
        """A job that never started cannot be finished."""
        job_id = await create_job()

        async with session_factory() as session:
            with pytest.raises(InvalidTransitionError):
                await JobStoreService(session).finish(job_id, {})

    @pytest.mark.asyncio
    async def test_finish_by_other_worker_conflicts(self, session_factory, create_job):
        """With a worker guard, only the claim holder may finish."""
        job_id = await create_job()
        await _claim(session_factory, worker_id="worker-a")

        async with session_factory() as session:
            with pytest.raises(InvalidTransitionError):
                await JobStoreService(session).finish(job_id, {}, worker_id="worker-b")

        async with session_factory() as session:
            job = await JobStoreService(session).finish(job_id, {}, worker_id="worker-a")
            await session.commit()
        assert job.status == JobStatus.FINISHED

    @pytest.mark.asyncio
    async def test_late_finish_after_reclaim_conflicts(self, session_factory, create_job):
        """A worker whose claim was reclaimed cannot repeat another worker's outcome."""
        job_id = await create_job()
        await _claim(session_factory, worker_id="worker-a")

        async with session_factory() as session:
            await JobStoreService(session).requeue(job_id)
            await session.commit()
        await _claim(session_factory, worker_id="worker-b")

        async with session_factory() as session:
            await JobStoreService(session).finish(job_id, {"n": 2}, worker_id="worker-b")
            await session.commit()

        async with session_factory() as session:
            store = JobStoreService(session)
            with pytest.raises(InvalidTransitionError):
                await store.finish(job_id, {"n": 1}, worker_id="worker-a")
            again = await store.finish(job_id, {"n": 3}, worker_id="worker-b")

        assert again.result_json == {"n": 2}
        assert again.claimed_by == "worker-b"

    @pytest.mark.asyncio
    async def test_finish_unknown_job(self, session_factory):
        """Finishing an unknown job raises JobNotFoundError."""
        async with session_factory() as session:
            with pytest.raises(JobNotFoundError):
                await JobStoreService(session).finish(uuid.uuid4(), {})


class TestUpdateProgress:
    """Tests for progress updates."""

    @pytest.mark.asyncio
    async def test_progress_on_started_job(self, session_factory, create_job, get_job):
        """Progress and detail are stored while started."""
        job_id = await create_job()
        await _claim(session_factory)

        async with session_factory() as session:
            updated = await JobStoreService(session).update_progress(
                job_id, 40, {"rows": 400}
            )
            await session.commit()

        assert updated is True
        job = await get_job(job_id)
        assert job.progress == 40
        assert job.progress_detail_json == {"rows": 400}

    @pytest.mark.asyncio
    async def test_progress_after_finish_is_dropped(self, session_factory, create_job, get_job):
        """A late progress write never overrides a terminal state."""
        job_id = await create_job()
        await _claim(session_factory)

        async with session_factory() as session:
            store = JobStoreService(session)
            await store.update_progress(job_id, 90)
            await store.finish(job_id, {"done": True})
            await session.commit()

        async with session_factory() as session:
            updated = await JobStoreService(session).update_progress(job_id, 95)
            await session.commit()

        assert updated is False
        job = await get_job(job_id)
        assert job.status == JobStatus.FINISHED
        assert job.progress == 90

    @pytest.mark.asyncio
    async def test_progress_on_new_job_is_dropped(self, session_factory, create_job):
        """Progress is not recorded before the job starts."""
        job_id = await create_job()

        async with session_factory() as session:
            assert await JobStoreService(session).update_progress(job_id, 10) is False

    @pytest.mark.asyncio
    @pytest.mark.parametrize("progress", [-1, 101])
    async def test_progress_out_of_range(self, mock_session, progress):
        """Percentages outside 0..100 are rejected before touching the store."""
        with pytest.raises(ValueError, match="0..100"):
            await JobStoreService(mock_session).update_progress(uuid.uuid4(), progress)
        mock_session.execute.assert_not_called()


class TestGetStatus:
    """Tests for the client-facing status view."""

    @pytest.mark.asyncio
    async def test_new_job_hides_progress(self, session_factory, create_job):
        """A new job reports no progress or outcome."""
        job_id = await create_job()

        async with session_factory() as session:
            view = await JobStoreService(session).get_status(job_id)

        assert view.status == JobStatus.NEW
        assert view.progress is None
        assert view.result_or_message is None

    @pytest.mark.asyncio
    async def test_finished_job_reports_result(self, session_factory, create_job):
        """A finished job reports its result."""
        job_id = await create_job()
        await _claim(session_factory)
        async with session_factory() as session:
            store = JobStoreService(session)
            await store.update_progress(job_id, 100)
            await store.finish(job_id, {"width": 50})
            await session.commit()

        async with session_factory() as session:
            view = await JobStoreService(session).get_status(job_id)

        assert view.status == JobStatus.FINISHED
        assert view.progress == 100
        assert view.result == {"width": 50}
        assert view.message is None
        assert view.result_or_message == {"width": 50}

    def test_failed_view_reports_message(self):
        """A failed job reports its message, not a result."""
        job = MagicMock(spec=Job)
        job.job_id = uuid.uuid4()
        job.job_type = "resize_image"
        job.queue = "default"
        job.status = JobStatus.FAILED
        job.progress = 30
        job.progress_detail_json = None
        job.result_json = {"stale": True}
        job.message = "unknown job type: resize_image"
        job.claimed_by = "worker-1"
        job.retry_count = 0
        job.enqueued_at = utcnow()
        job.started_at = utcnow()
        job.ended_at = utcnow()

        view = JobStatusView.from_job(job)

        assert view.result is None
        assert view.result_or_message == "unknown job type: resize_image"


class TestRequeue:
    """Tests for administrative requeue."""

    @pytest.mark.asyncio
    async def test_requeue_finished_job(self, session_factory, create_job, get_job):
        """Requeue clears the outcome and counts the retry."""
        job_id = await create_job()
        await _claim(session_factory)
        async with session_factory() as session:
            await JobStoreService(session).fail(job_id, "boom")
            await session.commit()

        async with session_factory() as session:
            await JobStoreService(session).requeue(job_id)
            await session.commit()

        job = await get_job(job_id)
        assert job.status == JobStatus.NEW
        assert job.retry_count == 1
        assert job.message is None
        assert job.claimed_by is None
        assert job.started_at is None
        assert job.ended_at is None

        # And it can be claimed again
        assert (await _claim(session_factory)).job_id == job_id

    @pytest.mark.asyncio
    async def test_requeue_new_job_conflicts(self, session_factory, create_job):
        """A job that is already new cannot be requeued."""
        job_id = await create_job()

        async with session_factory() as session:
            with pytest.raises(InvalidTransitionError):
                await JobStoreService(session).requeue(job_id)


class TestReclaimStale:
    """Tests for stale claim reclamation."""

    @staticmethod
    async def _age(session_factory, job_id, seconds):
        async with session_factory() as session:
            await session.execute(
                update(Job)
                .where(Job.job_id == job_id)
                .values(updated_at=utcnow() - timedelta(seconds=seconds))
            )
            await session.commit()

    @pytest.mark.asyncio
    async def test_reclaims_only_stale_claims(self, session_factory, create_job, get_job):
        """Started jobs idle past the window go back to new."""
        stale_id = await create_job()
        fresh_id = await create_job()
        await _claim(session_factory, worker_id="crashed-worker")
        await _claim(session_factory, worker_id="live-worker")
        await self._age(session_factory, stale_id, 600)

        async with session_factory() as session:
            store = JobStoreService(session)
            assert [job.job_id for job in await store.find_stale(60)] == [stale_id]
            reclaimed = await store.reclaim_stale(60)
            await session.commit()

        assert reclaimed == [stale_id]
        stale = await get_job(stale_id)
        assert stale.status == JobStatus.NEW
        assert stale.claimed_by is None
        assert stale.retry_count == 1
        assert (await get_job(fresh_id)).status == JobStatus.STARTED

    @pytest.mark.asyncio
    async def test_terminal_jobs_are_never_reclaimed(self, session_factory, create_job):
        """Old finished jobs stay finished."""
        job_id = await create_job()
        await _claim(session_factory)
        async with session_factory() as session:
            await JobStoreService(session).finish(job_id, None)
            await session.commit()
        await self._age(session_factory, job_id, 600)

        async with session_factory() as session:
            assert await JobStoreService(session).reclaim_stale(60) == []


class TestCountByStatus:
    """Tests for status counts."""

    @pytest.mark.asyncio
    async def test_counts_every_status(self, session_factory, create_job):
        """Counts include zero entries and honor the queue filter."""
        await create_job()
        await create_job()
        await create_job(queue="long_tasks")
        await _claim(session_factory)

        async with session_factory() as session:
            store = JobStoreService(session)
            counts = await store.count_by_status()
            default_counts = await store.count_by_status("default")

        assert counts[JobStatus.NEW] == 2
        assert counts[JobStatus.STARTED] == 1
        assert counts[JobStatus.FINISHED] == 0
        assert default_counts[JobStatus.NEW] == 1
