"""Job model for the durable job store.

The jobs table is the sole source of truth for job existence and terminal
state. Broker notifications only hint that a row may be claimable.
"""

from __future__ import annotations

from datetime import datetime  # noqa: TC003 - required at runtime for SQLAlchemy type resolution
from typing import Any

from sqlalchemy import JSON, Enum, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from jobrelay.db.models.base import (
    Base,
    JobStatus,
    OptionalTimestampTZ,
    TimestampTZ,
    UUIDPrimaryKey,
)


class Job(Base):
    """Background job record.

    Workers claim rows with a conditional UPDATE guarded on status='new',
    so exactly one worker moves a given job to 'started'.
    """

    __tablename__ = "jobs"

    job_id: Mapped[UUIDPrimaryKey]

    # Handler selector, e.g. 'resize_image'
    job_type: Mapped[str] = mapped_column(String(100), nullable=False)

    # Queue name for routing to specific worker pools
    queue: Mapped[str] = mapped_column(String(100), default="default", nullable=False)

    status: Mapped[JobStatus] = mapped_column(
        Enum(
            JobStatus,
            name="job_status",
            create_constraint=True,
            values_callable=lambda statuses: [s.value for s in statuses],
        ),
        nullable=False,
        default=JobStatus.NEW,
    )

    # Handler input, read-only after creation
    data_json: Mapped[Any | None] = mapped_column(JSON, nullable=True)

    # Percentage complete (0..100) and optional partial result, written while started
    progress: Mapped[int | None] = mapped_column(nullable=True)
    progress_detail_json: Mapped[Any | None] = mapped_column(JSON, nullable=True)

    # Terminal outcome: result on finished, message on failed
    result_json: Mapped[Any | None] = mapped_column(JSON, nullable=True)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Worker holding the claim
    claimed_by: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Administrative requeues
    retry_count: Mapped[int] = mapped_column(default=0, nullable=False)

    enqueued_at: Mapped[TimestampTZ]
    started_at: Mapped[OptionalTimestampTZ]
    ended_at: Mapped[OptionalTimestampTZ]

    # Last write to the row; serves as the heartbeat for stale-claim detection
    updated_at: Mapped[TimestampTZ]

    __table_args__ = (
        # Claim query: oldest new job in a queue
        Index("ix_jobs_queue_status_enqueued_at", "queue", "status", "enqueued_at"),
        # Stale claim scan
        Index("ix_jobs_status_updated_at", "status", "updated_at"),
        Index("ix_jobs_job_type", "job_type"),
    )

    def __repr__(self) -> str:
        return (
            f"<Job job_id={self.job_id} job_type={self.job_type} "
            f"queue={self.queue} status={self.status.value}>"
        )
