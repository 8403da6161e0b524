"""Create jobs table.

Revision ID: 001
Revises:
Create Date: 2026-10-19 00:00:00.000000+00:00

Creates the durable job store:
- jobs table with the new/started/finished/failed status check
- claim index on (queue, status, enqueued_at)
- stale claim index on (status, updated_at)
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

# Revision identifiers, used by Alembic.
revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

job_status = sa.Enum(
    "new",
    "started",
    "finished",
    "failed",
    name="job_status",
    create_constraint=True,
)


def upgrade() -> None:
    """Apply migration: Create jobs table."""
    op.create_table(
        "jobs",
        sa.Column("job_id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("job_type", sa.String(100), nullable=False),
        sa.Column("queue", sa.String(100), nullable=False),
        sa.Column("status", job_status, nullable=False),
        sa.Column("data_json", sa.JSON(), nullable=True),
        sa.Column("progress", sa.Integer(), nullable=True),
        sa.Column("progress_detail_json", sa.JSON(), nullable=True),
        sa.Column("result_json", sa.JSON(), nullable=True),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("claimed_by", sa.String(255), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("enqueued_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("ended_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("job_id", name=op.f("pk_jobs")),
    )
    op.create_index(
        "ix_jobs_queue_status_enqueued_at",
        "jobs",
        ["queue", "status", "enqueued_at"],
        unique=False,
    )
    op.create_index(
        "ix_jobs_status_updated_at",
        "jobs",
        ["status", "updated_at"],
        unique=False,
    )
    op.create_index("ix_jobs_job_type", "jobs", ["job_type"], unique=False)


def downgrade() -> None:
    """Revert migration: Drop jobs table."""
    op.drop_index("ix_jobs_job_type", table_name="jobs")
    op.drop_index("ix_jobs_status_updated_at", table_name="jobs")
    op.drop_index("ix_jobs_queue_status_enqueued_at", table_name="jobs")
    op.drop_table("jobs")
    job_status.drop(op.get_bind(), checkfirst=True)
