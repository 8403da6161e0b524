"""SQLAlchemy ORM models for jobrelay.

- base: Common metadata, type annotations, and the job status enum
- jobs: The durable job store table
"""

from jobrelay.db.models.base import (
    ALLOWED_TRANSITIONS,
    Base,
    JobStatus,
    metadata,
    transition_sources,
)
from jobrelay.db.models.jobs import Job

__all__ = [
    "ALLOWED_TRANSITIONS",
    "Base",
    "Job",
    "JobStatus",
    "metadata",
    "transition_sources",
]
