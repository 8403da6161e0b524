"""jobrelay services.

- job_store: Durable job records and the job state machine
- notifier: Job-ready notifications over the message broker
- enqueuer: Enqueue interface for application code
"""

from jobrelay.services.enqueuer import Enqueuer, create_enqueuer
from jobrelay.services.job_store import (
    InvalidTransitionError,
    JobNotFoundError,
    JobStatusView,
    JobStoreError,
    JobStoreService,
    StorageUnavailableError,
)
from jobrelay.services.notifier import (
    BrokerNotifier,
    Connected,
    DisabledNotifier,
    JobNotification,
    Unavailable,
    build_notifier,
    connect_broker,
)

__all__ = [
    "BrokerNotifier",
    "Connected",
    "DisabledNotifier",
    "Enqueuer",
    "InvalidTransitionError",
    "JobNotFoundError",
    "JobNotification",
    "JobStatusView",
    "JobStoreError",
    "JobStoreService",
    "StorageUnavailableError",
    "Unavailable",
    "build_notifier",
    "connect_broker",
    "create_enqueuer",
]
