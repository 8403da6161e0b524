"""jobrelay worker service.

Background job runner backed by the durable job store:
- Claims jobs atomically, so each job runs on exactly one worker
- Wakes on broker notifications, or polls when no broker is reachable
- Records every claimed job as finished or failed
- Optionally requeues claims abandoned by crashed workers

Usage:
    # Run as module
    python -m jobrelay.worker

    # Or through the console script
    jobrelay-worker
"""

from jobrelay.worker.main import Worker, WorkerConfig, run
from jobrelay.worker.registry import HandlerRegistry

__all__ = ["HandlerRegistry", "Worker", "WorkerConfig", "run"]
