"""Allow running the worker with python -m jobrelay.worker."""

from jobrelay.worker.main import run

run()
