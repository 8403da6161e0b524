"""jobrelay - durable background jobs with broker wake-ups.

Jobs are recorded in a relational job store, which is the single source
of truth. A message broker, when reachable, tells workers that work is
waiting; otherwise workers poll the store.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
