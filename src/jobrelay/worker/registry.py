"""Handler registry mapping job types to executable logic.

Application code owns the handlers; the worker only looks them up. A job
whose type is not registered is failed at execution time, not rejected at
enqueue time.

Handlers take the job's data and a progress reporter and return a
JSON-serializable result. Both coroutine functions and plain functions
are accepted; plain functions run in a worker thread.

Example:
    registry = HandlerRegistry()

    @registry.handler("resize_image")
    async def resize_image(data, progress):
        await progress.update(50)
        return {"width": data["width"] // 2}
"""

from __future__ import annotations

import importlib
import logging
from collections.abc import Awaitable, Callable, Iterable
from typing import Any

logger = logging.getLogger(__name__)

# (data, progress) -> result
JobHandler = Callable[[dict[str, Any], Any], Awaitable[Any] | Any]


class HandlerRegistry:
    """Registry of job handlers keyed by job type."""

    def __init__(self) -> None:
        self._handlers: dict[str, JobHandler] = {}

    def register(self, job_type: str, handler: JobHandler) -> None:
        """Register a handler for a job type.

        Args:
            job_type: Job type string.
            handler: Callable invoked with (data, progress).

        Raises:
            ValueError: If the job type is empty or already registered.
        """
        if not job_type:
            msg = "Job type cannot be empty"
            raise ValueError(msg)
        if job_type in self._handlers:
            msg = f"Handler already registered for job_type={job_type}"
            raise ValueError(msg)
        self._handlers[job_type] = handler
        logger.debug("Registered handler for job_type=%s", job_type)

    def handler(self, job_type: str) -> Callable[[JobHandler], JobHandler]:
        """Decorator form of register()."""

        def decorator(func: JobHandler) -> JobHandler:
            self.register(job_type, func)
            return func

        return decorator

    def get(self, job_type: str) -> JobHandler | None:
        """Look up the handler for a job type."""
        return self._handlers.get(job_type)

    def job_types(self) -> list[str]:
        """Registered job types, sorted."""
        return sorted(self._handlers)

    def __contains__(self, job_type: object) -> bool:
        return job_type in self._handlers

    def __len__(self) -> int:
        return len(self._handlers)


def load_handler_modules(registry: HandlerRegistry, modules: Iterable[str]) -> None:
    """Import handler modules and let each register its handlers.

    Each module must expose ``register_handlers(registry)``.

    Args:
        registry: Registry to populate.
        modules: Dotted module paths.

    Raises:
        ImportError: If a module cannot be imported.
        AttributeError: If a module has no register_handlers function.
    """
    for module_path in modules:
        module = importlib.import_module(module_path)
        register = getattr(module, "register_handlers", None)
        if register is None:
            msg = f"Handler module {module_path} does not define register_handlers(registry)"
            raise AttributeError(msg)
        register(registry)
        logger.info("Loaded handler module: %s", module_path)
