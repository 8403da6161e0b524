"""jobrelay core module.

Shared components used across the enqueuer and the worker:
- Configuration management
- Notification mode selection
"""

from jobrelay.core.config import (
    DEFAULT_QUEUE,
    LONG_TASKS_QUEUE,
    BrokerSettings,
    ConfigValidationError,
    DatabaseSettings,
    Environment,
    NotificationMode,
    Settings,
    WorkerSettings,
)
from jobrelay.core.settings import clear_settings_cache, get_settings

__all__ = [
    "DEFAULT_QUEUE",
    "LONG_TASKS_QUEUE",
    "BrokerSettings",
    "ConfigValidationError",
    "DatabaseSettings",
    "Environment",
    "NotificationMode",
    "Settings",
    "WorkerSettings",
    "clear_settings_cache",
    "get_settings",
]
