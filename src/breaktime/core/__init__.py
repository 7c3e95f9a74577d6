from .errors import (
    ActiveSessionConflict,
    AdvisorUnavailable,
    BreaktimeError,
    InvalidRequest,
    SessionNotFound,
    StorageUnavailable,
    SyncFailed,
)
from .scheduler import KeyedJobScheduler, create_scheduler
from .tasks import BackgroundTasks

__all__ = [
    "ActiveSessionConflict",
    "AdvisorUnavailable",
    "BackgroundTasks",
    "BreaktimeError",
    "InvalidRequest",
    "KeyedJobScheduler",
    "SessionNotFound",
    "StorageUnavailable",
    "SyncFailed",
    "create_scheduler",
]
