from .manager import SessionConfig, SessionLifecycleManager, SessionNotifier
from .models import (
    ActivityAction,
    ActivityLogEntry,
    BreakSuggestion,
    Session,
    SessionEvent,
    SessionKind,
    SessionNotice,
    SessionStatus,
    SuggestionSource,
    SuggestionStatus,
    UserProfile,
)
from .status_sync import SlackStatusSync, StaticSlackClientDirectory, StatusSync
from .store import PersistenceStore, SqlAlchemyWellnessStore, ensure_wellness_schema

__all__ = [
    "ActivityAction",
    "ActivityLogEntry",
    "BreakSuggestion",
    "PersistenceStore",
    "Session",
    "SessionConfig",
    "SessionEvent",
    "SessionKind",
    "SessionLifecycleManager",
    "SessionNotice",
    "SessionNotifier",
    "SessionStatus",
    "SlackStatusSync",
    "SqlAlchemyWellnessStore",
    "StaticSlackClientDirectory",
    "StatusSync",
    "SuggestionSource",
    "SuggestionStatus",
    "UserProfile",
    "ensure_wellness_schema",
]
