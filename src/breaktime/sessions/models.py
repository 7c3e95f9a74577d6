from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Optional


class SessionKind(str, Enum):
    FOCUS = "focus"
    BREAK = "break"


class SessionStatus(str, Enum):
    SCHEDULED = "scheduled"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionStatus.COMPLETED, SessionStatus.CANCELLED)


class SuggestionStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    CANCELLED = "cancelled"


class SuggestionSource(str, Enum):
    PROACTIVE = "proactive"
    USER = "user"


class ActivityAction(str, Enum):
    FOCUS_SESSION_STARTED = "focus_session_started"
    FOCUS_SESSION_ENDED = "focus_session_ended"
    BREAK_SESSION_STARTED = "break_session_started"
    BREAK_SESSION_ENDED = "break_session_ended"
    SESSION_CANCELLED = "session_cancelled"
    BREAK_SUGGESTED = "break_suggested"
    BREAK_ACCEPTED = "break_accepted"
    BREAK_DECLINED = "break_declined"
    BREAK_DEFERRED = "break_deferred"
    PROACTIVE_BREAK_SUGGESTED = "proactive_break_suggested"
    PROACTIVE_BREAK_SUPPRESSED = "proactive_break_suppressed"


def new_id() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True)
class Session:
    """A focus or break period.

    ``status_set`` is true while the user's external presence shows this
    session. ``status_synced`` is false when the last presence update for it
    failed or timed out.
    """

    id: str
    user_id: str
    kind: SessionKind
    duration_minutes: int
    start_time: datetime
    status: SessionStatus
    end_time: Optional[datetime] = None
    status_set: bool = False
    status_synced: bool = True
    break_type: Optional[str] = None
    suggestion_id: Optional[str] = None

    @property
    def planned_end(self) -> datetime:
        return self.start_time + timedelta(minutes=self.duration_minutes)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


@dataclass(frozen=True)
class BreakSuggestion:
    id: str
    user_id: str
    type: str
    message: str
    reason: str
    suggested_at: datetime
    status: SuggestionStatus = SuggestionStatus.PENDING
    accepted_at: Optional[datetime] = None
    responded_at: Optional[datetime] = None
    source: SuggestionSource = SuggestionSource.USER

    @property
    def accepted(self) -> bool:
        return self.status == SuggestionStatus.ACCEPTED


@dataclass(frozen=True)
class UserProfile:
    user_id: str
    timezone: str = "America/New_York"
    work_start_hour: int = 9
    work_end_hour: int = 18
    # 0=Monday .. 6=Sunday
    work_days: tuple[int, ...] = (0, 1, 2, 3, 4)


@dataclass(frozen=True)
class ActivityLogEntry:
    user_id: str
    action: ActivityAction
    timestamp: datetime
    details: dict[str, Any] = field(default_factory=dict)


class SessionEvent(str, Enum):
    STARTED = "started"
    COMPLETED = "completed"


@dataclass(frozen=True)
class SessionNotice:
    """A session transition worth telling the user about.

    ``session.status_synced`` tells the notifier whether presence was
    updated; when it was not, the message asks the user to set it by hand.
    """

    session: Session
    event: SessionEvent

    @property
    def user_id(self) -> str:
        return self.session.user_id


__all__ = [
    "ActivityAction",
    "ActivityLogEntry",
    "BreakSuggestion",
    "Session",
    "SessionEvent",
    "SessionKind",
    "SessionNotice",
    "SessionStatus",
    "SuggestionSource",
    "SuggestionStatus",
    "UserProfile",
    "new_id",
]
