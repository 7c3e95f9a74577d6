"""Shared fakes and helpers for the breaktime tests."""

from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from apscheduler.triggers.date import DateTrigger

from breaktime.core.errors import StorageUnavailable, SyncFailed
from breaktime.core.scheduler import KeyedJobScheduler
from breaktime.scheduling.models import Meeting
from breaktime.scheduling.timewindow import local_day_bounds
from breaktime.sessions.models import (
    ActivityLogEntry,
    BreakSuggestion,
    Session,
    SessionStatus,
)

NY = ZoneInfo("America/New_York")
# A Tuesday.
DAY = date(2025, 3, 4)


def at(hour: int, minute: int = 0, *, day: date = DAY, tz=NY) -> datetime:
    return datetime.combine(day, time(hour, minute), tzinfo=tz)


def meeting(title: str, start: datetime, end: datetime) -> Meeting:
    return Meeting(title=title, start_time=start, end_time=end)


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class InMemoryStore:
    """Dict-backed ``PersistenceStore`` with switchable failures."""

    def __init__(self) -> None:
        self.meetings: dict[str, list[Meeting]] = {}
        self.sessions: dict[str, Session] = {}
        self.suggestions: dict[str, BreakSuggestion] = {}
        self.activity: list[ActivityLogEntry] = []
        self.daily_metrics: dict[tuple[str, date], dict[str, int]] = {}
        self.fail_writes = False
        self.fail_meeting_reads = False

    def add_meeting(self, user_id: str, item: Meeting) -> None:
        self.meetings.setdefault(user_id, []).append(item)

    def actions(self) -> list[str]:
        return [entry.action.value for entry in self.activity]

    def _check_write(self) -> None:
        if self.fail_writes:
            raise StorageUnavailable("store offline")

    async def get_meetings_for_user_on_date(self, *, user_id, day, tz=timezone.utc):
        if self.fail_meeting_reads:
            raise StorageUnavailable("calendar offline")
        start, end = local_day_bounds(day, tz)
        return sorted(
            (m for m in self.meetings.get(user_id, []) if start <= m.start_time < end),
            key=lambda m: m.start_time,
        )

    async def create_session(self, session: Session) -> Session:
        self._check_write()
        self.sessions[session.id] = session
        return session

    async def update_session(self, session: Session) -> Session:
        self._check_write()
        self.sessions[session.id] = session
        return session

    async def get_session(self, session_id: str) -> Optional[Session]:
        return self.sessions.get(session_id)

    async def get_active_session(self, *, user_id, kind):
        for session in self.sessions.values():
            if session.user_id == user_id and session.kind == kind and session.status == SessionStatus.ACTIVE:
                return session
        return None

    async def list_sessions_for_user_between(self, *, user_id, start, end):
        return [
            s for s in self.sessions.values() if s.user_id == user_id and start <= s.start_time < end
        ]

    async def create_break_suggestion(self, suggestion):
        self._check_write()
        self.suggestions[suggestion.id] = suggestion
        return suggestion

    async def update_break_suggestion(self, suggestion):
        self._check_write()
        self.suggestions[suggestion.id] = suggestion
        return suggestion

    async def get_break_suggestion(self, suggestion_id):
        return self.suggestions.get(suggestion_id)

    async def get_recent_break_suggestions(self, *, user_id, lookback_hours, now=None):
        now = now or datetime.now(timezone.utc)
        since = now - timedelta(hours=lookback_hours)
        return sorted(
            (
                s
                for s in self.suggestions.values()
                if s.user_id == user_id and s.suggested_at >= since
            ),
            key=lambda s: s.suggested_at,
            reverse=True,
        )

    async def list_break_suggestions_between(self, *, user_id, start, end):
        return [
            s
            for s in self.suggestions.values()
            if s.user_id == user_id and start <= s.suggested_at < end
        ]

    async def log_activity(self, entry: ActivityLogEntry) -> None:
        self.activity.append(entry)

    async def upsert_daily_metrics(self, *, user_id, day, counters):
        self._check_write()
        self.daily_metrics[(user_id, day)] = dict(counters)

    async def get_daily_metrics(self, *, user_id, day):
        return self.daily_metrics.get((user_id, day))


class RecordingStatusSync:
    def __init__(self) -> None:
        self.calls: list[tuple[str, str]] = []
        self.fail = False

    async def set_status(self, user_id, *, text, icon, expires_at):
        self.calls.append(("set", user_id))
        if self.fail:
            raise SyncFailed(user_id, "set", "token revoked")

    async def clear_status(self, user_id):
        self.calls.append(("clear", user_id))
        if self.fail:
            raise SyncFailed(user_id, "clear", "token revoked")


class RecordingSink:
    def __init__(self) -> None:
        self.alerts = []
        self.notices = []
        self.summaries = []

    async def send_break_alert(self, alert):
        self.alerts.append(alert)
        return "1700000000.000100"

    async def send_session_notice(self, notice):
        self.notices.append(notice)
        return "1700000000.000200"

    async def send_daily_summary(self, metrics):
        self.summaries.append(metrics)
        return "1700000000.000300"


async def fire(timers: KeyedJobScheduler, key: str) -> None:
    """Run a pending job the way the scheduler would, then drop it."""
    job = timers.scheduler.get_job(key)
    assert job is not None, f"no job {key}"
    if isinstance(job.trigger, DateTrigger):
        timers.scheduler.remove_job(key)
    await job.func(*job.args, **job.kwargs)


