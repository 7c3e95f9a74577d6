from __future__ import annotations

import logging
from collections import Counter
from datetime import date, timezone, tzinfo
from typing import Iterable, Sequence

from pydantic import BaseModel, Field

from breaktime.scheduling.models import Meeting
from breaktime.scheduling.timewindow import local_day_bounds, to_millis
from breaktime.sessions.models import (
    BreakSuggestion,
    Session,
    SessionKind,
    SessionStatus,
)
from breaktime.sessions.store import PersistenceStore

logger = logging.getLogger(__name__)

BACK_TO_BACK_GAP_MS = 5 * 60_000
HEAVY_MEETING_MINUTES = 20 * 60
BACK_TO_BACK_INSIGHT_THRESHOLD = 3


class DailyMetrics(BaseModel):
    user_id: str
    day: date
    meeting_count: int = Field(default=0, ge=0)
    total_meeting_minutes: int = Field(default=0, ge=0)
    back_to_back_meetings: int = Field(default=0, ge=0)
    focus_minutes: int = Field(default=0, ge=0)
    focus_sessions_started: int = Field(default=0, ge=0)
    focus_sessions_completed: int = Field(default=0, ge=0)
    breaks_suggested: int = Field(default=0, ge=0)
    breaks_accepted: int = Field(default=0, ge=0)

    @property
    def has_activity(self) -> bool:
        return bool(self.meeting_count or self.focus_sessions_started or self.breaks_suggested)

    def counters(self) -> dict[str, int]:
        """The stored form: every counter, keyed by field name."""
        return self.model_dump(exclude={"user_id", "day"})

    @classmethod
    def from_counters(cls, user_id: str, day: date, counters: dict[str, int]) -> "DailyMetrics":
        return cls(user_id=user_id, day=day, **counters)


def count_back_to_back(meetings: Iterable[Meeting]) -> int:
    """Adjacent pairs where the next meeting starts within 5 minutes of the previous end."""
    ordered = sorted(meetings, key=lambda m: to_millis(m.start_time))
    return sum(
        1
        for prev, nxt in zip(ordered, ordered[1:])
        if to_millis(nxt.start_time) - to_millis(prev.end_time) <= BACK_TO_BACK_GAP_MS
    )


def compute_daily_metrics(
    user_id: str,
    day: date,
    meetings: Sequence[Meeting],
    sessions: Sequence[Session],
    suggestions: Sequence[BreakSuggestion],
) -> DailyMetrics:
    focus = [s for s in sessions if s.kind == SessionKind.FOCUS]
    completed_focus = [s for s in focus if s.status == SessionStatus.COMPLETED]
    return DailyMetrics(
        user_id=user_id,
        day=day,
        meeting_count=len(meetings),
        total_meeting_minutes=sum(m.duration_minutes or 0 for m in meetings),
        back_to_back_meetings=count_back_to_back(meetings),
        focus_minutes=sum(s.duration_minutes for s in completed_focus),
        focus_sessions_started=len(focus),
        focus_sessions_completed=len(completed_focus),
        breaks_suggested=len(suggestions),
        breaks_accepted=sum(1 for s in suggestions if s.accepted),
    )


def meeting_insights(meetings: Sequence[Meeting], tz: tzinfo = timezone.utc) -> list[str]:
    """Plain-language observations about a stretch of meetings (usually a week)."""
    if not meetings:
        return []
    insights: list[str] = []

    total_minutes = sum(m.duration_minutes or 0 for m in meetings)
    if total_minutes > HEAVY_MEETING_MINUTES:
        insights.append(
            "You're spending a lot of time in meetings. Consider if all meetings are necessary."
        )

    back_to_back = count_back_to_back(meetings)
    if back_to_back > BACK_TO_BACK_INSIGHT_THRESHOLD:
        insights.append(
            f"You had {back_to_back} back-to-back meetings this week. "
            "Try scheduling buffer time between meetings."
        )

    hours = Counter(m.start_time.astimezone(tz).hour for m in meetings)
    top = max(hours.values())
    peak = min(hour for hour, count in hours.items() if count == top)
    insights.append(
        f"Your peak meeting time is {peak}:00. Consider blocking focus time before or after."
    )
    return insights


async def collect_daily_metrics(
    store: PersistenceStore, *, user_id: str, day: date, tz: tzinfo = timezone.utc
) -> DailyMetrics:
    start, end = local_day_bounds(day, tz)
    meetings = await store.get_meetings_for_user_on_date(user_id=user_id, day=day, tz=tz)
    sessions = await store.list_sessions_for_user_between(user_id=user_id, start=start, end=end)
    suggestions = await store.list_break_suggestions_between(
        user_id=user_id, start=start, end=end
    )
    metrics = compute_daily_metrics(user_id, day, meetings, sessions, suggestions)
    logger.debug("Daily metrics for %s on %s: %s", user_id, day, metrics.model_dump())
    return metrics


__all__ = [
    "DailyMetrics",
    "collect_daily_metrics",
    "compute_daily_metrics",
    "count_back_to_back",
    "meeting_insights",
]
