"""Deterministic slot search over a day's meetings.

Candidates start exactly at a boundary (``now``/work start, or the end of the
previous meeting) and last exactly the requested duration. They are returned
in discovery order; the first one is the recommendation. A gap large enough
for a two-hour walk and an exact fit are treated alike.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, time, timedelta, tzinfo
from typing import Iterable, Mapping, Sequence

from breaktime.core.errors import InvalidRequest
from breaktime.scheduling.models import (
    ActivityRequest,
    ActivityType,
    Meeting,
    SlotKind,
    TimePreference,
    TimeSlot,
)
from breaktime.scheduling.timewindow import (
    combine_local,
    format_time_of_day,
    format_time_range,
    to_millis,
)

logger = logging.getLogger(__name__)

NOON = time(12, 0)

SLOT_CONFIDENCE: Mapping[SlotKind, float] = {
    SlotKind.BETWEEN: 0.9,
    SlotKind.BEFORE_FIRST: 0.8,
    SlotKind.AFTER_LAST: 0.7,
    SlotKind.FREE_DAY: 0.7,
}


@dataclass(frozen=True)
class PreferredHours:
    start: time
    end: time
    anchors: tuple[time, ...]


PREFERRED_HOURS: Mapping[ActivityType, tuple[PreferredHours, ...]] = {
    ActivityType.WALK: (PreferredHours(time(10, 0), time(16, 0), (time(10, 30), time(15, 0))),),
    ActivityType.LUNCH: (PreferredHours(time(11, 30), time(13, 30), (time(12, 0),)),),
    ActivityType.COFFEE: (
        PreferredHours(time(10, 0), time(11, 0), (time(10, 0),)),
        PreferredHours(time(14, 0), time(16, 0), (time(14, 0),)),
    ),
    ActivityType.STRETCH: (
        PreferredHours(time(11, 0), time(12, 0), (time(11, 0),)),
        PreferredHours(time(15, 0), time(16, 0), (time(15, 0),)),
    ),
    ActivityType.MEDITATION: (
        PreferredHours(time(9, 30), time(10, 30), (time(9, 30),)),
        PreferredHours(time(13, 30), time(14, 30), (time(13, 30),)),
    ),
    ActivityType.BREAK: (
        PreferredHours(time(10, 30), time(11, 30), (time(10, 30),)),
        PreferredHours(time(15, 0), time(16, 0), (time(15, 0),)),
    ),
    ActivityType.GENERAL: (
        PreferredHours(time(10, 30), time(11, 30), (time(10, 30),)),
        PreferredHours(time(15, 0), time(16, 0), (time(15, 0),)),
    ),
}


class SlotFinder:
    """Find conflict-free slots for an activity inside the work window."""

    def __init__(
        self,
        *,
        preferred_hours: Mapping[ActivityType, tuple[PreferredHours, ...]] | None = None,
    ) -> None:
        self._preferred_hours = preferred_hours or PREFERRED_HOURS

    def find_slots(
        self, meetings: Iterable[Meeting], request: ActivityRequest
    ) -> list[TimeSlot]:
        validate_request(request)
        tz = request.reference_now.tzinfo
        now_ms = to_millis(request.reference_now)
        upcoming = sorted(
            (m for m in meetings if to_millis(m.end_time) > now_ms),
            key=lambda m: (to_millis(m.start_time), to_millis(m.end_time)),
        )
        if not upcoming:
            slot = self._free_day_slot(request, tz)
            return [slot] if slot else []

        candidates = self._scan_gaps(upcoming, request, tz)
        return [slot for slot in candidates if _matches_preference(slot, request.time_preference)]

    def recommend(
        self, meetings: Iterable[Meeting], request: ActivityRequest
    ) -> TimeSlot | None:
        slots = self.find_slots(meetings, request)
        return slots[0] if slots else None

    def _scan_gaps(
        self, meetings: Sequence[Meeting], request: ActivityRequest, tz: tzinfo
    ) -> list[TimeSlot]:
        duration = timedelta(minutes=request.duration_minutes)
        day = request.reference_now.date()
        day_end = combine_local(day, request.work_window.end, tz)
        floor = max(
            _ceil_minute(request.reference_now),
            combine_local(day, request.work_window.start, tz),
        )
        slots: list[TimeSlot] = []

        def fits(start: datetime, limit: datetime) -> bool:
            end = start + duration
            return to_millis(end) <= to_millis(limit) and to_millis(end) <= to_millis(day_end)

        first = meetings[0]
        first_start = first.start_time.astimezone(tz)
        if fits(floor, first_start):
            slots.append(
                self._gap_slot(
                    floor,
                    request,
                    SlotKind.BEFORE_FIRST,
                    f"before {first.title}",
                    f"Free until {first.title} at {format_time_of_day(first_start)}.",
                )
            )

        busy_until = first.end_time.astimezone(tz)
        busy_title = first.title
        for nxt in meetings[1:]:
            start = max(busy_until, floor)
            nxt_start = nxt.start_time.astimezone(tz)
            if fits(start, nxt_start):
                slots.append(
                    self._gap_slot(
                        start,
                        request,
                        SlotKind.BETWEEN,
                        f"between {busy_title} and {nxt.title}",
                        f"Open right after {busy_title}, before {nxt.title} at "
                        f"{format_time_of_day(nxt_start)}.",
                    )
                )
            nxt_end = nxt.end_time.astimezone(tz)
            if to_millis(nxt_end) >= to_millis(busy_until):
                busy_until = nxt_end
                busy_title = nxt.title

        start = max(busy_until, floor)
        if fits(start, day_end):
            slots.append(
                self._gap_slot(
                    start,
                    request,
                    SlotKind.AFTER_LAST,
                    f"after {busy_title}",
                    f"Your meetings are done after {busy_title}.",
                )
            )
        return slots

    def _gap_slot(
        self,
        start: datetime,
        request: ActivityRequest,
        kind: SlotKind,
        description: str,
        reasoning: str,
    ) -> TimeSlot:
        end = start + timedelta(minutes=request.duration_minutes)
        return TimeSlot(
            start=start,
            end=end,
            duration_minutes=request.duration_minutes,
            slot_kind=kind,
            description=description,
            confidence=SLOT_CONFIDENCE[kind],
            reasoning=reasoning,
        )

    def _free_day_slot(self, request: ActivityRequest, tz: tzinfo) -> TimeSlot | None:
        day = request.reference_now.date()
        duration = timedelta(minutes=request.duration_minutes)
        work_start = combine_local(day, request.work_window.start, tz)
        work_end = combine_local(day, request.work_window.end, tz)
        noon = combine_local(day, NOON, tz)
        lower = max(_ceil_minute(request.reference_now), work_start)
        if request.time_preference == TimePreference.AFTERNOON:
            lower = max(lower, noon)
        activity = request.activity_type.value

        for hours in self._preferred_hours.get(request.activity_type, ()):
            lo = max(lower, combine_local(day, hours.start, tz))
            hi = min(work_end, combine_local(day, hours.end, tz))
            options = [max(combine_local(day, anchor, tz), lo) for anchor in hours.anchors]
            options.append(lo)
            for start in options:
                if not _start_allowed(start, noon, request.time_preference):
                    continue
                if start + duration <= hi:
                    return self._free_slot(
                        start,
                        request,
                        f"No meetings scheduled; {format_time_of_day(start)} is a good time "
                        f"for {activity} ({format_time_range(combine_local(day, hours.start, tz), combine_local(day, hours.end, tz))}).",
                    )

        if _start_allowed(lower, noon, request.time_preference) and lower + duration <= work_end:
            return self._free_slot(
                lower,
                request,
                f"No meetings scheduled; the usual {activity} hours are not available, "
                "so this is the earliest open time.",
            )
        logger.debug(
            "No free-day slot for %s (%d min) within the work window", activity, request.duration_minutes
        )
        return None

    def _free_slot(self, start: datetime, request: ActivityRequest, reasoning: str) -> TimeSlot:
        end = start + timedelta(minutes=request.duration_minutes)
        return TimeSlot(
            start=start,
            end=end,
            duration_minutes=request.duration_minutes,
            slot_kind=SlotKind.FREE_DAY,
            description=f"{request.activity_type.value} at {format_time_range(start, end)}",
            confidence=SLOT_CONFIDENCE[SlotKind.FREE_DAY],
            reasoning=reasoning,
        )


def validate_request(request: ActivityRequest) -> None:
    if not isinstance(request.duration_minutes, int) or request.duration_minutes <= 0:
        raise InvalidRequest(
            f"duration must be a positive number of minutes, got {request.duration_minutes!r}"
        )
    if request.reference_now.tzinfo is None:
        raise InvalidRequest("reference_now must be timezone-aware")


def find_meeting_conflict(
    meetings: Iterable[Meeting], now: datetime, *, lookahead_minutes: int = 10
) -> Meeting | None:
    """Return the meeting the user is in, or one starting within ``lookahead_minutes``."""
    now_ms = to_millis(now)
    ordered = sorted(meetings, key=lambda m: to_millis(m.start_time))
    for meeting in ordered:
        if to_millis(meeting.start_time) <= now_ms <= to_millis(meeting.end_time):
            return meeting
    horizon_ms = now_ms + lookahead_minutes * 60_000
    for meeting in ordered:
        start_ms = to_millis(meeting.start_time)
        if now_ms < start_ms <= horizon_ms:
            return meeting
    return None


def next_meeting(meetings: Iterable[Meeting], now: datetime) -> Meeting | None:
    now_ms = to_millis(now)
    upcoming = [m for m in meetings if to_millis(m.start_time) > now_ms]
    return min(upcoming, key=lambda m: to_millis(m.start_time)) if upcoming else None


def _matches_preference(slot: TimeSlot, preference: TimePreference) -> bool:
    if preference == TimePreference.MORNING:
        return slot.start.hour < 12
    if preference == TimePreference.AFTERNOON:
        return slot.start.hour >= 12
    return True


def _start_allowed(start: datetime, noon: datetime, preference: TimePreference) -> bool:
    if preference == TimePreference.MORNING:
        return start < noon
    if preference == TimePreference.AFTERNOON:
        return start >= noon
    return True


def _ceil_minute(value: datetime) -> datetime:
    floored = value.replace(second=0, microsecond=0)
    return floored if floored == value else floored + timedelta(minutes=1)


__all__ = [
    "PREFERRED_HOURS",
    "PreferredHours",
    "SLOT_CONFIDENCE",
    "SlotFinder",
    "find_meeting_conflict",
    "next_meeting",
    "validate_request",
]
