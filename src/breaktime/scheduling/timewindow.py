"""Pure time helpers shared by the slot finder and the proactive monitor.

Intervals are half-open ``[start, end)``. Comparisons go through integer
millisecond timestamps so that sub-second noise never shifts a boundary.
"""

from __future__ import annotations

import re
from datetime import date, datetime, time, timedelta, tzinfo
from typing import Protocol

from breaktime.core.errors import InvalidRequest

_TIME_RE = re.compile(
    r"^(?P<hour>\d{1,2})(?::(?P<minute>\d{2}))?\s*(?P<meridiem>[ap]\.?m\.?)?$",
    re.IGNORECASE,
)


class Interval(Protocol):
    @property
    def start(self) -> datetime: ...

    @property
    def end(self) -> datetime: ...


def to_millis(value: datetime) -> int:
    if value.tzinfo is None:
        raise InvalidRequest("naive datetimes are not supported")
    return int(round(value.timestamp() * 1000))


def minutes_between(start: datetime, end: datetime) -> int:
    """Whole minutes from ``start`` to ``end`` (floored, may be negative)."""
    return (to_millis(end) - to_millis(start)) // 60_000


def parse_time_of_day(text: str, reference: datetime) -> datetime:
    """Parse ``2:30pm``, ``14:30``, ``2pm``, ``14`` or ``now`` on ``reference``'s date.

    The result carries ``reference``'s timezone. Raises ``InvalidRequest`` for
    anything else, including out-of-range hours and minutes.
    """
    raw = (text or "").strip().lower()
    if not raw:
        raise InvalidRequest("time string is empty")
    if raw == "now":
        return reference.replace(second=0, microsecond=0)

    match = _TIME_RE.match(raw)
    if not match:
        raise InvalidRequest(f"unrecognized time {text!r}")

    hour = int(match.group("hour"))
    minute = int(match.group("minute") or 0)
    meridiem = match.group("meridiem")

    if minute > 59:
        raise InvalidRequest(f"minute out of range in {text!r}")
    if meridiem:
        if not 1 <= hour <= 12:
            raise InvalidRequest(f"hour out of range in {text!r}")
        is_pm = meridiem.startswith("p")
        hour = hour % 12 + (12 if is_pm else 0)
    elif hour > 23:
        raise InvalidRequest(f"hour out of range in {text!r}")

    return reference.replace(hour=hour, minute=minute, second=0, microsecond=0)


def format_time_of_day(value: datetime | time) -> str:
    """Render a wall-clock time as ``2:30pm`` (round-trips through the parser)."""
    hour = value.hour % 12 or 12
    suffix = "am" if value.hour < 12 else "pm"
    return f"{hour}:{value.minute:02d}{suffix}"


def format_time_range(start: datetime, end: datetime) -> str:
    return f"{format_time_of_day(start)}–{format_time_of_day(end)}"


def overlaps(a: Interval, b: Interval) -> bool:
    a_start, a_end = to_millis(a.start), to_millis(a.end)
    b_start, b_end = to_millis(b.start), to_millis(b.end)
    if a_start == a_end or b_start == b_end:
        return False
    return a_start < b_end and b_start < a_end


def gap(a: Interval, b: Interval) -> timedelta:
    """Time from the end of ``a`` to the start of ``b``; negative if they overlap."""
    return timedelta(milliseconds=to_millis(b.start) - to_millis(a.end))


def gap_minutes(a: Interval, b: Interval) -> int:
    return (to_millis(b.start) - to_millis(a.end)) // 60_000


def combine_local(day: date, at: time, tz: tzinfo) -> datetime:
    return datetime.combine(day, at, tzinfo=tz)


def local_day_bounds(day: date, tz: tzinfo) -> tuple[datetime, datetime]:
    start = combine_local(day, time(0, 0), tz)
    return start, start + timedelta(days=1)


__all__ = [
    "Interval",
    "combine_local",
    "format_time_of_day",
    "format_time_range",
    "gap",
    "gap_minutes",
    "local_day_bounds",
    "minutes_between",
    "overlaps",
    "parse_time_of_day",
    "to_millis",
]
