from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, time
from enum import Enum
from typing import Optional

from pydantic import AwareDatetime, BaseModel, ConfigDict, Field, field_validator, model_validator


class ActivityType(str, Enum):
    WALK = "walk"
    LUNCH = "lunch"
    COFFEE = "coffee"
    STRETCH = "stretch"
    MEDITATION = "meditation"
    BREAK = "break"
    GENERAL = "general"


class TimePreference(str, Enum):
    MORNING = "morning"
    AFTERNOON = "afternoon"
    ANYTIME = "anytime"


class SlotKind(str, Enum):
    BEFORE_FIRST = "before_first"
    BETWEEN = "between"
    AFTER_LAST = "after_last"
    FREE_DAY = "free_day"


class Meeting(BaseModel):
    """Read-only projection of a calendar meeting."""

    model_config = ConfigDict(frozen=True)

    title: str = Field(default="Untitled Meeting")
    start_time: datetime
    end_time: datetime
    duration_minutes: Optional[int] = Field(default=None, ge=0)
    attendee_count: int = Field(default=0, ge=0)
    meeting_type: Optional[str] = Field(
        default=None, description="video_call, in_person or phone"
    )

    @field_validator("title", mode="before")
    @classmethod
    def _default_title(cls, value: object) -> object:
        if value is None or (isinstance(value, str) and not value.strip()):
            return "Untitled Meeting"
        return value

    @model_validator(mode="after")
    def _check_bounds(self) -> "Meeting":
        if self.start_time.tzinfo is None or self.end_time.tzinfo is None:
            raise ValueError("meeting times must be timezone-aware")
        if self.end_time < self.start_time:
            raise ValueError("meeting ends before it starts")
        if self.duration_minutes is None:
            minutes = round((self.end_time - self.start_time).total_seconds() / 60)
            object.__setattr__(self, "duration_minutes", minutes)
        return self


@dataclass(frozen=True)
class WorkWindow:
    """Daily range inside which activities may be scheduled."""

    start: time = time(9, 0)
    end: time = time(18, 0)

    def __post_init__(self) -> None:
        if self.end <= self.start:
            raise ValueError("work window must end after it starts")

    @classmethod
    def from_hours(cls, start_hour: int, end_hour: int) -> "WorkWindow":
        end = time(23, 59) if end_hour >= 24 else time(end_hour, 0)
        return cls(start=time(start_hour, 0), end=end)


@dataclass(frozen=True)
class ActivityRequest:
    """Caller intent for one activity.

    ``duration_minutes`` is validated by the slot finder, not here, so that a
    bad duration surfaces as ``InvalidRequest`` before any computation.
    """

    duration_minutes: int
    reference_now: datetime
    activity_type: ActivityType = ActivityType.GENERAL
    time_preference: TimePreference = TimePreference.ANYTIME
    work_window: WorkWindow = field(default_factory=WorkWindow)


class TimeSlot(BaseModel):
    model_config = ConfigDict(frozen=True)

    start: AwareDatetime
    end: AwareDatetime
    duration_minutes: int = Field(gt=0)
    slot_kind: SlotKind
    description: str
    confidence: float = Field(ge=0.1, le=1.0)
    reasoning: str = ""

    @model_validator(mode="after")
    def _check_duration(self) -> "TimeSlot":
        if round((self.end - self.start).total_seconds()) != self.duration_minutes * 60:
            raise ValueError("slot end - start must equal duration_minutes")
        return self


__all__ = [
    "ActivityRequest",
    "ActivityType",
    "Meeting",
    "SlotKind",
    "TimePreference",
    "TimeSlot",
    "WorkWindow",
]
