"""Optional LLM ranking of activity slots with a deterministic fallback.

The advisor only ever re-orders or re-phrases what fits in the calendar.
Its output is checked against the meetings and the work window and thrown
away when it does not hold up; the caller then gets the ``SlotFinder``
result and never sees the advisor failure.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Iterable, NamedTuple, Optional, Protocol, Sequence

from openai import AsyncOpenAI
from pydantic import AwareDatetime, BaseModel, Field, ValidationError

from breaktime.core.errors import AdvisorUnavailable, InvalidRequest
from breaktime.scheduling.models import ActivityRequest, Meeting, SlotKind, TimeSlot
from breaktime.scheduling.slot_finder import SlotFinder, validate_request
from breaktime.scheduling.timewindow import (
    combine_local,
    format_time_range,
    overlaps,
    to_millis,
)

logger = logging.getLogger(__name__)

ADVISOR_SYSTEM_PROMPT = """You help a busy professional fit a short wellness activity into their day.
You receive their remaining meetings and the activity they want to do.
Reply with JSON only:
{"slots": [{"start": ISO-8601, "end": ISO-8601, "slot_kind": "before_first|between|after_last|free_day",
 "description": str, "confidence": 0.1-1.0, "reasoning": str}], "insights": [str]}
Every slot must last exactly the requested minutes, stay inside working hours
and never overlap a meeting. Best option first."""


@dataclass(frozen=True)
class AdvisorRanking:
    slots: list[TimeSlot]
    insights: list[str] = field(default_factory=list)


class NarrativeAdvisor(Protocol):
    async def rank_slots(
        self, meetings: Sequence[Meeting], request: ActivityRequest
    ) -> AdvisorRanking: ...


class _AdvisorSlot(BaseModel):
    start: AwareDatetime
    end: AwareDatetime
    slot_kind: SlotKind = SlotKind.BETWEEN
    description: str = ""
    confidence: float = Field(default=0.5, ge=0.1, le=1.0)
    reasoning: str = ""


class _AdvisorPayload(BaseModel):
    slots: list[_AdvisorSlot] = Field(default_factory=list)
    insights: list[str] = Field(default_factory=list)


class OpenAINarrativeAdvisor:
    """``NarrativeAdvisor`` backed by an OpenAI chat completion."""

    def __init__(self, client: AsyncOpenAI, *, model: str = "gpt-4o-mini") -> None:
        self._client = client
        self._model = model

    async def rank_slots(
        self, meetings: Sequence[Meeting], request: ActivityRequest
    ) -> AdvisorRanking:
        prompt = json.dumps(
            {
                "now": request.reference_now.isoformat(),
                "activity": request.activity_type.value,
                "duration_minutes": request.duration_minutes,
                "time_preference": request.time_preference.value,
                "work_window": [
                    request.work_window.start.isoformat(timespec="minutes"),
                    request.work_window.end.isoformat(timespec="minutes"),
                ],
                "meetings": [
                    {
                        "title": m.title,
                        "start": m.start_time.isoformat(),
                        "end": m.end_time.isoformat(),
                    }
                    for m in meetings
                ],
            }
        )
        try:
            response = await self._client.chat.completions.create(
                model=self._model,
                messages=[
                    {"role": "system", "content": ADVISOR_SYSTEM_PROMPT},
                    {"role": "user", "content": prompt},
                ],
                temperature=0.2,
                response_format={"type": "json_object"},
            )
        except Exception as exc:
            raise AdvisorUnavailable(f"advisor request failed: {exc}") from exc

        content = response.choices[0].message.content if response.choices else None
        if not content:
            raise AdvisorUnavailable("advisor returned an empty response")
        try:
            payload = _AdvisorPayload.model_validate_json(content)
            slots = [
                TimeSlot(
                    start=item.start,
                    end=item.end,
                    duration_minutes=request.duration_minutes,
                    slot_kind=item.slot_kind,
                    description=item.description,
                    confidence=item.confidence,
                    reasoning=item.reasoning,
                )
                for item in payload.slots
            ]
        except ValidationError as exc:
            raise AdvisorUnavailable(f"advisor returned malformed slots: {exc}") from exc
        return AdvisorRanking(slots=slots, insights=list(payload.insights))


class PlanSource(str, Enum):
    ADVISOR = "advisor"
    DETERMINISTIC = "deterministic"


@dataclass(frozen=True)
class SlotPlan:
    slots: list[TimeSlot]
    source: PlanSource
    message: str
    insights: list[str] = field(default_factory=list)

    @property
    def recommended(self) -> Optional[TimeSlot]:
        return self.slots[0] if self.slots else None

    @property
    def packed(self) -> bool:
        return not self.slots


class _Span(NamedTuple):
    start: datetime
    end: datetime


class ActivityPlanner:
    """Ask the advisor first when one is configured, else use ``SlotFinder``."""

    def __init__(
        self,
        slot_finder: SlotFinder,
        advisor: NarrativeAdvisor | None = None,
        *,
        timeout_s: float = 8.0,
    ) -> None:
        self._slot_finder = slot_finder
        self._advisor = advisor
        self._timeout_s = timeout_s

    async def plan(self, meetings: Iterable[Meeting], request: ActivityRequest) -> SlotPlan:
        validate_request(request)
        meetings = list(meetings)

        if self._advisor is not None:
            ranking = await self._ask_advisor(meetings, request)
            if ranking is not None:
                return SlotPlan(
                    slots=list(ranking.slots),
                    source=PlanSource.ADVISOR,
                    message=_plan_message(ranking.slots, request),
                    insights=list(ranking.insights),
                )

        slots = self._slot_finder.find_slots(meetings, request)
        return SlotPlan(
            slots=slots,
            source=PlanSource.DETERMINISTIC,
            message=_plan_message(slots, request),
        )

    async def _ask_advisor(
        self, meetings: list[Meeting], request: ActivityRequest
    ) -> AdvisorRanking | None:
        try:
            ranking = await asyncio.wait_for(
                self._advisor.rank_slots(meetings, request), timeout=self._timeout_s
            )
        except asyncio.TimeoutError:
            logger.warning("Advisor timed out after %.1fs; using slot finder", self._timeout_s)
            return None
        except AdvisorUnavailable as exc:
            logger.warning("Advisor unavailable (%s); using slot finder", exc)
            return None
        except Exception:
            logger.exception("Advisor raised unexpectedly; using slot finder")
            return None

        if not isinstance(ranking, AdvisorRanking):
            problem = f"unexpected result {type(ranking).__name__}"
        else:
            try:
                problem = ranking_problem(ranking, meetings, request)
            except InvalidRequest as exc:
                problem = str(exc)
        if problem:
            logger.warning("Discarding advisor ranking: %s", problem)
            return None
        return ranking


def ranking_problem(
    ranking: AdvisorRanking, meetings: Sequence[Meeting], request: ActivityRequest
) -> str | None:
    """Describe why an advisor ranking cannot be used, or ``None`` if it can."""
    if not ranking.slots:
        return "no slots"
    tz = request.reference_now.tzinfo
    day = request.reference_now.date()
    window_start = to_millis(combine_local(day, request.work_window.start, tz))
    window_end = to_millis(combine_local(day, request.work_window.end, tz))
    now_ms = to_millis(request.reference_now)
    busy = [_Span(m.start_time, m.end_time) for m in meetings]

    for slot in ranking.slots:
        start_ms, end_ms = to_millis(slot.start), to_millis(slot.end)
        if slot.duration_minutes != request.duration_minutes:
            return f"slot {slot.start.isoformat()} has duration {slot.duration_minutes}"
        if end_ms - start_ms != request.duration_minutes * 60_000:
            return f"slot {slot.start.isoformat()} does not last {request.duration_minutes} minutes"
        if start_ms < max(window_start, now_ms) or end_ms > window_end:
            return f"slot {slot.start.isoformat()} is outside the work window"
        span = _Span(slot.start, slot.end)
        for meeting in busy:
            if overlaps(span, meeting):
                return f"slot {slot.start.isoformat()} overlaps a meeting"
    return None


def _plan_message(slots: Sequence[TimeSlot], request: ActivityRequest) -> str:
    activity = request.activity_type.value
    if not slots:
        return (
            f"Your day is packed. There is no {request.duration_minutes}-minute opening "
            f"for {activity} left today; try a shorter break or tomorrow."
        )
    best = slots[0]
    return f"Best time for {activity}: {format_time_range(best.start, best.end)} ({best.description})."


__all__ = [
    "ADVISOR_SYSTEM_PROMPT",
    "ActivityPlanner",
    "AdvisorRanking",
    "NarrativeAdvisor",
    "OpenAINarrativeAdvisor",
    "PlanSource",
    "SlotPlan",
    "ranking_problem",
]
