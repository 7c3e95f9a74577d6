from .advisor import (
    ActivityPlanner,
    AdvisorRanking,
    NarrativeAdvisor,
    OpenAINarrativeAdvisor,
    PlanSource,
    SlotPlan,
)
from .models import (
    ActivityRequest,
    ActivityType,
    Meeting,
    SlotKind,
    TimePreference,
    TimeSlot,
    WorkWindow,
)
from .slot_finder import SlotFinder, find_meeting_conflict, next_meeting

__all__ = [
    "ActivityPlanner",
    "ActivityRequest",
    "ActivityType",
    "AdvisorRanking",
    "Meeting",
    "NarrativeAdvisor",
    "OpenAINarrativeAdvisor",
    "PlanSource",
    "SlotFinder",
    "SlotKind",
    "SlotPlan",
    "TimePreference",
    "TimeSlot",
    "WorkWindow",
    "find_meeting_conflict",
    "next_meeting",
]
