from .daily_metrics import (
    DailyMetrics,
    collect_daily_metrics,
    compute_daily_metrics,
    meeting_insights,
)
from .summary import DailySummaryService, SummaryConfig

__all__ = [
    "DailyMetrics",
    "DailySummaryService",
    "SummaryConfig",
    "collect_daily_metrics",
    "compute_daily_metrics",
    "meeting_insights",
]
