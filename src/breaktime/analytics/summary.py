"""Hourly metrics refresh and the end-of-day productivity summary DM.

Each tracked user gets two keyed jobs: a recurring recompute of today's
``DailyMetrics`` (stored so the numbers survive a restart) and a daily job
at ``summary_hour`` in the user's own timezone that refreshes once more and
sends the summary. Days without meetings, sessions or suggestions are
stored but not sent.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Awaitable, Callable, Optional, Protocol, TypeVar
from zoneinfo import ZoneInfo

from breaktime.analytics.daily_metrics import DailyMetrics, collect_daily_metrics
from breaktime.core.errors import StorageUnavailable
from breaktime.core.logging_config import record_error
from breaktime.core.scheduler import KeyedJobScheduler
from breaktime.sessions.models import UserProfile
from breaktime.sessions.store import PersistenceStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SummarySink(Protocol):
    async def send_daily_summary(self, metrics: DailyMetrics) -> Optional[str]: ...


@dataclass(frozen=True)
class SummaryConfig:
    refresh_minutes: int = 60
    summary_hour: int = 18
    external_call_timeout_s: float = 1.0

    @classmethod
    def from_settings(cls, settings: Any) -> "SummaryConfig":
        return cls(
            refresh_minutes=settings.metrics_refresh_minutes,
            summary_hour=settings.daily_summary_hour,
            external_call_timeout_s=settings.external_call_timeout_s,
        )


class DailySummaryService:
    def __init__(
        self,
        *,
        store: PersistenceStore,
        sink: SummarySink,
        timers: KeyedJobScheduler,
        config: SummaryConfig | None = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._store = store
        self._sink = sink
        self._timers = timers
        self._config = config or SummaryConfig()
        self._clock = clock
        self._profiles: dict[str, UserProfile] = {}

    def refresh_key(self, user_id: str) -> str:
        return self._timers.key("metrics", user_id, "refresh")

    def summary_key(self, user_id: str) -> str:
        return self._timers.key("metrics", user_id, "summary")

    def is_tracked(self, user_id: str) -> bool:
        return user_id in self._profiles

    def track(self, profile: UserProfile) -> bool:
        """Register both jobs for ``profile``; returns False if already tracked."""
        already = self.is_tracked(profile.user_id) and self._timers.has(
            self.summary_key(profile.user_id)
        )
        self._profiles[profile.user_id] = profile
        if already:
            return False
        self._timers.schedule_every(
            self.refresh_key(profile.user_id),
            minutes=self._config.refresh_minutes,
            callback=self.refresh,
            kwargs={"user_id": profile.user_id},
        )
        self._timers.schedule_daily(
            self.summary_key(profile.user_id),
            hour=self._config.summary_hour,
            timezone=profile.timezone,
            callback=self.send_summary,
            kwargs={"user_id": profile.user_id},
        )
        logger.info(
            "Tracking daily metrics for %s (summary at %02d:00 %s)",
            profile.user_id,
            self._config.summary_hour,
            profile.timezone,
        )
        return True

    def untrack(self, user_id: str) -> int:
        self._profiles.pop(user_id, None)
        return self._timers.cancel_prefix(self._timers.key("metrics", user_id) + ":")

    async def refresh(self, user_id: str, day: date | None = None) -> Optional[DailyMetrics]:
        """Recompute and store the metrics for ``day`` (today, locally, by default)."""
        profile = self._profiles.get(user_id)
        if profile is None:
            logger.debug("Metrics refresh for untracked user %s skipped", user_id)
            return None
        tz = ZoneInfo(profile.timezone)
        day = day or self._clock().astimezone(tz).date()
        try:
            metrics = await self._bounded(
                collect_daily_metrics(self._store, user_id=user_id, day=day, tz=tz)
            )
            await self._bounded(
                self._store.upsert_daily_metrics(
                    user_id=user_id, day=day, counters=metrics.counters()
                )
            )
        except asyncio.TimeoutError:
            logger.warning("Metrics refresh for %s on %s timed out", user_id, day)
            record_error(component="daily_summary", error_type="store_timeout")
            return None
        except StorageUnavailable as exc:
            logger.warning("Metrics refresh for %s on %s failed: %s", user_id, day, exc)
            return None
        return metrics

    async def send_summary(self, user_id: str) -> bool:
        metrics = await self.refresh(user_id)
        if metrics is None:
            return False
        if not metrics.has_activity:
            logger.info("No activity for %s on %s; summary not sent", user_id, metrics.day)
            return False
        try:
            await self._bounded(self._sink.send_daily_summary(metrics))
        except asyncio.TimeoutError:
            logger.warning("Daily summary for %s timed out", user_id)
            record_error(component="daily_summary", error_type="timeout")
            return False
        except Exception:
            logger.exception("Failed to send daily summary to %s", user_id)
            return False
        logger.info("Sent daily summary to %s for %s", user_id, metrics.day)
        return True

    async def stored_metrics(self, user_id: str, day: date) -> Optional[DailyMetrics]:
        counters = await self._bounded(self._store.get_daily_metrics(user_id=user_id, day=day))
        if counters is None:
            return None
        return DailyMetrics.from_counters(user_id, day, counters)

    async def _bounded(self, awaitable: Awaitable[T]) -> T:
        return await asyncio.wait_for(awaitable, timeout=self._config.external_call_timeout_s)


__all__ = ["DailySummaryService", "SummaryConfig", "SummarySink"]
