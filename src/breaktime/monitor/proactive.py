"""Per-user proactive break monitor.

Each monitored user gets one recurring evaluation job. An evaluation either
does nothing (outside hours, not due, cooldown), suppresses the alert around
a meeting and books a single re-check after it, or creates a proactive
break suggestion and sends it to the notification sink. When the break
history cannot be read or the suggestion cannot be stored the outcome is
``ERROR`` and nothing is sent.

Every store read and the sink call are bounded by
``external_call_timeout_s``. A meeting read that fails is treated as an
empty calendar; a sink that fails or times out leaves ``delivered`` false.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from datetime import date, datetime, time, timedelta, tzinfo
from enum import Enum
from typing import Any, Awaitable, Optional, TypeVar
from zoneinfo import ZoneInfo

from breaktime.core.errors import StorageUnavailable
from breaktime.core.logging_config import (
    record_break_alert,
    record_error,
    record_monitor_decision,
)
from breaktime.core.scheduler import KeyedJobScheduler
from breaktime.core.tasks import BackgroundTasks
from breaktime.monitor.actions import BreakAlertAction, BreakAlertResponse
from breaktime.monitor.notifications import (
    BreakAlert,
    NotificationSink,
    Urgency,
    break_message,
)
from breaktime.scheduling.models import Meeting, WorkWindow
from breaktime.scheduling.slot_finder import find_meeting_conflict
from breaktime.scheduling.timewindow import (
    combine_local,
    format_time_of_day,
    local_day_bounds,
    to_millis,
)
from breaktime.sessions.manager import Clock, SessionLifecycleManager, utcnow
from breaktime.sessions.models import (
    ActivityAction,
    ActivityLogEntry,
    BreakSuggestion,
    Session,
    SuggestionSource,
    UserProfile,
)
from breaktime.sessions.store import PersistenceStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

BREAK_ROTATION: tuple[str, ...] = ("hydration", "stretch", "walk", "meditation")


@dataclass(frozen=True)
class MonitorConfig:
    interval_minutes: int = 30
    break_threshold_hours: float = 2.0
    cooldown_hours: float = 2.0
    medium_urgency_hours: float = 2.5
    high_urgency_hours: float = 3.0
    meeting_lookahead_minutes: int = 10
    recheck_after_meeting_minutes: int = 5
    max_recheck_delay_hours: int = 24
    external_call_timeout_s: float = 1.0

    @classmethod
    def from_settings(cls, settings: Any) -> "MonitorConfig":
        return cls(
            interval_minutes=settings.monitor_interval_minutes,
            break_threshold_hours=settings.break_threshold_hours,
            cooldown_hours=settings.break_cooldown_hours,
            meeting_lookahead_minutes=settings.meeting_lookahead_minutes,
            recheck_after_meeting_minutes=settings.recheck_after_meeting_minutes,
            max_recheck_delay_hours=settings.max_recheck_delay_hours,
            external_call_timeout_s=settings.external_call_timeout_s,
        )


class MonitorOutcome(str, Enum):
    NOT_MONITORED = "not_monitored"
    OUTSIDE_HOURS = "outside_hours"
    NOT_DUE = "not_due"
    COOLDOWN = "cooldown"
    SUPPRESSED = "suppressed"
    ALERTED = "alerted"
    # The break history or the suggestion write was unavailable.
    ERROR = "error"


@dataclass(frozen=True)
class MonitorDecision:
    user_id: str
    outcome: MonitorOutcome
    evaluated_at: datetime
    hours_since_break: Optional[float] = None
    break_type: Optional[str] = None
    urgency: Optional[Urgency] = None
    suggestion_id: Optional[str] = None
    conflict: Optional[Meeting] = None
    recheck_at: Optional[datetime] = None
    delivered: bool = False


@dataclass(frozen=True)
class ResponseResult:
    action: BreakAlertAction
    suggestion: BreakSuggestion
    session: Optional[Session] = None
    next_check_at: Optional[datetime] = None


def select_break_type(accepted_today: int) -> str:
    return BREAK_ROTATION[accepted_today % len(BREAK_ROTATION)]


def urgency_for(hours_since_break: float, config: MonitorConfig) -> Urgency:
    if hours_since_break < config.medium_urgency_hours:
        return Urgency.LOW
    if hours_since_break < config.high_urgency_hours:
        return Urgency.MEDIUM
    return Urgency.HIGH


def is_working_time(local_now: datetime, profile: UserProfile) -> bool:
    if local_now.weekday() not in profile.work_days:
        return False
    window = WorkWindow.from_hours(profile.work_start_hour, profile.work_end_hour)
    return window.start <= local_now.time() < window.end


class ProactiveMonitor:
    def __init__(
        self,
        *,
        store: PersistenceStore,
        manager: SessionLifecycleManager,
        sink: NotificationSink,
        timers: KeyedJobScheduler,
        config: MonitorConfig | None = None,
        background: BackgroundTasks | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self._store = store
        self._manager = manager
        self._sink = sink
        self._timers = timers
        self._config = config or MonitorConfig()
        self._background = background or manager.background
        self._clock = clock
        self._profiles: dict[str, UserProfile] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    @property
    def config(self) -> MonitorConfig:
        return self._config

    def is_monitored(self, user_id: str) -> bool:
        return user_id in self._profiles

    # ------------------------------------------------------------------
    # Job keys
    # ------------------------------------------------------------------

    def cycle_key(self, user_id: str) -> str:
        return self._timers.key("monitor", user_id, "cycle")

    def recheck_key(self, user_id: str) -> str:
        return self._timers.key("monitor", user_id, "recheck")

    def deferred_key(self, user_id: str) -> str:
        return self._timers.key("monitor", user_id, "deferred")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start_monitoring(self, profile: UserProfile) -> bool:
        """Register the recurring evaluation; returns False if already running."""
        self._profiles[profile.user_id] = profile
        key = self.cycle_key(profile.user_id)
        if self._timers.has(key):
            return False
        self._timers.schedule_every(
            key,
            minutes=self._config.interval_minutes,
            callback=self._on_cycle,
            kwargs={"user_id": profile.user_id},
        )
        logger.info(
            "Started proactive monitoring for %s every %d minutes",
            profile.user_id,
            self._config.interval_minutes,
        )
        return True

    async def ensure_monitoring(self, profile: UserProfile) -> bool:
        """Start monitoring once the user has meetings or sessions today."""
        if self.is_monitored(profile.user_id) and self._timers.has(self.cycle_key(profile.user_id)):
            return True
        tz = ZoneInfo(profile.timezone)
        day = self._clock().astimezone(tz).date()
        meetings = await self._meetings_on(profile.user_id, day, tz)
        if not meetings:
            start, end = local_day_bounds(day, tz)
            try:
                sessions = await self._bounded(
                    self._store.list_sessions_for_user_between(
                        user_id=profile.user_id, start=start, end=end
                    )
                )
            except (asyncio.TimeoutError, StorageUnavailable) as exc:
                logger.warning(
                    "Could not read sessions for %s; not monitoring yet: %r", profile.user_id, exc
                )
                record_error(component="proactive_monitor", error_type=type(exc).__name__)
                return False
            if not sessions:
                logger.debug("No activity today for %s; not monitoring yet", profile.user_id)
                return False
        self.start_monitoring(profile)
        return True

    def stop_monitoring(self, user_id: str) -> int:
        """Stop the cycle and drop every pending re-check or deferred check."""
        self._profiles.pop(user_id, None)
        removed = self._timers.cancel_prefix(self._timers.key("monitor", user_id) + ":")
        logger.info("Stopped proactive monitoring for %s (%d jobs removed)", user_id, removed)
        return removed

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    async def evaluate(self, user_id: str) -> MonitorDecision:
        """Run one evaluation for ``user_id``.

        The decision and the suggestion write happen under the user's lock;
        the alert is delivered after it is released so a slow sink never
        holds up the next evaluation.
        """
        profile = self._profiles.get(user_id)
        if profile is None:
            return self._decide(MonitorDecision(user_id, MonitorOutcome.NOT_MONITORED, self._clock()))

        async with self._lock_for(user_id):
            decision, alert = await self._evaluate(profile)

        if alert is not None:
            delivered = await self._deliver(alert)
            decision = replace(decision, delivered=delivered)
            self._log(
                user_id,
                ActivityAction.PROACTIVE_BREAK_SUGGESTED,
                {
                    "suggestion_id": alert.suggestion_id,
                    "type": alert.type,
                    "urgency": alert.urgency.value,
                    "hours_since_break": round(decision.hours_since_break or 0.0, 2),
                    "delivered": delivered,
                },
            )
        return self._decide(decision)

    async def _evaluate(
        self, profile: UserProfile
    ) -> tuple[MonitorDecision, Optional[BreakAlert]]:
        user_id = profile.user_id
        now = self._clock()
        tz = ZoneInfo(profile.timezone)
        local_now = now.astimezone(tz)
        if not is_working_time(local_now, profile):
            return MonitorDecision(user_id, MonitorOutcome.OUTSIDE_HOURS, now), None

        day = local_now.date()
        try:
            recent = await self._bounded(
                self._store.get_recent_break_suggestions(
                    user_id=user_id,
                    lookback_hours=max(24.0, self._config.cooldown_hours),
                    now=now,
                )
            )
        except asyncio.TimeoutError:
            logger.warning("Reading break history for %s timed out", user_id)
            record_error(component="proactive_monitor", error_type="store_timeout")
            return MonitorDecision(user_id, MonitorOutcome.ERROR, now), None
        except StorageUnavailable as exc:
            logger.warning("Could not read break history for %s: %s", user_id, exc)
            record_error(component="proactive_monitor", error_type="store_unavailable")
            return MonitorDecision(user_id, MonitorOutcome.ERROR, now), None

        accepted_at = sorted(
            s.accepted_at for s in recent if s.accepted and s.accepted_at is not None
        )
        accepted_today = [ts for ts in accepted_at if ts.astimezone(tz).date() == day]
        anchor = (
            accepted_today[-1]
            if accepted_today
            else combine_local(day, time(profile.work_start_hour, 0), tz)
        )
        hours = (to_millis(now) - to_millis(anchor)) / 3_600_000
        if hours < self._config.break_threshold_hours:
            return MonitorDecision(user_id, MonitorOutcome.NOT_DUE, now, hours_since_break=hours), None

        if accepted_at and now - accepted_at[-1] < timedelta(hours=self._config.cooldown_hours):
            return MonitorDecision(user_id, MonitorOutcome.COOLDOWN, now, hours_since_break=hours), None

        break_type = select_break_type(len(accepted_today))
        urgency = urgency_for(hours, self._config)

        meetings = await self._meetings_on(user_id, day, tz)
        conflict = find_meeting_conflict(
            meetings, now, lookahead_minutes=self._config.meeting_lookahead_minutes
        )
        if conflict is not None:
            recheck_at = self._book_recheck(user_id, conflict, now)
            self._log(
                user_id,
                ActivityAction.PROACTIVE_BREAK_SUPPRESSED,
                {
                    "meeting": conflict.title,
                    "meeting_end": conflict.end_time.isoformat(),
                    "recheck_at": recheck_at.isoformat() if recheck_at else None,
                },
            )
            decision = MonitorDecision(
                user_id,
                MonitorOutcome.SUPPRESSED,
                now,
                hours_since_break=hours,
                break_type=break_type,
                urgency=urgency,
                conflict=conflict,
                recheck_at=recheck_at,
            )
            return decision, None

        reason = f"You've been working for {hours:.1f} hours without a break."
        try:
            # The manager bounds its own store write.
            suggestion = await self._manager.suggest_break(
                user_id,
                break_type=break_type,
                reason=reason,
                message=break_message(break_type),
                source=SuggestionSource.PROACTIVE,
            )
        except StorageUnavailable as exc:
            logger.warning("Could not record break suggestion for %s: %s", user_id, exc)
            record_error(component="proactive_monitor", error_type="store_unavailable")
            decision = MonitorDecision(
                user_id,
                MonitorOutcome.ERROR,
                now,
                hours_since_break=hours,
                break_type=break_type,
                urgency=urgency,
            )
            return decision, None

        alert = BreakAlert(
            user_id=user_id,
            suggestion_id=suggestion.id,
            reason=reason,
            type=break_type,
            urgency=urgency,
            message=suggestion.message,
        )
        decision = MonitorDecision(
            user_id,
            MonitorOutcome.ALERTED,
            now,
            hours_since_break=hours,
            break_type=break_type,
            urgency=urgency,
            suggestion_id=suggestion.id,
        )
        return decision, alert

    def _book_recheck(self, user_id: str, meeting: Meeting, now: datetime) -> Optional[datetime]:
        recheck_at = meeting.end_time + timedelta(
            minutes=self._config.recheck_after_meeting_minutes
        )
        if recheck_at - now > timedelta(hours=self._config.max_recheck_delay_hours):
            logger.info(
                "Not re-checking %s after %s: %s is more than %dh away",
                user_id,
                meeting.title,
                recheck_at.isoformat(),
                self._config.max_recheck_delay_hours,
            )
            return None
        self._timers.schedule_at(
            self.recheck_key(user_id),
            recheck_at,
            self._on_recheck,
            kwargs={"user_id": user_id},
        )
        logger.info(
            "Suppressed break alert for %s during %s; re-checking at %s",
            user_id,
            meeting.title,
            format_time_of_day(recheck_at),
        )
        return recheck_at

    async def _deliver(self, alert: BreakAlert) -> bool:
        try:
            await self._bounded(self._sink.send_break_alert(alert))
        except asyncio.TimeoutError:
            logger.warning(
                "Delivering break alert %s to %s timed out", alert.suggestion_id, alert.user_id
            )
            record_break_alert(break_type=alert.type, urgency=alert.urgency.value, status="failed")
            return False
        except Exception:
            logger.exception("Failed to deliver break alert %s to %s", alert.suggestion_id, alert.user_id)
            record_break_alert(break_type=alert.type, urgency=alert.urgency.value, status="failed")
            return False
        record_break_alert(break_type=alert.type, urgency=alert.urgency.value, status="sent")
        return True

    async def _meetings_on(self, user_id: str, day: date, tz: tzinfo) -> list[Meeting]:
        try:
            return await self._bounded(
                self._store.get_meetings_for_user_on_date(user_id=user_id, day=day, tz=tz)
            )
        except asyncio.TimeoutError:
            logger.warning("Reading meetings for %s timed out; assuming none", user_id)
            record_error(component="proactive_monitor", error_type="store_timeout")
            return []
        except StorageUnavailable as exc:
            logger.warning("Could not read meetings for %s; assuming none: %s", user_id, exc)
            return []

    # ------------------------------------------------------------------
    # Responses
    # ------------------------------------------------------------------

    async def handle_response(self, response: BreakAlertResponse) -> ResponseResult:
        action = response.action
        user_id = response.user_id
        if action is BreakAlertAction.ACCEPT_NOW:
            self._timers.cancel(self.deferred_key(user_id))
            suggestion, session = await self._manager.accept_suggestion(response.suggestion_id)
            return ResponseResult(action, suggestion, session=session)

        suggestion = await self._manager.decline_suggestion(response.suggestion_id)
        delay = action.delay_minutes
        if delay is None:
            logger.info("Break alert %s dismissed by %s", response.suggestion_id, user_id)
            return ResponseResult(action, suggestion)

        next_check_at = self._clock() + timedelta(minutes=delay)
        self._timers.schedule_at(
            self.deferred_key(user_id),
            next_check_at,
            self._on_deferred,
            kwargs={"user_id": user_id},
        )
        self._log(
            user_id,
            ActivityAction.BREAK_DEFERRED,
            {"suggestion_id": response.suggestion_id, "delay_minutes": delay},
        )
        return ResponseResult(action, suggestion, next_check_at=next_check_at)

    # ------------------------------------------------------------------
    # Job callbacks
    # ------------------------------------------------------------------

    async def _on_cycle(self, user_id: str) -> None:
        await self.evaluate(user_id)

    async def _on_recheck(self, user_id: str) -> None:
        await self.evaluate(user_id)

    async def _on_deferred(self, user_id: str) -> None:
        await self.evaluate(user_id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _lock_for(self, user_id: str) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[user_id] = lock
        return lock

    def _decide(self, decision: MonitorDecision) -> MonitorDecision:
        record_monitor_decision(outcome=decision.outcome.value)
        logger.debug("Monitor decision for %s: %s", decision.user_id, decision.outcome.value)
        return decision

    def _log(self, user_id: str, action: ActivityAction, details: dict[str, Any]) -> None:
        entry = ActivityLogEntry(
            user_id=user_id, action=action, timestamp=self._clock(), details=details
        )
        self._background.spawn(
            self._bounded(self._store.log_activity(entry)),
            name=f"activity-log:{action.value}:{user_id}",
        )

    async def _bounded(self, awaitable: Awaitable[T]) -> T:
        return await asyncio.wait_for(awaitable, timeout=self._config.external_call_timeout_s)


__all__ = [
    "BREAK_ROTATION",
    "MonitorConfig",
    "MonitorDecision",
    "MonitorOutcome",
    "ProactiveMonitor",
    "ResponseResult",
    "is_working_time",
    "select_break_type",
    "urgency_for",
]
