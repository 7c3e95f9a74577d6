from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Awaitable, Callable

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler

logger = logging.getLogger(__name__)

JobCallback = Callable[..., Awaitable[Any]]


def create_scheduler(timezone: str = "UTC") -> AsyncIOScheduler:
    """Create an in-memory scheduler.

    Jobs reference bound methods and are re-created on startup by the
    components that own them, so no persistent job store is used.
    """
    return AsyncIOScheduler(timezone=timezone)


class KeyedJobScheduler:
    """Cancellable timers keyed by a stable id on top of APScheduler.

    Scheduling under an existing key replaces the previous timer, so a
    superseding event cancels the stale one instead of both firing.
    """

    def __init__(self, scheduler: AsyncIOScheduler, *, namespace: str = "breaktime") -> None:
        self._scheduler = scheduler
        self._namespace = namespace
        self._run_dates: dict[str, datetime] = {}

    @property
    def scheduler(self) -> AsyncIOScheduler:
        return self._scheduler

    def key(self, *parts: str) -> str:
        return ":".join((self._namespace, *parts))

    def schedule_at(
        self,
        key: str,
        run_at: datetime,
        callback: JobCallback,
        *,
        kwargs: dict[str, Any] | None = None,
    ) -> str:
        self.cancel(key)
        self._scheduler.add_job(
            self._run_once,
            trigger="date",
            run_date=run_at,
            id=key,
            kwargs={"key": key, "callback": callback, "kwargs": kwargs or {}},
            replace_existing=True,
            misfire_grace_time=300,
            max_instances=1,
            coalesce=True,
        )
        self._run_dates[key] = run_at
        logger.debug("Scheduled %s at %s", key, run_at.isoformat())
        return key

    def schedule_every(
        self,
        key: str,
        *,
        minutes: int,
        callback: JobCallback,
        kwargs: dict[str, Any] | None = None,
        start_at: datetime | None = None,
    ) -> str:
        self.cancel(key)
        self._scheduler.add_job(
            self._run_recurring,
            trigger="interval",
            minutes=minutes,
            start_date=start_at,
            id=key,
            kwargs={"key": key, "callback": callback, "kwargs": kwargs or {}},
            replace_existing=True,
            misfire_grace_time=300,
            max_instances=1,
            coalesce=True,
        )
        logger.debug("Scheduled %s every %d minutes", key, minutes)
        return key

    def schedule_daily(
        self,
        key: str,
        *,
        hour: int,
        minute: int = 0,
        timezone: str = "UTC",
        callback: JobCallback,
        kwargs: dict[str, Any] | None = None,
    ) -> str:
        """Run ``callback`` every day at ``hour:minute`` local to ``timezone``."""
        self.cancel(key)
        self._scheduler.add_job(
            self._run_recurring,
            trigger="cron",
            hour=hour,
            minute=minute,
            timezone=timezone,
            id=key,
            kwargs={"key": key, "callback": callback, "kwargs": kwargs or {}},
            replace_existing=True,
            misfire_grace_time=300,
            max_instances=1,
            coalesce=True,
        )
        logger.debug("Scheduled %s daily at %02d:%02d %s", key, hour, minute, timezone)
        return key

    def cancel(self, key: str) -> bool:
        self._run_dates.pop(key, None)
        try:
            self._scheduler.remove_job(key)
        except JobLookupError:
            return False
        return True

    def cancel_prefix(self, prefix: str) -> int:
        keys = [job.id for job in self._scheduler.get_jobs() if job.id.startswith(prefix)]
        return sum(1 for key in keys if self.cancel(key))

    def has(self, key: str) -> bool:
        return self._scheduler.get_job(key) is not None

    def scheduled_for(self, key: str) -> datetime | None:
        """Return the run date of a pending one-shot timer."""
        if not self.has(key):
            self._run_dates.pop(key, None)
            return None
        return self._run_dates.get(key)

    def keys(self, prefix: str = "") -> list[str]:
        return sorted(job.id for job in self._scheduler.get_jobs() if job.id.startswith(prefix))

    async def _run_once(
        self, key: str, callback: JobCallback, kwargs: dict[str, Any]
    ) -> None:
        self._run_dates.pop(key, None)
        await self._invoke(key, callback, kwargs)

    async def _run_recurring(
        self, key: str, callback: JobCallback, kwargs: dict[str, Any]
    ) -> None:
        await self._invoke(key, callback, kwargs)

    @staticmethod
    async def _invoke(key: str, callback: JobCallback, kwargs: dict[str, Any]) -> None:
        try:
            await callback(**kwargs)
        except Exception:
            logger.exception("Scheduled job %s failed", key)


__all__ = ["KeyedJobScheduler", "create_scheduler"]
