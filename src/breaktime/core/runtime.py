from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from openai import AsyncOpenAI
from slack_sdk.web.async_client import AsyncWebClient
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from breaktime.analytics.summary import DailySummaryService, SummaryConfig
from breaktime.core.config import Settings, settings as default_settings
from breaktime.core.logging_config import configure_logging
from breaktime.core.scheduler import KeyedJobScheduler, create_scheduler
from breaktime.core.tasks import BackgroundTasks
from breaktime.monitor.notifications import SlackNotificationSink
from breaktime.monitor.proactive import MonitorConfig, ProactiveMonitor
from breaktime.scheduling.advisor import ActivityPlanner, OpenAINarrativeAdvisor
from breaktime.scheduling.slot_finder import SlotFinder
from breaktime.sessions.manager import SessionConfig, SessionLifecycleManager
from breaktime.sessions.models import UserProfile
from breaktime.sessions.status_sync import SlackStatusSync, StaticSlackClientDirectory
from breaktime.sessions.store import SqlAlchemyWellnessStore, ensure_wellness_schema

logger = logging.getLogger(__name__)


@dataclass
class WellnessRuntime:
    settings: Settings
    engine: AsyncEngine
    scheduler: AsyncIOScheduler
    timers: KeyedJobScheduler
    background: BackgroundTasks
    store: SqlAlchemyWellnessStore
    slack_client: AsyncWebClient
    clients: StaticSlackClientDirectory
    manager: SessionLifecycleManager
    planner: ActivityPlanner
    monitor: ProactiveMonitor
    summaries: DailySummaryService

    def profile_for(self, user_id: str) -> UserProfile:
        """Working-hours profile for a user with no stored preferences."""
        return UserProfile(
            user_id=user_id,
            timezone=self.settings.default_timezone,
            work_start_hour=self.settings.work_start_hour,
            work_end_hour=self.settings.work_end_hour,
        )

    async def enroll(self, user_id: str) -> UserProfile:
        """Track daily metrics for a user and start monitoring once they have activity."""
        profile = self.profile_for(user_id)
        self.summaries.track(profile)
        await self.monitor.ensure_monitoring(profile)
        return profile

    def start(self) -> None:
        if not self.scheduler.running:
            self.scheduler.start()
            logger.info("Scheduler started")

    async def shutdown(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        await self.background.drain()
        await self.engine.dispose()
        logger.info("Wellness runtime shut down")


async def build_runtime(settings: Settings | None = None) -> WellnessRuntime:
    """Wire every component from settings. Call ``start()`` to begin firing jobs."""
    settings = settings or default_settings
    configure_logging(default_level=settings.log_level)

    engine = create_async_engine(
        _coerce_async_database_url(settings.database_url),
        **_engine_options(settings.database_url),
    )
    await ensure_wellness_schema(engine)
    sessionmaker = async_sessionmaker(engine, expire_on_commit=False)
    store = SqlAlchemyWellnessStore(sessionmaker)

    scheduler = create_scheduler(settings.scheduler_timezone)
    timers = KeyedJobScheduler(scheduler)
    background = BackgroundTasks(component="runtime")

    slack_client = AsyncWebClient(token=settings.slack_bot_token)
    clients = StaticSlackClientDirectory()

    sink = SlackNotificationSink(slack_client, timezone=settings.default_timezone)

    manager = SessionLifecycleManager(
        store=store,
        status_sync=SlackStatusSync(clients),
        config=SessionConfig.from_settings(settings),
        timers=timers,
        background=background,
        notifier=sink,
    )

    advisor = None
    if settings.advisor_enabled and settings.openai_api_key:
        advisor = OpenAINarrativeAdvisor(
            AsyncOpenAI(api_key=settings.openai_api_key), model=settings.advisor_model
        )
    planner = ActivityPlanner(SlotFinder(), advisor, timeout_s=settings.advisor_timeout_s)

    monitor = ProactiveMonitor(
        store=store,
        manager=manager,
        sink=sink,
        timers=timers,
        config=MonitorConfig.from_settings(settings),
        background=background,
    )
    summaries = DailySummaryService(
        store=store,
        sink=sink,
        timers=timers,
        config=SummaryConfig.from_settings(settings),
    )
    logger.info(
        "Wellness runtime built (advisor=%s, database=%s)",
        "on" if advisor else "off",
        settings.database_url.split("://", 1)[0],
    )
    return WellnessRuntime(
        settings=settings,
        engine=engine,
        scheduler=scheduler,
        timers=timers,
        background=background,
        store=store,
        slack_client=slack_client,
        clients=clients,
        manager=manager,
        planner=planner,
        monitor=monitor,
        summaries=summaries,
    )


def _coerce_async_database_url(database_url: str) -> str:
    if database_url.startswith("sqlite+aiosqlite://"):
        return database_url
    if database_url.startswith("sqlite://"):
        return database_url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    return database_url


def _engine_options(database_url: str) -> dict[str, Any]:
    # A private in-memory SQLite database only survives on a single connection.
    if database_url.startswith("sqlite") and ":memory:" in database_url:
        return {"poolclass": StaticPool, "connect_args": {"check_same_thread": False}}
    return {}


__all__ = ["WellnessRuntime", "build_runtime"]
