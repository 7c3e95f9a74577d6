from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import date, datetime, timedelta, timezone, tzinfo
from typing import Any, AsyncIterator, Optional, Protocol

from sqlalchemy import JSON, Boolean, Date, DateTime, Integer, String, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import Mapped, declarative_base, mapped_column

from breaktime.core.errors import StorageUnavailable
from breaktime.core.logging_config import record_error
from breaktime.scheduling.models import Meeting
from breaktime.scheduling.timewindow import local_day_bounds
from breaktime.sessions.models import (
    ActivityAction,
    ActivityLogEntry,
    BreakSuggestion,
    Session,
    SessionKind,
    SessionStatus,
    SuggestionSource,
    SuggestionStatus,
    new_id,
)

logger = logging.getLogger(__name__)

Base = declarative_base()


class PersistenceStore(Protocol):
    async def get_meetings_for_user_on_date(
        self, *, user_id: str, day: date, tz: tzinfo = timezone.utc
    ) -> list[Meeting]: ...

    async def create_session(self, session: Session) -> Session: ...

    async def update_session(self, session: Session) -> Session: ...

    async def get_session(self, session_id: str) -> Optional[Session]: ...

    async def get_active_session(
        self, *, user_id: str, kind: SessionKind
    ) -> Optional[Session]: ...

    async def list_sessions_for_user_between(
        self, *, user_id: str, start: datetime, end: datetime
    ) -> list[Session]: ...

    async def create_break_suggestion(self, suggestion: BreakSuggestion) -> BreakSuggestion: ...

    async def update_break_suggestion(self, suggestion: BreakSuggestion) -> BreakSuggestion: ...

    async def get_break_suggestion(self, suggestion_id: str) -> Optional[BreakSuggestion]: ...

    async def get_recent_break_suggestions(
        self, *, user_id: str, lookback_hours: float, now: datetime | None = None
    ) -> list[BreakSuggestion]: ...

    async def list_break_suggestions_between(
        self, *, user_id: str, start: datetime, end: datetime
    ) -> list[BreakSuggestion]: ...

    async def log_activity(self, entry: ActivityLogEntry) -> None: ...

    async def upsert_daily_metrics(
        self, *, user_id: str, day: date, counters: dict[str, int]
    ) -> None: ...

    async def get_daily_metrics(self, *, user_id: str, day: date) -> Optional[dict[str, int]]: ...


class MeetingRow(Base):
    __tablename__ = "meetings"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    title: Mapped[str] = mapped_column(String, nullable=False, default="Untitled Meeting")
    start_time: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    end_time: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    attendee_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    meeting_type: Mapped[str | None] = mapped_column(String, nullable=True)


class SessionRow(Base):
    __tablename__ = "wellness_sessions"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    kind: Mapped[str] = mapped_column(String, nullable=False)
    duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    start_time: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    end_time: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    status: Mapped[str] = mapped_column(String, nullable=False)
    status_set: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    status_synced: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    break_type: Mapped[str | None] = mapped_column(String, nullable=True)
    suggestion_id: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class BreakSuggestionRow(Base):
    __tablename__ = "break_suggestions"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    type: Mapped[str] = mapped_column(String, nullable=False)
    message: Mapped[str] = mapped_column(String, nullable=False)
    reason: Mapped[str] = mapped_column(String, nullable=False)
    suggested_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    status: Mapped[str] = mapped_column(String, nullable=False)
    accepted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    accepted_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    responded_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    source: Mapped[str] = mapped_column(String, nullable=False)


class ActivityLogRow(Base):
    __tablename__ = "activity_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    action: Mapped[str] = mapped_column(String, nullable=False)
    details: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    timestamp: Mapped[datetime] = mapped_column(DateTime, nullable=False)


class DailyMetricsRow(Base):
    """One row per user and local day; recomputed in place during the day."""

    __tablename__ = "daily_metrics"

    user_id: Mapped[str] = mapped_column(String, primary_key=True)
    day: Mapped[date] = mapped_column(Date, primary_key=True)
    counters: Mapped[dict[str, int]] = mapped_column(JSON, nullable=False, default=dict)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class SqlAlchemyWellnessStore:
    """``PersistenceStore`` on async SQLAlchemy.

    Datetimes are stored as naive UTC and handed back timezone-aware (UTC).
    Every ``SQLAlchemyError`` surfaces as ``StorageUnavailable``.
    """

    def __init__(self, sessionmaker: async_sessionmaker[AsyncSession]) -> None:
        self._sessionmaker = sessionmaker

    @asynccontextmanager
    async def _unit_of_work(self, operation: str) -> AsyncIterator[AsyncSession]:
        try:
            async with self._sessionmaker() as db:
                yield db
        except SQLAlchemyError as exc:
            logger.error("Store operation %s failed: %s", operation, exc)
            record_error(component="store", error_type=type(exc).__name__)
            raise StorageUnavailable(f"{operation} failed") from exc

    async def add_meeting(self, *, user_id: str, meeting: Meeting) -> Meeting:
        async with self._unit_of_work("add_meeting") as db:
            db.add(
                MeetingRow(
                    user_id=user_id,
                    title=meeting.title,
                    start_time=_to_db(meeting.start_time),
                    end_time=_to_db(meeting.end_time),
                    attendee_count=meeting.attendee_count,
                    meeting_type=meeting.meeting_type,
                )
            )
            await db.commit()
        return meeting

    async def get_meetings_for_user_on_date(
        self, *, user_id: str, day: date, tz: tzinfo = timezone.utc
    ) -> list[Meeting]:
        day_start, day_end = local_day_bounds(day, tz)
        async with self._unit_of_work("get_meetings_for_user_on_date") as db:
            result = await db.execute(
                select(MeetingRow)
                .where(
                    MeetingRow.user_id == user_id,
                    MeetingRow.start_time >= _to_db(day_start),
                    MeetingRow.start_time < _to_db(day_end),
                )
                .order_by(MeetingRow.start_time)
            )
            return [_meeting_from_row(row) for row in result.scalars().all()]

    async def create_session(self, session: Session) -> Session:
        async with self._unit_of_work("create_session") as db:
            row = SessionRow(id=session.id)
            _apply_session(row, session)
            db.add(row)
            await db.commit()
        return session

    async def update_session(self, session: Session) -> Session:
        async with self._unit_of_work("update_session") as db:
            row = await db.get(SessionRow, session.id)
            if row is None:
                row = SessionRow(id=session.id)
                db.add(row)
            _apply_session(row, session)
            await db.commit()
        return session

    async def get_session(self, session_id: str) -> Optional[Session]:
        async with self._unit_of_work("get_session") as db:
            row = await db.get(SessionRow, session_id)
            return _session_from_row(row) if row else None

    async def get_active_session(
        self, *, user_id: str, kind: SessionKind
    ) -> Optional[Session]:
        async with self._unit_of_work("get_active_session") as db:
            result = await db.execute(
                select(SessionRow)
                .where(
                    SessionRow.user_id == user_id,
                    SessionRow.kind == kind.value,
                    SessionRow.status == SessionStatus.ACTIVE.value,
                )
                .order_by(SessionRow.start_time.desc())
                .limit(1)
            )
            row = result.scalar_one_or_none()
            return _session_from_row(row) if row else None

    async def list_sessions_for_user_between(
        self, *, user_id: str, start: datetime, end: datetime
    ) -> list[Session]:
        async with self._unit_of_work("list_sessions_for_user_between") as db:
            result = await db.execute(
                select(SessionRow)
                .where(
                    SessionRow.user_id == user_id,
                    SessionRow.start_time >= _to_db(start),
                    SessionRow.start_time < _to_db(end),
                )
                .order_by(SessionRow.start_time)
            )
            return [_session_from_row(row) for row in result.scalars().all()]

    async def create_break_suggestion(self, suggestion: BreakSuggestion) -> BreakSuggestion:
        async with self._unit_of_work("create_break_suggestion") as db:
            row = BreakSuggestionRow(id=suggestion.id)
            _apply_suggestion(row, suggestion)
            db.add(row)
            await db.commit()
        return suggestion

    async def update_break_suggestion(self, suggestion: BreakSuggestion) -> BreakSuggestion:
        async with self._unit_of_work("update_break_suggestion") as db:
            row = await db.get(BreakSuggestionRow, suggestion.id)
            if row is None:
                row = BreakSuggestionRow(id=suggestion.id)
                db.add(row)
            _apply_suggestion(row, suggestion)
            await db.commit()
        return suggestion

    async def get_break_suggestion(self, suggestion_id: str) -> Optional[BreakSuggestion]:
        async with self._unit_of_work("get_break_suggestion") as db:
            row = await db.get(BreakSuggestionRow, suggestion_id)
            return _suggestion_from_row(row) if row else None

    async def get_recent_break_suggestions(
        self, *, user_id: str, lookback_hours: float, now: datetime | None = None
    ) -> list[BreakSuggestion]:
        now = now or datetime.now(timezone.utc)
        since = now - timedelta(hours=lookback_hours)
        async with self._unit_of_work("get_recent_break_suggestions") as db:
            result = await db.execute(
                select(BreakSuggestionRow)
                .where(
                    BreakSuggestionRow.user_id == user_id,
                    BreakSuggestionRow.suggested_at >= _to_db(since),
                )
                .order_by(BreakSuggestionRow.suggested_at.desc())
            )
            return [_suggestion_from_row(row) for row in result.scalars().all()]

    async def list_break_suggestions_between(
        self, *, user_id: str, start: datetime, end: datetime
    ) -> list[BreakSuggestion]:
        async with self._unit_of_work("list_break_suggestions_between") as db:
            result = await db.execute(
                select(BreakSuggestionRow)
                .where(
                    BreakSuggestionRow.user_id == user_id,
                    BreakSuggestionRow.suggested_at >= _to_db(start),
                    BreakSuggestionRow.suggested_at < _to_db(end),
                )
                .order_by(BreakSuggestionRow.suggested_at)
            )
            return [_suggestion_from_row(row) for row in result.scalars().all()]

    async def log_activity(self, entry: ActivityLogEntry) -> None:
        async with self._unit_of_work("log_activity") as db:
            db.add(
                ActivityLogRow(
                    user_id=entry.user_id,
                    action=entry.action.value,
                    details=dict(entry.details),
                    timestamp=_to_db(entry.timestamp),
                )
            )
            await db.commit()

    async def list_activity(
        self, *, user_id: str, action: ActivityAction | None = None
    ) -> list[ActivityLogEntry]:
        async with self._unit_of_work("list_activity") as db:
            query = select(ActivityLogRow).where(ActivityLogRow.user_id == user_id)
            if action is not None:
                query = query.where(ActivityLogRow.action == action.value)
            result = await db.execute(query.order_by(ActivityLogRow.id))
            return [
                ActivityLogEntry(
                    user_id=row.user_id,
                    action=ActivityAction(row.action),
                    timestamp=_from_db(row.timestamp),
                    details=dict(row.details or {}),
                )
                for row in result.scalars().all()
            ]

    async def upsert_daily_metrics(
        self, *, user_id: str, day: date, counters: dict[str, int]
    ) -> None:
        async with self._unit_of_work("upsert_daily_metrics") as db:
            row = await db.get(DailyMetricsRow, (user_id, day))
            if row is None:
                row = DailyMetricsRow(user_id=user_id, day=day)
                db.add(row)
            row.counters = dict(counters)
            await db.commit()

    async def get_daily_metrics(self, *, user_id: str, day: date) -> Optional[dict[str, int]]:
        async with self._unit_of_work("get_daily_metrics") as db:
            row = await db.get(DailyMetricsRow, (user_id, day))
            return dict(row.counters) if row else None


async def ensure_wellness_schema(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(lambda sync_conn: Base.metadata.create_all(sync_conn, checkfirst=True))


def _to_db(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _from_db(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _optional_from_db(value: datetime | None) -> datetime | None:
    return _from_db(value) if value is not None else None


def _optional_to_db(value: datetime | None) -> datetime | None:
    return _to_db(value) if value is not None else None


def _meeting_from_row(row: MeetingRow) -> Meeting:
    return Meeting(
        title=row.title,
        start_time=_from_db(row.start_time),
        end_time=_from_db(row.end_time),
        attendee_count=row.attendee_count,
        meeting_type=row.meeting_type,
    )


def _apply_session(row: SessionRow, session: Session) -> None:
    row.user_id = session.user_id
    row.kind = session.kind.value
    row.duration_minutes = session.duration_minutes
    row.start_time = _to_db(session.start_time)
    row.end_time = _optional_to_db(session.end_time)
    row.status = session.status.value
    row.status_set = session.status_set
    row.status_synced = session.status_synced
    row.break_type = session.break_type
    row.suggestion_id = session.suggestion_id


def _session_from_row(row: SessionRow) -> Session:
    return Session(
        id=row.id,
        user_id=row.user_id,
        kind=SessionKind(row.kind),
        duration_minutes=row.duration_minutes,
        start_time=_from_db(row.start_time),
        status=SessionStatus(row.status),
        end_time=_optional_from_db(row.end_time),
        status_set=row.status_set,
        status_synced=row.status_synced,
        break_type=row.break_type,
        suggestion_id=row.suggestion_id,
    )


def _apply_suggestion(row: BreakSuggestionRow, suggestion: BreakSuggestion) -> None:
    row.user_id = suggestion.user_id
    row.type = suggestion.type
    row.message = suggestion.message
    row.reason = suggestion.reason
    row.suggested_at = _to_db(suggestion.suggested_at)
    row.status = suggestion.status.value
    row.accepted = suggestion.accepted
    row.accepted_at = _optional_to_db(suggestion.accepted_at)
    row.responded_at = _optional_to_db(suggestion.responded_at)
    row.source = suggestion.source.value


def _suggestion_from_row(row: BreakSuggestionRow) -> BreakSuggestion:
    return BreakSuggestion(
        id=row.id,
        user_id=row.user_id,
        type=row.type,
        message=row.message,
        reason=row.reason,
        suggested_at=_from_db(row.suggested_at),
        status=SuggestionStatus(row.status),
        accepted_at=_optional_from_db(row.accepted_at),
        responded_at=_optional_from_db(row.responded_at),
        source=SuggestionSource(row.source),
    )


__all__ = [
    "ActivityLogRow",
    "Base",
    "BreakSuggestionRow",
    "DailyMetricsRow",
    "MeetingRow",
    "PersistenceStore",
    "SessionRow",
    "SqlAlchemyWellnessStore",
    "ensure_wellness_schema",
]
