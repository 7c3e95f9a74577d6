"""Focus and break session lifecycle.

Transitions run in two phases. Under the per-user lock the guard is checked
and the in-memory registry updated; after the lock is released the presence
update and the store write run, each bounded by a timeout. A presence
failure only flips ``status_synced``; a store failure raises
``StorageUnavailable`` carrying the session that is already in memory.

The registry only holds live records. A session is dropped once its
terminal state is stored, a suggestion once its response is stored (or,
when accepted, together with its break session); later reads go to the
store.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional, Protocol, TypeVar

from breaktime.core.errors import (
    ActiveSessionConflict,
    InvalidRequest,
    SessionNotFound,
    StorageUnavailable,
    SyncFailed,
)
from breaktime.core.logging_config import record_error, record_session_transition
from breaktime.core.scheduler import KeyedJobScheduler
from breaktime.core.tasks import BackgroundTasks
from breaktime.scheduling.timewindow import to_millis
from breaktime.sessions.models import (
    ActivityAction,
    ActivityLogEntry,
    BreakSuggestion,
    Session,
    SessionEvent,
    SessionKind,
    SessionNotice,
    SessionStatus,
    SuggestionSource,
    SuggestionStatus,
    new_id,
)
from breaktime.sessions.status_sync import BREAK_PRESENCE, FOCUS_PRESENCE, StatusSync
from breaktime.sessions.store import PersistenceStore

logger = logging.getLogger(__name__)

T = TypeVar("T")
Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionNotifier(Protocol):
    async def send_session_notice(self, notice: SessionNotice) -> Optional[str]: ...


@dataclass(frozen=True)
class SessionConfig:
    external_call_timeout_s: float = 1.0
    default_focus_minutes: int = 25
    accepted_break_minutes: int = 20

    @classmethod
    def from_settings(cls, settings: Any) -> "SessionConfig":
        return cls(
            external_call_timeout_s=settings.external_call_timeout_s,
            default_focus_minutes=settings.default_focus_minutes,
            accepted_break_minutes=settings.accepted_break_minutes,
        )


class SessionLifecycleManager:
    def __init__(
        self,
        *,
        store: PersistenceStore,
        status_sync: StatusSync | None = None,
        config: SessionConfig | None = None,
        timers: KeyedJobScheduler | None = None,
        background: BackgroundTasks | None = None,
        notifier: SessionNotifier | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self._store = store
        self._status_sync = status_sync
        self._notifier = notifier
        self._config = config or SessionConfig()
        self._timers = timers
        self._background = background or BackgroundTasks(component="session_manager")
        self._clock = clock
        self._sessions: dict[str, Session] = {}
        self._suggestions: dict[str, BreakSuggestion] = {}
        self._session_by_suggestion: dict[str, str] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    @property
    def config(self) -> SessionConfig:
        return self._config

    @property
    def background(self) -> BackgroundTasks:
        return self._background

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def create_session(
        self,
        user_id: str,
        kind: SessionKind,
        duration_minutes: int,
        *,
        start_time: datetime | None = None,
        break_type: str | None = None,
        suggestion_id: str | None = None,
    ) -> Session:
        if not isinstance(duration_minutes, int) or duration_minutes <= 0:
            raise InvalidRequest(f"duration must be positive, got {duration_minutes!r}")
        now = self._clock()
        start = start_time or now
        if start.tzinfo is None:
            raise InvalidRequest("start_time must be timezone-aware")
        scheduled = to_millis(start) > to_millis(now)

        persisted_focus = None
        if kind == SessionKind.FOCUS and not scheduled:
            persisted_focus = await self._read(
                self._store.get_active_session(user_id=user_id, kind=SessionKind.FOCUS),
                "get_active_session",
            )

        async with self._lock_for(user_id):
            if kind == SessionKind.FOCUS and not scheduled:
                self._check_focus_guard(user_id, persisted_focus)
            session = self._register(
                user_id,
                kind,
                duration_minutes,
                start=start,
                scheduled=scheduled,
                break_type=break_type,
                suggestion_id=suggestion_id,
            )
        return await self._launch(session)

    async def start_focus(
        self,
        user_id: str,
        duration_minutes: int | None = None,
        *,
        start_time: datetime | None = None,
    ) -> Session:
        return await self.create_session(
            user_id,
            SessionKind.FOCUS,
            duration_minutes or self._config.default_focus_minutes,
            start_time=start_time,
        )

    async def start_break(
        self,
        user_id: str,
        *,
        break_type: str = "general",
        duration_minutes: int | None = None,
        reason: str = "Requested by user",
    ) -> Session:
        """Start a user-requested break now.

        The break is recorded as an accepted suggestion so it resets the
        proactive monitor's clock like an accepted alert does.
        """
        suggestion = await self.suggest_break(
            user_id, break_type=break_type, reason=reason, source=SuggestionSource.USER
        )
        _, session = await self.accept_suggestion(suggestion.id, break_minutes=duration_minutes)
        return session

    async def activate(self, session_id: str) -> Session:
        """Move a scheduled session to active once its start time is reached.

        Safe to call repeatedly; anything but a due scheduled session is
        returned unchanged.
        """
        session = await self._load_session(session_id)
        now = self._clock()
        persisted_focus = None
        if session.kind == SessionKind.FOCUS and session.status == SessionStatus.SCHEDULED:
            persisted_focus = await self._read(
                self._store.get_active_session(user_id=session.user_id, kind=SessionKind.FOCUS),
                "get_active_session",
            )

        async with self._lock_for(session.user_id):
            current = await self._current_session(session)
            if current.status != SessionStatus.SCHEDULED:
                return current
            if to_millis(current.start_time) > to_millis(now):
                return current
            if current.kind == SessionKind.FOCUS:
                self._check_focus_guard(current.user_id, persisted_focus, exclude=session_id)
            current = replace(current, status=SessionStatus.ACTIVE)
            self._sessions[session_id] = current

        logger.info("Activated %s session %s", current.kind.value, session_id)
        current = await self._sync_set(current)
        self._arm_timer(current)
        await self._persist(current)
        self._announce_started(current)
        return current

    async def complete(self, session_id: str) -> Session:
        session = await self._load_session(session_id)
        if session.is_terminal:
            return session
        async with self._lock_for(session.user_id):
            current = await self._current_session(session)
            if current.is_terminal:
                logger.debug("Session %s already %s", session_id, current.status.value)
                return current
            if current.status == SessionStatus.SCHEDULED:
                raise InvalidRequest("a scheduled session cannot be completed; cancel it instead")
            current = replace(current, status=SessionStatus.COMPLETED, end_time=self._clock())
            self._sessions[session_id] = current

        logger.info("Completed %s session %s", current.kind.value, session_id)
        self._disarm_timers(session_id)
        current = await self._sync_clear(current)
        await self._persist(current)
        self._evict_session(current)
        action = (
            ActivityAction.FOCUS_SESSION_ENDED
            if current.kind == SessionKind.FOCUS
            else ActivityAction.BREAK_SESSION_ENDED
        )
        self._log(
            current.user_id,
            action,
            {"session_id": current.id, "duration_minutes": current.duration_minutes},
        )
        self._notify(current, SessionEvent.COMPLETED)
        return current

    async def end_active_focus(self, user_id: str) -> Optional[Session]:
        active = await self.active_focus(user_id)
        if active is None:
            return None
        return await self.complete(active.id)

    async def cancel(self, session_id: str) -> Session:
        session = await self._load_session(session_id)
        if session.is_terminal:
            return session
        async with self._lock_for(session.user_id):
            current = await self._current_session(session)
            if current.is_terminal:
                return current
            current = replace(current, status=SessionStatus.CANCELLED, end_time=self._clock())
            self._sessions[session_id] = current

        logger.info("Cancelled %s session %s", current.kind.value, session_id)
        self._disarm_timers(session_id)
        if current.status_set:
            current = await self._sync_clear(current)
        await self._persist(current)
        self._evict_session(current)
        self._log(current.user_id, ActivityAction.SESSION_CANCELLED, {"session_id": current.id})
        return current

    async def get_session(self, session_id: str) -> Session:
        return await self._load_session(session_id)

    async def active_focus(self, user_id: str) -> Optional[Session]:
        in_memory = self._active_focus_in_memory(user_id)
        if in_memory is not None:
            return in_memory
        persisted = await self._read(
            self._store.get_active_session(user_id=user_id, kind=SessionKind.FOCUS),
            "get_active_session",
        )
        if persisted is None:
            return None
        known = self._sessions.get(persisted.id)
        if known is not None and known.status != SessionStatus.ACTIVE:
            return None
        return persisted

    # ------------------------------------------------------------------
    # Break suggestions
    # ------------------------------------------------------------------

    async def suggest_break(
        self,
        user_id: str,
        *,
        break_type: str,
        reason: str,
        message: str | None = None,
        source: SuggestionSource = SuggestionSource.USER,
    ) -> BreakSuggestion:
        suggestion = BreakSuggestion(
            id=new_id(),
            user_id=user_id,
            type=break_type,
            message=message or f"Time for a {break_type} break.",
            reason=reason,
            suggested_at=self._clock(),
            source=source,
        )
        async with self._lock_for(user_id):
            self._suggestions[suggestion.id] = suggestion
        await self._persist_suggestion(suggestion, create=True)
        if source == SuggestionSource.USER:
            self._log(
                user_id,
                ActivityAction.BREAK_SUGGESTED,
                {"suggestion_id": suggestion.id, "type": break_type},
            )
        return suggestion

    async def accept_suggestion(
        self, suggestion_id: str, *, break_minutes: int | None = None
    ) -> tuple[BreakSuggestion, Session]:
        minutes = break_minutes or self._config.accepted_break_minutes
        if not isinstance(minutes, int) or minutes <= 0:
            raise InvalidRequest(f"break duration must be positive, got {minutes!r}")
        suggestion = await self._load_suggestion(suggestion_id)
        now = self._clock()
        async with self._lock_for(suggestion.user_id):
            current = await self._current_suggestion(suggestion)
            if current.status == SuggestionStatus.CANCELLED:
                raise InvalidRequest(f"suggestion {suggestion_id} was cancelled")
            if current.status == SuggestionStatus.ACCEPTED:
                existing = await self._accepted_session(current)
                if existing is not None:
                    return current, existing
            else:
                current = replace(
                    current,
                    status=SuggestionStatus.ACCEPTED,
                    accepted_at=now,
                    responded_at=now,
                )
                self._suggestions[suggestion_id] = current
            session = self._register(
                current.user_id,
                SessionKind.BREAK,
                minutes,
                start=now,
                scheduled=False,
                break_type=current.type,
                suggestion_id=suggestion_id,
            )

        session = await self._launch(session)
        try:
            await self._persist_suggestion(current)
        except StorageUnavailable as exc:
            exc.session = session
            raise
        self._log(
            current.user_id,
            ActivityAction.BREAK_ACCEPTED,
            {"suggestion_id": suggestion_id, "session_id": session.id, "type": current.type},
        )
        return current, session

    async def decline_suggestion(self, suggestion_id: str) -> BreakSuggestion:
        current, changed = await self._respond(suggestion_id, SuggestionStatus.DECLINED)
        if changed:
            self._log(
                current.user_id,
                ActivityAction.BREAK_DECLINED,
                {"suggestion_id": suggestion_id, "type": current.type},
            )
        return current

    async def cancel_suggestion(self, suggestion_id: str) -> BreakSuggestion:
        current, _ = await self._respond(suggestion_id, SuggestionStatus.CANCELLED)
        return current

    async def get_suggestion(self, suggestion_id: str) -> BreakSuggestion:
        return await self._load_suggestion(suggestion_id)

    async def drain(self) -> None:
        await self._background.drain()

    async def _respond(
        self, suggestion_id: str, status: SuggestionStatus
    ) -> tuple[BreakSuggestion, bool]:
        """Apply a response to a pending suggestion; the flag says whether it applied."""
        suggestion = await self._load_suggestion(suggestion_id)
        async with self._lock_for(suggestion.user_id):
            current = await self._current_suggestion(suggestion)
            if current.status != SuggestionStatus.PENDING:
                return current, False
            current = replace(current, status=status, responded_at=self._clock())
            self._suggestions[suggestion_id] = current
        await self._persist_suggestion(current)
        if self._suggestions.get(suggestion_id) is current:
            del self._suggestions[suggestion_id]
        return current, True

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _lock_for(self, user_id: str) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[user_id] = lock
        return lock

    def _register(
        self,
        user_id: str,
        kind: SessionKind,
        duration_minutes: int,
        *,
        start: datetime,
        scheduled: bool,
        break_type: str | None,
        suggestion_id: str | None,
    ) -> Session:
        # Caller holds the user's lock.
        session = Session(
            id=new_id(),
            user_id=user_id,
            kind=kind,
            duration_minutes=duration_minutes,
            start_time=start,
            status=SessionStatus.SCHEDULED if scheduled else SessionStatus.ACTIVE,
            break_type=break_type,
            suggestion_id=suggestion_id,
        )
        self._sessions[session.id] = session
        if suggestion_id:
            self._session_by_suggestion[suggestion_id] = session.id
        return session

    async def _launch(self, session: Session) -> Session:
        logger.info(
            "Created %s session %s for %s (%s)",
            session.kind.value,
            session.id,
            session.user_id,
            session.status.value,
        )
        if session.status == SessionStatus.ACTIVE:
            session = await self._sync_set(session)
        self._arm_timer(session)
        await self._persist(session, create=True)
        if session.status == SessionStatus.ACTIVE:
            self._announce_started(session)
        return session

    async def _current_session(self, loaded: Session) -> Session:
        # Caller holds the user's lock.
        current = self._sessions.get(loaded.id)
        if current is not None:
            return current
        stored = await self._read(self._store.get_session(loaded.id), "get_session")
        if stored is None:
            raise SessionNotFound("session", loaded.id)
        if not stored.is_terminal:
            self._sessions[stored.id] = stored
        return stored

    async def _current_suggestion(self, loaded: BreakSuggestion) -> BreakSuggestion:
        # Caller holds the user's lock.
        current = self._suggestions.get(loaded.id)
        if current is not None:
            return current
        stored = await self._read(
            self._store.get_break_suggestion(loaded.id), "get_break_suggestion"
        )
        return stored or loaded

    async def _accepted_session(self, suggestion: BreakSuggestion) -> Optional[Session]:
        """The break session started for an accepted suggestion, if there is one."""
        session_id = self._session_by_suggestion.get(suggestion.id)
        if session_id in self._sessions:
            return self._sessions[session_id]
        if suggestion.accepted_at is None:
            return None
        candidates = await self._read(
            self._store.list_sessions_for_user_between(
                user_id=suggestion.user_id,
                start=suggestion.accepted_at,
                end=suggestion.accepted_at + timedelta(minutes=1),
            ),
            "list_sessions_for_user_between",
        )
        for session in candidates:
            if session.suggestion_id == suggestion.id:
                return session
        return None

    def _evict_session(self, session: Session) -> None:
        if self._sessions.get(session.id) is session:
            del self._sessions[session.id]
        suggestion_id = session.suggestion_id
        if suggestion_id and self._session_by_suggestion.get(suggestion_id) == session.id:
            del self._session_by_suggestion[suggestion_id]
            self._suggestions.pop(suggestion_id, None)

    def _active_focus_in_memory(
        self, user_id: str, *, exclude: str | None = None
    ) -> Optional[Session]:
        for session in self._sessions.values():
            if (
                session.user_id == user_id
                and session.kind == SessionKind.FOCUS
                and session.status == SessionStatus.ACTIVE
                and session.id != exclude
            ):
                return session
        return None

    def _check_focus_guard(
        self, user_id: str, persisted: Optional[Session], *, exclude: str | None = None
    ) -> None:
        active = self._active_focus_in_memory(user_id, exclude=exclude)
        if active is None and persisted is not None and persisted.id != exclude:
            known = self._sessions.get(persisted.id)
            if known is None or known.status == SessionStatus.ACTIVE:
                active = persisted
        if active is not None:
            raise ActiveSessionConflict(user_id, active.id)

    async def _load_session(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is not None:
            return session
        session = await self._read(self._store.get_session(session_id), "get_session")
        if session is None:
            raise SessionNotFound("session", session_id)
        if session.is_terminal:
            return session
        self._sessions.setdefault(session_id, session)
        return self._sessions[session_id]

    async def _load_suggestion(self, suggestion_id: str) -> BreakSuggestion:
        suggestion = self._suggestions.get(suggestion_id)
        if suggestion is not None:
            return suggestion
        suggestion = await self._read(
            self._store.get_break_suggestion(suggestion_id), "get_break_suggestion"
        )
        if suggestion is None:
            raise SessionNotFound("suggestion", suggestion_id)
        return suggestion

    async def _bounded(self, awaitable: Awaitable[T]) -> T:
        return await asyncio.wait_for(awaitable, timeout=self._config.external_call_timeout_s)

    async def _read(self, awaitable: Awaitable[T], operation: str) -> T:
        try:
            return await self._bounded(awaitable)
        except asyncio.TimeoutError as exc:
            record_error(component="session_manager", error_type="store_timeout")
            raise StorageUnavailable(f"{operation} timed out") from exc

    async def _persist(self, session: Session, *, create: bool = False) -> None:
        write = self._store.create_session if create else self._store.update_session
        try:
            await self._bounded(write(session))
        except asyncio.TimeoutError as exc:
            record_error(component="session_manager", error_type="store_timeout")
            logger.warning("Persisting session %s timed out", session.id)
            raise StorageUnavailable("session write timed out", session=session) from exc
        except StorageUnavailable as exc:
            logger.warning("Persisting session %s failed: %s", session.id, exc)
            raise StorageUnavailable(str(exc), session=session) from exc
        finally:
            record_session_transition(
                kind=session.kind.value,
                status=session.status.value,
                synced=session.status_synced,
            )

    async def _persist_suggestion(self, suggestion: BreakSuggestion, *, create: bool = False) -> None:
        write = self._store.create_break_suggestion if create else self._store.update_break_suggestion
        try:
            await self._bounded(write(suggestion))
        except asyncio.TimeoutError as exc:
            record_error(component="session_manager", error_type="store_timeout")
            raise StorageUnavailable("suggestion write timed out", payload=suggestion) from exc
        except StorageUnavailable as exc:
            raise StorageUnavailable(str(exc), payload=suggestion) from exc

    async def _sync_set(self, session: Session) -> Session:
        if self._status_sync is None:
            return session
        presence = FOCUS_PRESENCE if session.kind == SessionKind.FOCUS else BREAK_PRESENCE
        ok = await self._call_status(
            self._status_sync.set_status(
                session.user_id,
                text=presence.text,
                icon=presence.icon,
                expires_at=session.planned_end,
            ),
            session,
            "set",
        )
        return self._record_sync(session, status_set=ok, status_synced=ok)

    async def _sync_clear(self, session: Session) -> Session:
        if self._status_sync is None:
            return session
        ok = await self._call_status(
            self._status_sync.clear_status(session.user_id), session, "clear"
        )
        return self._record_sync(
            session, status_set=session.status_set and not ok, status_synced=ok
        )

    async def _call_status(self, awaitable: Awaitable[None], session: Session, operation: str) -> bool:
        try:
            await self._bounded(awaitable)
        except asyncio.TimeoutError:
            logger.warning(
                "Status %s timed out for %s (session %s)", operation, session.user_id, session.id
            )
            record_error(component="status_sync", error_type="timeout")
            return False
        except SyncFailed as exc:
            logger.warning("Status %s failed for session %s: %s", operation, session.id, exc)
            return False
        except Exception:
            logger.exception("Status %s raised for session %s", operation, session.id)
            record_error(component="status_sync", error_type="unexpected")
            return False
        return True

    def _record_sync(self, session: Session, *, status_set: bool, status_synced: bool) -> Session:
        known = self._sessions.get(session.id)
        if known is None:
            # Already evicted; do not bring it back.
            return replace(session, status_set=status_set, status_synced=status_synced)
        if known.status != session.status:
            # A later transition won the race; keep its state and only note the flags.
            current = replace(known, status_synced=status_synced)
        else:
            current = replace(known, status_set=status_set, status_synced=status_synced)
        self._sessions[session.id] = current
        return current

    def _timer_key(self, session_id: str, phase: str) -> str:
        return self._timers.key("session", session_id, phase)

    def _arm_timer(self, session: Session) -> None:
        if self._timers is None:
            return
        if session.status == SessionStatus.SCHEDULED:
            self._timers.schedule_at(
                self._timer_key(session.id, "activate"),
                session.start_time,
                self._on_activation_due,
                kwargs={"session_id": session.id},
            )
        elif session.status == SessionStatus.ACTIVE:
            self._timers.cancel(self._timer_key(session.id, "activate"))
            self._timers.schedule_at(
                self._timer_key(session.id, "complete"),
                session.planned_end,
                self._on_completion_due,
                kwargs={"session_id": session.id},
            )

    def _disarm_timers(self, session_id: str) -> None:
        if self._timers is None:
            return
        self._timers.cancel(self._timer_key(session_id, "activate"))
        self._timers.cancel(self._timer_key(session_id, "complete"))

    async def _on_activation_due(self, session_id: str) -> None:
        try:
            await self.activate(session_id)
        except ActiveSessionConflict as exc:
            logger.warning("Scheduled session %s not started: %s", session_id, exc)

    async def _on_completion_due(self, session_id: str) -> None:
        await self.complete(session_id)

    def _announce_started(self, session: Session) -> None:
        action = (
            ActivityAction.FOCUS_SESSION_STARTED
            if session.kind == SessionKind.FOCUS
            else ActivityAction.BREAK_SESSION_STARTED
        )
        self._log(
            session.user_id,
            action,
            {
                "session_id": session.id,
                "duration_minutes": session.duration_minutes,
                "status_synced": session.status_synced,
            },
        )
        self._notify(session, SessionEvent.STARTED)

    def _notify(self, session: Session, event: SessionEvent) -> None:
        if self._notifier is None:
            return
        self._background.spawn(
            self._bounded(self._notifier.send_session_notice(SessionNotice(session, event))),
            name=f"session-notice:{event.value}:{session.user_id}",
        )

    def _log(self, user_id: str, action: ActivityAction, details: dict[str, Any]) -> None:
        entry = ActivityLogEntry(
            user_id=user_id, action=action, timestamp=self._clock(), details=details
        )
        self._background.spawn(
            self._bounded(self._store.log_activity(entry)),
            name=f"activity-log:{action.value}:{user_id}",
        )


__all__ = ["SessionConfig", "SessionLifecycleManager", "SessionNotifier", "utcnow"]
