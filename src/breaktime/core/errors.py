from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from breaktime.sessions.models import Session


class BreaktimeError(Exception):
    """Base class for errors raised by the scheduling and session core."""


class InvalidRequest(BreaktimeError, ValueError):
    """Bad caller input (duration, time string, transition). Never retried."""


class SessionNotFound(BreaktimeError, LookupError):
    """Raised when a session or suggestion id is unknown."""

    def __init__(self, kind: str, identifier: str) -> None:
        super().__init__(f"{kind} {identifier!r} not found")
        self.kind = kind
        self.identifier = identifier


class ActiveSessionConflict(BreaktimeError):
    """The user already has an active focus session; end it first."""

    def __init__(self, user_id: str, active_session_id: str | None = None) -> None:
        super().__init__(
            f"User {user_id} already has an active focus session"
            + (f" ({active_session_id})" if active_session_id else "")
        )
        self.user_id = user_id
        self.active_session_id = active_session_id


class StorageUnavailable(BreaktimeError):
    """The persistence store failed or timed out. Retryable by the caller.

    ``session`` carries the in-memory state that was already applied; it is not
    rolled back.
    """

    def __init__(
        self,
        message: str = "persistence store unavailable",
        *,
        session: "Session | None" = None,
        payload: Any = None,
    ) -> None:
        super().__init__(message)
        self.session = session
        self.payload = payload


class AdvisorUnavailable(BreaktimeError):
    """The narrative advisor could not produce a usable ranking."""


class SyncFailed(BreaktimeError):
    """The external presence indicator could not be updated."""

    def __init__(self, user_id: str, operation: str, reason: str | None = None) -> None:
        detail = f": {reason}" if reason else ""
        super().__init__(f"status {operation} failed for {user_id}{detail}")
        self.user_id = user_id
        self.operation = operation


__all__ = [
    "ActiveSessionConflict",
    "AdvisorUnavailable",
    "BreaktimeError",
    "InvalidRequest",
    "SessionNotFound",
    "StorageUnavailable",
    "SyncFailed",
]
