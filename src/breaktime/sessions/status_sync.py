from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Mapping, Optional, Protocol

from slack_sdk.errors import SlackApiError
from slack_sdk.web.async_client import AsyncWebClient

from breaktime.core.errors import SyncFailed
from breaktime.core.logging_config import record_error

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PresenceCopy:
    text: str
    icon: str


FOCUS_PRESENCE = PresenceCopy(text="In focus mode", icon=":dart:")
BREAK_PRESENCE = PresenceCopy(text="On a break", icon=":coffee:")


class StatusSync(Protocol):
    """External presence indicator. Implementations raise ``SyncFailed``."""

    async def set_status(
        self, user_id: str, *, text: str, icon: str, expires_at: Optional[datetime]
    ) -> None: ...

    async def clear_status(self, user_id: str) -> None: ...


class SlackClientDirectory(Protocol):
    def client_for(self, user_id: str) -> Optional[AsyncWebClient]: ...


class StaticSlackClientDirectory:
    """User id to user-token client lookup, built once at startup."""

    def __init__(self, clients: Mapping[str, AsyncWebClient] | None = None) -> None:
        self._clients = dict(clients or {})

    def client_for(self, user_id: str) -> Optional[AsyncWebClient]:
        return self._clients.get(user_id)

    def register(self, user_id: str, client: AsyncWebClient) -> None:
        self._clients[user_id] = client


class SlackStatusSync:
    """Set and clear a user's Slack status through ``users.profile.set``.

    Profile writes need a user token, so the client comes from the
    directory rather than the bot client.
    """

    def __init__(self, directory: SlackClientDirectory) -> None:
        self._directory = directory

    async def set_status(
        self, user_id: str, *, text: str, icon: str, expires_at: Optional[datetime]
    ) -> None:
        expiration = int(expires_at.timestamp()) if expires_at else 0
        await self._write_profile(
            user_id,
            "set",
            {"status_text": text, "status_emoji": icon, "status_expiration": expiration},
        )

    async def clear_status(self, user_id: str) -> None:
        await self._write_profile(
            user_id,
            "clear",
            {"status_text": "", "status_emoji": "", "status_expiration": 0},
        )

    async def _write_profile(self, user_id: str, operation: str, profile: dict) -> None:
        client = self._directory.client_for(user_id)
        if client is None:
            raise SyncFailed(user_id, operation, "no user token registered")
        try:
            response = await client.users_profile_set(profile=profile)
        except SlackApiError as e:
            err = (e.response or {}).get("error") if hasattr(e, "response") else None
            record_error(component="status_sync", error_type=str(err or "slack_api_error"))
            raise SyncFailed(user_id, operation, err or str(e)) from e
        if not response.get("ok", False):
            raise SyncFailed(user_id, operation, response.get("error"))
        logger.debug("Slack status %s for %s", operation, user_id)


__all__ = [
    "BREAK_PRESENCE",
    "FOCUS_PRESENCE",
    "PresenceCopy",
    "SlackClientDirectory",
    "SlackStatusSync",
    "StaticSlackClientDirectory",
    "StatusSync",
]
