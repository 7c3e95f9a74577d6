from unittest.mock import AsyncMock

import pytest
from slack_sdk.errors import SlackApiError

from breaktime.core.errors import SyncFailed
from breaktime.sessions.status_sync import (
    FOCUS_PRESENCE,
    SlackStatusSync,
    StaticSlackClientDirectory,
)
from support import at


def _client(response=None, *, error=None):
    client = AsyncMock()
    client.users_profile_set = AsyncMock(return_value=response or {"ok": True}, side_effect=error)
    return client


@pytest.mark.asyncio
async def test_set_status_writes_profile_with_expiration():
    client = _client()
    sync = SlackStatusSync(StaticSlackClientDirectory({"U1": client}))

    await sync.set_status(
        "U1", text=FOCUS_PRESENCE.text, icon=FOCUS_PRESENCE.icon, expires_at=at(10, 25)
    )

    profile = client.users_profile_set.await_args.kwargs["profile"]
    assert profile == {
        "status_text": "In focus mode",
        "status_emoji": ":dart:",
        "status_expiration": int(at(10, 25).timestamp()),
    }


@pytest.mark.asyncio
async def test_clear_status_blanks_profile():
    client = _client()
    directory = StaticSlackClientDirectory()
    directory.register("U1", client)

    await SlackStatusSync(directory).clear_status("U1")

    profile = client.users_profile_set.await_args.kwargs["profile"]
    assert profile == {"status_text": "", "status_emoji": "", "status_expiration": 0}


@pytest.mark.asyncio
async def test_missing_user_token_fails():
    with pytest.raises(SyncFailed) as excinfo:
        await SlackStatusSync(StaticSlackClientDirectory()).clear_status("U1")

    assert excinfo.value.operation == "clear"


@pytest.mark.asyncio
async def test_slack_api_error_becomes_sync_failed():
    error = SlackApiError("invalid_auth", {"ok": False, "error": "invalid_auth"})
    sync = SlackStatusSync(StaticSlackClientDirectory({"U1": _client(error=error)}))

    with pytest.raises(SyncFailed, match="invalid_auth"):
        await sync.set_status("U1", text="x", icon=":x:", expires_at=None)


@pytest.mark.asyncio
async def test_not_ok_response_fails():
    sync = SlackStatusSync(
        StaticSlackClientDirectory({"U1": _client({"ok": False, "error": "profile_set_failed"})})
    )

    with pytest.raises(SyncFailed, match="profile_set_failed"):
        await sync.clear_status("U1")


@pytest.mark.asyncio
async def test_status_sync_leaves_do_not_disturb_alone():
    client = _client()
    sync = SlackStatusSync(StaticSlackClientDirectory({"U1": client}))

    await sync.set_status(
        "U1", text=FOCUS_PRESENCE.text, icon=FOCUS_PRESENCE.icon, expires_at=at(10, 25)
    )
    await sync.clear_status("U1")

    assert client.users_profile_set.await_count == 2
    assert [c[0] for c in client.method_calls] == ["users_profile_set", "users_profile_set"]
    client.dnd_setSnooze.assert_not_called()
    client.dnd_endSnooze.assert_not_called()
