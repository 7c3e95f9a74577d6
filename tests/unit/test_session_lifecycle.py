import asyncio
from dataclasses import replace

import pytest
from freezegun import freeze_time

from breaktime.core.errors import (
    ActiveSessionConflict,
    InvalidRequest,
    SessionNotFound,
    StorageUnavailable,
)
from breaktime.sessions.manager import SessionConfig, SessionLifecycleManager
from breaktime.sessions.models import (
    Session,
    SessionEvent,
    SessionKind,
    SessionStatus,
    SuggestionSource,
    SuggestionStatus,
)
from support import FakeClock, InMemoryStore, at, fire


@pytest.fixture
def clock():
    return FakeClock(at(10))


@pytest.fixture
def manager(memory_store, status_sync, timers, clock):
    return SessionLifecycleManager(
        store=memory_store, status_sync=status_sync, timers=timers, clock=clock
    )


def _key(timers, session, phase):
    return timers.key("session", session.id, phase)


@pytest.mark.asyncio
async def test_start_focus_activates_and_sets_presence(manager, memory_store, status_sync, timers):
    session = await manager.start_focus("U1", 50)
    await manager.drain()

    assert session.kind == SessionKind.FOCUS
    assert session.status == SessionStatus.ACTIVE
    assert session.start_time == at(10)
    assert session.status_set and session.status_synced
    assert status_sync.calls == [("set", "U1")]
    assert memory_store.sessions[session.id].status == SessionStatus.ACTIVE
    assert timers.scheduled_for(_key(timers, session, "complete")) == at(10, 50)
    assert memory_store.actions() == ["focus_session_started"]


@pytest.mark.asyncio
async def test_default_focus_duration(manager):
    session = await manager.start_focus("U1")

    assert session.duration_minutes == 25


@pytest.mark.asyncio
async def test_concurrent_focus_requests_yield_one_session(manager, memory_store):
    results = await asyncio.gather(
        manager.start_focus("U1", 25),
        manager.start_focus("U1", 25),
        return_exceptions=True,
    )

    sessions = [r for r in results if isinstance(r, Session)]
    conflicts = [r for r in results if isinstance(r, ActiveSessionConflict)]
    assert len(sessions) == 1
    assert len(conflicts) == 1
    assert conflicts[0].active_session_id == sessions[0].id
    assert len(memory_store.sessions) == 1


@pytest.mark.asyncio
async def test_focus_persisted_by_another_worker_blocks_new_focus(manager, memory_store):
    other = Session(
        id="persisted-focus",
        user_id="U1",
        kind=SessionKind.FOCUS,
        duration_minutes=25,
        start_time=at(9, 50),
        status=SessionStatus.ACTIVE,
    )
    memory_store.sessions[other.id] = other

    with pytest.raises(ActiveSessionConflict):
        await manager.start_focus("U1")


@pytest.mark.asyncio
async def test_focus_conflict_is_per_user(manager):
    await manager.start_focus("U1")

    other = await manager.start_focus("U2")

    assert other.status == SessionStatus.ACTIVE


@pytest.mark.asyncio
async def test_break_does_not_conflict_with_focus(manager):
    await manager.start_focus("U1")

    session = await manager.start_break("U1", break_type="walk", duration_minutes=10)

    assert session.kind == SessionKind.BREAK
    assert session.status == SessionStatus.ACTIVE


@pytest.mark.asyncio
async def test_complete_is_idempotent(manager, status_sync, memory_store, clock):
    session = await manager.start_focus("U1", 25)
    clock.advance(minutes=20)

    first = await manager.complete(session.id)
    second = await manager.complete(session.id)
    await manager.drain()

    assert first.status == SessionStatus.COMPLETED
    assert first.end_time == at(10, 20)
    assert second == first
    assert status_sync.calls == [("set", "U1"), ("clear", "U1")]
    assert memory_store.actions() == ["focus_session_started", "focus_session_ended"]


@pytest.mark.asyncio
async def test_end_active_focus(manager):
    session = await manager.start_focus("U1")

    ended = await manager.end_active_focus("U1")

    assert ended.id == session.id
    assert ended.status == SessionStatus.COMPLETED
    assert await manager.end_active_focus("U1") is None
    assert await manager.active_focus("U1") is None


@pytest.mark.asyncio
async def test_completion_timer_ends_session(manager, timers, status_sync):
    session = await manager.start_focus("U1", 25)

    await fire(timers, _key(timers, session, "complete"))

    current = await manager.get_session(session.id)
    assert current.status == SessionStatus.COMPLETED
    assert status_sync.calls == [("set", "U1"), ("clear", "U1")]


@pytest.mark.asyncio
async def test_manual_completion_cancels_pending_timer(manager, timers):
    session = await manager.start_focus("U1", 25)
    key = _key(timers, session, "complete")
    assert timers.has(key)

    await manager.complete(session.id)

    assert not timers.has(key)


@pytest.mark.asyncio
async def test_scheduled_session_activates_when_due(manager, timers, clock, status_sync, memory_store):
    session = await manager.start_focus("U1", 30, start_time=at(10, 30))
    await manager.drain()

    assert session.status == SessionStatus.SCHEDULED
    assert status_sync.calls == []
    assert memory_store.actions() == []
    assert timers.scheduled_for(_key(timers, session, "activate")) == at(10, 30)

    early = await manager.activate(session.id)
    assert early.status == SessionStatus.SCHEDULED

    clock.advance(minutes=30)
    await fire(timers, _key(timers, session, "activate"))
    await manager.drain()

    current = await manager.get_session(session.id)
    assert current.status == SessionStatus.ACTIVE
    assert current.status_set
    assert status_sync.calls == [("set", "U1")]
    assert timers.scheduled_for(_key(timers, session, "complete")) == at(11)
    assert memory_store.actions() == ["focus_session_started"]


@pytest.mark.asyncio
async def test_activate_is_idempotent(manager, clock, status_sync):
    session = await manager.start_focus("U1", 30, start_time=at(10, 5))
    clock.advance(minutes=5)

    first = await manager.activate(session.id)
    second = await manager.activate(session.id)

    assert first.status == second.status == SessionStatus.ACTIVE
    assert status_sync.calls == [("set", "U1")]


@pytest.mark.asyncio
async def test_scheduled_focus_waits_when_another_focus_is_active(manager, timers, clock):
    scheduled = await manager.start_focus("U1", 30, start_time=at(10, 15))
    await manager.start_focus("U1", 60)
    clock.advance(minutes=15)

    await fire(timers, _key(timers, scheduled, "activate"))

    assert (await manager.get_session(scheduled.id)).status == SessionStatus.SCHEDULED


@pytest.mark.asyncio
async def test_scheduled_session_cannot_be_completed(manager):
    session = await manager.start_focus("U1", 30, start_time=at(11))

    with pytest.raises(InvalidRequest):
        await manager.complete(session.id)


@pytest.mark.asyncio
async def test_cancel_clears_presence_only_when_set(manager, status_sync, timers, memory_store):
    scheduled = await manager.start_focus("U1", 30, start_time=at(11))
    cancelled = await manager.cancel(scheduled.id)

    assert cancelled.status == SessionStatus.CANCELLED
    assert status_sync.calls == []
    assert not timers.has(_key(timers, scheduled, "activate"))

    active = await manager.start_focus("U1", 30)
    await manager.cancel(active.id)
    await manager.drain()

    assert status_sync.calls == [("set", "U1"), ("clear", "U1")]
    assert memory_store.sessions[active.id].status == SessionStatus.CANCELLED
    assert memory_store.actions().count("session_cancelled") == 2


@pytest.mark.asyncio
async def test_cancel_after_complete_is_noop(manager):
    session = await manager.start_focus("U1")
    completed = await manager.complete(session.id)

    assert await manager.cancel(session.id) == completed


@pytest.mark.asyncio
async def test_presence_failure_keeps_session_active(manager, status_sync, memory_store):
    status_sync.fail = True

    session = await manager.start_focus("U1")

    assert session.status == SessionStatus.ACTIVE
    assert not session.status_synced
    assert not session.status_set
    assert memory_store.sessions[session.id].status_synced is False


@pytest.mark.asyncio
async def test_presence_recovers_on_next_transition(manager, status_sync):
    status_sync.fail = True
    session = await manager.start_focus("U1")
    status_sync.fail = False

    completed = await manager.complete(session.id)

    assert completed.status_synced


@pytest.mark.asyncio
async def test_store_failure_raises_with_applied_session(manager, memory_store):
    memory_store.fail_writes = True

    with pytest.raises(StorageUnavailable) as excinfo:
        await manager.start_focus("U1")

    applied = excinfo.value.session
    assert applied is not None
    assert applied.status == SessionStatus.ACTIVE
    assert (await manager.get_session(applied.id)).status == SessionStatus.ACTIVE
    with pytest.raises(ActiveSessionConflict):
        await manager.start_focus("U1")


class SlowStore(InMemoryStore):
    async def create_session(self, session):
        await asyncio.sleep(1)
        return await super().create_session(session)


@pytest.mark.asyncio
async def test_store_timeout_raises_storage_unavailable(status_sync):
    manager = SessionLifecycleManager(
        store=SlowStore(),
        status_sync=status_sync,
        config=SessionConfig(external_call_timeout_s=0.01),
        clock=FakeClock(at(10)),
    )

    with pytest.raises(StorageUnavailable) as excinfo:
        await manager.start_focus("U1")

    assert excinfo.value.session.status == SessionStatus.ACTIVE


class SlowPresence:
    def __init__(self):
        self.calls = 0

    async def set_status(self, user_id, *, text, icon, expires_at):
        self.calls += 1
        await asyncio.sleep(1)

    async def clear_status(self, user_id):
        await asyncio.sleep(1)


@pytest.mark.asyncio
async def test_presence_timeout_is_not_fatal(memory_store):
    manager = SessionLifecycleManager(
        store=memory_store,
        status_sync=SlowPresence(),
        config=SessionConfig(external_call_timeout_s=0.01),
        clock=FakeClock(at(10)),
    )

    session = await manager.start_focus("U1")

    assert session.status == SessionStatus.ACTIVE
    assert not session.status_synced
    assert memory_store.sessions[session.id].id == session.id


@pytest.mark.asyncio
@pytest.mark.parametrize("minutes", [0, -10])
async def test_bad_duration_is_rejected(manager, minutes):
    with pytest.raises(InvalidRequest):
        await manager.create_session("U1", SessionKind.FOCUS, minutes)


@pytest.mark.asyncio
async def test_naive_start_time_is_rejected(manager):
    with pytest.raises(InvalidRequest):
        await manager.start_focus("U1", 25, start_time=at(11).replace(tzinfo=None))


@pytest.mark.asyncio
async def test_unknown_session(manager):
    with pytest.raises(SessionNotFound):
        await manager.complete("missing")


@pytest.mark.asyncio
async def test_session_loaded_from_store(memory_store, status_sync, clock):
    stored = Session(
        id="s-1",
        user_id="U1",
        kind=SessionKind.BREAK,
        duration_minutes=15,
        start_time=at(9, 50),
        status=SessionStatus.ACTIVE,
        status_set=True,
    )
    memory_store.sessions[stored.id] = stored
    manager = SessionLifecycleManager(store=memory_store, status_sync=status_sync, clock=clock)

    completed = await manager.complete("s-1")

    assert completed.status == SessionStatus.COMPLETED
    assert memory_store.sessions["s-1"].status == SessionStatus.COMPLETED


@pytest.mark.asyncio
async def test_start_break_records_accepted_user_suggestion(manager, memory_store, status_sync):
    session = await manager.start_break("U1", break_type="walk", duration_minutes=15)
    await manager.drain()

    suggestion = memory_store.suggestions[session.suggestion_id]
    assert suggestion.source == SuggestionSource.USER
    assert suggestion.status == SuggestionStatus.ACCEPTED
    assert suggestion.accepted_at == at(10)
    assert session.break_type == "walk"
    assert session.duration_minutes == 15
    assert status_sync.calls == [("set", "U1")]
    assert memory_store.actions() == [
        "break_suggested",
        "break_session_started",
        "break_accepted",
    ]


@pytest.mark.asyncio
async def test_accept_suggestion_is_idempotent(manager, memory_store):
    suggestion = await manager.suggest_break(
        "U1", break_type="stretch", reason="2h without a break", source=SuggestionSource.PROACTIVE
    )

    first = await manager.accept_suggestion(suggestion.id)
    second = await manager.accept_suggestion(suggestion.id)

    assert first[1].id == second[1].id
    assert first[1].duration_minutes == 20
    breaks = [s for s in memory_store.sessions.values() if s.kind == SessionKind.BREAK]
    assert len(breaks) == 1


@pytest.mark.asyncio
async def test_concurrent_accepts_share_one_session(manager, memory_store):
    suggestion = await manager.suggest_break("U1", break_type="walk", reason="r")

    (_, a), (_, b) = await asyncio.gather(
        manager.accept_suggestion(suggestion.id),
        manager.accept_suggestion(suggestion.id),
    )

    assert a.id == b.id
    assert len(memory_store.sessions) == 1


@pytest.mark.asyncio
async def test_declined_suggestion_can_still_be_accepted(manager):
    suggestion = await manager.suggest_break("U1", break_type="walk", reason="r")

    declined = await manager.decline_suggestion(suggestion.id)
    accepted, session = await manager.accept_suggestion(suggestion.id)

    assert declined.status == SuggestionStatus.DECLINED
    assert accepted.status == SuggestionStatus.ACCEPTED
    assert session.kind == SessionKind.BREAK


@pytest.mark.asyncio
async def test_cancelled_suggestion_cannot_be_accepted(manager):
    suggestion = await manager.suggest_break("U1", break_type="walk", reason="r")
    await manager.cancel_suggestion(suggestion.id)

    with pytest.raises(InvalidRequest):
        await manager.accept_suggestion(suggestion.id)


@pytest.mark.asyncio
async def test_decline_only_applies_to_pending(manager, memory_store):
    suggestion = await manager.suggest_break("U1", break_type="walk", reason="r")
    await manager.accept_suggestion(suggestion.id)

    result = await manager.decline_suggestion(suggestion.id)
    await manager.drain()

    assert result.status == SuggestionStatus.ACCEPTED
    assert "break_declined" not in memory_store.actions()


@pytest.mark.asyncio
async def test_suggestion_write_failure_carries_break_session(manager, memory_store):
    suggestion = await manager.suggest_break("U1", break_type="walk", reason="r")
    memory_store.fail_writes = True

    with pytest.raises(StorageUnavailable) as excinfo:
        await manager.accept_suggestion(suggestion.id)

    assert excinfo.value.session.kind == SessionKind.BREAK
    memory_store.fail_writes = False
    _, session = await manager.accept_suggestion(suggestion.id)
    assert session.id == excinfo.value.session.id


@pytest.mark.asyncio
async def test_unknown_suggestion(manager):
    with pytest.raises(SessionNotFound):
        await manager.accept_suggestion("nope")


@pytest.mark.asyncio
async def test_suggestion_loaded_from_store(manager, memory_store):
    suggestion = await manager.suggest_break("U1", break_type="walk", reason="r")
    fresh = SessionLifecycleManager(store=memory_store, clock=FakeClock(at(10, 5)))
    memory_store.suggestions[suggestion.id] = replace(suggestion, message="Stretch it out")

    loaded = await fresh.get_suggestion(suggestion.id)

    assert loaded.message == "Stretch it out"


@pytest.mark.asyncio
@freeze_time("2025-03-04 15:00:00", real_asyncio=True)
async def test_default_clock_is_utc_now(memory_store):
    manager = SessionLifecycleManager(store=memory_store)

    session = await manager.start_focus("U1", 25)

    assert session.start_time == at(10)
    assert session.planned_end == at(10, 25)


@pytest.mark.asyncio
async def test_second_decline_is_not_logged_again(manager, memory_store, clock):
    suggestion = await manager.suggest_break("U1", break_type="walk", reason="r")

    first = await manager.decline_suggestion(suggestion.id)
    clock.advance(minutes=5)
    second = await manager.decline_suggestion(suggestion.id)
    await manager.drain()

    assert first.status == second.status == SuggestionStatus.DECLINED
    assert second.responded_at == first.responded_at == at(10)
    assert memory_store.actions().count("break_declined") == 1


@pytest.mark.asyncio
async def test_finished_sessions_leave_the_registry(manager, memory_store, clock):
    for _ in range(50):
        session = await manager.start_focus("U1", 25)
        clock.advance(minutes=25)
        await manager.complete(session.id)
    cancelled = await manager.start_focus("U1", 25)
    await manager.cancel(cancelled.id)
    await manager.drain()

    assert manager._sessions == {}
    assert len(memory_store.sessions) == 51
    assert (await manager.get_session(session.id)).status == SessionStatus.COMPLETED
    assert (await manager.get_session(cancelled.id)).status == SessionStatus.CANCELLED
    assert manager._sessions == {}


@pytest.mark.asyncio
async def test_answered_suggestions_leave_the_registry(manager, timers, clock):
    accepted = await manager.suggest_break("U1", break_type="walk", reason="r")
    declined = await manager.suggest_break("U1", break_type="stretch", reason="r")
    await manager.decline_suggestion(declined.id)
    _, session = await manager.accept_suggestion(accepted.id)

    assert set(manager._suggestions) == {accepted.id}

    clock.advance(minutes=20)
    await fire(timers, _key(timers, session, "complete"))

    assert manager._sessions == {}
    assert manager._suggestions == {}
    assert manager._session_by_suggestion == {}

    _, again = await manager.accept_suggestion(accepted.id)
    assert again.id == session.id
    assert again.status == SessionStatus.COMPLETED


@pytest.mark.asyncio
async def test_session_notices_follow_start_and_completion(memory_store, status_sync, sink, clock):
    manager = SessionLifecycleManager(
        store=memory_store, status_sync=status_sync, notifier=sink, clock=clock
    )

    session = await manager.start_focus("U1", 25)
    await manager.drain()
    clock.advance(minutes=25)
    await manager.complete(session.id)
    await manager.drain()

    assert [(n.event, n.session.status) for n in sink.notices] == [
        (SessionEvent.STARTED, SessionStatus.ACTIVE),
        (SessionEvent.COMPLETED, SessionStatus.COMPLETED),
    ]
    assert all(n.session.status_synced for n in sink.notices)


@pytest.mark.asyncio
async def test_presence_failure_is_reported_in_start_notice(
    memory_store, status_sync, sink, clock
):
    manager = SessionLifecycleManager(
        store=memory_store, status_sync=status_sync, notifier=sink, clock=clock
    )
    status_sync.fail = True

    await manager.start_focus("U1")
    await manager.drain()

    (notice,) = sink.notices
    assert notice.event == SessionEvent.STARTED
    assert notice.session.status_synced is False


@pytest.mark.asyncio
async def test_scheduled_and_cancelled_sessions_send_no_notice(memory_store, sink, clock):
    manager = SessionLifecycleManager(store=memory_store, notifier=sink, clock=clock)

    scheduled = await manager.start_focus("U1", 30, start_time=at(11))
    await manager.cancel(scheduled.id)
    await manager.drain()

    assert sink.notices == []


class BrokenNotifier:
    async def send_session_notice(self, notice):
        raise ConnectionError("slack down")


@pytest.mark.asyncio
async def test_notifier_failure_does_not_fail_the_session(memory_store, clock, caplog):
    manager = SessionLifecycleManager(store=memory_store, notifier=BrokenNotifier(), clock=clock)

    session = await manager.start_focus("U1")
    await manager.drain()

    assert session.status == SessionStatus.ACTIVE
    assert "Background task session-notice:started:U1 failed" in caplog.text
