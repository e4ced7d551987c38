from datetime import timedelta

import pytest

from core.exceptions import PermissionDenied, StaleWriteError, StateConflictError
from core.locks import compare_and_swap, retry_on_conflict
from core.participant_registry import ParticipantRegistry
from core.session_manager import SessionManager
from core.state_machine import (
    SYSTEM_ACTIONS,
    TRANSITIONS,
    SessionAction,
    SessionStateMachine,
)
from core.sweeper import SessionSweeper
from models import FocusSession, ParticipantOutcome, SessionStatus

CREATOR = "creator-1"


def reload(db, session_id) -> FocusSession:
    db.expire_all()
    return db.query(FocusSession).filter(FocusSession.id == session_id).one()


def force_status(db, session_id, status):
    session = reload(db, session_id)
    session.status = status
    db.commit()


def actor_for(action):
    return None if action in SYSTEM_ACTIONS else CREATOR


ILLEGAL_PAIRS = [
    (status, action)
    for status in SessionStatus
    for action in SessionAction
    if action not in TRANSITIONS[status]
]


@pytest.mark.parametrize("status, action", ILLEGAL_PAIRS)
def test_illegal_transitions_change_nothing(db, create_session, watch, status, action):
    session_id = create_session().id
    force_status(db, session_id, status)
    version = reload(db, session_id).version
    recorder = watch(session_id)

    with pytest.raises(StateConflictError) as exc:
        SessionStateMachine.transition(db, session_id, action, actor_for(action))

    assert exc.value.current_status == status
    after = reload(db, session_id)
    assert after.status == status
    assert after.version == version
    assert recorder.events == []


def test_terminal_states_have_no_edges():
    assert TRANSITIONS[SessionStatus.COMPLETED] == {}
    assert TRANSITIONS[SessionStatus.CANCELLED] == {}


def test_only_creator_can_start(db, create_session, watch):
    session_id = create_session().id
    recorder = watch(session_id)

    with pytest.raises(PermissionDenied):
        SessionManager.start_session(db, session_id, "someone-else")

    assert reload(db, session_id).status == SessionStatus.WAITING
    assert recorder.events == []


def test_users_cannot_trigger_system_transitions(db, create_session, t0):
    session_id = create_session().id
    SessionManager.start_session(db, session_id, CREATOR, now=t0)

    with pytest.raises(PermissionDenied):
        SessionStateMachine.transition(
            db, session_id, SessionAction.FOCUS_ELAPSED, CREATOR, now=t0 + timedelta(hours=1)
        )


def test_warmup_then_start(db, create_session, watch, t0):
    session_id = create_session().id
    recorder = watch(session_id)

    SessionManager.begin_warmup(db, session_id, CREATOR)
    SessionManager.start_session(db, session_id, CREATOR, now=t0)

    session = reload(db, session_id)
    assert session.status == SessionStatus.FOCUSING
    assert session.current_repetition == 1
    assert session.started_at == t0
    changes = [(e.previous_status, e.status) for e in recorder.of_type("status_changed")]
    assert changes == [
        (SessionStatus.WAITING, SessionStatus.WARMUP),
        (SessionStatus.WARMUP, SessionStatus.FOCUSING),
    ]


def test_status_changed_carries_fresh_timer(db, create_session, watch, t0):
    session_id = create_session().id
    recorder = watch(session_id)

    SessionManager.start_session(db, session_id, CREATOR, now=t0)

    event = recorder.of_type("status_changed")[0]
    assert event.timer.remaining_seconds == 1800
    assert event.timer.current_repetition == 1
    assert event.timestamp > 0


def test_natural_transition_refused_before_elapse(db, create_session, t0):
    session_id = create_session().id
    SessionManager.start_session(db, session_id, CREATOR, now=t0)

    with pytest.raises(StateConflictError):
        SessionStateMachine.transition(
            db, session_id, SessionAction.FOCUS_ELAPSED, now=t0 + timedelta(minutes=29)
        )
    assert reload(db, session_id).status == SessionStatus.FOCUSING


def test_cancel_from_any_active_status(db, create_session):
    for status in (SessionStatus.WAITING, SessionStatus.WARMUP, SessionStatus.FOCUSING,
                   SessionStatus.BREAK, SessionStatus.COOLDOWN):
        session_id = create_session().id
        force_status(db, session_id, status)

        SessionManager.cancel_session(db, session_id, CREATOR)

        session = reload(db, session_id)
        assert session.status == SessionStatus.CANCELLED
        assert session.ended_at is not None


def test_full_scenario_through_sweeps(db, create_session, watch, t0):
    """25/30 分鐘、2 輪、休息 5 分鐘、每輪休息"""
    session_id = create_session().id
    recorder = watch(session_id)
    sweeper = SessionSweeper(timer_sync_interval_seconds=3600)

    SessionManager.start_session(db, session_id, CREATOR, now=t0)

    sweeper.sweep(db, now=t0 + timedelta(minutes=30))
    session = reload(db, session_id)
    assert session.status == SessionStatus.BREAK
    break_event = recorder.of_type("status_changed")[-1]
    assert break_event.timer.remaining_seconds == 300

    sweeper.sweep(db, now=t0 + timedelta(minutes=35))
    session = reload(db, session_id)
    assert session.status == SessionStatus.FOCUSING
    assert session.current_repetition == 2

    sweeper.sweep(db, now=t0 + timedelta(minutes=65))
    assert reload(db, session_id).status == SessionStatus.COOLDOWN

    sweeper.sweep(db, now=t0 + timedelta(minutes=70))
    session = reload(db, session_id)
    assert session.status == SessionStatus.COMPLETED
    assert session.ended_at == t0 + timedelta(minutes=70)
    assert all(p.outcome == ParticipantOutcome.COMPLETED for p in session.participants)

    statuses = [e.status for e in recorder.of_type("status_changed")]
    assert statuses == [
        SessionStatus.FOCUSING,
        SessionStatus.BREAK,
        SessionStatus.FOCUSING,
        SessionStatus.COOLDOWN,
        SessionStatus.COMPLETED,
    ]


def test_repetitions_without_break_stay_focusing(db, create_session, watch, t0):
    session_id = create_session(repetitions=3, break_interval=2).id
    recorder = watch(session_id)
    sweeper = SessionSweeper(timer_sync_interval_seconds=3600)
    SessionManager.start_session(db, session_id, CREATOR, now=t0)

    sweeper.sweep(db, now=t0 + timedelta(minutes=30))

    session = reload(db, session_id)
    assert session.status == SessionStatus.FOCUSING
    assert session.current_repetition == 2
    assert recorder.of_type("timer_sync")[-1].timer.remaining_seconds == 1800

    sweeper.sweep(db, now=t0 + timedelta(minutes=60))
    assert reload(db, session_id).status == SessionStatus.BREAK


def test_double_sweep_is_idempotent(db, create_session, watch, t0):
    session_id = create_session().id
    recorder = watch(session_id)
    sweeper = SessionSweeper(timer_sync_interval_seconds=3600)
    SessionManager.start_session(db, session_id, CREATOR, now=t0)
    recorder.events.clear()

    boundary = t0 + timedelta(minutes=30, seconds=2)
    first = sweeper.sweep(db, now=boundary)
    second = sweeper.sweep(db, now=boundary)

    assert first.transitions == 1
    assert second.transitions == 0
    assert len(recorder.of_type("status_changed")) == 1
    assert reload(db, session_id).status == SessionStatus.BREAK


def test_independent_sweepers_transition_once(db, create_session, watch, t0):
    session_id = create_session().id
    recorder = watch(session_id)
    SessionManager.start_session(db, session_id, CREATOR, now=t0)
    recorder.events.clear()

    boundary = t0 + timedelta(minutes=31)
    SessionSweeper(timer_sync_interval_seconds=3600).sweep(db, now=boundary)
    result = SessionSweeper(timer_sync_interval_seconds=3600).sweep(db, now=boundary)

    assert result.transitions == 0
    assert result.failures == 0
    assert len(recorder.of_type("status_changed")) == 1


def test_zero_remaining_is_always_swept_out_of_focusing(db, create_session, t0):
    session_id = create_session().id
    SessionManager.start_session(db, session_id, CREATOR, now=t0)
    boundary = t0 + timedelta(minutes=30)

    view = SessionManager.build_session_view(db, session_id, CREATOR, now=boundary)
    assert view.timer.remaining_seconds == 0

    SessionSweeper().sweep(db, now=boundary)
    assert reload(db, session_id).status != SessionStatus.FOCUSING


def test_sweeper_emits_throttled_timer_sync(db, create_session, watch, t0):
    session_id = create_session().id
    recorder = watch(session_id)
    SessionManager.start_session(db, session_id, CREATOR, now=t0)
    sweeper = SessionSweeper(timer_sync_interval_seconds=10)

    sweeper.sweep(db, now=t0 + timedelta(seconds=1))
    sweeper.sweep(db, now=t0 + timedelta(seconds=5))
    sweeper.sweep(db, now=t0 + timedelta(seconds=12))

    syncs = recorder.of_type("timer_sync")
    assert len(syncs) == 2
    assert syncs[0].timer.remaining_seconds == 1799
    assert syncs[1].timer.remaining_seconds == 1788


def test_sweeper_isolates_failing_session(db, create_session, monkeypatch, t0):
    broken_id = create_session().id
    healthy_id = create_session().id
    SessionManager.start_session(db, broken_id, CREATOR, now=t0)
    SessionManager.start_session(db, healthy_id, CREATOR, now=t0)

    original = SessionStateMachine.transition

    def flaky_transition(db_, session_id, action, actor_id=None, now=None):
        if session_id == broken_id:
            raise RuntimeError("disk on fire")
        return original(db_, session_id, action, actor_id, now=now)

    monkeypatch.setattr(SessionStateMachine, "transition", staticmethod(flaky_transition))
    result = SessionSweeper().sweep(db, now=t0 + timedelta(minutes=30))

    assert result.failures == 1
    assert result.transitions == 1
    assert reload(db, healthy_id).status == SessionStatus.BREAK
    assert reload(db, broken_id).status == SessionStatus.FOCUSING


def test_compare_and_swap_rejects_stale_version(db, create_session):
    session_id = create_session().id
    session = reload(db, session_id)
    stale_version = session.version

    SessionManager.join_session(db, session_id, "late-joiner")

    with pytest.raises(StaleWriteError):
        compare_and_swap(db, session, SessionStatus.WAITING, stale_version, status=SessionStatus.FOCUSING)
    db.rollback()
    assert reload(db, session_id).status == SessionStatus.WAITING


def test_stale_write_reports_actual_status(db, create_session):
    session_id = create_session().id
    session = reload(db, session_id)
    version = session.version

    SessionManager.cancel_session(db, session_id, CREATOR)

    with pytest.raises(StaleWriteError) as exc:
        compare_and_swap(db, session, SessionStatus.WAITING, version, status=SessionStatus.FOCUSING)
    db.rollback()
    assert exc.value.current_status == SessionStatus.CANCELLED


def test_compare_and_swap_bumps_version(db, create_session):
    session_id = create_session().id
    session = reload(db, session_id)
    version = session.version

    compare_and_swap(db, session, SessionStatus.WAITING, version, chat_enabled=True)
    db.commit()

    session = reload(db, session_id)
    assert session.version == version + 1
    assert session.chat_enabled is True


def test_retry_on_conflict_retries_once():
    calls = []

    @retry_on_conflict()
    def flaky():
        calls.append(1)
        if len(calls) == 1:
            raise StaleWriteError("lost the race")
        return "ok"

    assert flaky() == "ok"
    assert len(calls) == 2


def test_retry_on_conflict_gives_up():
    @retry_on_conflict(attempts=2)
    def always_stale():
        raise StaleWriteError("lost the race")

    with pytest.raises(StaleWriteError):
        always_stale()


def test_abandon_refused_when_someone_rejoined(db, create_session, watch):
    session_id = create_session().id
    assert ParticipantRegistry.leave(db, session_id, CREATOR) == 0
    ParticipantRegistry.join(db, session_id, CREATOR)
    recorder = watch(session_id)

    with pytest.raises(StateConflictError):
        SessionStateMachine.transition(db, session_id, SessionAction.ABANDON)

    assert reload(db, session_id).status == SessionStatus.WAITING
    assert recorder.of_type("status_changed") == []


def test_leave_keeps_session_when_abandon_loses_to_a_rejoin(db, create_session, monkeypatch):
    session_id = create_session().id
    original_leave = ParticipantRegistry.leave

    def leave_then_rejoin(db, session_id, user_id):
        remaining = original_leave(db, session_id, user_id)
        # 另一個請求在兩個 transaction 之間重新加入
        ParticipantRegistry.join(db, session_id, user_id)
        return remaining

    monkeypatch.setattr(ParticipantRegistry, "leave", staticmethod(leave_then_rejoin))

    session = SessionManager.leave_session(db, session_id, CREATOR)

    assert session.status == SessionStatus.WAITING
    assert ParticipantRegistry.active_count(db, session_id) == 1
