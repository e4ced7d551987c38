import pytest

from core.broadcaster import CallbackSubscriber, EventBroadcaster
from core.events import CHAT_CHANNEL, SESSION_CHANNEL, get_broadcaster
from core.exceptions import NotAuthenticated, PermissionDenied, ValidationError
from core.session_manager import SessionManager
from enums import SessionStatus
from schemas import ChatToggledEvent, StatusChangedEvent, TimerSnapshot


def make_broadcaster(clock=lambda: 1000):
    broadcaster = EventBroadcaster(clock=clock)
    broadcaster.register_channel(SESSION_CHANNEL)
    return broadcaster


def toggled(session_id="s1", enabled=True):
    return ChatToggledEvent(session_id=session_id, chat_enabled=enabled)


def test_join_and_leave_are_idempotent():
    broadcaster = make_broadcaster()
    subscriber = CallbackSubscriber("sub-1", lambda c, e: None, identity="u1")

    assert broadcaster.join(SESSION_CHANNEL, "s1", subscriber) is True
    assert broadcaster.join(SESSION_CHANNEL, "s1", subscriber) is False
    assert broadcaster.subscriber_ids(SESSION_CHANNEL, "s1") == ["sub-1"]

    assert broadcaster.leave(SESSION_CHANNEL, "s1", "sub-1") is True
    assert broadcaster.leave(SESSION_CHANNEL, "s1", "sub-1") is False
    assert broadcaster.subscriber_ids(SESSION_CHANNEL, "s1") == []


def test_join_requires_identity():
    broadcaster = make_broadcaster()
    with pytest.raises(NotAuthenticated):
        broadcaster.join(SESSION_CHANNEL, "s1", CallbackSubscriber("anon", lambda c, e: None))


def test_join_unknown_channel():
    broadcaster = make_broadcaster()
    with pytest.raises(ValidationError):
        broadcaster.join("nope", "s1", CallbackSubscriber("sub", lambda c, e: None, identity="u1"))


def test_authorizer_can_refuse():
    broadcaster = make_broadcaster()
    broadcaster.register_channel("vip", lambda session_id, identity: identity == "boss")

    with pytest.raises(PermissionDenied):
        broadcaster.join("vip", "s1", CallbackSubscriber("sub", lambda c, e: None, identity="intern"))
    assert broadcaster.join("vip", "s1", CallbackSubscriber("sub", lambda c, e: None, identity="boss"))


def test_emit_reaches_only_current_subscribers_of_that_session(recorder):
    broadcaster = make_broadcaster()
    broadcaster.join(SESSION_CHANNEL, "s1", CallbackSubscriber("a", recorder, identity="u1"))

    broadcaster.emit(SESSION_CHANNEL, toggled("s2"))
    assert recorder.events == []

    assert broadcaster.emit(SESSION_CHANNEL, toggled("s1")) == 1
    broadcaster.leave(SESSION_CHANNEL, "s1", "a")
    assert broadcaster.emit(SESSION_CHANNEL, toggled("s1", False)) == 0

    assert len(recorder.events) == 1


def test_per_subscriber_order_and_monotonic_timestamps(recorder):
    broadcaster = make_broadcaster(clock=lambda: 5000)
    broadcaster.join(SESSION_CHANNEL, "s1", CallbackSubscriber("a", recorder, identity="u1"))

    for enabled in (True, False, True):
        broadcaster.emit(SESSION_CHANNEL, toggled("s1", enabled))

    assert [e.chat_enabled for _, e in recorder.events] == [True, False, True]
    assert [e.timestamp for _, e in recorder.events] == [5000, 5001, 5002]


def test_failing_subscriber_does_not_affect_others(recorder):
    broadcaster = make_broadcaster()

    def explode(channel, event):
        raise RuntimeError("socket gone")

    broadcaster.join(SESSION_CHANNEL, "s1", CallbackSubscriber("bad", explode, identity="u1"))
    broadcaster.join(SESSION_CHANNEL, "s1", CallbackSubscriber("good", recorder, identity="u2"))

    delivered = broadcaster.emit(SESSION_CHANNEL, StatusChangedEvent(
        session_id="s1",
        status=SessionStatus.FOCUSING,
        previous_status=SessionStatus.WAITING,
        timer=TimerSnapshot(
            remaining_seconds=1800, elapsed_seconds=0, target_duration_minutes=30, server_timestamp=1
        ),
    ))

    assert delivered == 1
    assert recorder.types == ["status_changed"]


def status_changed(session_id, status, previous_status):
    return StatusChangedEvent(
        session_id=session_id,
        status=status,
        previous_status=previous_status,
        timer=TimerSnapshot(
            remaining_seconds=0, elapsed_seconds=0, target_duration_minutes=30, server_timestamp=1
        ),
    )


def test_terminal_status_forgets_session_timestamp():
    broadcaster = make_broadcaster()

    broadcaster.emit(SESSION_CHANNEL, toggled("s1"))
    broadcaster.emit(SESSION_CHANNEL, toggled("s2"))
    broadcaster.emit(SESSION_CHANNEL, status_changed("s1", SessionStatus.FOCUSING, SessionStatus.WAITING))
    assert set(broadcaster._last_timestamps) == {"s1", "s2"}

    event = status_changed("s1", SessionStatus.CANCELLED, SessionStatus.FOCUSING)
    broadcaster.emit(SESSION_CHANNEL, event)

    # 最後一個事件還是拿到遞增的 timestamp
    assert event.timestamp == 1002
    assert set(broadcaster._last_timestamps) == {"s2"}


def test_leave_all_drops_subscriber_everywhere():
    broadcaster = make_broadcaster()
    broadcaster.register_channel(CHAT_CHANNEL)
    subscriber = CallbackSubscriber("sub", lambda c, e: None, identity="u1")
    broadcaster.join(SESSION_CHANNEL, "s1", subscriber)
    broadcaster.join(SESSION_CHANNEL, "s2", subscriber)
    broadcaster.join(CHAT_CHANNEL, "s1", subscriber)

    assert broadcaster.leave_all("sub") == 3
    assert broadcaster.subscriber_ids(SESSION_CHANNEL, "s1") == []
    assert broadcaster.subscriber_ids(CHAT_CHANNEL, "s1") == []


def test_chat_channel_requires_active_participant(db, create_session, recorder):
    session_id = create_session().id
    broadcaster = get_broadcaster()

    with pytest.raises(PermissionDenied):
        broadcaster.join(CHAT_CHANNEL, session_id, CallbackSubscriber("x", recorder, identity="stranger"))

    SessionManager.join_session(db, session_id, "user-2")
    assert broadcaster.join(CHAT_CHANNEL, session_id, CallbackSubscriber("y", recorder, identity="user-2"))


def test_failed_transaction_emits_nothing(db, create_session, watch):
    session_id = create_session().id
    recorder = watch(session_id)

    with pytest.raises(PermissionDenied):
        SessionManager.toggle_chat(db, session_id, "not-the-creator", True)

    assert recorder.events == []
