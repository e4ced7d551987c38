import asyncio
import json

import httpx
import pytest

from client.active_session import ActiveSessionWatcher
from client.api import HttpSessionApi
from client.chat import ChatChannel
from client.push import LocalPushChannel, WebSocketPushChannel
from client.sync import SessionEventHandlers, SessionSynchronizer
from core.events import get_broadcaster
from core.exceptions import (
    NotFoundError,
    PermissionDenied,
    StateConflictError,
    TransportError,
    ValidationError,
)
from enums import SessionStatus
from main import app
from schemas import ActiveSessionResponse, SessionCreate, TimerSnapshot


def mock_api(handler, user_id="creator-1"):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://test")
    return HttpSessionApi(user_id, client=client)


def call(api, method, *args):
    async def run():
        try:
            return await getattr(api, method)(*args)
        finally:
            await api.aclose()

    return asyncio.run(run())


# ============ Error mapping ============

def test_conflict_carries_current_status():
    def handler(request):
        return httpx.Response(409, json={"detail": {"message": "already started", "current_status": "focusing"}})

    with pytest.raises(StateConflictError) as exc:
        call(mock_api(handler), "start_session", "s1")

    assert exc.value.current_status == SessionStatus.FOCUSING


@pytest.mark.parametrize(
    "status, error",
    [(400, ValidationError), (422, ValidationError), (403, PermissionDenied), (404, NotFoundError),
     (500, TransportError)],
)
def test_status_codes_map_to_domain_errors(status, error):
    def handler(request):
        return httpx.Response(status, json={"detail": "nope"})

    with pytest.raises(error):
        call(mock_api(handler), "get_session", "s1")


def test_connection_failure_is_transport_error():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(TransportError):
        call(mock_api(handler), "get_session", "s1")


def test_identity_header_and_null_active_session():
    seen = []

    def handler(request):
        seen.append(request.headers["X-User-Id"])
        return httpx.Response(200, json=None)

    assert call(mock_api(handler, user_id="user-7"), "get_active_session") is None
    assert seen == ["user-7"]


def test_send_message_passes_client_id():
    bodies = []

    def handler(request):
        bodies.append(request.content)
        return httpx.Response(201, json={
            "id": "m-1", "session_id": "s1", "odonym": "Calm Otter", "text": "hi",
            "sent_at": "2026-01-01T12:00:00",
        })

    message = call(mock_api(handler), "send_message", "s1", "hi", "m-1")

    assert message.id == "m-1"
    assert b'"client_message_id":"m-1"' in bodies[0].replace(b" ", b"")


# ============ ActiveSessionWatcher ============

class FakeActiveApi:
    def __init__(self):
        self.result = None
        self.error = None

    async def get_active_session(self):
        if self.error is not None:
            raise self.error
        return self.result


def active(status=SessionStatus.FOCUSING):
    return ActiveSessionResponse(
        session_id="s1",
        topic="calculus",
        status=status,
        is_active_participant=True,
        timer=TimerSnapshot(remaining_seconds=60, elapsed_seconds=0, target_duration_minutes=1, server_timestamp=0),
    )


def test_active_session_watcher_reports_changes_only():
    async def scenario():
        api = FakeActiveApi()
        changes = []
        watcher = ActiveSessionWatcher(api, on_change=changes.append)

        await watcher.check()
        api.result = active()
        await watcher.check()
        await watcher.check()
        api.result = active(SessionStatus.BREAK)
        await watcher.check()

        api.error = TransportError("offline")
        kept = await watcher.check()
        return changes, kept

    changes, kept = asyncio.run(scenario())

    assert [c.status for c in changes] == [SessionStatus.FOCUSING, SessionStatus.BREAK]
    assert kept.status == SessionStatus.BREAK


# ============ End to end over ASGI ============

def test_synchronizer_against_app():
    async def scenario():
        transport = httpx.ASGITransport(app=app)
        creator = HttpSessionApi("creator-1", client=httpx.AsyncClient(transport=transport, base_url="http://testserver"))
        friend = HttpSessionApi("user-2", client=httpx.AsyncClient(transport=transport, base_url="http://testserver"))
        push = LocalPushChannel(get_broadcaster(), "creator-1")
        views = []

        created = await creator.create_session(SessionCreate(min_duration=25, max_duration=30))
        await push.connect()
        sync = SessionSynchronizer(
            created.id, creator, push, handlers=SessionEventHandlers(on_view=views.append)
        )
        try:
            await sync.open()
            assert ("session", created.id) in push.joined

            await sync.begin_warmup()
            await asyncio.sleep(0.1)
            assert sync.view.status == SessionStatus.WARMUP

            # 只有 push 會觸發這次 refetch（poll 間隔是 15 秒）
            await friend.join_session(created.id)
            await asyncio.sleep(0.2)
            assert sync.view.participant_count == 2

            with pytest.raises(PermissionDenied):
                await friend.start_session(created.id)
        finally:
            await sync.close()
            await push.close()
            await creator.aclose()
            await friend.aclose()
        return views

    views = asyncio.run(scenario())
    assert views[0].status == SessionStatus.WAITING


def test_synchronizer_with_chat_opens_on_chat_disabled_session():
    async def scenario():
        transport = httpx.ASGITransport(app=app)
        api = HttpSessionApi("creator-1", client=httpx.AsyncClient(transport=transport, base_url="http://testserver"))
        push = LocalPushChannel(get_broadcaster(), "creator-1")

        created = await api.create_session(SessionCreate(min_duration=25, max_duration=30))
        assert created.chat_enabled is False
        await push.connect()
        chat = ChatChannel(created.id, api, push)
        sync = SessionSynchronizer(created.id, api, push, chat=chat)
        try:
            view = await sync.open()
            assert view.id == created.id
            assert chat.log.entries == []
            assert await api.get_messages(created.id) == []
        finally:
            await sync.close()
            await push.close()
            await api.aclose()

    asyncio.run(scenario())


# ============ WebSocket frames ============

class Listener:
    def __init__(self):
        self.events = []
        self.disconnects = []

    def on_push_event(self, channel, event):
        self.events.append((channel, event))

    def on_push_connected(self):
        pass

    def on_push_disconnected(self, error):
        self.disconnects.append(error)


def test_websocket_frames_are_parsed_and_rejections_drop_joins():
    channel = WebSocketPushChannel("ws://test/ws", "user-2")
    listener = Listener()
    channel.add_listener(listener)
    # 未連線時 join 只記錄，不送出
    asyncio.run(channel.join("chat", "s1"))
    assert channel.joined == {("chat", "s1")}

    channel._handle_frame(json.dumps({
        "op": "event",
        "channel": "session",
        "event": {"type": "chat_toggled", "session_id": "s1", "timestamp": 5, "chat_enabled": True},
    }))
    channel._handle_frame("garbage")
    channel._handle_frame(json.dumps({"op": "event", "channel": "session", "event": {"type": "bogus"}}))
    channel._handle_frame(json.dumps({"op": "error", "code": 403, "channel": "chat", "session_id": "s1"}))

    assert [(c, e.type) for c, e in listener.events] == [("session", "chat_toggled")]
    assert channel.joined == set()


@pytest.mark.parametrize("payload", [[1, 2], "event", 42, None])
def test_json_frames_that_are_not_objects_are_dropped(payload):
    channel = WebSocketPushChannel("ws://test/ws", "user-2")
    listener = Listener()
    channel.add_listener(listener)

    channel._handle_frame(json.dumps(payload))

    assert listener.events == []


def test_unexpected_connect_error_keeps_reconnecting(monkeypatch):
    attempts = []

    def broken_connect(uri):
        attempts.append(uri)
        raise RuntimeError("bad uri")

    monkeypatch.setattr("client.push.websockets.connect", broken_connect)

    async def scenario():
        channel = WebSocketPushChannel("ws://test/ws", "user-2", reconnect_delay_seconds=0.01)
        listener = Listener()
        channel.add_listener(listener)
        await channel.connect()
        await asyncio.sleep(0.1)
        task = channel._task
        await channel.close()
        return listener, task

    listener, task = asyncio.run(scenario())

    assert len(attempts) >= 2
    assert len(listener.disconnects) >= 2
    assert all(isinstance(e, TransportError) for e in listener.disconnects)
    assert task.cancelled()
