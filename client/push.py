"""
推播通道（client 端）

PushChannel 只負責把 server 的事件交給 listener，不保證送達：
- WebSocketPushChannel：連到 /ws，斷線後自動重連，重連時重新 join 之前的 channel
- LocalPushChannel：同一個 process 內直接訂閱 EventBroadcaster

listener 需要實作：
    on_push_event(channel, event)
    on_push_connected()
    on_push_disconnected(error)
"""
import asyncio
import json
import logging
import uuid
from typing import List, Optional, Set, Tuple
from urllib.parse import urlencode

import pydantic
import websockets
from websockets.exceptions import WebSocketException

from core.broadcaster import CallbackSubscriber, EventBroadcaster
from core.exceptions import FocusSessionException, TransportError
from schemas import EVENT_ADAPTERS

logger = logging.getLogger(__name__)


class PushChannel:
    """推播通道基類：管理 listener 與已加入的 channel"""

    def __init__(self):
        self._listeners: List = []
        self._joined: Set[Tuple[str, str]] = set()

    @property
    def joined(self) -> Set[Tuple[str, str]]:
        return set(self._joined)

    def add_listener(self, listener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_listener(self, listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def connect(self) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        raise NotImplementedError

    async def join(self, channel: str, session_id: str) -> None:
        raise NotImplementedError

    async def leave(self, channel: str, session_id: str) -> None:
        raise NotImplementedError

    def _dispatch_event(self, channel: str, event) -> None:
        for listener in list(self._listeners):
            try:
                listener.on_push_event(channel, event)
            except Exception as e:
                logger.error(f"Push listener failed on {event.type}: {e}", exc_info=True)

    def _dispatch_connected(self) -> None:
        for listener in list(self._listeners):
            try:
                listener.on_push_connected()
            except Exception as e:
                logger.error(f"Push listener failed on connect: {e}", exc_info=True)

    def _dispatch_disconnected(self, error: Optional[Exception]) -> None:
        for listener in list(self._listeners):
            try:
                listener.on_push_disconnected(error)
            except Exception as e:
                logger.error(f"Push listener failed on disconnect: {e}", exc_info=True)


class WebSocketPushChannel(PushChannel):
    """
    WebSocket 推播通道

    流程：
    1. connect() 啟動背景 task，連線到 ws_url?user_id=...
    2. 連上後重新送出所有已記錄的 join，通知 listener connected
    3. 讀取 frame：event -> 解析成 SessionEvent / ChatEvent 交給 listener
    4. 斷線 -> 通知 listener disconnected，等 reconnect_delay 後重連

    join() 在未連線時只記錄，連上後才送出
    """

    def __init__(self, url: str, user_id: str, reconnect_delay_seconds: float = 2.0):
        super().__init__()
        self.url = url
        self.user_id = user_id
        self.reconnect_delay_seconds = reconnect_delay_seconds
        self._ws = None
        self._task: Optional[asyncio.Task] = None

    @property
    def connected(self) -> bool:
        return self._ws is not None

    async def connect(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run())

    async def close(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def join(self, channel: str, session_id: str) -> None:
        self._joined.add((channel, session_id))
        await self._send({"op": "join", "channel": channel, "session_id": session_id})

    async def leave(self, channel: str, session_id: str) -> None:
        self._joined.discard((channel, session_id))
        await self._send({"op": "leave", "channel": channel, "session_id": session_id})

    async def send_typing(self, session_id: str, is_typing: bool = True) -> None:
        await self._send({"op": "typing", "session_id": session_id, "is_typing": is_typing})

    async def _send(self, frame: dict) -> None:
        if self._ws is None:
            return
        try:
            await self._ws.send(json.dumps(frame))
        except (OSError, WebSocketException) as e:
            raise TransportError(f"Push send failed: {e}") from e

    async def _run(self) -> None:
        uri = f"{self.url}?{urlencode({'user_id': self.user_id})}"
        while True:
            try:
                async with websockets.connect(uri) as ws:
                    self._ws = ws
                    for channel, session_id in sorted(self._joined):
                        await ws.send(json.dumps({"op": "join", "channel": channel, "session_id": session_id}))
                    logger.info(f"Push channel connected to {self.url}")
                    self._dispatch_connected()

                    async for raw in ws:
                        self._handle_frame(raw)
                error = TransportError("Push connection closed by server")
            except (OSError, WebSocketException) as e:
                error = TransportError(f"Push connection failed: {e}")
            except Exception as e:
                # 例如無效的 URL；背景 task 不能因此結束
                logger.error(f"Unexpected push channel error: {e}", exc_info=True)
                error = TransportError(f"Push connection failed: {e}")
            finally:
                self._ws = None

            logger.warning(f"{error}; reconnecting in {self.reconnect_delay_seconds}s")
            self._dispatch_disconnected(error)
            await asyncio.sleep(self.reconnect_delay_seconds)

    def _handle_frame(self, raw) -> None:
        try:
            frame = json.loads(raw)
        except ValueError:
            logger.warning("Dropped malformed push frame")
            return
        if not isinstance(frame, dict):
            logger.warning(f"Dropped push frame of type {type(frame).__name__}")
            return

        op = frame.get("op")
        if op == "event":
            channel = frame.get("channel")
            adapter = EVENT_ADAPTERS.get(channel)
            if adapter is None:
                logger.warning(f"Dropped event for unknown channel {channel}")
                return
            try:
                event = adapter.validate_python(frame.get("event"))
            except pydantic.ValidationError as e:
                logger.warning(f"Dropped invalid {channel} event: {e}")
                return
            self._dispatch_event(channel, event)
        elif op == "error":
            channel, session_id = frame.get("channel"), frame.get("session_id")
            logger.warning(f"Push join rejected for {channel}:{session_id}: {frame.get('message')}")
            if frame.get("code") in (401, 403):
                self._joined.discard((channel, session_id))


class LocalPushChannel(PushChannel):
    """
    同一個 process 內的推播通道

    Broadcaster 可能在 worker thread 裡 emit，
    事件一律透過 call_soon_threadsafe 回到 client 的 event loop
    """

    def __init__(self, broadcaster: EventBroadcaster, identity: Optional[str]):
        super().__init__()
        self._broadcaster = broadcaster
        self._subscriber = CallbackSubscriber(str(uuid.uuid4()), self._deliver, identity)
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def subscriber_id(self) -> str:
        return self._subscriber.subscriber_id

    async def connect(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._dispatch_connected()

    async def close(self) -> None:
        self._broadcaster.leave_all(self._subscriber.subscriber_id)
        self._joined.clear()

    async def join(self, channel: str, session_id: str) -> None:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        try:
            # chat channel 的授權會查資料庫
            await asyncio.to_thread(self._broadcaster.join, channel, session_id, self._subscriber)
        except FocusSessionException as e:
            logger.warning(f"Push join rejected for {channel}:{session_id}: {e}")
            return
        self._joined.add((channel, session_id))

    async def leave(self, channel: str, session_id: str) -> None:
        self._joined.discard((channel, session_id))
        self._broadcaster.leave(channel, session_id, self._subscriber.subscriber_id)

    def _deliver(self, channel: str, event) -> None:
        self._loop.call_soon_threadsafe(self._dispatch_event, channel, event)
