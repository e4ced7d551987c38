"""
Event Broadcaster：每個 Session 的 publish/subscribe 分發

訂閱表是 Broadcaster 自己擁有的明確結構：
    (channel, session_id) -> {subscriber_id: Subscriber}

傳遞語意（刻意很弱，client 端的同步層負責補償）：
- at-most-once、best-effort：只送給「目前」已加入的訂閱者
- 不排隊、不重送、不保存錯過的事件
- 同一個訂閱者收到的順序 = emit 的順序；不同訂閱者之間沒有順序保證
- 某個訂閱者失敗只影響它自己，不影響其他訂閱者或其他 Session
"""
import asyncio
import logging
import threading
from typing import Callable, Dict, Optional, Tuple

from core.exceptions import NotAuthenticated, PermissionDenied, ValidationError
from enums import TERMINAL_STATUSES
from services.timer_service import now_ms

logger = logging.getLogger(__name__)

# authorizer(session_id, identity) -> bool
Authorizer = Callable[[str, Optional[str]], bool]


class Subscriber:
    """
    訂閱者 handle

    identity 是連線時由認證層提供的 user_id（可能為 None = 未驗證）
    """

    def __init__(self, subscriber_id: str, identity: Optional[str] = None):
        self.subscriber_id = subscriber_id
        self.identity = identity

    def deliver(self, channel: str, event) -> None:
        raise NotImplementedError


class CallbackSubscriber(Subscriber):
    """直接呼叫 callback（同一個 process 內的訂閱者）"""

    def __init__(self, subscriber_id: str, callback: Callable, identity: Optional[str] = None):
        super().__init__(subscriber_id, identity)
        self._callback = callback

    def deliver(self, channel: str, event) -> None:
        self._callback(channel, event)


class QueueSubscriber(Subscriber):
    """
    把事件丟進某個 event loop 上的 asyncio.Queue（WebSocket 連線用）

    emit 可能在 threadpool 裡被呼叫，所以一律透過 call_soon_threadsafe；
    同一個 loop 上 callback 依序執行，順序與 emit 順序一致。
    """

    def __init__(self, subscriber_id: str, queue: asyncio.Queue,
                 loop: asyncio.AbstractEventLoop, identity: Optional[str] = None):
        super().__init__(subscriber_id, identity)
        self.queue = queue
        self._loop = loop

    def deliver(self, channel: str, event) -> None:
        frame = {"op": "event", "channel": channel, "event": event.model_dump(mode="json")}
        self._loop.call_soon_threadsafe(self.queue.put_nowait, frame)


def require_identity(session_id: str, identity: Optional[str]) -> bool:
    """session channel：只要有已驗證的身分就可以加入"""
    return bool(identity)


class EventBroadcaster:
    """Session 事件分發器"""

    def __init__(self, clock: Callable[[], int] = now_ms):
        self._lock = threading.RLock()
        self._subscriptions: Dict[Tuple[str, str], Dict[str, Subscriber]] = {}
        self._authorizers: Dict[str, Authorizer] = {}
        self._last_timestamps: Dict[str, int] = {}
        self._clock = clock

    def register_channel(self, channel: str, authorizer: Authorizer = require_identity) -> None:
        self._authorizers[channel] = authorizer

    @property
    def channels(self):
        return tuple(self._authorizers)

    def join(self, channel: str, session_id: str, subscriber: Subscriber) -> bool:
        """
        加入某個 Session 的 channel（冪等）

        加入前先授權：
        - 未驗證的身分一律拒絕（NotAuthenticated）
        - channel authorizer 回傳 False -> PermissionDenied

        返回：
            True 如果是新加入，False 如果本來就在裡面
        """
        authorizer = self._authorizers.get(channel)
        if authorizer is None:
            raise ValidationError(f"Unknown channel {channel}")
        if not subscriber.identity:
            raise NotAuthenticated("Channel join requires an authenticated identity")
        if not authorizer(session_id, subscriber.identity):
            raise PermissionDenied(f"Not allowed to join {channel}:{session_id}")

        with self._lock:
            members = self._subscriptions.setdefault((channel, session_id), {})
            is_new = subscriber.subscriber_id not in members
            members[subscriber.subscriber_id] = subscriber

        if is_new:
            logger.info(f"Subscriber {subscriber.subscriber_id} joined {channel}:{session_id}")
        return is_new

    def leave(self, channel: str, session_id: str, subscriber_id: str) -> bool:
        """離開某個 channel（冪等，不在裡面也不會出錯）"""
        with self._lock:
            members = self._subscriptions.get((channel, session_id))
            if not members or subscriber_id not in members:
                return False
            del members[subscriber_id]
            if not members:
                del self._subscriptions[(channel, session_id)]

        logger.info(f"Subscriber {subscriber_id} left {channel}:{session_id}")
        return True

    def leave_all(self, subscriber_id: str) -> int:
        """訂閱者斷線：從所有 channel 移除"""
        with self._lock:
            keys = [key for key, members in self._subscriptions.items() if subscriber_id in members]
        for channel, session_id in keys:
            self.leave(channel, session_id, subscriber_id)
        return len(keys)

    def subscriber_ids(self, channel: str, session_id: str) -> list:
        with self._lock:
            return list(self._subscriptions.get((channel, session_id), {}))

    def emit(self, channel: str, event) -> int:
        """
        發送事件給目前已加入的訂閱者

        流程：
        1. 蓋上單調遞增的 per-session timestamp
           （Session 進入終止狀態時丟掉它的 timestamp 紀錄）
        2. 在 lock 內取得訂閱者快照，lock 外逐一送出
        3. 單一訂閱者失敗只記 log，繼續送下一個

        返回：
            成功送達的訂閱者數量
        """
        self._stamp(event)
        if event.type == "status_changed" and event.status in TERMINAL_STATUSES:
            # 終止狀態之後不會再有這個 Session 的事件
            with self._lock:
                self._last_timestamps.pop(event.session_id, None)

        with self._lock:
            members = list(self._subscriptions.get((channel, event.session_id), {}).values())

        delivered = 0
        for subscriber in members:
            try:
                subscriber.deliver(channel, event)
                delivered += 1
            except Exception as e:
                logger.warning(
                    f"Dropped {event.type} for subscriber {subscriber.subscriber_id} "
                    f"on {channel}:{event.session_id}: {e}"
                )
        return delivered

    def _stamp(self, event) -> None:
        with self._lock:
            last = self._last_timestamps.get(event.session_id, 0)
            timestamp = max(self._clock(), event.timestamp, last + 1)
            self._last_timestamps[event.session_id] = timestamp
        event.timestamp = timestamp
