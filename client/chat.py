"""
聊天子通道（client 端）

送出訊息：
1. 先用 client 產生的 UUID 建立 optimistic entry（pending）
2. 用同一個 id 呼叫 send_message
3. 指令的 response 與廣播 echo 都以 id 合併，先到的確認、後到的丟棄
4. 送出失敗就把 entry 標記為 failed（可以用同一個 id 重送，server 不會重複）

typing 不保證送達，本地在 typing_expiry_seconds 後自動過期。
"""
import asyncio
import enum
import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from core.events import CHAT_CHANNEL
from core.exceptions import FocusSessionException, TransportError
from schemas import ChatMessageResponse
from client.config import SyncConfig

logger = logging.getLogger(__name__)


class ChatEntryState(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


@dataclass
class ChatEntry:
    id: str
    odonym: str
    text: str
    sent_at: datetime
    state: ChatEntryState


class ChatLog:
    """
    以訊息 id 合併的聊天紀錄

    排序：已確認的訊息依 server 的 (sent_at, id)；
    pending / failed 的訊息依送出順序排在最後
    """

    def __init__(self, typing_expiry_seconds: float = 4.0, clock: Callable[[], float] = time.monotonic):
        self.typing_expiry_seconds = typing_expiry_seconds
        self._clock = clock
        self._entries: Dict[str, ChatEntry] = {}
        self._typing: Dict[str, float] = {}

    @property
    def entries(self) -> List[ChatEntry]:
        confirmed = sorted(
            (e for e in self._entries.values() if e.state == ChatEntryState.CONFIRMED),
            key=lambda e: (e.sent_at, e.id),
        )
        # dict 保留插入順序
        unconfirmed = [e for e in self._entries.values() if e.state != ChatEntryState.CONFIRMED]
        return confirmed + unconfirmed

    def get(self, message_id: str) -> Optional[ChatEntry]:
        return self._entries.get(message_id)

    def stage(self, text: str, odonym: str = "") -> ChatEntry:
        """建立 optimistic entry（id 之後也是正式訊息的 id）"""
        entry = ChatEntry(
            id=str(uuid.uuid4()),
            odonym=odonym,
            text=text,
            sent_at=datetime.now(timezone.utc).replace(tzinfo=None),
            state=ChatEntryState.PENDING,
        )
        self._entries[entry.id] = entry
        return entry

    def merge(self, message: ChatMessageResponse) -> bool:
        """
        合併正式訊息（指令 response 或廣播 echo，不分先後）

        返回：
            True 如果這個 id 第一次被確認；重複的確認回傳 False
        """
        existing = self._entries.get(message.id)
        if existing is not None and existing.state == ChatEntryState.CONFIRMED:
            return False

        self._entries[message.id] = ChatEntry(
            id=message.id,
            odonym=message.odonym,
            text=message.text,
            sent_at=message.sent_at,
            state=ChatEntryState.CONFIRMED,
        )
        # 對方送出訊息就代表不再輸入
        self._typing.pop(message.odonym, None)
        return True

    def mark_failed(self, message_id: str) -> None:
        entry = self._entries.get(message_id)
        if entry is not None and entry.state == ChatEntryState.PENDING:
            entry.state = ChatEntryState.FAILED

    def mark_pending(self, message_id: str) -> None:
        entry = self._entries.get(message_id)
        if entry is not None and entry.state == ChatEntryState.FAILED:
            entry.state = ChatEntryState.PENDING

    def replace_history(self, messages: List[ChatMessageResponse]) -> None:
        """用 server 的完整紀錄取代已確認的部分；還沒確認的 entry 保留"""
        unconfirmed = {
            entry_id: entry for entry_id, entry in self._entries.items()
            if entry.state != ChatEntryState.CONFIRMED
        }
        self._entries = {}
        for message in messages:
            unconfirmed.pop(message.id, None)
            self.merge(message)
        self._entries.update(unconfirmed)

    def set_typing(self, odonym: str, is_typing: bool) -> None:
        if is_typing:
            self._typing[odonym] = self._clock()
        else:
            self._typing.pop(odonym, None)

    def typing_odonyms(self) -> List[str]:
        now = self._clock()
        expired = [o for o, at in self._typing.items() if now - at >= self.typing_expiry_seconds]
        for odonym in expired:
            del self._typing[odonym]
        return sorted(self._typing)


class ChatChannel:
    """
    一個 Session 的聊天子通道

    join chat channel 需要 active 參與者身分；被拒絕時不會收到任何訊息或紀錄
    """

    def __init__(self, session_id: str, api, push, config: Optional[SyncConfig] = None,
                 odonym: str = "", on_change: Optional[Callable[[], None]] = None,
                 clock: Callable[[], float] = time.monotonic):
        config = config or SyncConfig()
        self.session_id = session_id
        self.api = api
        self.push = push
        self.odonym = odonym
        self.log = ChatLog(config.typing_expiry_seconds, clock)
        self._on_change = on_change
        self._open = False
        self._reload_task: Optional[asyncio.Task] = None

    async def open(self) -> None:
        self._open = True
        self.push.add_listener(self)
        try:
            await self.push.join(CHAT_CHANNEL, self.session_id)
        except TransportError as e:
            logger.info(f"Chat join deferred for session {self.session_id}: {e}")
        await self.load_history()

    async def close(self) -> None:
        self._open = False
        if self._reload_task is not None:
            self._reload_task.cancel()
            self._reload_task = None
        self.push.remove_listener(self)
        try:
            await self.push.leave(CHAT_CHANNEL, self.session_id)
        except TransportError as e:
            logger.info(f"Chat leave failed for session {self.session_id}: {e}")

    async def load_history(self) -> None:
        try:
            messages = await self.api.get_messages(self.session_id)
        except TransportError as e:
            logger.info(f"Chat history unavailable for session {self.session_id}: {e}")
            return
        except FocusSessionException as e:
            logger.warning(f"Chat history rejected for session {self.session_id}: {e}")
            return
        self.log.replace_history(messages)
        self._notify()

    async def send(self, text: str) -> ChatEntry:
        """
        送出訊息（optimistic）

        傳輸失敗只會把 entry 標記為 failed；
        業務錯誤（太長、聊天關閉、不是參與者）標記 failed 後往上拋
        """
        entry = self.log.stage(text, self.odonym)
        self._notify()
        await self._deliver(entry)
        return self.log.get(entry.id)

    async def retry(self, message_id: str) -> Optional[ChatEntry]:
        """用同一個 id 重送 failed 的訊息"""
        entry = self.log.get(message_id)
        if entry is None or entry.state != ChatEntryState.FAILED:
            return entry
        self.log.mark_pending(message_id)
        self._notify()
        await self._deliver(entry)
        return self.log.get(message_id)

    async def _deliver(self, entry: ChatEntry) -> None:
        try:
            message = await self.api.send_message(self.session_id, entry.text, client_message_id=entry.id)
        except TransportError as e:
            logger.info(f"Chat message {entry.id} failed: {e}")
            self.log.mark_failed(entry.id)
            self._notify()
            return
        except FocusSessionException:
            self.log.mark_failed(entry.id)
            self._notify()
            raise
        if self.log.merge(message):
            self._notify()

    async def set_typing(self, is_typing: bool = True) -> None:
        """fire-and-forget；失敗直接忽略"""
        try:
            await self.api.send_typing(self.session_id, is_typing)
        except FocusSessionException as e:
            logger.debug(f"Typing indicator dropped: {e}")

    # ============ Push listener ============

    def on_push_event(self, channel: str, event) -> None:
        if channel != CHAT_CHANNEL or event.session_id != self.session_id or not self._open:
            return
        if event.type == "message":
            if self.log.merge(event.message):
                self._notify()
        elif event.type == "typing":
            if event.odonym != self.odonym:
                self.log.set_typing(event.odonym, event.is_typing)
                self._notify()

    def on_push_connected(self) -> None:
        # 斷線期間錯過的訊息只能靠重新讀取紀錄補回
        if not self._open:
            return
        if self._reload_task is not None and not self._reload_task.done():
            self._reload_task.cancel()
        self._reload_task = asyncio.get_running_loop().create_task(self.load_history())

    def on_push_disconnected(self, error: Optional[Exception]) -> None:
        pass

    def _notify(self) -> None:
        if self._on_change is None:
            return
        try:
            self._on_change()
        except Exception as e:
            logger.error(f"Chat callback failed: {e}", exc_info=True)
