"""
SessionSynchronizer：讓本地的 Session 畫面與 server 收斂

兩條路徑：
- Push：timer_sync 直接套用到倒數；其他 Session 事件一律觸發完整 refetch
  （不把事件內容當 patch 套用，避免與其他同時發生的變更互相覆蓋）
- Pull：開著畫面時每 view_poll_interval_seconds refetch 一次，不管 push 是否正常

本地 task（poll、watchdog、refetch、倒數）都是單一 task，重新建立前一定先取消。
close() 會離開 channel 並取消所有 task。
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from core.events import SESSION_CHANNEL
from core.exceptions import FocusSessionException, StateConflictError, TransportError
from enums import Reaction
from schemas import SessionResponse
from client.chat import ChatChannel
from client.config import SyncConfig
from client.connectivity import ConnectivityMonitor, ConnectivityState
from client.countdown import Countdown

logger = logging.getLogger(__name__)


@dataclass
class SessionEventHandlers:
    """
    UI 的 callback 集合

    Synchronizer 每次通知時都讀取目前持有的 handlers，
    要換 callback 就用 set_handlers() 整組替換
    """
    on_view: Optional[Callable[[SessionResponse], None]] = None
    on_tick: Optional[Callable[[int], None]] = None
    on_connectivity: Optional[Callable[[ConnectivityState], None]] = None
    on_error: Optional[Callable[[Exception], None]] = None


class SessionSynchronizer:
    """單一 Session 的 client 端同步器"""

    def __init__(
        self,
        session_id: str,
        api,
        push,
        config: Optional[SyncConfig] = None,
        handlers: Optional[SessionEventHandlers] = None,
        chat: Optional[ChatChannel] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.session_id = session_id
        self.api = api
        self.push = push
        self.config = config or SyncConfig()
        self.chat = chat
        self.view: Optional[SessionResponse] = None

        self._handlers = handlers or SessionEventHandlers()
        self.countdown = Countdown(on_tick=self._on_tick)
        self.connectivity = ConnectivityMonitor(
            missed_push_timeout=self.config.missed_push_timeout_seconds,
            connect_timeout=self.config.connect_timeout_seconds,
            clock=clock,
            on_change=self._on_connectivity_change,
        )
        self._tasks: Dict[str, asyncio.Task] = {}
        self._refetch_again = False
        self._open = False

    @property
    def is_open(self) -> bool:
        return self._open

    def set_handlers(self, handlers: SessionEventHandlers) -> None:
        self._handlers = handlers

    # ============ Lifecycle ============

    async def open(self) -> Optional[SessionResponse]:
        """
        開啟同步

        流程：
        1. 註冊為 push listener，join session channel
        2. 立即 refetch 一次
        3. 啟動 poll 與 watchdog
        4. 有 chat 的話一起開啟
        """
        self._open = True
        self.connectivity.start()
        self.push.add_listener(self)
        await self._join()
        await self._safe_refetch()

        self._start_task("poll", self._poll_loop())
        self._start_task("watchdog", self._watchdog_loop())
        if self.chat is not None:
            await self.chat.open()
        return self.view

    async def close(self) -> None:
        """離開 session / chat channel，取消所有本地 task"""
        self._open = False
        for task in self._tasks.values():
            task.cancel()
        self._tasks.clear()
        self.countdown.stop()

        self.push.remove_listener(self)
        try:
            await self.push.leave(SESSION_CHANNEL, self.session_id)
        except TransportError as e:
            logger.info(f"Leave of session channel {self.session_id} failed: {e}")
        if self.chat is not None:
            await self.chat.close()

    async def _join(self) -> None:
        try:
            await self.push.join(SESSION_CHANNEL, self.session_id)
        except TransportError as e:
            self.connectivity.record_failure(e)

    # ============ Pull path ============

    async def refetch(self) -> SessionResponse:
        """
        讀取 server 的權威快照並套用

        異常：
            TransportError, NotFoundError, PermissionDenied
        """
        view = await self.api.get_session(self.session_id)
        self._apply_view(view)
        return self.view

    def request_refetch(self) -> None:
        """排一次 refetch；已經在跑的話，跑完再補一次（不會疊加）"""
        if not self._open:
            return
        task = self._tasks.get("refetch")
        if task is not None and not task.done():
            self._refetch_again = True
            return
        self._start_task("refetch", self._refetch_loop())

    async def _refetch_loop(self) -> None:
        while True:
            self._refetch_again = False
            await self._safe_refetch()
            if not self._refetch_again:
                return

    async def _safe_refetch(self) -> None:
        try:
            await self.refetch()
        except TransportError as e:
            self.connectivity.record_failure(e)
        except FocusSessionException as e:
            logger.warning(f"Refetch of session {self.session_id} failed: {e}")
            self._notify("on_error", e)

    async def _poll_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.view_poll_interval_seconds)
            await self._safe_refetch()

    async def _watchdog_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.watchdog_interval_seconds)
            self.connectivity.check()

    def _apply_view(self, view: SessionResponse) -> None:
        # version 只會增加；比較舊的 response 晚到就忽略
        if self.view is not None and view.version < self.view.version:
            logger.debug(f"Ignored stale view v{view.version} for session {self.session_id}")
            return
        self.view = view
        self.countdown.apply(view.status, view.timer)
        if self.chat is not None and view.my_participation is not None:
            self.chat.odonym = view.my_participation.odonym
        self._notify("on_view", view)

    # ============ Push listener ============

    def on_push_event(self, channel: str, event) -> None:
        if not self._open:
            return
        self.connectivity.record_event()
        if channel != SESSION_CHANNEL or event.session_id != self.session_id:
            return

        if event.type == "timer_sync":
            self.countdown.apply(event.status, event.timer)
            if self.view is not None and event.status != self.view.status:
                # status 與畫面不一致，代表錯過了 status_changed
                self.request_refetch()
        else:
            self.request_refetch()

    def on_push_connected(self) -> None:
        """重新連上：push 通道會重新 join，這裡強制 refetch 一次"""
        if not self._open:
            return
        self.connectivity.start()
        self.request_refetch()

    def on_push_disconnected(self, error: Optional[Exception]) -> None:
        if self._open:
            self.connectivity.record_failure(error)

    # ============ Commands ============

    async def run_command(self, command: Callable, *args, **kwargs) -> Any:
        """
        執行指令；StateConflictError 時先 refetch 再重試一次，仍然衝突才往上拋

        成功後排一次 refetch，讓畫面不用等事件
        """
        try:
            result = await command(*args, **kwargs)
        except StateConflictError as e:
            logger.info(f"Command {getattr(command, '__name__', command)} conflicted ({e}); refetching")
            await self._safe_refetch()
            result = await command(*args, **kwargs)
        self.request_refetch()
        return result

    async def begin_warmup(self):
        return await self.run_command(self.api.begin_warmup, self.session_id)

    async def start(self):
        return await self.run_command(self.api.start_session, self.session_id)

    async def cancel(self):
        return await self.run_command(self.api.cancel_session, self.session_id)

    async def react(self, reaction: Reaction):
        return await self.run_command(self.api.react, self.session_id, reaction)

    async def toggle_chat(self, enabled: bool):
        return await self.run_command(self.api.toggle_chat, self.session_id, enabled)

    async def leave(self):
        """離開 Session 並關閉同步"""
        try:
            return await self.run_command(self.api.leave_session, self.session_id)
        finally:
            await self.close()

    # ============ Internals ============

    def _start_task(self, name: str, coro) -> None:
        previous = self._tasks.get(name)
        if previous is not None and not previous.done():
            previous.cancel()
        self._tasks[name] = asyncio.get_running_loop().create_task(coro)

    def _on_tick(self, remaining: int) -> None:
        self._notify("on_tick", remaining)

    def _on_connectivity_change(self, state: ConnectivityState) -> None:
        self._notify("on_connectivity", state)

    def _notify(self, name: str, *args) -> None:
        callback = getattr(self._handlers, name)
        if callback is None:
            return
        try:
            callback(*args)
        except Exception as e:
            logger.error(f"Handler {name} failed: {e}", exc_info=True)
