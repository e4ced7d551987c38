"""
連線狀態：讓 UI 知道目前只靠輪詢（degraded）還是 push 正常

    connecting   --收到事件-->                 connected
    connecting   --connect_timeout 內沒事件-->  connected（樂觀：server 可能只是安靜）
    connected    --missed_push_timeout 沒事件--> disconnected
    任何狀態     --傳輸錯誤-->                 disconnected
    disconnected --收到事件-->                 connected
"""
import enum
import logging
import time
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class ConnectivityState(str, enum.Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


class ConnectivityMonitor:
    """
    以時間判斷 push 通道是否健康

    參數：
        missed_push_timeout: 多久沒收到事件就視為斷線（秒）
        connect_timeout: connecting 最多維持多久（秒）
        clock: 單調時鐘（測試可注入）
        on_change: 狀態改變時呼叫 on_change(state)
    """

    def __init__(
        self,
        missed_push_timeout: float,
        connect_timeout: float,
        clock: Callable[[], float] = time.monotonic,
        on_change: Optional[Callable[[ConnectivityState], None]] = None,
    ):
        self.missed_push_timeout = missed_push_timeout
        self.connect_timeout = connect_timeout
        self._clock = clock
        self._on_change = on_change
        self._state = ConnectivityState.CONNECTING
        self._started_at = clock()
        self._last_event_at: Optional[float] = None

    @property
    def state(self) -> ConnectivityState:
        return self._state

    def start(self) -> None:
        """開始（或重新開始）連線：回到 connecting"""
        self._started_at = self._clock()
        self._last_event_at = None
        self._set(ConnectivityState.CONNECTING)

    def record_event(self) -> None:
        self._last_event_at = self._clock()
        self._set(ConnectivityState.CONNECTED)

    def record_failure(self, error: Optional[Exception] = None) -> None:
        if error is not None and self._state != ConnectivityState.DISCONNECTED:
            logger.info(f"Push path degraded: {error}")
        self._set(ConnectivityState.DISCONNECTED)

    def check(self) -> ConnectivityState:
        """watchdog 每次 tick 呼叫；依時間推進狀態"""
        now = self._clock()
        if self._state == ConnectivityState.CONNECTING:
            if now - self._started_at >= self.connect_timeout:
                # 從這裡開始計算 missed push
                self._last_event_at = now
                self._set(ConnectivityState.CONNECTED)
        elif self._state == ConnectivityState.CONNECTED:
            last = self._last_event_at if self._last_event_at is not None else self._started_at
            if now - last >= self.missed_push_timeout:
                self._set(ConnectivityState.DISCONNECTED)
        return self._state

    def _set(self, state: ConnectivityState) -> None:
        if state == self._state:
            return
        logger.debug(f"Connectivity {self._state.value} -> {state.value}")
        self._state = state
        if self._on_change is not None:
            self._on_change(state)
