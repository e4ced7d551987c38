"""
本地倒數

收到 server 權威值（timer_sync 或 refetch）時：
    delay = 收到的時間 - server_timestamp
    remaining = max(0, payload.remaining_seconds - floor(delay / 1000))

之後只在 focusing 且 remaining > 0 時每秒減一，到 0 就停；
下一次權威值會直接覆蓋本地值，修正時鐘誤差、分頁休眠與延遲送達造成的漂移。
"""
import asyncio
import logging
from typing import Callable, Optional

from enums import SessionStatus
from schemas import TimerSnapshot
from services.timer_service import now_ms

logger = logging.getLogger(__name__)


def smoothed_remaining(timer: TimerSnapshot, received_at_ms: int) -> int:
    """
    依傳輸延遲修正 remaining

    client 時鐘比 server 慢時 delay 會是負的，這種情況不加回時間
    """
    delay_ms = max(0, received_at_ms - timer.server_timestamp)
    remaining = timer.remaining_seconds - delay_ms // 1000
    return max(0, min(timer.target_duration_minutes * 60, remaining))


class Countdown:
    """
    同一時間最多只有一個 tick task

    on_tick(remaining) 在每次數值改變時呼叫（包含套用權威值）
    """

    def __init__(
        self,
        on_tick: Optional[Callable[[int], None]] = None,
        clock_ms: Callable[[], int] = now_ms,
        tick_seconds: float = 1.0,
    ):
        self._on_tick = on_tick
        self._clock_ms = clock_ms
        self.tick_seconds = tick_seconds
        self.remaining = 0
        self.status: Optional[SessionStatus] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def apply(self, status: SessionStatus, timer: TimerSnapshot,
              received_at_ms: Optional[int] = None) -> int:
        """
        套用權威值並重新開始 tick

        需要在 event loop 內呼叫
        """
        received = received_at_ms if received_at_ms is not None else self._clock_ms()
        self.status = status
        self.remaining = smoothed_remaining(timer, received)
        self._notify()
        self._restart()
        return self.remaining

    def tick(self) -> int:
        """減一秒（只在 focusing 且還有剩餘時間時）"""
        if self.status == SessionStatus.FOCUSING and self.remaining > 0:
            self.remaining -= 1
            self._notify()
        return self.remaining

    def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None

    def _restart(self) -> None:
        self.stop()
        if self.status == SessionStatus.FOCUSING and self.remaining > 0:
            self._task = asyncio.get_running_loop().create_task(self._run())

    async def _run(self) -> None:
        while self.status == SessionStatus.FOCUSING and self.remaining > 0:
            await asyncio.sleep(self.tick_seconds)
            self.tick()

    def _notify(self) -> None:
        if self._on_tick is None:
            return
        try:
            self._on_tick(self.remaining)
        except Exception as e:
            logger.error(f"Countdown callback failed: {e}", exc_info=True)
