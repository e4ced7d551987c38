"""
「我現在有沒有進行中的 Session」輪詢（導覽列指示器）

間隔比 Session 畫面長；傳輸失敗時保留上一次的結果
"""
import asyncio
import logging
from typing import Callable, Optional

from core.exceptions import FocusSessionException, TransportError
from schemas import ActiveSessionResponse
from client.config import SyncConfig

logger = logging.getLogger(__name__)


class ActiveSessionWatcher:
    def __init__(self, api, config: Optional[SyncConfig] = None,
                 on_change: Optional[Callable[[Optional[ActiveSessionResponse]], None]] = None):
        self.api = api
        self.config = config or SyncConfig()
        self.current: Optional[ActiveSessionResponse] = None
        self._on_change = on_change
        self._task: Optional[asyncio.Task] = None

    async def check(self) -> Optional[ActiveSessionResponse]:
        try:
            active = await self.api.get_active_session()
        except TransportError as e:
            logger.info(f"Active session check failed: {e}")
            return self.current
        except FocusSessionException as e:
            logger.warning(f"Active session check rejected: {e}")
            return self.current

        if self._changed(active):
            self.current = active
            if self._on_change is not None:
                self._on_change(active)
        else:
            self.current = active
        return self.current

    def _changed(self, active: Optional[ActiveSessionResponse]) -> bool:
        if (active is None) != (self.current is None):
            return True
        if active is None:
            return False
        return (active.session_id, active.status) != (self.current.session_id, self.current.status)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self._run())

    def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None

    async def _run(self) -> None:
        while True:
            await self.check()
            await asyncio.sleep(self.config.active_poll_interval_seconds)
