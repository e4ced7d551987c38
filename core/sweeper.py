"""
Session Sweeper：定期推進時間到期的自然轉換

每一輪 sweep：
1. 找出所有計時中的 Session（focusing / break / cooldown）
2. 比較 now 與 phase_started_at + 階段長度，到期就交給狀態機推進一步
3. 對所有未結束的 Session 發送 timer_sync（每個 Session 依 timer_sync_interval 節流）

冪等性：
- 同一個邊界 sweep 兩次，第二次讀到的已經是新狀態（時間未到），不會再寫入、不會再發事件
- 兩個 sweep 同時推進同一個 Session，CAS 只會讓其中一個成功，輸的那個重讀後發現不合法就放棄

單一 Session 出錯只會記 log，不影響同一輪的其他 Session。
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Optional

from sqlalchemy.orm import Session

from database import SessionLocal, get_settings
from models import FocusSession, TERMINAL_STATUSES, TIMED_STATUSES, utcnow
from schemas import TimerSyncEvent
from core.events import SESSION_CHANNEL, get_broadcaster
from core.exceptions import StateConflictError
from core.state_machine import SessionStateMachine
from services.timer_service import build_timer_snapshot, is_phase_elapsed

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    transitions: int = 0
    timer_syncs: int = 0
    failures: int = 0


class SessionSweeper:
    """自然轉換的集中排程器"""

    def __init__(
        self,
        timer_sync_interval_seconds: Optional[float] = None,
        session_factory=SessionLocal,
    ):
        settings = get_settings()
        self._sync_interval = timedelta(
            seconds=timer_sync_interval_seconds
            if timer_sync_interval_seconds is not None
            else settings.timer_sync_interval_seconds
        )
        self._session_factory = session_factory
        self._last_sync: Dict[str, datetime] = {}

    def sweep(self, db: Session, now: Optional[datetime] = None) -> SweepResult:
        """
        執行一輪 sweep

        參數：
            db: SQLAlchemy Session
            now: 目前時間（naive UTC，測試可注入）

        返回：
            SweepResult（轉換數、timer_sync 數、失敗數）
        """
        now = now or utcnow()
        result = SweepResult()
        cooldown_minutes = get_settings().cooldown_minutes

        timed = db.query(FocusSession).filter(
            FocusSession.status.in_(list(TIMED_STATUSES))
        ).all()

        for session in timed:
            session_id = session.id
            try:
                if not is_phase_elapsed(session, now, cooldown_minutes):
                    continue
                action = SessionStateMachine.natural_action_for(session.status)
                SessionStateMachine.transition(db, session_id, action, now=now)
                result.transitions += 1
                # 剛轉換的 Session 已經帶著新的 timer 發過事件
                self._last_sync[session_id] = now
            except StateConflictError as e:
                logger.debug(f"Sweep skipped session {session_id}: {e}")
            except Exception as e:
                result.failures += 1
                logger.error(f"Sweep failed for session {session_id}: {e}", exc_info=True)

        result.timer_syncs = self.emit_timer_syncs(db, now)
        return result

    def emit_timer_syncs(self, db: Session, now: datetime) -> int:
        """對未結束的 Session 發送 server 權威的 timer_sync（依間隔節流）"""
        cooldown_minutes = get_settings().cooldown_minutes
        sent = 0

        active = db.query(FocusSession).filter(
            FocusSession.status.notin_(list(TERMINAL_STATUSES))
        ).all()
        active_ids = set()

        for session in active:
            active_ids.add(session.id)
            last = self._last_sync.get(session.id)
            if last is not None and now - last < self._sync_interval:
                continue
            try:
                get_broadcaster().emit(SESSION_CHANNEL, TimerSyncEvent(
                    session_id=session.id,
                    status=session.status,
                    timer=build_timer_snapshot(session, now, cooldown_minutes),
                ))
                self._last_sync[session.id] = now
                sent += 1
            except Exception as e:
                logger.error(f"Timer sync failed for session {session.id}: {e}", exc_info=True)

        # 結束的 Session 不再需要節流紀錄
        for session_id in list(self._last_sync):
            if session_id not in active_ids:
                del self._last_sync[session_id]
        return sent

    def run_once(self) -> SweepResult:
        db = self._session_factory()
        try:
            return self.sweep(db)
        finally:
            db.close()

    async def run_forever(self, interval_seconds: float) -> None:
        """
        背景排程：每 interval_seconds 跑一輪

        每一輪在 worker thread 執行完才排下一輪，不會重疊
        """
        logger.info(f"Session sweeper started (interval={interval_seconds}s)")
        while True:
            try:
                result = await asyncio.to_thread(self.run_once)
                if result.transitions or result.failures:
                    logger.info(
                        f"Sweep: {result.transitions} transitions, "
                        f"{result.timer_syncs} timer syncs, {result.failures} failures"
                    )
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Sweep pass failed: {e}", exc_info=True)
            await asyncio.sleep(interval_seconds)
