"""
Session 狀態機：集中管理所有 Session 狀態轉換

合法轉換：
    waiting   --begin_warmup-->      warmup      （建立者）
    waiting   --start-->             focusing    （建立者）
    warmup    --start-->             focusing    （建立者）
    focusing  --focus_elapsed-->     break       （Sweeper，還有下一輪且需要休息）
    focusing  --focus_elapsed-->     focusing    （Sweeper，直接進下一輪，status 不變）
    focusing  --focus_elapsed-->     cooldown    （Sweeper，最後一輪結束）
    break     --break_elapsed-->     focusing    （Sweeper）
    cooldown  --cooldown_elapsed-->  completed   （Sweeper）
    任何非終止狀態 --cancel-->        cancelled   （建立者）
    任何非終止狀態 --abandon-->       cancelled   （系統：沒有 active 參與者）

completed / cancelled 是終止狀態，之後只能讀取。

所有狀態變更都必須經過 SessionStateMachine.transition()，
並以 compare-and-swap 寫入（見 core.locks）。
"""
import enum
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from database import get_settings, transactional
from models import FocusSession, ParticipantOutcome, SessionStatus, utcnow
from schemas import StatusChangedEvent, TimerSyncEvent
from core.events import SESSION_CHANNEL, queue_event
from core.exceptions import PermissionDenied, SessionNotFound, StateConflictError
from core.locks import compare_and_swap, retry_on_conflict
from core.participant_registry import ParticipantRegistry
from services.timer_service import (
    build_timer_snapshot,
    is_phase_elapsed,
    status_after_focus,
)

logger = logging.getLogger(__name__)


class SessionAction(str, enum.Enum):
    BEGIN_WARMUP = "begin_warmup"
    START = "start"
    FOCUS_ELAPSED = "focus_elapsed"
    BREAK_ELAPSED = "break_elapsed"
    COOLDOWN_ELAPSED = "cooldown_elapsed"
    CANCEL = "cancel"
    ABANDON = "abandon"


CREATOR_ACTIONS = frozenset({SessionAction.BEGIN_WARMUP, SessionAction.START, SessionAction.CANCEL})

NATURAL_ACTIONS = frozenset({
    SessionAction.FOCUS_ELAPSED,
    SessionAction.BREAK_ELAPSED,
    SessionAction.COOLDOWN_ELAPSED,
})

# 系統動作不接受使用者作為 actor
SYSTEM_ACTIONS = NATURAL_ACTIONS | {SessionAction.ABANDON}

_CANCEL_EDGES = {
    SessionAction.CANCEL: {SessionStatus.CANCELLED},
    SessionAction.ABANDON: {SessionStatus.CANCELLED},
}

TRANSITIONS = {
    SessionStatus.WAITING: {
        SessionAction.BEGIN_WARMUP: {SessionStatus.WARMUP},
        SessionAction.START: {SessionStatus.FOCUSING},
        **_CANCEL_EDGES,
    },
    SessionStatus.WARMUP: {
        SessionAction.START: {SessionStatus.FOCUSING},
        **_CANCEL_EDGES,
    },
    SessionStatus.FOCUSING: {
        SessionAction.FOCUS_ELAPSED: {SessionStatus.BREAK, SessionStatus.FOCUSING, SessionStatus.COOLDOWN},
        **_CANCEL_EDGES,
    },
    SessionStatus.BREAK: {
        SessionAction.BREAK_ELAPSED: {SessionStatus.FOCUSING},
        **_CANCEL_EDGES,
    },
    SessionStatus.COOLDOWN: {
        SessionAction.COOLDOWN_ELAPSED: {SessionStatus.COMPLETED},
        **_CANCEL_EDGES,
    },
    SessionStatus.COMPLETED: {},
    SessionStatus.CANCELLED: {},
}

NATURAL_ACTION_BY_STATUS = {
    SessionStatus.FOCUSING: SessionAction.FOCUS_ELAPSED,
    SessionStatus.BREAK: SessionAction.BREAK_ELAPSED,
    SessionStatus.COOLDOWN: SessionAction.COOLDOWN_ELAPSED,
}


class SessionStateMachine:
    """Session 狀態機"""

    @staticmethod
    def can_transition(status: SessionStatus, action: SessionAction) -> bool:
        return action in TRANSITIONS.get(status, {})

    @staticmethod
    def natural_action_for(status: SessionStatus) -> Optional[SessionAction]:
        """計時中的狀態對應的「時間到」動作；其他狀態回傳 None"""
        return NATURAL_ACTION_BY_STATUS.get(status)

    @staticmethod
    @retry_on_conflict()
    @transactional
    def transition(
        db: Session,
        session_id: str,
        action: SessionAction,
        actor_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> FocusSession:
        """
        執行一次狀態轉換

        流程：
        1. 讀取 Session（記下 status / version）
        2. 檢查 actor 權限（start / cancel / begin_warmup 只有建立者可以）
        3. 檢查動作在目前狀態是否合法；自然轉換還要檢查時間是否到了
        4. 計算新的 status 與計時欄位
        5. Compare-and-swap 寫入（以讀到的 status + version 為條件）
        6. 排隊 status_changed 事件（commit 後才會送出）

        參數：
            db: SQLAlchemy Session
            session_id: Session ID
            action: SessionAction
            actor_id: 發出指令的 user_id；系統動作為 None
            now: 目前時間（naive UTC，測試可注入）

        返回：
            更新後的 FocusSession

        異常：
            SessionNotFound: Session 不存在
            PermissionDenied: actor 沒有權限
            StateConflictError: 非法轉換 / 時間未到 / abandon 時仍有 active 參與者
            StaleWriteError: 重讀重試後仍然寫入衝突
        """
        now = now or utcnow()
        cooldown_minutes = get_settings().cooldown_minutes

        session = db.query(FocusSession).filter(FocusSession.id == session_id).first()
        if not session:
            raise SessionNotFound(session_id)

        SessionStateMachine._check_permission(session, action, actor_id)

        previous_status = session.status
        if not SessionStateMachine.can_transition(previous_status, action):
            raise StateConflictError(
                f"Cannot {action.value} session {session_id} from status {previous_status.value}",
                current_status=previous_status,
            )

        if action in NATURAL_ACTIONS and not is_phase_elapsed(session, now, cooldown_minutes):
            raise StateConflictError(
                f"Phase {previous_status.value} of session {session_id} has not elapsed yet",
                current_status=previous_status,
            )

        if action == SessionAction.ABANDON and ParticipantRegistry.active_count(db, session_id) > 0:
            # leave 與 abandon 是兩個 transaction，中間可能有人重新加入
            raise StateConflictError(
                f"Session {session_id} still has active participants",
                current_status=previous_status,
            )

        values = SessionStateMachine._next_values(session, action, now)
        compare_and_swap(db, session, previous_status, session.version, **values)

        if session.status == SessionStatus.COMPLETED:
            for participant in session.participants:
                if participant.is_active and participant.outcome is None:
                    participant.outcome = ParticipantOutcome.COMPLETED

        timer = build_timer_snapshot(session, now, cooldown_minutes)
        if session.status == previous_status:
            # 同一個狀態裡進入下一輪：只需要同步計時器
            queue_event(db, SESSION_CHANNEL, TimerSyncEvent(
                session_id=session.id,
                status=session.status,
                timer=timer,
            ))
        else:
            queue_event(db, SESSION_CHANNEL, StatusChangedEvent(
                session_id=session.id,
                status=session.status,
                previous_status=previous_status,
                timer=timer,
            ))

        logger.info(
            f"Session {session_id}: {previous_status.value} -> {session.status.value} "
            f"via {action.value} (repetition {session.current_repetition}/{session.repetitions})"
        )
        return session

    @staticmethod
    def _check_permission(session: FocusSession, action: SessionAction, actor_id: Optional[str]) -> None:
        if action in CREATOR_ACTIONS and actor_id != session.creator_id:
            raise PermissionDenied(f"Only the session creator can {action.value} the session")
        if action in SYSTEM_ACTIONS and actor_id is not None:
            raise PermissionDenied(f"{action.value} is a system transition")

    @staticmethod
    def _next_values(session: FocusSession, action: SessionAction, now: datetime) -> dict:
        """
        計算轉換後要寫入的欄位

        新階段一律從 now 開始計時（每個階段都是完整長度），
        Sweeper 的延遲不會讓下一個階段被縮短。
        """
        if action == SessionAction.BEGIN_WARMUP:
            return {"status": SessionStatus.WARMUP}

        if action == SessionAction.START:
            return {
                "status": SessionStatus.FOCUSING,
                "started_at": now,
                "phase_started_at": now,
                "current_repetition": 1,
            }

        if action == SessionAction.FOCUS_ELAPSED:
            next_status = status_after_focus(
                session.current_repetition, session.repetitions, session.break_interval
            )
            values = {"status": next_status, "phase_started_at": now}
            if next_status == SessionStatus.FOCUSING:
                values["current_repetition"] = session.current_repetition + 1
            return values

        if action == SessionAction.BREAK_ELAPSED:
            return {
                "status": SessionStatus.FOCUSING,
                "phase_started_at": now,
                "current_repetition": session.current_repetition + 1,
            }

        if action == SessionAction.COOLDOWN_ELAPSED:
            return {"status": SessionStatus.COMPLETED, "ended_at": now}

        # CANCEL / ABANDON
        return {"status": SessionStatus.CANCELLED, "ended_at": now}
