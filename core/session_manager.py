"""
Session Manager：管理 Session 的完整生命週期

職責：
1. 建立 Session（含建立者的 Participant）
2. 建立者指令：warmup / start / cancel / 開關聊天
3. 離開 Session（最後一個人離開時讓狀態機 abandon）
4. 邀請碼：查詢與接受
5. 查詢：Session 快照、公開列表、「我現在有沒有進行中的 Session」
6. 結束後：個人摘要、自行回報結果

原則：
- 單一職責：狀態轉換一律交給 SessionStateMachine，參與者一律交給 ParticipantRegistry
- 資料結構優先：先檢查資料是否符合要求，再執行操作
"""
import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy.orm import Session

from database import get_settings, transactional
from models import (
    FocusSession,
    Participant,
    ParticipantOutcome,
    SessionInvite,
    SessionStatus,
    TERMINAL_STATUSES,
    utcnow,
)
from schemas import (
    ActiveSessionResponse,
    ChatToggledEvent,
    CohortStats,
    MyParticipation,
    ParticipantResponse,
    SessionCreate,
    SessionListItem,
    SessionResponse,
    SessionSummaryResponse,
)
from core.events import SESSION_CHANNEL, queue_event
from core.exceptions import (
    InviteNotFound,
    PermissionDenied,
    SessionNotFound,
    StateConflictError,
)
from core.locks import compare_and_swap, retry_on_conflict
from core.participant_registry import ParticipantRegistry
from core.state_machine import SessionAction, SessionStateMachine
from services.naming_service import generate_invite_code, user_hash
from services.timer_service import build_timer_snapshot

logger = logging.getLogger(__name__)

# 公開列表只顯示還能加入或正在專注的 Session
LISTED_STATUSES = (SessionStatus.WAITING, SessionStatus.WARMUP, SessionStatus.FOCUSING)


class SessionManager:
    """Session 生命週期管理器"""

    @staticmethod
    @transactional
    def create_session(db: Session, creator_id: str, data: SessionCreate) -> FocusSession:
        """
        建立新 Session（含建立者 Participant）

        流程：
        1. 生成唯一的邀請碼
        2. 建立 Session（status=waiting）
        3. 把建立者加入為第一個參與者

        注意：
            - 使用 @transactional，自動處理 commit/rollback
            - 邀請碼碰撞機率極低，但仍會檢查唯一性
        """
        code = generate_invite_code()
        while db.query(FocusSession).filter(FocusSession.invite_code == code).first():
            code = generate_invite_code()
            logger.warning(f"Invite code collision detected, regenerating: {code}")

        session = FocusSession(
            intent=data.intent.strip(),
            topic=data.topic.strip(),
            status=SessionStatus.WAITING,
            min_duration=data.min_duration,
            max_duration=data.max_duration,
            repetitions=data.repetitions,
            break_duration=data.break_duration,
            break_interval=data.break_interval,
            is_private=data.is_private,
            chat_enabled=data.chat_enabled,
            scheduled_start_at=data.scheduled_start_at,
            invite_code=code,
            creator_id=creator_id,
        )
        db.add(session)
        db.flush()  # 取得 session.id

        ParticipantRegistry.enroll_creator(db, session)

        logger.info(
            f"Created session {session.id} ({data.max_duration}min x {data.repetitions}, "
            f"private={data.is_private})"
        )
        return session

    @staticmethod
    def begin_warmup(db: Session, session_id: str, user_id: str) -> FocusSession:
        return SessionStateMachine.transition(db, session_id, SessionAction.BEGIN_WARMUP, user_id)

    @staticmethod
    def start_session(db: Session, session_id: str, user_id: str,
                      now: Optional[datetime] = None) -> FocusSession:
        return SessionStateMachine.transition(db, session_id, SessionAction.START, user_id, now=now)

    @staticmethod
    def cancel_session(db: Session, session_id: str, user_id: str) -> FocusSession:
        return SessionStateMachine.transition(db, session_id, SessionAction.CANCEL, user_id)

    @staticmethod
    def join_session(db: Session, session_id: str, user_id: str):
        return ParticipantRegistry.join(db, session_id, user_id)

    @staticmethod
    def leave_session(db: Session, session_id: str, user_id: str) -> FocusSession:
        """
        離開 Session

        最後一個 active 參與者離開時，讓狀態機以 abandon 取消 Session。
        如果 Session 在這之間已經被別人取消／結束，就不再動它。
        """
        remaining = ParticipantRegistry.leave(db, session_id, user_id)
        session = SessionManager.get_session_by_id(db, session_id)

        if remaining == 0 and not session.is_terminal:
            try:
                session = SessionStateMachine.transition(db, session_id, SessionAction.ABANDON)
            except StateConflictError as e:
                logger.info(f"Session {session_id} not abandoned: {e}")
                db.expire_all()
                session = SessionManager.get_session_by_id(db, session_id)
        return session

    @staticmethod
    @retry_on_conflict()
    @transactional
    def toggle_chat(db: Session, session_id: str, user_id: str, enabled: bool) -> FocusSession:
        """
        開關聊天（建立者限定）

        異常：
            SessionNotFound, PermissionDenied, StateConflictError（Session 已結束）
        """
        session = db.query(FocusSession).filter(FocusSession.id == session_id).first()
        if not session:
            raise SessionNotFound(session_id)
        if session.creator_id != user_id:
            raise PermissionDenied("Only the session creator can toggle chat")
        if session.is_terminal:
            raise StateConflictError(f"Session {session_id} has ended", current_status=session.status)

        if session.chat_enabled == enabled:
            return session

        compare_and_swap(db, session, session.status, session.version, chat_enabled=enabled)
        queue_event(db, SESSION_CHANNEL, ChatToggledEvent(session_id=session_id, chat_enabled=enabled))

        logger.info(f"Chat {'enabled' if enabled else 'disabled'} for session {session_id}")
        return session

    @staticmethod
    def get_session_by_invite(db: Session, invite_code: str) -> FocusSession:
        """
        透過邀請碼取得 Session

        異常：
            InviteNotFound: 邀請碼不存在，或 Session 已經結束
        """
        session = db.query(FocusSession).filter(FocusSession.invite_code == invite_code).first()
        if not session or session.status in TERMINAL_STATUSES:
            raise InviteNotFound(invite_code)
        return session

    @staticmethod
    @transactional
    def accept_invite(db: Session, invite_code: str, user_id: str) -> FocusSession:
        """
        接受邀請：把使用者加入私人 Session 的邀請名單（冪等）

        接受邀請不等於加入 Session，之後還要呼叫 join
        """
        session = SessionManager.get_session_by_invite(db, invite_code)
        if session.creator_id == user_id:
            return session

        if not ParticipantRegistry.has_accepted_invite(db, session.id, user_id):
            db.add(SessionInvite(session_id=session.id, user_hash=user_hash(user_id, session.id)))
            logger.info(f"Invite accepted for session {session.id}")
        return session

    @staticmethod
    def get_session_by_id(db: Session, session_id: str) -> FocusSession:
        """
        透過 ID 取得 Session

        異常：
            SessionNotFound: Session 不存在
        """
        session = db.query(FocusSession).filter(FocusSession.id == session_id).first()
        if not session:
            raise SessionNotFound(session_id)
        return session

    @staticmethod
    def build_session_view(db: Session, session_id: str, user_id: str,
                           now: Optional[datetime] = None) -> SessionResponse:
        """
        組出給 client 的權威快照

        結束後的 Session 仍然可以讀取（summary）。

        異常：
            SessionNotFound, PermissionDenied（私人 Session 且沒有邀請）
        """
        now = now or utcnow()
        session = SessionManager.get_session_by_id(db, session_id)
        if not ParticipantRegistry.can_access(db, session, user_id):
            raise PermissionDenied("This session is private")

        mine = ParticipantRegistry.find_participant(db, session_id, user_id)
        is_creator = session.creator_id == user_id
        participants = [p for p in session.participants if p.is_active]

        return SessionResponse(
            id=session.id,
            intent=session.intent,
            topic=session.topic,
            status=session.status,
            version=session.version,
            created_at=session.created_at,
            scheduled_start_at=session.scheduled_start_at,
            started_at=session.started_at,
            ended_at=session.ended_at,
            min_duration=session.min_duration,
            max_duration=session.max_duration,
            repetitions=session.repetitions,
            current_repetition=session.current_repetition,
            break_duration=session.break_duration,
            break_interval=session.break_interval,
            is_private=session.is_private,
            chat_enabled=session.chat_enabled,
            is_creator=is_creator,
            invite_code=session.invite_code if is_creator else None,
            participant_count=len(participants),
            participants=[ParticipantResponse.model_validate(p) for p in participants],
            my_participation=MyParticipation(
                odonym=mine.odonym, is_active=mine.is_active, is_creator=mine.is_creator
            ) if mine else None,
            timer=build_timer_snapshot(session, now, get_settings().cooldown_minutes),
        )

    @staticmethod
    def get_session_summary(db: Session, session_id: str, user_id: str) -> SessionSummaryResponse:
        """
        個人的 Session 摘要

        任何加入過的人都可以讀取（包含已經離開的）；
        cohort 統計也算進所有加入過的人。

        專注時間：
            duration_minutes = max_duration × repetitions
            completed -> 全部；partial / interrupted -> 一半（無條件捨去）；還沒有結果 -> 0

        異常：
            SessionNotFound, PermissionDenied（不是參與者）
        """
        session = SessionManager.get_session_by_id(db, session_id)
        mine = ParticipantRegistry.find_participant(db, session_id, user_id)
        if not mine:
            raise PermissionDenied("Only participants can view the session summary")

        duration = session.max_duration * session.repetitions
        if mine.outcome == ParticipantOutcome.COMPLETED:
            earned = duration
        elif mine.outcome is not None:
            earned = duration // 2
        else:
            earned = 0

        return SessionSummaryResponse(
            session_id=session.id,
            intent=session.intent,
            topic=session.topic,
            status=session.status,
            duration_minutes=duration,
            user_outcome=mine.outcome,
            cohort_stats=CohortStats(
                total_participants=len(session.participants),
                completed_count=sum(
                    1 for p in session.participants if p.outcome == ParticipantOutcome.COMPLETED
                ),
            ),
            focus_minutes_earned=earned,
        )

    @staticmethod
    @transactional
    def record_outcome(db: Session, session_id: str, user_id: str,
                       outcome: ParticipantOutcome) -> Participant:
        """
        參與者自行回報結果（可以覆寫結束時自動標記的結果）

        只改自己的 Participant，不 bump version、不推播事件

        異常：
            SessionNotFound
            PermissionDenied: 不是參與者
            StateConflictError: Session 還沒結束
        """
        session = SessionManager.get_session_by_id(db, session_id)
        participant = ParticipantRegistry.find_participant(db, session_id, user_id)
        if not participant:
            raise PermissionDenied("Only participants can record an outcome")
        if not session.is_terminal:
            raise StateConflictError(f"Session {session_id} has not ended", current_status=session.status)

        participant.outcome = outcome
        logger.info(f"Participant {participant.odonym} reported {outcome.value} for session {session_id}")
        return participant

    @staticmethod
    def list_public_sessions(db: Session, limit: int = 20) -> List[SessionListItem]:
        sessions = db.query(FocusSession).filter(
            FocusSession.status.in_(LISTED_STATUSES),
            FocusSession.is_private == False,  # noqa: E712
        ).order_by(FocusSession.created_at.desc()).limit(limit).all()

        return [
            SessionListItem(
                id=s.id,
                intent=s.intent,
                topic=s.topic,
                status=s.status,
                min_duration=s.min_duration,
                max_duration=s.max_duration,
                participant_count=s.active_participant_count,
                created_at=s.created_at,
                chat_enabled=s.chat_enabled,
            )
            for s in sessions
        ]

    @staticmethod
    def get_active_session(db: Session, user_id: str,
                           now: Optional[datetime] = None) -> Optional[ActiveSessionResponse]:
        """
        使用者目前進行中的 Session（導覽列指示器用）

        Participant 只存 user_hash（每個 Session 不同），
        所以逐一比對進行中 Session 的 active 參與者。
        """
        now = now or utcnow()
        rows = db.query(Participant, FocusSession).join(
            FocusSession, Participant.session_id == FocusSession.id
        ).filter(
            Participant.is_active == True,  # noqa: E712
            FocusSession.status.notin_(list(TERMINAL_STATUSES)),
        ).order_by(Participant.joined_at.desc()).all()

        for participant, session in rows:
            if participant.user_hash == user_hash(user_id, session.id):
                return ActiveSessionResponse(
                    session_id=session.id,
                    topic=session.topic,
                    status=session.status,
                    is_active_participant=True,
                    timer=build_timer_snapshot(session, now, get_settings().cooldown_minutes),
                )
        return None
