"""
Participant Registry：管理誰在 Session 裡

職責：
1. 加入 / 重新加入 Session（私人 Session 只允許建立者與已接受邀請的人）
2. 離開 Session
3. 反應（focus / energy / break）
4. 查詢 active 參與者

Join / leave 會透過 compare-and-swap bump Session 的 version，
與狀態轉換走同一條 conditional write，避免 join 與 start 同時發生時互相覆蓋。
"""
import logging
from typing import Optional, Tuple

from sqlalchemy.orm import Session

from database import transactional
from models import (
    FocusSession,
    JOINABLE_STATUSES,
    Participant,
    ParticipantOutcome,
    Reaction,
    SessionInvite,
    utcnow,
)
from schemas import (
    ParticipantInfo,
    ParticipantJoinedEvent,
    ParticipantLeftEvent,
    ParticipantReactionEvent,
)
from core.events import SESSION_CHANNEL, queue_event
from core.exceptions import (
    ParticipantNotFound,
    PermissionDenied,
    SessionNotFound,
    StateConflictError,
)
from core.locks import compare_and_swap, retry_on_conflict
from services.naming_service import generate_odonym, user_hash

logger = logging.getLogger(__name__)


class ParticipantRegistry:
    """Session 參與者管理器"""

    @staticmethod
    def find_participant(db: Session, session_id: str, user_id: str) -> Optional[Participant]:
        return db.query(Participant).filter(
            Participant.session_id == session_id,
            Participant.user_hash == user_hash(user_id, session_id),
        ).first()

    @staticmethod
    def is_active_participant(db: Session, session_id: str, user_id: str) -> bool:
        participant = ParticipantRegistry.find_participant(db, session_id, user_id)
        return participant is not None and participant.is_active

    @staticmethod
    def active_count(db: Session, session_id: str) -> int:
        return db.query(Participant).filter(
            Participant.session_id == session_id,
            Participant.is_active == True,  # noqa: E712
        ).count()

    @staticmethod
    def has_accepted_invite(db: Session, session_id: str, user_id: str) -> bool:
        return db.query(SessionInvite).filter(
            SessionInvite.session_id == session_id,
            SessionInvite.user_hash == user_hash(user_id, session_id),
        ).first() is not None

    @staticmethod
    def can_access(db: Session, session: FocusSession, user_id: str) -> bool:
        """私人 Session：只有建立者、已接受邀請者或既有參與者可以存取"""
        if not session.is_private or session.creator_id == user_id:
            return True
        if ParticipantRegistry.has_accepted_invite(db, session.id, user_id):
            return True
        return ParticipantRegistry.find_participant(db, session.id, user_id) is not None

    @staticmethod
    def enroll_creator(db: Session, session: FocusSession) -> Participant:
        """
        建立 Session 時把建立者加入為第一個參與者

        注意：
            - 不做 CAS（Session 還沒 commit，沒有其他寫入者）
            - 交由外層 transaction 處理 commit
        """
        participant = Participant(
            session_id=session.id,
            user_hash=user_hash(session.creator_id, session.id),
            odonym=generate_odonym(),
            is_creator=True,
            is_active=True,
        )
        db.add(participant)
        db.flush()
        return participant

    @staticmethod
    @retry_on_conflict()
    @transactional
    def join(db: Session, session_id: str, user_id: str) -> Tuple[Participant, bool]:
        """
        加入 Session

        前置條件：
        1. Session 必須存在，且尚未結束
        2. 私人 Session：必須是建立者或已接受邀請
        3. 新參與者只能在 waiting / warmup 加入；既有參與者可以隨時重新加入

        流程：
        1. 驗證前置條件
        2. 建立或重新啟用 Participant
        3. CAS bump Session version
        4. 排隊 participant_joined 事件

        返回：
            (Participant, rejoined) tuple
            重複呼叫（已經是 active）不會再發事件

        異常：
            SessionNotFound, PermissionDenied, StateConflictError
        """
        session = db.query(FocusSession).filter(FocusSession.id == session_id).first()
        if not session:
            raise SessionNotFound(session_id)

        if session.is_terminal:
            raise StateConflictError(
                f"Session {session_id} has ended", current_status=session.status
            )

        if session.is_private and session.creator_id != user_id:
            if not ParticipantRegistry.has_accepted_invite(db, session_id, user_id):
                raise PermissionDenied("This session is private; an accepted invite is required")

        existing = ParticipantRegistry.find_participant(db, session_id, user_id)
        if existing and existing.is_active:
            return existing, False

        if existing is None and session.status not in JOINABLE_STATUSES:
            raise StateConflictError(
                f"Session {session_id} is no longer accepting new participants",
                current_status=session.status,
            )

        compare_and_swap(db, session, session.status, session.version)

        rejoined = existing is not None
        if existing:
            participant = existing
            participant.is_active = True
            participant.left_at = None
            participant.outcome = None
        else:
            participant = Participant(
                session_id=session_id,
                user_hash=user_hash(user_id, session_id),
                odonym=ParticipantRegistry._unique_odonym(db, session_id),
                is_creator=session.creator_id == user_id,
                is_active=True,
            )
            db.add(participant)
        db.flush()

        queue_event(db, SESSION_CHANNEL, ParticipantJoinedEvent(
            session_id=session_id,
            participant=ParticipantInfo(
                odonym=participant.odonym,
                is_active=True,
                last_reaction=participant.last_reaction,
            ),
            participant_count=ParticipantRegistry.active_count(db, session_id),
        ))

        logger.info(
            f"Participant {participant.odonym} {'rejoined' if rejoined else 'joined'} session {session_id}"
        )
        return participant, rejoined

    @staticmethod
    @retry_on_conflict()
    @transactional
    def leave(db: Session, session_id: str, user_id: str) -> int:
        """
        離開 Session

        效果：
        - Participant 標記為 inactive，outcome=interrupted（Session 還在進行時）
        - CAS bump Session version
        - 排隊 participant_left 事件

        返回：
            離開後剩下的 active 參與者數量
            （呼叫者看到 0 就要讓狀態機 abandon 這個 Session）

        異常：
            SessionNotFound, ParticipantNotFound
        """
        session = db.query(FocusSession).filter(FocusSession.id == session_id).first()
        if not session:
            raise SessionNotFound(session_id)

        participant = ParticipantRegistry.find_participant(db, session_id, user_id)
        if not participant:
            raise ParticipantNotFound(f"Not a participant of session {session_id}")

        if not participant.is_active:
            return ParticipantRegistry.active_count(db, session_id)

        if not session.is_terminal:
            compare_and_swap(db, session, session.status, session.version)
            participant.outcome = ParticipantOutcome.INTERRUPTED

        participant.is_active = False
        participant.left_at = utcnow()
        db.flush()

        remaining = ParticipantRegistry.active_count(db, session_id)
        queue_event(db, SESSION_CHANNEL, ParticipantLeftEvent(
            session_id=session_id,
            odonym=participant.odonym,
            participant_count=remaining,
        ))

        logger.info(f"Participant {participant.odonym} left session {session_id} ({remaining} remaining)")
        return remaining

    @staticmethod
    @transactional
    def react(db: Session, session_id: str, user_id: str, reaction: Reaction) -> Participant:
        """
        送出反應（不是聊天，只有 focus / energy / break 三種）

        反應是暫態資料，只更新 Participant，不需要 CAS
        """
        session = db.query(FocusSession).filter(FocusSession.id == session_id).first()
        if not session:
            raise SessionNotFound(session_id)
        if session.is_terminal:
            raise StateConflictError(f"Session {session_id} has ended", current_status=session.status)

        participant = ParticipantRegistry.find_participant(db, session_id, user_id)
        if not participant or not participant.is_active:
            raise PermissionDenied("Not an active participant")

        participant.last_reaction = reaction
        participant.last_reaction_at = utcnow()

        queue_event(db, SESSION_CHANNEL, ParticipantReactionEvent(
            session_id=session_id,
            odonym=participant.odonym,
            reaction=reaction,
        ))
        return participant

    @staticmethod
    def _unique_odonym(db: Session, session_id: str) -> str:
        taken = {
            odonym for (odonym,) in
            db.query(Participant.odonym).filter(Participant.session_id == session_id).all()
        }
        odonym = generate_odonym()
        while odonym in taken:
            odonym = generate_odonym()
            logger.warning(f"Odonym collision detected in session {session_id}, regenerating")
        return odonym
