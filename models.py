"""
資料模型

- FocusSession：Session 的正式狀態（status + 計時欄位 + version）
- Participant：Session 內的參與者（以 odonym 顯示，user_hash 對應身分）
- SessionInvite：私人 Session 已接受邀請的名單
- ChatMessage：只能新增、不能修改的聊天紀錄
"""
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from database import Base
from enums import (  # noqa: F401  (re-export，呼叫端習慣從 models import)
    JOINABLE_STATUSES,
    TERMINAL_STATUSES,
    TIMED_STATUSES,
    ParticipantOutcome,
    Reaction,
    SessionStatus,
)


def utcnow() -> datetime:
    """所有時間一律存 naive UTC（SQLite 不保存時區）"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def gen_uuid() -> str:
    return str(uuid.uuid4())


class FocusSession(Base):
    __tablename__ = "focus_sessions"

    id = Column(String(36), primary_key=True, default=gen_uuid)
    intent = Column(String(200), nullable=False, default="")
    topic = Column(String(100), nullable=False, default="")

    status = Column(Enum(SessionStatus), nullable=False, default=SessionStatus.WAITING, index=True)
    # 每次 conditional write 成功就 +1，避免 ABA（focusing -> break -> focusing）
    version = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    scheduled_start_at = Column(DateTime, nullable=True)
    started_at = Column(DateTime, nullable=True)
    phase_started_at = Column(DateTime, nullable=True)
    ended_at = Column(DateTime, nullable=True)

    min_duration = Column(Integer, nullable=False)
    max_duration = Column(Integer, nullable=False)
    repetitions = Column(Integer, nullable=False, default=1)
    current_repetition = Column(Integer, nullable=False, default=0)
    break_duration = Column(Integer, nullable=False, default=5)
    break_interval = Column(Integer, nullable=False, default=1)

    is_private = Column(Boolean, nullable=False, default=False)
    chat_enabled = Column(Boolean, nullable=False, default=False)
    invite_code = Column(String(16), nullable=True, unique=True, index=True)

    creator_id = Column(String(64), nullable=False, index=True)

    participants = relationship(
        "Participant",
        back_populates="session",
        order_by="Participant.joined_at",
        cascade="all, delete-orphan",
    )
    invites = relationship("SessionInvite", back_populates="session", cascade="all, delete-orphan")

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def active_participant_count(self) -> int:
        return sum(1 for p in self.participants if p.is_active)


class Participant(Base):
    __tablename__ = "session_participants"
    __table_args__ = (
        UniqueConstraint("session_id", "user_hash", name="uq_participant_session_user"),
        Index("ix_participant_session_active", "session_id", "is_active"),
    )

    id = Column(String(36), primary_key=True, default=gen_uuid)
    session_id = Column(String(36), ForeignKey("focus_sessions.id"), nullable=False)
    user_hash = Column(String(16), nullable=False, index=True)
    odonym = Column(String(40), nullable=False)

    is_active = Column(Boolean, nullable=False, default=True)
    is_creator = Column(Boolean, nullable=False, default=False)
    joined_at = Column(DateTime, nullable=False, default=utcnow)
    left_at = Column(DateTime, nullable=True)

    last_reaction = Column(Enum(Reaction), nullable=True)
    last_reaction_at = Column(DateTime, nullable=True)
    outcome = Column(Enum(ParticipantOutcome), nullable=True)

    session = relationship("FocusSession", back_populates="participants")


class SessionInvite(Base):
    __tablename__ = "session_invites"
    __table_args__ = (
        UniqueConstraint("session_id", "user_hash", name="uq_invite_session_user"),
    )

    id = Column(String(36), primary_key=True, default=gen_uuid)
    session_id = Column(String(36), ForeignKey("focus_sessions.id"), nullable=False)
    user_hash = Column(String(16), nullable=False)
    accepted_at = Column(DateTime, nullable=False, default=utcnow)

    session = relationship("FocusSession", back_populates="invites")


class ChatMessage(Base):
    __tablename__ = "session_messages"
    __table_args__ = (
        Index("ix_message_session_sent", "session_id", "sent_at"),
    )

    id = Column(String(36), primary_key=True, default=gen_uuid)
    session_id = Column(String(36), ForeignKey("focus_sessions.id"), nullable=False)
    odonym = Column(String(40), nullable=False)
    text = Column(Text, nullable=False)
    sent_at = Column(DateTime, nullable=False, default=utcnow)
