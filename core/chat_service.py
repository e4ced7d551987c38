"""
Chat Sub-channel（server 端）：每個 Session 只能新增的聊天紀錄

- 訊息透過與 Session 事件相同的 Broadcaster 發送（chat channel）
- 排序 / 去重的 key 是訊息 id，不是 client 的時間
- 送出指令的 response 與廣播的 echo 一定帶同一個 id
- client 可以自帶 id（UUID）：同一個 id 重送只會拿回既有訊息，不會重複廣播
- typing 是 fire-and-forget：不存資料庫、不保證送達與順序
"""
import logging
import uuid
from typing import List, Optional

from sqlalchemy.orm import Session

from database import get_settings, transactional
from models import ChatMessage, FocusSession, Participant, utcnow
from schemas import ChatMessageEvent, ChatMessageResponse, TypingEvent
from core.events import CHAT_CHANNEL, get_broadcaster, queue_event
from core.exceptions import (
    PermissionDenied,
    SessionNotFound,
    StateConflictError,
    ValidationError,
)
from core.participant_registry import ParticipantRegistry

logger = logging.getLogger(__name__)


class ChatService:
    """Session 聊天服務"""

    @staticmethod
    def validate_text(text: str) -> str:
        """
        清理並驗證訊息內容

        異常：
            ValidationError: 空白訊息或超過長度上限
        """
        cleaned = (text or "").strip()
        max_length = get_settings().max_chat_message_length
        if not cleaned:
            raise ValidationError("Message must not be empty")
        if len(cleaned) > max_length:
            raise ValidationError(f"Message exceeds {max_length} characters")
        return cleaned

    @staticmethod
    def _require_participant(db: Session, session_id: str, user_id: str) -> Participant:
        session = db.query(FocusSession).filter(FocusSession.id == session_id).first()
        if not session:
            raise SessionNotFound(session_id)

        participant = ParticipantRegistry.find_participant(db, session_id, user_id)
        if not participant or not participant.is_active:
            raise PermissionDenied("Not an active participant")
        return participant

    @staticmethod
    def _require_chat_participant(db: Session, session_id: str, user_id: str) -> Participant:
        participant = ChatService._require_participant(db, session_id, user_id)
        session = participant.session
        if not session.chat_enabled:
            raise StateConflictError("Chat is disabled for this session", current_status=session.status)
        return participant

    @staticmethod
    @transactional
    def send_message(
        db: Session,
        session_id: str,
        user_id: str,
        text: str,
        client_message_id: Optional[str] = None,
    ) -> ChatMessageResponse:
        """
        發送聊天訊息

        前置條件：
        1. 訊息內容合法（1~500 字）
        2. Session 存在、未結束、聊天已開啟
        3. 發送者是 active 參與者

        流程：
        1. 驗證
        2. 若 client 帶了 id 且已存在：直接回傳既有訊息（重送）
        3. 新增訊息（只新增、不修改）
        4. 排隊 chat message 事件（與 response 同一個 id）

        異常：
            ValidationError, SessionNotFound, PermissionDenied, StateConflictError
        """
        cleaned = ChatService.validate_text(text)
        message_id = ChatService._normalize_id(client_message_id)

        participant = ChatService._require_chat_participant(db, session_id, user_id)
        if participant.session.is_terminal:
            raise StateConflictError(
                f"Session {session_id} has ended", current_status=participant.session.status
            )

        existing = db.query(ChatMessage).filter(ChatMessage.id == message_id).first()
        if existing:
            if existing.session_id != session_id or existing.odonym != participant.odonym:
                raise ValidationError("Message id already in use")
            logger.info(f"Duplicate send of message {message_id} in session {session_id}")
            return ChatMessageResponse.model_validate(existing)

        message = ChatMessage(
            id=message_id,
            session_id=session_id,
            odonym=participant.odonym,
            text=cleaned,
            sent_at=utcnow(),
        )
        db.add(message)
        db.flush()

        response = ChatMessageResponse.model_validate(message)
        queue_event(db, CHAT_CHANNEL, ChatMessageEvent(session_id=session_id, message=response))
        return response

    @staticmethod
    def get_messages(db: Session, session_id: str, user_id: str, limit: int = 200) -> List[ChatMessageResponse]:
        """
        取得最新的 limit 則聊天紀錄（依 sent_at、id 由舊到新）

        只有 active 參與者可以讀取；非參與者拿不到任何歷史。
        聊天關閉時回傳空列表。
        """
        participant = ChatService._require_participant(db, session_id, user_id)
        if not participant.session.chat_enabled:
            return []

        newest = db.query(ChatMessage).filter(
            ChatMessage.session_id == session_id
        ).order_by(ChatMessage.sent_at.desc(), ChatMessage.id.desc()).limit(limit).all()
        return [ChatMessageResponse.model_validate(m) for m in reversed(newest)]

    @staticmethod
    def send_typing(db: Session, session_id: str, user_id: str, is_typing: bool = True) -> bool:
        """
        廣播「正在輸入」（fire-and-forget）

        不存資料庫、不經過 transaction；沒有權限或聊天關閉時靜默忽略

        返回：
            True 如果有送出
        """
        participant = ParticipantRegistry.find_participant(db, session_id, user_id)
        if not participant or not participant.is_active or not participant.session.chat_enabled:
            return False

        get_broadcaster().emit(CHAT_CHANNEL, TypingEvent(
            session_id=session_id,
            odonym=participant.odonym,
            is_typing=is_typing,
        ))
        return True

    @staticmethod
    def _normalize_id(client_message_id: Optional[str]) -> str:
        if client_message_id is None:
            return str(uuid.uuid4())
        try:
            return str(uuid.UUID(client_message_id))
        except ValueError:
            raise ValidationError("client_message_id must be a UUID") from None
