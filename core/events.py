"""
交易後發送事件

業務邏輯在 transaction 內呼叫 queue_event() 排隊，
@transactional 在 commit 成功後呼叫 dispatch_pending_events()，
rollback 時呼叫 discard_pending_events()。

這樣 CAS 失敗、驗證失敗的 transaction 永遠不會送出事件。
"""
import logging
from functools import lru_cache
from typing import Optional

from sqlalchemy.orm import Session

from core.broadcaster import EventBroadcaster, require_identity

logger = logging.getLogger(__name__)

SESSION_CHANNEL = "session"
CHAT_CHANNEL = "chat"

_PENDING_KEY = "pending_events"


def authorize_chat_channel(session_id: str, identity: Optional[str]) -> bool:
    """chat channel：必須是 Session 的 active 參與者"""
    from database import SessionLocal  # 避免 circular import
    from core.participant_registry import ParticipantRegistry

    if not identity:
        return False
    db = SessionLocal()
    try:
        return ParticipantRegistry.is_active_participant(db, session_id, identity)
    finally:
        db.close()


@lru_cache()
def get_broadcaster() -> EventBroadcaster:
    broadcaster = EventBroadcaster()
    broadcaster.register_channel(SESSION_CHANNEL, require_identity)
    broadcaster.register_channel(CHAT_CHANNEL, authorize_chat_channel)
    return broadcaster


def queue_event(db: Session, channel: str, event) -> None:
    db.info.setdefault(_PENDING_KEY, []).append((channel, event))


def discard_pending_events(db: Session) -> None:
    dropped = db.info.pop(_PENDING_KEY, [])
    if dropped:
        logger.debug(f"Discarded {len(dropped)} events after rollback")


def dispatch_pending_events(db: Session, broadcaster: Optional[EventBroadcaster] = None) -> int:
    """commit 之後把排隊的事件交給 Broadcaster；回傳發出的事件數"""
    pending = db.info.pop(_PENDING_KEY, [])
    if not pending:
        return 0
    broadcaster = broadcaster or get_broadcaster()
    for channel, event in pending:
        broadcaster.emit(channel, event)
    return len(pending)
