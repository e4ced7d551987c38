"""
Session API Endpoints

職責：
1. 建立 / 查詢 Session
2. 加入、離開、反應
3. 建立者指令：warmup、start、cancel、開關聊天
4. 邀請碼查詢與接受
5. 結束後的個人摘要與結果回報

所有狀態變更都經過 core 層；這裡只負責把業務異常轉成 HTTP 狀態碼。
事件在 commit 之後由 Broadcaster 推播，client 收到後會自行 refetch。
"""
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
import logging

from api.dependencies import get_current_user_id, to_http_exception
from core.exceptions import FocusSessionException
from core.participant_registry import ParticipantRegistry
from core.session_manager import SessionManager
from database import get_db
from schemas import (
    ActiveSessionResponse,
    ChatToggle,
    InviteResponse,
    JoinResponse,
    OutcomeSubmit,
    ReactionSubmit,
    SessionCreate,
    SessionListItem,
    SessionResponse,
    SessionSummaryResponse,
    StatusResponse,
)

router = APIRouter(prefix="/api/sessions", tags=["sessions"])
invite_router = APIRouter(prefix="/api/invites", tags=["invites"])
logger = logging.getLogger(__name__)


def _internal_error(db: Session, action: str, e: Exception) -> HTTPException:
    logger.error(f"Failed to {action}: {e}", exc_info=True)
    db.rollback()
    return HTTPException(status_code=500, detail="Internal error")


@router.get("", response_model=List[SessionListItem])
def list_sessions(limit: int = 20, db: Session = Depends(get_db)):
    """公開且尚未結束的 Session（新的在前）"""
    return SessionManager.list_public_sessions(db, limit=min(limit, 100))


@router.post("", response_model=SessionResponse, status_code=201)
def create_session(
    data: SessionCreate,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """
    建立 Session（建立者自動成為第一個參與者）

    返回：
        Session 快照（含 invite_code，只有建立者看得到）
    """
    try:
        session = SessionManager.create_session(db, user_id, data)
        return SessionManager.build_session_view(db, session.id, user_id)
    except FocusSessionException as e:
        raise to_http_exception(e)
    except Exception as e:
        raise _internal_error(db, "create session", e)


@router.get("/active", response_model=Optional[ActiveSessionResponse])
def get_active_session(user_id: str = Depends(get_current_user_id), db: Session = Depends(get_db)):
    """
    使用者目前進行中的 Session（沒有就回傳 null）

    client 以較長的間隔輪詢這個 endpoint（導覽列指示器）
    """
    try:
        return SessionManager.get_active_session(db, user_id)
    except Exception as e:
        raise _internal_error(db, "get active session", e)


@router.get("/{session_id}", response_model=SessionResponse)
def get_session(session_id: str, user_id: str = Depends(get_current_user_id), db: Session = Depends(get_db)):
    """
    取得 Session 的權威快照

    結束（completed / cancelled）後仍可讀取，作為 summary
    """
    try:
        return SessionManager.build_session_view(db, session_id, user_id)
    except FocusSessionException as e:
        raise to_http_exception(e)
    except Exception as e:
        raise _internal_error(db, "get session", e)


@router.get("/{session_id}/summary", response_model=SessionSummaryResponse)
def get_session_summary(session_id: str, user_id: str = Depends(get_current_user_id), db: Session = Depends(get_db)):
    """個人摘要：自己的結果、cohort 完成人數、獲得的專注分鐘數（只有參與者可讀）"""
    try:
        return SessionManager.get_session_summary(db, session_id, user_id)
    except FocusSessionException as e:
        raise to_http_exception(e)
    except Exception as e:
        raise _internal_error(db, "get session summary", e)


@router.post("/{session_id}/outcome", response_model=SessionSummaryResponse)
def record_outcome(
    session_id: str,
    data: OutcomeSubmit,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """
    自行回報結果（completed / partial / interrupted）

    Session 結束後才能回報；返回更新後的摘要
    """
    try:
        SessionManager.record_outcome(db, session_id, user_id, data.outcome)
        return SessionManager.get_session_summary(db, session_id, user_id)
    except FocusSessionException as e:
        raise to_http_exception(e)
    except Exception as e:
        raise _internal_error(db, "record outcome", e)


@router.post("/{session_id}/join", response_model=JoinResponse)
def join_session(session_id: str, user_id: str = Depends(get_current_user_id), db: Session = Depends(get_db)):
    """
    加入 Session

    前置條件：
    - Session 存在且未結束
    - 私人 Session 必須先接受邀請
    - 新參與者只能在 waiting / warmup 加入（既有參與者可隨時重新加入）
    """
    try:
        participant, rejoined = SessionManager.join_session(db, session_id, user_id)
        return JoinResponse(odonym=participant.odonym, rejoined=rejoined)
    except FocusSessionException as e:
        raise to_http_exception(e)
    except Exception as e:
        raise _internal_error(db, "join session", e)


@router.post("/{session_id}/leave", response_model=StatusResponse)
def leave_session(session_id: str, user_id: str = Depends(get_current_user_id), db: Session = Depends(get_db)):
    """離開 Session（最後一個人離開時 Session 會被取消）"""
    try:
        session = SessionManager.leave_session(db, session_id, user_id)
        return StatusResponse(status=session.status.value)
    except FocusSessionException as e:
        raise to_http_exception(e)
    except Exception as e:
        raise _internal_error(db, "leave session", e)


def _run_creator_command(db: Session, session_id: str, user_id: str, command, action: str) -> SessionResponse:
    try:
        command(db, session_id, user_id)
        return SessionManager.build_session_view(db, session_id, user_id)
    except FocusSessionException as e:
        raise to_http_exception(e)
    except Exception as e:
        raise _internal_error(db, action, e)


@router.post("/{session_id}/warmup", response_model=SessionResponse)
def begin_warmup(session_id: str, user_id: str = Depends(get_current_user_id), db: Session = Depends(get_db)):
    """開始暖身（建立者，waiting -> warmup）"""
    return _run_creator_command(db, session_id, user_id, SessionManager.begin_warmup, "begin warmup")


@router.post("/{session_id}/start", response_model=SessionResponse)
def start_session(session_id: str, user_id: str = Depends(get_current_user_id), db: Session = Depends(get_db)):
    """開始專注（建立者，waiting / warmup -> focusing）"""
    return _run_creator_command(db, session_id, user_id, SessionManager.start_session, "start session")


@router.post("/{session_id}/cancel", response_model=SessionResponse)
def cancel_session(session_id: str, user_id: str = Depends(get_current_user_id), db: Session = Depends(get_db)):
    """取消 Session（建立者，任何非終止狀態 -> cancelled）"""
    return _run_creator_command(db, session_id, user_id, SessionManager.cancel_session, "cancel session")


@router.post("/{session_id}/reaction", response_model=StatusResponse)
def send_reaction(
    session_id: str,
    data: ReactionSubmit,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """送出反應（focus / energy / break）"""
    try:
        ParticipantRegistry.react(db, session_id, user_id, data.reaction)
        return StatusResponse()
    except FocusSessionException as e:
        raise to_http_exception(e)
    except Exception as e:
        raise _internal_error(db, "send reaction", e)


@router.post("/{session_id}/chat", response_model=SessionResponse)
def toggle_chat(
    session_id: str,
    data: ChatToggle,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """開關聊天（建立者）"""
    try:
        SessionManager.toggle_chat(db, session_id, user_id, data.enabled)
        return SessionManager.build_session_view(db, session_id, user_id)
    except FocusSessionException as e:
        raise to_http_exception(e)
    except Exception as e:
        raise _internal_error(db, "toggle chat", e)


@invite_router.get("/{invite_code}", response_model=InviteResponse)
def get_invite(invite_code: str, db: Session = Depends(get_db)):
    """
    透過邀請碼查詢 Session

    異常：
        404：邀請碼無效或 Session 已結束
    """
    try:
        session = SessionManager.get_session_by_invite(db, invite_code)
        return InviteResponse(
            session_id=session.id,
            topic=session.topic,
            status=session.status,
            is_private=session.is_private,
        )
    except FocusSessionException as e:
        raise to_http_exception(e)


@invite_router.post("/{invite_code}/accept", response_model=InviteResponse)
def accept_invite(invite_code: str, user_id: str = Depends(get_current_user_id), db: Session = Depends(get_db)):
    """接受邀請（之後再呼叫 join 加入 Session）"""
    try:
        session = SessionManager.accept_invite(db, invite_code, user_id)
        return InviteResponse(
            session_id=session.id,
            topic=session.topic,
            status=session.status,
            is_private=session.is_private,
        )
    except FocusSessionException as e:
        raise to_http_exception(e)
    except Exception as e:
        raise _internal_error(db, "accept invite", e)
