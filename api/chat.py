"""
Chat API Endpoints

職責：
1. 發送訊息（response 與廣播 echo 帶同一個 id）
2. 取得聊天紀錄（active 參與者限定）
3. 正在輸入（fire-and-forget）
"""
from typing import List

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
import logging

from api.dependencies import get_current_user_id, to_http_exception
from core.chat_service import ChatService
from core.exceptions import FocusSessionException
from database import get_db
from schemas import ChatMessageResponse, ChatMessageSubmit, StatusResponse, TypingSubmit

router = APIRouter(prefix="/api/sessions", tags=["chat"])
logger = logging.getLogger(__name__)


@router.post("/{session_id}/messages", response_model=ChatMessageResponse, status_code=201)
def send_message(
    session_id: str,
    data: ChatMessageSubmit,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """
    發送聊天訊息

    client 可以帶 client_message_id（UUID）：
    optimistic entry、這個 response、廣播 echo 三者會是同一個 id
    """
    try:
        return ChatService.send_message(
            db, session_id, user_id, data.text, client_message_id=data.client_message_id
        )
    except FocusSessionException as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.error(f"Failed to send message: {e}", exc_info=True)
        db.rollback()
        raise HTTPException(status_code=500, detail="Internal error")


@router.get("/{session_id}/messages", response_model=List[ChatMessageResponse])
def get_messages(session_id: str, user_id: str = Depends(get_current_user_id), db: Session = Depends(get_db)):
    """取得聊天紀錄（依 server 順序）"""
    try:
        return ChatService.get_messages(db, session_id, user_id)
    except FocusSessionException as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.error(f"Failed to get messages: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")


@router.post("/{session_id}/typing", response_model=StatusResponse, status_code=202)
def send_typing(
    session_id: str,
    data: TypingSubmit,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """正在輸入：不保證送達，永遠回 202"""
    sent = ChatService.send_typing(db, session_id, user_id, data.is_typing)
    return StatusResponse(status="sent" if sent else "ignored")
