"""
WebSocket 推播通道

連線：/ws?user_id=...（身分由認證層帶入；沒有身分直接以 4401 關閉）

client -> server：
    {"op": "join", "channel": "session" | "chat", "session_id": "..."}
    {"op": "leave", "channel": "...", "session_id": "..."}
    {"op": "typing", "session_id": "...", "is_typing": true}
    {"op": "ping"}

server -> client：
    {"op": "joined" | "left", "channel": "...", "session_id": "..."}
    {"op": "event", "channel": "...", "event": {...}}
    {"op": "error", "code": 400 | 401 | 403, "message": "..."}
    {"op": "pong"}

斷線時從所有 channel 移除；不保存、不補送錯過的事件。
"""
import asyncio
import contextlib
import json
import logging
import uuid
from typing import Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from api.dependencies import to_http_exception
from core.broadcaster import QueueSubscriber
from core.chat_service import ChatService
from core.events import get_broadcaster
from core.exceptions import FocusSessionException
from database import SessionLocal

router = APIRouter(tags=["websocket"])
logger = logging.getLogger(__name__)

UNAUTHENTICATED_CLOSE_CODE = 4401


def _send_typing(session_id: str, user_id: str, is_typing: bool) -> bool:
    db = SessionLocal()
    try:
        return ChatService.send_typing(db, session_id, user_id, is_typing)
    finally:
        db.close()


async def _pump(websocket: WebSocket, queue: asyncio.Queue, subscriber_id: str) -> None:
    """把佇列裡的事件送出；送出失敗就退訂，佇列不再增加"""
    try:
        while True:
            frame = await queue.get()
            await websocket.send_json(frame)
    except Exception as e:
        logger.warning(f"WebSocket {subscriber_id} stopped receiving events: {e}")
        get_broadcaster().leave_all(subscriber_id)


async def _handle_frame(websocket: WebSocket, subscriber: QueueSubscriber, message: dict) -> None:
    broadcaster = get_broadcaster()
    op = message.get("op")
    channel = message.get("channel")
    session_id = message.get("session_id")

    if op == "ping":
        await websocket.send_json({"op": "pong"})
        return

    if op not in ("join", "leave", "typing") or not session_id:
        await websocket.send_json({"op": "error", "code": 400, "message": "Malformed frame"})
        return

    if op == "typing":
        await asyncio.to_thread(
            _send_typing, session_id, subscriber.identity, bool(message.get("is_typing", True))
        )
        return

    if op == "leave":
        broadcaster.leave(channel, session_id, subscriber.subscriber_id)
        await websocket.send_json({"op": "left", "channel": channel, "session_id": session_id})
        return

    try:
        # chat channel 的授權會查資料庫，放到 worker thread
        await asyncio.to_thread(broadcaster.join, channel, session_id, subscriber)
    except FocusSessionException as e:
        http_exc = to_http_exception(e)
        await websocket.send_json({
            "op": "error",
            "code": http_exc.status_code,
            "message": str(e),
            "channel": channel,
            "session_id": session_id,
        })
        return
    await websocket.send_json({"op": "joined", "channel": channel, "session_id": session_id})


@router.websocket("/ws")
async def event_stream(websocket: WebSocket, user_id: Optional[str] = None):
    """
    單一連線可以加入多個 Session 的多個 channel

    流程：
    1. 驗證身分（沒有 user_id -> 4401）
    2. 建立 QueueSubscriber 與送出事件的 pump task
    3. 處理 join / leave / typing / ping
    4. 斷線：取消 pump、從所有 channel 移除
    """
    await websocket.accept()
    if not user_id:
        await websocket.close(code=UNAUTHENTICATED_CLOSE_CODE)
        return

    queue: asyncio.Queue = asyncio.Queue()
    subscriber = QueueSubscriber(
        subscriber_id=str(uuid.uuid4()),
        queue=queue,
        loop=asyncio.get_running_loop(),
        identity=user_id,
    )
    pump = asyncio.create_task(_pump(websocket, queue, subscriber.subscriber_id))
    logger.info(f"WebSocket {subscriber.subscriber_id} connected for user {user_id}")

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                message = json.loads(raw)
            except ValueError:
                message = None
            if not isinstance(message, dict):
                await websocket.send_json({"op": "error", "code": 400, "message": "Malformed frame"})
                continue
            await _handle_frame(websocket, subscriber, message)
    except WebSocketDisconnect:
        logger.info(f"WebSocket {subscriber.subscriber_id} disconnected")
    finally:
        pump.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await pump
        get_broadcaster().leave_all(subscriber.subscriber_id)
