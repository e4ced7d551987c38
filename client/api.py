"""
HTTP 指令與查詢（client 端）

把 HTTP 狀態碼轉回 core.exceptions 的業務異常：
    400 / 422 -> ValidationError
    401       -> NotAuthenticated
    403       -> PermissionDenied
    404       -> NotFoundError
    409       -> StateConflictError（帶 server 回報的目前 status）
    連線失敗 / 5xx -> TransportError
"""
import logging
from typing import Any, List, Optional

import httpx

from core.exceptions import (
    NotAuthenticated,
    NotFoundError,
    PermissionDenied,
    StateConflictError,
    TransportError,
    ValidationError,
)
from enums import ParticipantOutcome, Reaction, SessionStatus
from schemas import (
    ActiveSessionResponse,
    ChatMessageResponse,
    InviteResponse,
    JoinResponse,
    SessionCreate,
    SessionListItem,
    SessionResponse,
    SessionSummaryResponse,
    StatusResponse,
)
from client.config import SyncConfig

logger = logging.getLogger(__name__)


def _detail(response: httpx.Response):
    try:
        body = response.json()
    except ValueError:
        return response.text
    return body.get("detail") if isinstance(body, dict) else body


def error_from_response(response: httpx.Response) -> Exception:
    detail = _detail(response)
    status = response.status_code

    if status == 409:
        current = None
        message = detail
        if isinstance(detail, dict):
            message = detail.get("message")
            if detail.get("current_status"):
                current = SessionStatus(detail["current_status"])
        return StateConflictError(message, current_status=current)

    message = detail if isinstance(detail, str) else str(detail)
    if status in (400, 422):
        return ValidationError(message)
    if status == 401:
        return NotAuthenticated(message)
    if status == 403:
        return PermissionDenied(message)
    if status == 404:
        return NotFoundError(message)
    return TransportError(f"HTTP {status}: {message}")


class HttpSessionApi:
    """
    Session HTTP API 的 async client

    身分透過 X-User-Id header 帶給 server
    """

    def __init__(self, user_id: str, config: Optional[SyncConfig] = None,
                 client: Optional[httpx.AsyncClient] = None):
        self.user_id = user_id
        config = config or SyncConfig()
        self._client = client or httpx.AsyncClient(
            base_url=config.api_base_url,
            timeout=config.request_timeout_seconds,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, json: Any = None) -> Any:
        try:
            response = await self._client.request(
                method, path, json=json, headers={"X-User-Id": self.user_id}
            )
        except httpx.HTTPError as e:
            raise TransportError(f"{method} {path} failed: {e}") from e

        if response.status_code >= 400:
            raise error_from_response(response)
        if not response.content:
            return None
        return response.json()

    # ============ Session ============

    async def create_session(self, data: SessionCreate) -> SessionResponse:
        payload = await self._request("POST", "/api/sessions", json=data.model_dump(mode="json"))
        return SessionResponse.model_validate(payload)

    async def list_sessions(self) -> List[SessionListItem]:
        payload = await self._request("GET", "/api/sessions")
        return [SessionListItem.model_validate(item) for item in payload]

    async def get_session(self, session_id: str) -> SessionResponse:
        payload = await self._request("GET", f"/api/sessions/{session_id}")
        return SessionResponse.model_validate(payload)

    async def get_active_session(self) -> Optional[ActiveSessionResponse]:
        payload = await self._request("GET", "/api/sessions/active")
        return ActiveSessionResponse.model_validate(payload) if payload else None

    async def join_session(self, session_id: str) -> JoinResponse:
        payload = await self._request("POST", f"/api/sessions/{session_id}/join")
        return JoinResponse.model_validate(payload)

    async def leave_session(self, session_id: str) -> StatusResponse:
        payload = await self._request("POST", f"/api/sessions/{session_id}/leave")
        return StatusResponse.model_validate(payload)

    async def begin_warmup(self, session_id: str) -> SessionResponse:
        payload = await self._request("POST", f"/api/sessions/{session_id}/warmup")
        return SessionResponse.model_validate(payload)

    async def start_session(self, session_id: str) -> SessionResponse:
        payload = await self._request("POST", f"/api/sessions/{session_id}/start")
        return SessionResponse.model_validate(payload)

    async def cancel_session(self, session_id: str) -> SessionResponse:
        payload = await self._request("POST", f"/api/sessions/{session_id}/cancel")
        return SessionResponse.model_validate(payload)

    async def react(self, session_id: str, reaction: Reaction) -> StatusResponse:
        payload = await self._request(
            "POST", f"/api/sessions/{session_id}/reaction", json={"reaction": reaction.value}
        )
        return StatusResponse.model_validate(payload)

    async def toggle_chat(self, session_id: str, enabled: bool) -> SessionResponse:
        payload = await self._request("POST", f"/api/sessions/{session_id}/chat", json={"enabled": enabled})
        return SessionResponse.model_validate(payload)

    async def get_summary(self, session_id: str) -> SessionSummaryResponse:
        payload = await self._request("GET", f"/api/sessions/{session_id}/summary")
        return SessionSummaryResponse.model_validate(payload)

    async def record_outcome(self, session_id: str, outcome: ParticipantOutcome) -> SessionSummaryResponse:
        payload = await self._request(
            "POST", f"/api/sessions/{session_id}/outcome", json={"outcome": outcome.value}
        )
        return SessionSummaryResponse.model_validate(payload)

    # ============ Invite ============

    async def get_invite(self, invite_code: str) -> InviteResponse:
        payload = await self._request("GET", f"/api/invites/{invite_code}")
        return InviteResponse.model_validate(payload)

    async def accept_invite(self, invite_code: str) -> InviteResponse:
        payload = await self._request("POST", f"/api/invites/{invite_code}/accept")
        return InviteResponse.model_validate(payload)

    # ============ Chat ============

    async def send_message(self, session_id: str, text: str,
                           client_message_id: Optional[str] = None) -> ChatMessageResponse:
        payload = await self._request(
            "POST",
            f"/api/sessions/{session_id}/messages",
            json={"text": text, "client_message_id": client_message_id},
        )
        return ChatMessageResponse.model_validate(payload)

    async def get_messages(self, session_id: str) -> List[ChatMessageResponse]:
        payload = await self._request("GET", f"/api/sessions/{session_id}/messages")
        return [ChatMessageResponse.model_validate(item) for item in payload]

    async def send_typing(self, session_id: str, is_typing: bool = True) -> None:
        await self._request("POST", f"/api/sessions/{session_id}/typing", json={"is_typing": is_typing})
