"""
API 共用 dependency 與錯誤轉換

身分：認證層在 X-User-Id header 帶入已驗證的 user_id，這裡直接信任它
"""
from typing import Optional

from fastapi import Header, HTTPException

from core.exceptions import (
    FocusSessionException,
    NotAuthenticated,
    NotFoundError,
    PermissionDenied,
    StateConflictError,
    ValidationError,
)


def get_current_user_id(user_id: Optional[str] = Header(default=None, alias="X-User-Id")) -> str:
    if not user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return user_id


def to_http_exception(exc: FocusSessionException) -> HTTPException:
    """
    業務異常 -> HTTP 狀態碼

    ValidationError -> 400
    NotAuthenticated -> 401
    PermissionDenied -> 403
    NotFoundError -> 404
    StateConflictError -> 409（detail 帶目前 status，client 會 refetch 後重試一次）
    """
    if isinstance(exc, ValidationError):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, NotAuthenticated):
        return HTTPException(status_code=401, detail=str(exc))
    if isinstance(exc, PermissionDenied):
        return HTTPException(status_code=403, detail=str(exc))
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, StateConflictError):
        current = exc.current_status.value if exc.current_status else None
        return HTTPException(status_code=409, detail={"message": str(exc), "current_status": current})
    return HTTPException(status_code=500, detail="Internal error")
