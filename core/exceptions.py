"""
自定義異常類別

集中管理所有業務邏輯異常，方便 API 層統一處理

分類：
- ValidationError：輸入格式錯誤（例如聊天訊息過長）
- PermissionDenied：身分不符（非建立者、非參與者、未受邀）
- StateConflictError：狀態衝突（非法轉換、CAS 失敗、Session 已唯讀）
- NotFoundError：找不到資源（Session、邀請碼、參與者）
- TransportError：推播通道失敗（只在 client 端出現，會被同步層吸收）
"""


class FocusSessionException(Exception):
    """所有 Focus Session 異常的基類"""
    pass


class ValidationError(FocusSessionException):
    """輸入資料不合法"""
    pass


class PermissionDenied(FocusSessionException):
    """沒有權限執行這個動作"""
    pass


class NotAuthenticated(PermissionDenied):
    """缺少已驗證的身分"""
    pass


# ============ 狀態相關異常 ============

class StateConflictError(FocusSessionException):
    """
    狀態衝突

    兩種情況：
    - 從目前狀態不能執行這個動作（非法轉換）
    - Conditional write 失敗：讀到的狀態已經過期（被其他人搶先寫入）
    """
    def __init__(self, message, current_status=None):
        self.current_status = current_status
        super().__init__(message)


class StaleWriteError(StateConflictError):
    """Conditional write 失敗：讀到的 status / version 已經過期，可以重讀後重試"""
    pass


# ============ 找不到資源 ============

class NotFoundError(FocusSessionException):
    """資源不存在"""
    pass


class SessionNotFound(NotFoundError):
    """Session 不存在"""
    def __init__(self, session_id):
        self.session_id = session_id
        super().__init__(f"Session {session_id} not found")


class InviteNotFound(NotFoundError):
    """邀請碼無效或已過期（Session 已結束）"""
    def __init__(self, invite_code):
        self.invite_code = invite_code
        super().__init__(f"Invite {invite_code} is invalid or expired")


class ParticipantNotFound(NotFoundError):
    """使用者不是這個 Session 的參與者"""
    pass


# ============ 傳輸層異常 ============

class TransportError(FocusSessionException):
    """推播或請求通道失敗（join/send 失敗、連線中斷）"""
    pass
