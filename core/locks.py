"""
並發控制工具

Session 的寫入採用 Compare-and-swap（樂觀並發控制），不使用鎖：

    UPDATE focus_sessions
       SET ..., version = version + 1
     WHERE id = :id AND status = :expected_status AND version = :expected_version

- 影響 1 筆：寫入成功
- 影響 0 筆：有人先改過了（或 Session 不存在），呼叫端要重讀再決定

status 與 participant set 都走同一條 conditional write（join/leave 也會 bump version），
所以 join 跟狀態轉換同時發生時不會有 lost update。
"""
import logging
from functools import wraps

from sqlalchemy.orm import Session

from models import FocusSession, SessionStatus
from core.exceptions import StaleWriteError

logger = logging.getLogger(__name__)


def compare_and_swap(
    db: Session,
    session: FocusSession,
    expected_status: SessionStatus,
    expected_version: int,
    **values,
) -> None:
    """
    條件式寫入一個 Session

    參數：
        db: SQLAlchemy Session
        session: 先前讀到的 FocusSession（寫入成功後會 refresh）
        expected_status: 讀取時看到的 status
        expected_version: 讀取時看到的 version
        values: 要更新的欄位

    異常：
        StaleWriteError: status / version 已經不是預期值

    注意：
        - 必須在 transaction 內使用（由 @transactional 負責 commit 或 rollback）
    """
    values["version"] = expected_version + 1
    updated = db.query(FocusSession).filter(
        FocusSession.id == session.id,
        FocusSession.status == expected_status,
        FocusSession.version == expected_version,
    ).update(values, synchronize_session=False)

    if updated != 1:
        # 回報資料庫裡目前的 status（Session 不存在時為 None）
        current_status = db.query(FocusSession.status).filter(FocusSession.id == session.id).scalar()
        logger.warning(
            f"Conditional write lost for session {session.id} "
            f"(expected status={expected_status.value}, version={expected_version})"
        )
        raise StaleWriteError(
            f"Session {session.id} changed concurrently (expected {expected_status.value})",
            current_status=current_status,
        )

    db.refresh(session)


def retry_on_conflict(attempts: int = 2):
    """
    CAS 失敗時重讀重試的 decorator

    使用方式：
        @staticmethod
        @retry_on_conflict()
        @transactional
        def transition(db, session_id, ...):
            ...

    每次重試都重新執行整個 transactional 函式（也就是重新讀取 Session），
    最後一次仍然失敗就把 StaleWriteError 往上拋。
    """
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            for attempt in range(1, attempts + 1):
                try:
                    return func(*args, **kwargs)
                except StaleWriteError:
                    if attempt == attempts:
                        raise
                    logger.info(f"Retrying {func.__name__} after stale write (attempt {attempt})")
        return wrapper
    return decorator
