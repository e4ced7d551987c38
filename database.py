from sqlalchemy import create_engine
from sqlalchemy.ext.declarative import declarative_base
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool
from pydantic_settings import BaseSettings
from functools import lru_cache, wraps
import logging

from core.exceptions import FocusSessionException

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    database_url: str = "sqlite:///./focus_sessions.db"
    log_level: str = "INFO"

    # Natural-transition sweep
    sweep_enabled: bool = True
    sweep_interval_seconds: float = 5.0
    timer_sync_interval_seconds: float = 10.0

    cooldown_minutes: int = 5
    max_chat_message_length: int = 500
    cors_origins: list[str] = ["*"]

    class Config:
        env_file = ".env"


@lru_cache()
def get_settings():
    return Settings()


settings = get_settings()


def _engine_kwargs(url: str) -> dict:
    kwargs = {"pool_pre_ping": True}
    if url.startswith("sqlite"):
        # SQLite 連線會被 FastAPI threadpool 內的多個執行緒共用
        kwargs["connect_args"] = {"check_same_thread": False}
        if url in ("sqlite://", "sqlite:///:memory:"):
            # in-memory 資料庫只存在於單一連線上
            kwargs["poolclass"] = StaticPool
    return kwargs


engine = create_engine(settings.database_url, **_engine_kwargs(settings.database_url))
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def get_db():
    """
    FastAPI dependency：提供 Database Session

    使用 yield 確保 session 在請求結束後會被關閉
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def transactional(func):
    """
    Transaction decorator：確保資料庫操作的原子性

    使用方式：
        @transactional
        def some_business_logic(db: Session, ...):
            session = FocusSession(...)
            db.add(session)
            queue_event(db, "session", event)
            # 不需要手動 commit，decorator 會處理

    commit 成功後：
        - 透過 queue_event 排隊的事件才會交給 Broadcaster 發送

    如果函式內發生異常：
        - 自動 rollback
        - 排隊中的事件全部丟棄（不會發送沒有落地的狀態）
        - 異常會被重新拋出（讓上層處理）

    注意：
        - 第一個參數必須是 db: Session
        - 不要在函式內手動 commit（decorator 會處理）
        - 不要巢狀呼叫另一個 @transactional 函式
    """
    # 避免 circular import：core.events 需要 broadcaster，broadcaster 需要 exceptions
    from core.events import dispatch_pending_events, discard_pending_events

    @wraps(func)
    def wrapper(*args, **kwargs):
        # 找出 db session（可能在 args 或 kwargs）
        db = None
        if args and isinstance(args[0], Session):
            db = args[0]
        elif 'db' in kwargs:
            db = kwargs['db']

        if db is None:
            raise ValueError(
                f"@transactional requires 'db: Session' as first argument, "
                f"but got args={args}, kwargs={kwargs}"
            )

        try:
            result = func(*args, **kwargs)
            db.commit()
        except Exception as e:
            if isinstance(e, FocusSessionException):
                logger.warning(f"Transaction rolled back in {func.__name__}: {e}")
            else:
                logger.error(f"Transaction failed in {func.__name__}: {e}", exc_info=True)
            db.rollback()
            discard_pending_events(db)
            raise

        dispatch_pending_events(db)
        return result

    return wrapper
