import os

# 必須在 import database 之前設定
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SWEEP_ENABLED"] = "false"

from datetime import datetime  # noqa: E402

import pytest  # noqa: E402

import models  # noqa: E402,F401  (註冊資料表)
from core.broadcaster import CallbackSubscriber  # noqa: E402
from core.events import get_broadcaster  # noqa: E402
from core.session_manager import SessionManager  # noqa: E402
from database import Base, SessionLocal, engine  # noqa: E402
from models import utcnow  # noqa: E402
from schemas import SessionCreate  # noqa: E402

CREATOR = "creator-1"


@pytest.fixture(autouse=True)
def fresh_state():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    get_broadcaster.cache_clear()
    yield
    get_broadcaster.cache_clear()


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


class EventRecorder:
    def __init__(self):
        self.events = []

    def __call__(self, channel, event):
        self.events.append((channel, event))

    def of_type(self, event_type):
        return [event for _, event in self.events if event.type == event_type]

    @property
    def types(self):
        return [event.type for _, event in self.events]


@pytest.fixture
def recorder():
    return EventRecorder()


@pytest.fixture
def watch(recorder):
    """把 recorder 加入某個 Session 的 channel"""
    def _watch(session_id, channel="session", identity="observer"):
        get_broadcaster().join(
            channel, session_id, CallbackSubscriber(f"recorder-{channel}", recorder, identity)
        )
        return recorder
    return _watch


@pytest.fixture
def create_session(db):
    """預設就是 25/30 分鐘、2 輪、休息 5 分鐘、每輪都休息"""
    def _create(creator=CREATOR, **overrides):
        data = dict(min_duration=25, max_duration=30, repetitions=2, break_duration=5, break_interval=1)
        data.update(overrides)
        return SessionManager.create_session(db, creator, SessionCreate(**data))
    return _create


@pytest.fixture
def t0() -> datetime:
    return utcnow().replace(microsecond=0)