"""
共用列舉：server（models）與 client 都會用到，不依賴資料庫
"""
import enum


class SessionStatus(str, enum.Enum):
    WAITING = "waiting"
    WARMUP = "warmup"
    FOCUSING = "focusing"
    BREAK = "break"
    COOLDOWN = "cooldown"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({SessionStatus.COMPLETED, SessionStatus.CANCELLED})

# 計時中的狀態：由 Sweeper 負責推進
TIMED_STATUSES = frozenset({SessionStatus.FOCUSING, SessionStatus.BREAK, SessionStatus.COOLDOWN})

# 新參與者只能在開始前加入
JOINABLE_STATUSES = frozenset({SessionStatus.WAITING, SessionStatus.WARMUP})


class Reaction(str, enum.Enum):
    FOCUS = "focus"
    ENERGY = "energy"
    BREAK = "break"


class ParticipantOutcome(str, enum.Enum):
    COMPLETED = "completed"
    PARTIAL = "partial"
    INTERRUPTED = "interrupted"
