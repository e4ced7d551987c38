"""
API / 事件 Schema

Request / Response 給 HTTP 使用；SessionEvent / ChatEvent 是推播通道上的
tagged union（以 type 欄位辨識），server 與 client 共用同一份定義。
"""
from datetime import datetime
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator

from enums import ParticipantOutcome, Reaction, SessionStatus


# ============ Timer ============

class TimerSnapshot(BaseModel):
    remaining_seconds: int
    elapsed_seconds: int
    target_duration_minutes: int
    server_timestamp: int  # epoch ms
    current_repetition: int = 0
    repetitions: int = 1


# ============ Session ============

class SessionCreate(BaseModel):
    intent: str = Field(default="", max_length=200)
    topic: str = Field(default="", max_length=100)
    min_duration: int = Field(ge=5, le=120)
    max_duration: int = Field(ge=5, le=120)
    repetitions: int = Field(default=1, ge=1, le=10)
    break_duration: int = Field(default=5, ge=1, le=30)
    break_interval: int = Field(default=1, ge=1, le=10)
    is_private: bool = False
    chat_enabled: bool = False
    scheduled_start_at: Optional[datetime] = None

    @model_validator(mode="after")
    def check_duration_range(self):
        if self.min_duration > self.max_duration:
            raise ValueError("min_duration must not exceed max_duration")
        return self


class ParticipantResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    odonym: str
    is_active: bool
    is_creator: bool
    last_reaction: Optional[Reaction] = None
    joined_at: datetime


class MyParticipation(BaseModel):
    odonym: str
    is_active: bool
    is_creator: bool


class SessionResponse(BaseModel):
    """Session 的權威快照（client 每次 refetch 都拿整份）"""
    id: str
    intent: str
    topic: str
    status: SessionStatus
    version: int
    created_at: datetime
    scheduled_start_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    min_duration: int
    max_duration: int
    repetitions: int
    current_repetition: int
    break_duration: int
    break_interval: int
    is_private: bool
    chat_enabled: bool
    is_creator: bool
    invite_code: Optional[str] = None
    participant_count: int
    participants: List[ParticipantResponse]
    my_participation: Optional[MyParticipation] = None
    timer: TimerSnapshot


class SessionListItem(BaseModel):
    id: str
    intent: str
    topic: str
    status: SessionStatus
    min_duration: int
    max_duration: int
    participant_count: int
    created_at: datetime
    chat_enabled: bool


class ActiveSessionResponse(BaseModel):
    session_id: str
    topic: str
    status: SessionStatus
    is_active_participant: bool
    timer: TimerSnapshot


class InviteResponse(BaseModel):
    session_id: str
    topic: str
    status: SessionStatus
    is_private: bool


class JoinResponse(BaseModel):
    odonym: str
    rejoined: bool


class ReactionSubmit(BaseModel):
    reaction: Reaction


class ChatToggle(BaseModel):
    enabled: bool


class StatusResponse(BaseModel):
    status: str = "ok"


class OutcomeSubmit(BaseModel):
    outcome: ParticipantOutcome


class CohortStats(BaseModel):
    total_participants: int
    completed_count: int


class SessionSummaryResponse(BaseModel):
    """個人的 Session 摘要（結束畫面）"""
    session_id: str
    intent: str
    topic: str
    status: SessionStatus
    duration_minutes: int
    user_outcome: Optional[ParticipantOutcome] = None
    cohort_stats: CohortStats
    focus_minutes_earned: int


# ============ Chat ============

class ChatMessageSubmit(BaseModel):
    text: str
    # client 自行產生的 UUID，optimistic entry 與正式訊息共用同一個 id
    client_message_id: Optional[str] = Field(default=None, max_length=36)


class ChatMessageResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    session_id: str
    odonym: str
    text: str
    sent_at: datetime


class TypingSubmit(BaseModel):
    is_typing: bool = True


# ============ Session events ============

class ParticipantInfo(BaseModel):
    odonym: str
    is_active: bool
    last_reaction: Optional[Reaction] = None


class _EventBase(BaseModel):
    session_id: str
    timestamp: int = 0  # epoch ms，由 Broadcaster 在 emit 時補上單調遞增的值


class StatusChangedEvent(_EventBase):
    type: Literal["status_changed"] = "status_changed"
    status: SessionStatus
    previous_status: SessionStatus
    timer: TimerSnapshot


class ParticipantJoinedEvent(_EventBase):
    type: Literal["participant_joined"] = "participant_joined"
    participant: ParticipantInfo
    participant_count: int


class ParticipantLeftEvent(_EventBase):
    type: Literal["participant_left"] = "participant_left"
    odonym: str
    participant_count: int


class ParticipantReactionEvent(_EventBase):
    type: Literal["participant_reaction"] = "participant_reaction"
    odonym: str
    reaction: Reaction


class TimerSyncEvent(_EventBase):
    type: Literal["timer_sync"] = "timer_sync"
    status: SessionStatus
    timer: TimerSnapshot


class ChatToggledEvent(_EventBase):
    type: Literal["chat_toggled"] = "chat_toggled"
    chat_enabled: bool


SessionEvent = Annotated[
    Union[
        StatusChangedEvent,
        ParticipantJoinedEvent,
        ParticipantLeftEvent,
        ParticipantReactionEvent,
        TimerSyncEvent,
        ChatToggledEvent,
    ],
    Field(discriminator="type"),
]


# ============ Chat events ============

class ChatMessageEvent(_EventBase):
    type: Literal["message"] = "message"
    message: ChatMessageResponse


class TypingEvent(_EventBase):
    type: Literal["typing"] = "typing"
    odonym: str
    is_typing: bool


ChatEvent = Annotated[
    Union[ChatMessageEvent, TypingEvent],
    Field(discriminator="type"),
]

session_event_adapter = TypeAdapter(SessionEvent)
chat_event_adapter = TypeAdapter(ChatEvent)

EVENT_ADAPTERS = {
    "session": session_event_adapter,
    "chat": chat_event_adapter,
}
