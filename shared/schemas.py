"""
Shared Pydantic schemas for the Teams meeting agent.
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utc_now() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class MeetingStatus(str, Enum):
    """Meeting status enumeration."""

    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class ScheduleStatus(str, Enum):
    """Schedule record status enumeration."""

    SCHEDULED = "scheduled"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class CompletionReason(str, Enum):
    """Why a schedule record was completed."""

    JOINED = "joined"
    MISSED = "missed"
    ERROR = "error"
    ALREADY_JOINED = "already_joined"
    MEETING_NOT_FOUND = "meeting_not_found"


class AttendanceStatus(str, Enum):
    ATTENDING = "attending"
    LEFT = "left"


class MessageCategory(str, Enum):
    """Chat message category enumeration."""

    QUESTION = "question"
    ACTION_ITEM = "action_item"
    DECISION = "decision"
    RESOURCE_SHARING = "resource_sharing"
    DISCUSSION = "discussion"


class Urgency(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class Sentiment(str, Enum):
    POSITIVE = "positive"
    NEUTRAL = "neutral"
    NEGATIVE = "negative"


class Record(BaseModel):
    """Base for persisted documents."""

    model_config = ConfigDict(use_enum_values=True, extra="ignore", validate_default=True)

    def to_doc(self) -> Dict[str, Any]:
        """Document representation for the store."""
        return self.model_dump()


class AgentConfig(BaseModel):
    """Per-meeting agent behaviour."""

    auto_join: bool = True
    enable_chat_capture: bool = True
    generate_summary: bool = True


class Meeting(Record):
    """Teams meeting owned by a user."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    user_id: str
    subject: str
    description: Optional[str] = None
    start_time: datetime
    end_time: datetime
    attendees: List[str] = Field(default_factory=list)
    status: MeetingStatus = MeetingStatus.SCHEDULED
    graph_event_id: Optional[str] = None
    join_url: Optional[str] = None
    web_url: Optional[str] = None
    organizer_email: Optional[str] = None
    agent_attended: bool = False
    agent_config: AgentConfig = Field(default_factory=AgentConfig)
    agent_joined_at: Optional[datetime] = None
    agent_left_at: Optional[datetime] = None
    auto_join_error: Optional[str] = None
    has_summary: bool = False
    summary_id: Optional[str] = None
    last_summary_generated: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @field_validator(
        "start_time", "end_time", "agent_joined_at", "agent_left_at",
        "last_summary_generated", "cancelled_at", "created_at", "updated_at",
    )
    @classmethod
    def _utc(cls, value):
        return ensure_utc(value)

    @property
    def duration_minutes(self) -> int:
        return int((self.end_time - self.start_time).total_seconds() // 60)


class ScheduleRecord(Record):
    """Auto-join schedule for one meeting."""

    id: str
    meeting_id: str
    user_id: str
    scheduled_join_time: datetime
    status: ScheduleStatus = ScheduleStatus.SCHEDULED
    auto_join_enabled: bool = True
    attempts: int = 0
    last_error: Optional[str] = None
    completion_reason: Optional[CompletionReason] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @field_validator(
        "scheduled_join_time", "completed_at", "cancelled_at", "created_at", "updated_at"
    )
    @classmethod
    def _utc(cls, value):
        return ensure_utc(value)

    @staticmethod
    def id_for(meeting_id: str) -> str:
        return f"schedule_{meeting_id}"


class AttendanceRecord(Record):
    """Durable attendance state, keyed by meeting id."""

    id: str
    user_id: str
    status: AttendanceStatus = AttendanceStatus.ATTENDING
    joined_at: datetime = Field(default_factory=utc_now)
    left_at: Optional[datetime] = None
    leave_deadline: datetime
    chat_id: Optional[str] = None
    last_capture_time: Optional[datetime] = None
    message_count: int = 0
    question_count: int = 0
    updated_at: datetime = Field(default_factory=utc_now)

    @field_validator("joined_at", "left_at", "leave_deadline", "last_capture_time", "updated_at")
    @classmethod
    def _utc(cls, value):
        return ensure_utc(value)


class ChatMessageRecord(Record):
    """Captured chat message. Immutable once written."""

    id: str
    meeting_id: str
    sender: str
    sender_id: Optional[str] = None
    content: str
    timestamp: datetime
    message_type: str = "text"
    category: MessageCategory = MessageCategory.DISCUSSION
    is_question: bool = False
    is_action_item: bool = False
    is_decision: bool = False
    urgency: Urgency = Urgency.LOW
    sentiment: Sentiment = Sentiment.NEUTRAL
    mentions: List[str] = Field(default_factory=list)
    shared_resource: bool = False
    key_topics: List[str] = Field(default_factory=list)
    assignee: Optional[str] = None
    deadline: Optional[str] = None
    requires_follow_up: bool = False
    analysis_source: str = "keywords"
    captured_at: datetime = Field(default_factory=utc_now)

    @field_validator("timestamp", "captured_at")
    @classmethod
    def _utc(cls, value):
        return ensure_utc(value)


class ActionItem(BaseModel):
    """Action item extracted from chat."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    description: str
    assignee: Optional[str] = None
    due_date: Optional[str] = None
    priority: str = "medium"
    source_message_id: Optional[str] = None
    source: str = "chat"
    status: str = "pending"


class QualityScores(BaseModel):
    overall: int = 0
    participation: float = 0.0
    productivity: float = 0.0
    clarity: float = 7.0
    action_oriented: float = 0.0


class MeetingSummary(Record):
    """Generated summary for a meeting. The most recent one wins."""

    id: str = Field(default_factory=lambda: f"summary_{uuid4()}")
    meeting_id: str
    user_id: Optional[str] = None
    meeting_subject: str = ""
    generated_at: datetime = Field(default_factory=utc_now)
    executive_summary: str = ""
    key_discussion_points: List[str] = Field(default_factory=list)
    decisions_and_outcomes: List[Dict[str, Any]] = Field(default_factory=list)
    next_steps: List[str] = Field(default_factory=list)
    key_insights: List[str] = Field(default_factory=list)
    action_items: List[ActionItem] = Field(default_factory=list)
    participant_insights: Dict[str, Any] = Field(default_factory=dict)
    metrics: Dict[str, Any] = Field(default_factory=dict)
    quality_scores: QualityScores = Field(default_factory=QualityScores)
    follow_up_recommendations: List[Dict[str, Any]] = Field(default_factory=list)
    ai_model: str = "basic"

    @field_validator("generated_at")
    @classmethod
    def _utc(cls, value):
        return ensure_utc(value)


class MeetingNotification(Record):
    """Notification raised from an urgent or actionable chat message."""

    id: str = Field(default_factory=lambda: f"notification_{uuid4()}")
    meeting_id: str
    message_id: str
    notification_type: str
    content: str
    sender: str
    urgency: Urgency = Urgency.LOW
    created_at: datetime = Field(default_factory=utc_now)
    read: bool = False


class Reminder(Record):
    """Follow-up reminder for an action item."""

    id: str = Field(default_factory=lambda: f"reminder_{uuid4()}")
    meeting_id: str
    user_id: Optional[str] = None
    action_item_id: str
    description: str
    assignee: Optional[str] = None
    due_date: Optional[str] = None
    status: str = "pending"
    created_at: datetime = Field(default_factory=utc_now)


class DeadLetter(Record):
    """Background failure surfaced to operators."""

    id: str = Field(default_factory=lambda: f"failure_{uuid4()}")
    meeting_id: str
    operation: str
    error: str
    attempts: int = 1
    created_at: datetime = Field(default_factory=utc_now)
