"""
Pydantic models for the Teams agent service.

Persisted records live in shared schemas; these are the in-flight results the
agent services hand to each other and to the API.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from shared.schemas import (
    AttendanceRecord,
    ChatMessageRecord,
    Meeting,
    MeetingSummary,
    MessageCategory,
    ScheduleRecord,
    Sentiment,
    Urgency,
    utc_now,
)


class MessageAnalysis(BaseModel):
    """Derived tags for one chat message."""

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
    source: str = "keywords"


class ParticipantStats(BaseModel):
    message_count: int = 0
    questions: int = 0
    action_items: int = 0
    decisions: int = 0
    first_message: Optional[datetime] = None
    last_message: Optional[datetime] = None


class ChatAnalysis(BaseModel):
    """Aggregate view over the captured chat of a meeting."""

    meeting_id: str
    total_messages: int = 0
    categorized_counts: Dict[str, int] = Field(default_factory=dict)
    participant_analysis: Dict[str, ParticipantStats] = Field(default_factory=dict)
    timeline: Dict[str, int] = Field(default_factory=dict)
    most_active_participant: Optional[str] = None
    urgent_messages: int = 0


class JoinResult(BaseModel):
    success: bool = True
    message: str
    meeting_id: str
    already_attending: bool = False
    attendance: Optional[AttendanceRecord] = None
    capabilities: List[str] = Field(default_factory=list)


class LeaveResult(BaseModel):
    success: bool = True
    message: str
    meeting_id: str
    was_attending: bool = True
    note: Optional[str] = None
    summary_id: Optional[str] = None
    summary_error: Optional[str] = None
    left_at: datetime = Field(default_factory=utc_now)


class ScheduleOutcome(BaseModel):
    """Result of scheduling or processing a schedule record."""

    schedule: ScheduleRecord
    joined: bool = False
    error: Optional[str] = None


class SchedulerStatus(BaseModel):
    is_running: bool
    jobs: List[Dict[str, Any]] = Field(default_factory=list)
    pending_schedules: int = 0
    active_leave_timers: int = 0
    auto_join_enabled: bool = True


class CaptureStatus(BaseModel):
    active_captures: int = 0
    meetings: List[Dict[str, Any]] = Field(default_factory=list)


__all__ = [
    "AttendanceRecord",
    "CaptureStatus",
    "ChatAnalysis",
    "ChatMessageRecord",
    "JoinResult",
    "LeaveResult",
    "Meeting",
    "MeetingSummary",
    "MessageAnalysis",
    "ParticipantStats",
    "ScheduleOutcome",
    "ScheduleRecord",
    "SchedulerStatus",
]
