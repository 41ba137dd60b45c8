"""
Teams Agent Service.

Schedules Microsoft Teams meetings through Graph, lets an AI agent attend them
(join/leave bookkeeping plus chat capture), classifies chat messages and
produces meeting summaries.
"""

# Import shared models
from shared.schemas import (
    AttendanceRecord,
    ChatMessageRecord,
    Meeting,
    MeetingStatus,
    MeetingSummary,
    ScheduleRecord,
    ScheduleStatus,
)

# Import agent-specific models
from .models import (
    ChatAnalysis,
    JoinResult,
    LeaveResult,
    MessageAnalysis,
)

# Import services
from .attendance import AttendanceService
from .chat_capture import ChatCaptureService
from .graph_client import GraphClient
from .llm_client import LLMClient
from .main import MeetingAgentService, create_meeting_agent_service
from .scheduler import MeetingScheduler
from .summary_service import SummaryService

__all__ = [
    # Shared models
    "AttendanceRecord",
    "ChatMessageRecord",
    "Meeting",
    "MeetingStatus",
    "MeetingSummary",
    "ScheduleRecord",
    "ScheduleStatus",
    # Agent-specific models
    "ChatAnalysis",
    "JoinResult",
    "LeaveResult",
    "MessageAnalysis",
    # Services
    "AttendanceService",
    "ChatCaptureService",
    "GraphClient",
    "LLMClient",
    "MeetingAgentService",
    "MeetingScheduler",
    "SummaryService",
    "create_meeting_agent_service",
]
