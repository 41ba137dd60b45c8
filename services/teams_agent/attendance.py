"""
Agent attendance: join and leave bookkeeping for Teams meetings.

Joining marks the meeting in progress, writes the attendance record and starts
chat capture. Leaving stops capture, completes the meeting and produces the
summary. Leave is idempotent.
"""
import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional

from shared.config import get_settings
from shared.errors import AlreadyEndedError, NotFoundError, NotYetJoinableError
from shared.schemas import (
    AttendanceRecord,
    AttendanceStatus,
    Meeting,
    MeetingStatus,
    utc_now,
)
from .chat_capture import ChatCaptureService
from .models import JoinResult, LeaveResult
from .summary_service import SummaryService

logger = logging.getLogger(__name__)
settings = get_settings()

NOT_ATTENDING_NOTE = "Agent is not currently attending this meeting"

CAPABILITIES = [
    "chat_capture",
    "message_classification",
    "auto_insights",
    "summary_generation",
]


class AttendanceService:
    """Join/leave operations for the meeting agent."""

    def __init__(self, dao, chat_capture: ChatCaptureService, summary_service: SummaryService):
        self.dao = dao
        self.chat_capture = chat_capture
        self.summary_service = summary_service

    async def _load_meeting(self, meeting_id: str, user_id: Optional[str] = None) -> Meeting:
        meeting = await self.dao.get_meeting(meeting_id, user_id)
        if meeting is None:
            raise NotFoundError("Meeting not found")
        return meeting

    async def get_attendance(self, meeting_id: str) -> Optional[AttendanceRecord]:
        doc = await self.dao.get_item("attendance", meeting_id)
        return AttendanceRecord(**doc) if doc else None

    async def is_attending(self, meeting_id: str) -> bool:
        record = await self.get_attendance(meeting_id)
        return record is not None and record.status == AttendanceStatus.ATTENDING.value

    async def join(self, meeting_id: str, user_id: Optional[str] = None) -> JoinResult:
        """Join a meeting inside its window of [start - buffer, end]."""
        meeting = await self._load_meeting(meeting_id, user_id)
        now = utc_now()

        earliest = meeting.start_time - timedelta(minutes=settings.join_early_buffer_minutes)
        if now < earliest:
            raise NotYetJoinableError(
                f"Meeting has not started yet (joins {settings.join_early_buffer_minutes} "
                "minutes before start time)"
            )
        if now > meeting.end_time:
            raise AlreadyEndedError("Meeting has already ended")

        existing = await self.get_attendance(meeting.id)
        if existing and existing.status == AttendanceStatus.ATTENDING.value:
            logger.info(f"Agent already attending meeting {meeting.id}")
            if meeting.agent_config.enable_chat_capture and not self.chat_capture.is_capturing(meeting.id):
                await self.chat_capture.start(meeting, existing)
            return JoinResult(
                message="Agent is already attending this meeting",
                meeting_id=meeting.id,
                already_attending=True,
                attendance=existing,
                capabilities=CAPABILITIES,
            )

        attendance = AttendanceRecord(
            id=meeting.id,
            user_id=meeting.user_id,
            joined_at=now,
            leave_deadline=meeting.end_time,
        )
        await self.dao.upsert_item("attendance", attendance.to_doc())
        await self.dao.update_meeting(meeting.id, {
            "agent_attended": True,
            "agent_joined_at": now,
            "status": MeetingStatus.IN_PROGRESS.value,
            "auto_join_error": None,
        })

        if meeting.agent_config.enable_chat_capture:
            capture = await self.chat_capture.start(meeting)
            if capture.get("chat_id"):
                attendance.chat_id = capture["chat_id"]

        logger.info(
            f"🤖 Agent joined meeting {meeting.id}",
            extra={"subject": meeting.subject, "leave_deadline": meeting.end_time.isoformat()},
        )
        return JoinResult(
            message=f"AI agent joined meeting: {meeting.subject}",
            meeting_id=meeting.id,
            attendance=attendance,
            capabilities=CAPABILITIES,
        )

    async def leave(self, meeting_id: str, user_id: Optional[str] = None) -> LeaveResult:
        """Leave a meeting. A second call is a successful no-op.

        Only the caller whose conditional update flips attendance from
        attending to left goes on to stop capture and summarize.
        """
        meeting = await self._load_meeting(meeting_id, user_id)

        now = utc_now()
        claimed = await self.dao.update_item(
            "attendance",
            meeting.id,
            {"status": AttendanceStatus.LEFT.value, "left_at": now},
            expected={"status": AttendanceStatus.ATTENDING.value},
        )
        if claimed is None:
            logger.warning(f"Leave requested for meeting {meeting.id} but agent is not attending")
            return LeaveResult(
                message="Agent was not attending this meeting",
                meeting_id=meeting.id,
                was_attending=False,
                note=NOT_ATTENDING_NOTE,
            )

        await self.chat_capture.stop(meeting.id)
        await self.dao.update_meeting(meeting.id, {
            "status": MeetingStatus.COMPLETED.value,
            "agent_left_at": now,
        })

        result = LeaveResult(
            message=f"AI agent left meeting: {meeting.subject}",
            meeting_id=meeting.id,
            left_at=now,
        )

        if meeting.agent_config.generate_summary and settings.meeting_summarization_enabled:
            try:
                summary = await self.summary_service.generate(meeting.id)
                result.summary_id = summary.id
                await self.chat_capture.post_to_meeting_chat(
                    meeting.id, self.summary_service.format_final_message(summary)
                )
            except Exception as e:
                logger.error(f"❌ Summary generation failed for meeting {meeting.id}: {e}", exc_info=True)
                result.summary_error = str(e)

        logger.info(f"👋 Agent left meeting {meeting.id}")
        return result

    async def list_active(self) -> List[AttendanceRecord]:
        docs = await self.dao.query_items("attendance", {"status": AttendanceStatus.ATTENDING.value})
        return [AttendanceRecord(**doc) for doc in docs]

    async def get_attendance_summary(self, meeting_id: str, user_id: Optional[str] = None) -> Dict[str, Any]:
        meeting = await self._load_meeting(meeting_id, user_id)
        attendance = await self.get_attendance(meeting.id)
        analysis = await self.chat_capture.get_chat_analysis(meeting.id)
        return {
            "meeting_id": meeting.id,
            "subject": meeting.subject,
            "meeting_status": meeting.status,
            "is_attending": bool(attendance and attendance.status == AttendanceStatus.ATTENDING.value),
            "attendance": attendance.model_dump() if attendance else None,
            "capturing": self.chat_capture.is_capturing(meeting.id),
            "total_messages": analysis.total_messages,
            "categorized_counts": analysis.categorized_counts,
            "most_active_participant": analysis.most_active_participant,
        }
