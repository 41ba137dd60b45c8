"""
Meeting service helpers for reusable meeting operations.
"""
import html
import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Dict, List, Optional

from shared.config import get_settings
from shared.errors import (
    ConflictError,
    NotFoundError,
    ServiceUnavailableError,
    UpstreamError,
    ValidationError,
)
from shared.schemas import AgentConfig, Meeting, MeetingStatus, ensure_utc, utc_now
from services.teams_agent.main import MeetingAgentService

from .dao import MongoDBDAO


logger = logging.getLogger(__name__)
settings = get_settings()


def normalize_attendees(attendees: Optional[List[str]]) -> List[str]:
    """Trim, lower-case, de-duplicate and validate attendee emails."""
    result: List[str] = []
    for raw in attendees or []:
        email = (raw or "").strip().lower()
        if not email:
            continue
        if "@" not in email or email.startswith("@") or email.endswith("@"):
            raise ValidationError(f"Invalid attendee email: {raw}")
        if email not in result:
            result.append(email)
    return result


def validate_time_range(start_time: datetime, end_time: datetime) -> None:
    if end_time <= start_time:
        raise ValidationError("End time must be after start time")
    if (end_time - start_time) > timedelta(minutes=settings.max_meeting_duration_minutes):
        raise ValidationError("Meeting duration cannot exceed 24 hours")


class ServiceMeeting:
    """Service layer for meeting creation and management."""

    def __init__(self, dao: MongoDBDAO, agent: MeetingAgentService):
        self.dao = dao
        self.agent = agent
        self.graph = agent.graph_client

    def _require_graph(self) -> None:
        if not self.graph.is_available():
            raise ServiceUnavailableError(
                "Microsoft Graph is not configured (AZURE_CLIENT_ID, AZURE_CLIENT_SECRET, MEETING_ORGANIZER_EMAIL)"
            )

    async def create_meeting(
        self,
        *,
        user_id: str,
        subject: Optional[str],
        start_time: Optional[datetime],
        end_time: Optional[datetime],
        description: Optional[str] = None,
        attendees: Optional[List[str]] = None,
        auto_join_agent: bool = True,
        enable_chat_capture: bool = True,
        generate_summary: bool = True,
        check_availability: bool = False,
    ) -> Dict[str, Any]:
        """Create the Teams event, persist the meeting and schedule the agent."""
        if not subject or not subject.strip() or start_time is None or end_time is None:
            raise ValidationError("subject, startTime and endTime are required")

        start_time, end_time = ensure_utc(start_time), ensure_utc(end_time)
        validate_time_range(start_time, end_time)
        emails = normalize_attendees(attendees)
        self._require_graph()

        logger.info(
            f"Creating meeting for user {user_id}: {subject}",
            extra={"attendees": len(emails), "auto_join": auto_join_agent},
        )

        availability = None
        if check_availability and emails:
            availability = await self.graph.check_availability(emails, start_time, end_time)
            if not availability["all_available"]:
                raise ConflictError(
                    "Some attendees are not available: " + ", ".join(availability["conflicts"]),
                    details={"availability": availability},
                )

        event = await self.graph.create_event(
            subject=subject.strip(),
            start_time=start_time,
            end_time=end_time,
            attendees=emails,
            description=description,
        )

        meeting = Meeting(
            user_id=user_id,
            subject=subject.strip(),
            description=description,
            start_time=start_time,
            end_time=end_time,
            attendees=emails,
            graph_event_id=event.get("graph_event_id"),
            join_url=event.get("join_url"),
            web_url=event.get("web_url"),
            organizer_email=event.get("organizer_email"),
            agent_config=AgentConfig(
                auto_join=auto_join_agent,
                enable_chat_capture=enable_chat_capture,
                generate_summary=generate_summary,
            ),
        )
        await self.dao.create_meeting(meeting)

        agent_status: Dict[str, Any] = {
            "auto_join_enabled": auto_join_agent,
            "scheduled": False,
            "joined": False,
        }
        if auto_join_agent:
            try:
                outcome = await self.agent.scheduler.schedule(meeting)
                if outcome is not None:
                    agent_status.update({
                        "scheduled": True,
                        "joined": outcome.joined,
                        "scheduled_join_time": outcome.schedule.scheduled_join_time,
                        "schedule_status": outcome.schedule.status,
                        "error": outcome.error,
                    })
            except Exception as e:
                logger.error(f"❌ Failed to schedule auto-join for meeting {meeting.id}: {e}", exc_info=True)
                await self.dao.update_meeting(meeting.id, {"auto_join_error": str(e)})
                agent_status["error"] = str(e)

        meeting = await self.dao.get_meeting(meeting.id, user_id) or meeting
        logger.info(f"✅ Meeting created: {meeting.id}")
        return {"meeting": meeting, "agent_status": agent_status, "availability": availability}

    async def get_meeting(self, meeting_id: str, user_id: str) -> Meeting:
        meeting = await self.dao.get_meeting(meeting_id, user_id)
        if meeting is None:
            raise NotFoundError("Meeting not found")
        return meeting

    async def list_meetings(
        self, user_id: str, status: Optional[str] = None, limit: int = 50, offset: int = 0
    ) -> List[Meeting]:
        return await self.dao.get_meetings_by_user(user_id, status=status, limit=limit, offset=offset)

    async def update_meeting(
        self,
        meeting_id: str,
        user_id: str,
        *,
        subject: Optional[str] = None,
        description: Optional[str] = None,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        attendees: Optional[List[str]] = None,
    ) -> Meeting:
        """Update the Teams event and the stored meeting."""
        meeting = await self.get_meeting(meeting_id, user_id)
        if meeting.status in (MeetingStatus.CANCELLED.value, MeetingStatus.COMPLETED.value):
            raise ValidationError(f"Cannot update a {meeting.status} meeting")

        new_start = ensure_utc(start_time) or meeting.start_time
        new_end = ensure_utc(end_time) or meeting.end_time
        validate_time_range(new_start, new_end)
        emails = normalize_attendees(attendees) if attendees is not None else None

        updates: Dict[str, Any] = {}
        if subject is not None:
            if not subject.strip():
                raise ValidationError("subject cannot be empty")
            updates["subject"] = subject.strip()
        if description is not None:
            updates["description"] = description
        if start_time is not None:
            updates["start_time"] = new_start
        if end_time is not None:
            updates["end_time"] = new_end
        if emails is not None:
            updates["attendees"] = emails
        if not updates:
            return meeting

        if meeting.graph_event_id:
            self._require_graph()
            await self.graph.update_event(
                meeting.graph_event_id,
                subject=updates.get("subject"),
                description=updates.get("description"),
                start_time=updates.get("start_time"),
                end_time=updates.get("end_time"),
                attendees=updates.get("attendees"),
            )

        updated = await self.dao.update_meeting(meeting.id, updates)
        if updated is None:
            raise NotFoundError("Meeting not found")

        if "start_time" in updates and updated.status == MeetingStatus.SCHEDULED.value:
            await self.agent.scheduler.schedule(updated)
        if "end_time" in updates and await self.agent.attendance.is_attending(updated.id):
            self.agent.scheduler.arm_end_timer(updated.id, updated.end_time)
            await self.dao.update_item("attendance", updated.id, {"leave_deadline": updated.end_time})

        logger.info(f"Updated meeting {meeting.id}", extra={"fields": list(updates)})
        return updated

    async def cancel_meeting(self, meeting_id: str, user_id: str, comment: str = "") -> Meeting:
        """Soft-cancel: the record stays, its status becomes cancelled."""
        meeting = await self.get_meeting(meeting_id, user_id)
        if meeting.status == MeetingStatus.CANCELLED.value:
            return meeting

        if meeting.graph_event_id and self.graph.is_available():
            try:
                await self.graph.cancel_event(meeting.graph_event_id, comment or "This meeting has been cancelled.")
            except UpstreamError as e:
                if e.upstream_status != 404:
                    raise
                logger.warning(f"Teams event for meeting {meeting.id} no longer exists")

        if await self.agent.attendance.is_attending(meeting.id):
            await self.agent.leave(meeting.id)
        await self.agent.scheduler.cancel(meeting.id)

        cancelled = await self.dao.update_meeting(meeting.id, {
            "status": MeetingStatus.CANCELLED.value,
            "cancelled_at": utc_now(),
        })
        logger.info(f"🚫 Meeting cancelled: {meeting.id}")
        return cancelled or meeting

    async def cancel_meetings_on_date(self, user_id: str, day: date) -> Dict[str, Any]:
        """Cancel every scheduled meeting starting on the given UTC day."""
        start = datetime.combine(day, time.min, tzinfo=timezone.utc)
        meetings = await self.dao.get_meetings_by_user(
            user_id,
            status=MeetingStatus.SCHEDULED.value,
            limit=500,
            start_after=start,
            start_before=start + timedelta(days=1),
        )
        cancelled, failed = [], []
        for meeting in meetings:
            try:
                await self.cancel_meeting(meeting.id, user_id)
                cancelled.append(meeting.id)
            except Exception as e:
                logger.error(f"Failed to cancel meeting {meeting.id}: {e}")
                failed.append({"meeting_id": meeting.id, "error": str(e)})
        return {"date": day.isoformat(), "cancelled": cancelled, "failed": failed}

    async def get_meeting_status(self, meeting_id: str, user_id: str) -> Dict[str, Any]:
        """Meeting timing plus the agent's attendance and capture state."""
        meeting = await self.get_meeting(meeting_id, user_id)
        now = utc_now()
        attendance = await self.agent.attendance.get_attendance_summary(meeting.id, user_id)
        capture = next(
            (m for m in self.agent.chat_capture.get_status().meetings if m["meeting_id"] == meeting.id),
            None,
        )
        return {
            "meeting": meeting,
            "timing": {
                "minutes_until_start": int((meeting.start_time - now).total_seconds() // 60),
                "minutes_since_start": int((now - meeting.start_time).total_seconds() // 60),
                "meeting_duration": meeting.duration_minutes,
                "has_started": now >= meeting.start_time,
                "has_ended": now >= meeting.end_time,
            },
            "agent_status": {
                "is_attending": attendance["is_attending"],
                "attendance": attendance,
                "chat_capture": {
                    "is_active": capture is not None,
                    "message_count": attendance["total_messages"],
                    "details": capture,
                },
            },
            "timestamp": now,
        }

    async def send_direct_message(
        self,
        message: Optional[str],
        *,
        email: Optional[str] = None,
        name: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Send a one-on-one Teams message to a user given by email or display name."""
        if not message or not message.strip() or not (email or name):
            raise ValidationError("A recipient and a message are required")
        self._require_graph()

        if email:
            emails = normalize_attendees([email])
            if not emails:
                raise ValidationError("A recipient and a message are required")
            recipient = {"email": emails[0], "display_name": None}
        else:
            matches = await self.graph.resolve_users([name])
            if not matches or not matches[0].get("email"):
                raise NotFoundError(f"No Teams user found for {name}")
            recipient = {"email": matches[0]["email"], "display_name": matches[0]["display_name"]}

        logger.info(f"📨 Sending message to: {recipient['email']}")
        html_body = html.escape(message.strip()).replace("\n", "<br>")
        result = await self.graph.send_user_message(recipient["email"], html_body)
        return {"recipient": recipient, **result}


# Dependency injection
_agent_instance: Optional[MeetingAgentService] = None


def set_agent_instance(agent: MeetingAgentService):
    """Set the global agent service instance."""
    global _agent_instance
    _agent_instance = agent


def get_agent() -> MeetingAgentService:
    """Get the agent service for dependency injection."""
    if _agent_instance is None:
        raise RuntimeError("Agent service not initialized. Call set_agent_instance() first.")
    return _agent_instance
