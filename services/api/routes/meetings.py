"""
FastAPI routes for Teams meetings and the meeting agent.

This module provides REST endpoints for creating and managing meetings,
controlling agent attendance, and reading chat analysis and summaries.
"""
import logging
from datetime import date, datetime
from typing import List, NoReturn, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from services.api.auth import get_current_user
from services.api.dao import MongoDBDAO, get_dao
from services.api.service_meeting import ServiceMeeting, get_agent
from services.teams_agent.main import MeetingAgentService
from shared.config import get_settings
from shared.errors import MeetingAgentError
from shared.schemas import MeetingStatus

logger = logging.getLogger(__name__)
settings = get_settings()

# Create router
router = APIRouter()


class CamelModel(BaseModel):
    """Accepts both camelCase and snake_case keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class MeetingCreateRequest(CamelModel):
    """Request to create a Teams meeting."""

    subject: Optional[str] = None
    description: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    attendees: List[str] = []
    auto_join_agent: bool = True
    enable_chat_capture: bool = True
    generate_summary: bool = True
    check_availability: bool = False


class MeetingUpdateRequest(CamelModel):
    subject: Optional[str] = None
    description: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    attendees: Optional[List[str]] = None


class AvailabilityRequest(CamelModel):
    attendees: List[str]
    start_time: datetime
    end_time: datetime


class SendMessageRequest(CamelModel):
    email: Optional[str] = None
    message: Optional[str] = None


class SendMessageByNameRequest(CamelModel):
    name: Optional[str] = None
    message: Optional[str] = None


def get_meeting_service(
    dao: MongoDBDAO = Depends(get_dao),
    agent: MeetingAgentService = Depends(get_agent),
) -> ServiceMeeting:
    return ServiceMeeting(dao, agent)


def _raise_http(e: Exception, action: str) -> NoReturn:
    """Translate a service error into an HTTP error."""
    if isinstance(e, MeetingAgentError):
        if e.status_code >= 500:
            logger.error(f"Error {action}: {e}")
        raise HTTPException(status_code=e.status_code, detail=str(e))
    logger.error(f"Unexpected error {action}: {e}", exc_info=True)
    raise HTTPException(status_code=500, detail=f"Failed {action}: {e}")


@router.get("/status")
async def get_agent_status(agent: MeetingAgentService = Depends(get_agent)):
    """Availability of Graph and AI, plus scheduler and capture state."""
    try:
        return await agent.get_status()
    except Exception as e:
        _raise_http(e, "getting agent status")


@router.post("/create", status_code=201)
async def create_meeting(
    request: MeetingCreateRequest,
    current_user: dict = Depends(get_current_user),
    meeting_service: ServiceMeeting = Depends(get_meeting_service),
):
    """Create a Teams meeting and schedule the agent to join it."""
    try:
        result = await meeting_service.create_meeting(
            user_id=current_user["user_id"],
            subject=request.subject,
            start_time=request.start_time,
            end_time=request.end_time,
            description=request.description,
            attendees=request.attendees,
            auto_join_agent=request.auto_join_agent,
            enable_chat_capture=request.enable_chat_capture,
            generate_summary=request.generate_summary,
            check_availability=request.check_availability,
        )
        return {"success": True, "message": "Teams meeting created successfully", **result}
    except Exception as e:
        _raise_http(e, "creating meeting")


@router.get("/")
async def get_meetings(
    status: Optional[MeetingStatus] = None,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    current_user: dict = Depends(get_current_user),
    meeting_service: ServiceMeeting = Depends(get_meeting_service),
):
    """Get list of meetings for the user with optional filtering."""
    try:
        meetings = await meeting_service.list_meetings(
            current_user["user_id"],
            status=status.value if status else None,
            limit=limit,
            offset=offset,
        )
        return {"meetings": meetings, "count": len(meetings), "limit": limit, "offset": offset}
    except Exception as e:
        _raise_http(e, "retrieving meetings")


@router.delete("/")
async def cancel_meetings_by_date(
    day: date = Query(..., alias="date", description="UTC day, YYYY-MM-DD"),
    current_user: dict = Depends(get_current_user),
    meeting_service: ServiceMeeting = Depends(get_meeting_service),
):
    """Cancel every scheduled meeting on a day."""
    try:
        return await meeting_service.cancel_meetings_on_date(current_user["user_id"], day)
    except Exception as e:
        _raise_http(e, "cancelling meetings")


# Specific routes must come before parameterized routes
@router.get("/scheduler/failures")
async def get_scheduler_failures(
    limit: int = Query(50, ge=1, le=500),
    agent: MeetingAgentService = Depends(get_agent),
):
    """Background join/leave failures that need operator attention."""
    try:
        failures = await agent.scheduler.get_failures(limit=limit)
        return {"failures": failures, "count": len(failures)}
    except Exception as e:
        _raise_http(e, "retrieving scheduler failures")


@router.post("/scheduler/check")
async def force_scheduler_check(agent: MeetingAgentService = Depends(get_agent)):
    try:
        processed = await agent.scheduler.force_check()
        return {"success": True, "processed": processed}
    except Exception as e:
        _raise_http(e, "checking schedules")


@router.post("/availability")
async def check_availability(
    request: AvailabilityRequest,
    agent: MeetingAgentService = Depends(get_agent),
):
    """Free/busy check for a proposed time slot."""
    try:
        return await agent.graph_client.check_availability(
            request.attendees, request.start_time, request.end_time
        )
    except Exception as e:
        _raise_http(e, "checking availability")


@router.post("/send-message")
async def send_message(
    request: SendMessageRequest,
    meeting_service: ServiceMeeting = Depends(get_meeting_service),
):
    """Send a one-on-one Teams message to a user by email."""
    if not request.email:
        raise HTTPException(status_code=400, detail="Both 'email' and 'message' are required")
    try:
        result = await meeting_service.send_direct_message(request.message, email=request.email)
        return {"success": True, "message": f"Message sent to {result['recipient']['email']}", **result}
    except Exception as e:
        _raise_http(e, "sending message")


@router.post("/send-message-by-name")
async def send_message_by_name(
    request: SendMessageByNameRequest,
    meeting_service: ServiceMeeting = Depends(get_meeting_service),
):
    """Resolve a display name, then send it a one-on-one Teams message."""
    if not request.name:
        raise HTTPException(status_code=400, detail="Both 'name' and 'message' are required")
    try:
        result = await meeting_service.send_direct_message(request.message, name=request.name)
        recipient = result["recipient"]
        return {
            "success": True,
            "message": f"Message sent to {recipient['display_name'] or recipient['email']}",
            **result,
        }
    except Exception as e:
        _raise_http(e, "sending message")


@router.get("/{meeting_id}")
async def get_meeting(
    meeting_id: str,
    current_user: dict = Depends(get_current_user),
    meeting_service: ServiceMeeting = Depends(get_meeting_service),
):
    try:
        return await meeting_service.get_meeting(meeting_id, current_user["user_id"])
    except Exception as e:
        _raise_http(e, "retrieving meeting")


@router.patch("/{meeting_id}")
async def update_meeting(
    meeting_id: str,
    request: MeetingUpdateRequest,
    current_user: dict = Depends(get_current_user),
    meeting_service: ServiceMeeting = Depends(get_meeting_service),
):
    try:
        meeting = await meeting_service.update_meeting(
            meeting_id,
            current_user["user_id"],
            subject=request.subject,
            description=request.description,
            start_time=request.start_time,
            end_time=request.end_time,
            attendees=request.attendees,
        )
        return {"success": True, "meeting": meeting}
    except Exception as e:
        _raise_http(e, "updating meeting")


@router.delete("/{meeting_id}")
async def cancel_meeting(
    meeting_id: str,
    current_user: dict = Depends(get_current_user),
    meeting_service: ServiceMeeting = Depends(get_meeting_service),
):
    """Soft-cancel a meeting."""
    try:
        meeting = await meeting_service.cancel_meeting(meeting_id, current_user["user_id"])
        return {"success": True, "message": "Meeting cancelled", "meeting": meeting}
    except Exception as e:
        _raise_http(e, "cancelling meeting")


@router.post("/{meeting_id}/join-agent")
async def join_agent(
    meeting_id: str,
    current_user: dict = Depends(get_current_user),
    agent: MeetingAgentService = Depends(get_agent),
):
    """Make the agent join the meeting now."""
    try:
        return await agent.join(meeting_id, current_user["user_id"])
    except Exception as e:
        _raise_http(e, "joining meeting")


@router.post("/{meeting_id}/leave-agent")
async def leave_agent(
    meeting_id: str,
    current_user: dict = Depends(get_current_user),
    agent: MeetingAgentService = Depends(get_agent),
):
    """Make the agent leave the meeting. Leaving twice is not an error."""
    try:
        return await agent.leave(meeting_id, current_user["user_id"])
    except Exception as e:
        _raise_http(e, "leaving meeting")


@router.get("/{meeting_id}/summary")
async def get_meeting_summary(
    meeting_id: str,
    regenerate: bool = False,
    current_user: dict = Depends(get_current_user),
    meeting_service: ServiceMeeting = Depends(get_meeting_service),
    agent: MeetingAgentService = Depends(get_agent),
):
    """Latest summary, generated on demand when missing or when regenerate is set."""
    try:
        meeting = await meeting_service.get_meeting(meeting_id, current_user["user_id"])
        summary = None if regenerate else await agent.summary_service.get_latest(meeting.id)
        generated = summary is None
        if generated:
            summary = await agent.summary_service.generate(meeting.id, current_user["user_id"])
        return {"summary": summary, "generated": generated}
    except Exception as e:
        _raise_http(e, "retrieving summary")


@router.get("/{meeting_id}/summaries")
async def list_meeting_summaries(
    meeting_id: str,
    current_user: dict = Depends(get_current_user),
    meeting_service: ServiceMeeting = Depends(get_meeting_service),
    agent: MeetingAgentService = Depends(get_agent),
):
    try:
        meeting = await meeting_service.get_meeting(meeting_id, current_user["user_id"])
        summaries = await agent.summary_service.get_summaries(meeting.id)
        return {"summaries": summaries, "count": len(summaries)}
    except Exception as e:
        _raise_http(e, "retrieving summaries")


@router.get("/{meeting_id}/chat-analysis")
async def get_chat_analysis(
    meeting_id: str,
    current_user: dict = Depends(get_current_user),
    meeting_service: ServiceMeeting = Depends(get_meeting_service),
    agent: MeetingAgentService = Depends(get_agent),
):
    try:
        meeting = await meeting_service.get_meeting(meeting_id, current_user["user_id"])
        return await agent.chat_capture.get_chat_analysis(meeting.id)
    except Exception as e:
        _raise_http(e, "retrieving chat analysis")


@router.get("/{meeting_id}/status")
async def get_meeting_status(
    meeting_id: str,
    current_user: dict = Depends(get_current_user),
    meeting_service: ServiceMeeting = Depends(get_meeting_service),
):
    """Timing of the meeting and what the agent is doing in it."""
    try:
        status = await meeting_service.get_meeting_status(meeting_id, current_user["user_id"])
        return {"success": True, **status}
    except Exception as e:
        _raise_http(e, "retrieving meeting status")


@router.get("/{meeting_id}/attendance-status")
async def get_attendance_status(
    meeting_id: str,
    current_user: dict = Depends(get_current_user),
    agent: MeetingAgentService = Depends(get_agent),
):
    try:
        return await agent.attendance.get_attendance_summary(meeting_id, current_user["user_id"])
    except Exception as e:
        _raise_http(e, "retrieving attendance status")
