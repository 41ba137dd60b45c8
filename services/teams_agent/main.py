"""
Main Teams agent service.

Wires the Graph client, LLM, chat capture, attendance, summaries and the
scheduler around a single APScheduler instance, and exposes the operations
the API needs.
"""
import logging
from typing import Any, Dict, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from shared.config import get_settings
from .attendance import AttendanceService
from .auth_provider import GraphAuthProvider
from .chat_capture import ChatCaptureService
from .classifier import MessageClassifier
from .graph_client import GraphClient
from .llm_client import LLMClient
from .models import JoinResult, LeaveResult
from .scheduler import MeetingScheduler
from .summary_service import SummaryService

logger = logging.getLogger(__name__)
settings = get_settings()


class MeetingAgentService:
    """Main service for Teams meeting agent functionality."""

    def __init__(
        self,
        dao,
        graph_client: Optional[GraphClient] = None,
        llm_client: Optional[LLMClient] = None,
        scheduler: Optional[AsyncIOScheduler] = None,
    ):
        self.dao = dao
        self.graph_client = graph_client or GraphClient(GraphAuthProvider())
        self.llm_client = llm_client or LLMClient()
        self.job_scheduler = scheduler or AsyncIOScheduler(timezone="UTC")

        self.classifier = MessageClassifier(self.llm_client)
        self.chat_capture = ChatCaptureService(dao, self.graph_client, self.classifier, self.job_scheduler)
        self.summary_service = SummaryService(dao, self.chat_capture, self.llm_client)
        self.attendance = AttendanceService(dao, self.chat_capture, self.summary_service)
        self.scheduler = MeetingScheduler(dao, self.attendance, self.chat_capture, self.job_scheduler)
        self.is_running = False

    async def start(self) -> None:
        """Start the Teams agent service."""
        logger.info("Starting Teams Agent Service...")

        try:
            if self.is_running:
                logger.info("Teams Agent Service is already running")
                return
            await self.graph_client.initialize()
            await self.scheduler.start()
            self.is_running = True
            logger.info(
                "Teams Agent Service started successfully",
                extra={
                    "graph_available": self.graph_client.is_available(),
                    "ai_available": self.llm_client.is_available(),
                },
            )
        except Exception as e:
            logger.error(f"Failed to start Teams Agent Service: {e}")
            raise

    async def stop(self) -> None:
        """Stop the Teams agent service."""
        logger.info("Stopping Teams Agent Service...")

        try:
            await self.scheduler.stop()
            await self.graph_client.cleanup()
            await self.llm_client.cleanup()
        except Exception as e:
            logger.error(f"Error stopping Teams Agent Service: {e}")
        finally:
            self.is_running = False

    async def join(self, meeting_id: str, user_id: Optional[str] = None) -> JoinResult:
        """Join now and leave automatically at the meeting end."""
        result = await self.attendance.join(meeting_id, user_id)
        meeting = await self.dao.get_meeting(result.meeting_id)
        if meeting is not None:
            self.scheduler.arm_end_timer(meeting.id, meeting.end_time)
        return result

    async def leave(self, meeting_id: str, user_id: Optional[str] = None) -> LeaveResult:
        result = await self.attendance.leave(meeting_id, user_id)
        self.scheduler.clear_end_timer(result.meeting_id)
        return result

    async def get_status(self) -> Dict[str, Any]:
        scheduler_status = await self.scheduler.get_status()
        return {
            "ai_available": self.llm_client.is_available(),
            "ai_model": self.llm_client.model if self.llm_client.is_available() else "basic",
            "graph_available": self.graph_client.is_available(),
            "scheduler": scheduler_status.model_dump(),
            "chat_capture": self.chat_capture.get_status().model_dump(),
        }


def create_meeting_agent_service(dao) -> MeetingAgentService:
    """Factory function to create the Teams agent service."""
    return MeetingAgentService(dao)
