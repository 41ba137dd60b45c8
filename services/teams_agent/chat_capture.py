"""
Meeting chat capture.

While the agent attends a meeting, an interval job polls the meeting chat,
classifies each new user message, stores it, and posts occasional insights
back into the chat. Capture progress (chat id, last capture time, counters)
lives on the attendance record so a restart can resume where it stopped.
"""
import asyncio
import logging
from collections import Counter
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Set

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from shared.config import get_settings
from shared.errors import ConflictError
from shared.schemas import (
    AttendanceRecord,
    AttendanceStatus,
    ChatMessageRecord,
    Meeting,
    MeetingNotification,
    Urgency,
)
from .classifier import MessageClassifier, strip_html
from .graph_client import GraphClient, parse_graph_datetime
from .models import CaptureStatus, ChatAnalysis, ParticipantStats

logger = logging.getLogger(__name__)
settings = get_settings()

WELCOME_MESSAGE = (
    "🤖 <b>AI Meeting Assistant</b> has joined. I'll keep track of questions, "
    "decisions and action items in this chat."
)


def analyze_messages(meeting_id: str, records: Iterable[ChatMessageRecord]) -> ChatAnalysis:
    """Aggregate captured messages into counts, per-sender stats and a minute timeline."""
    analysis = ChatAnalysis(meeting_id=meeting_id)
    categories: Counter = Counter()
    participants: Dict[str, ParticipantStats] = {}
    timeline: Counter = Counter()

    for record in records:
        analysis.total_messages += 1
        categories[record.category] += 1
        if record.urgency == Urgency.HIGH.value:
            analysis.urgent_messages += 1

        stats = participants.setdefault(record.sender, ParticipantStats())
        stats.message_count += 1
        stats.questions += int(record.is_question)
        stats.action_items += int(record.is_action_item)
        stats.decisions += int(record.is_decision)
        if stats.first_message is None or record.timestamp < stats.first_message:
            stats.first_message = record.timestamp
        if stats.last_message is None or record.timestamp > stats.last_message:
            stats.last_message = record.timestamp

        timeline[record.timestamp.strftime("%Y-%m-%dT%H:%M")] += 1

    analysis.categorized_counts = dict(categories)
    analysis.participant_analysis = participants
    analysis.timeline = dict(sorted(timeline.items()))
    if participants:
        analysis.most_active_participant = max(
            participants.items(), key=lambda item: item[1].message_count
        )[0]
    return analysis


def is_user_message(message: Dict[str, Any]) -> bool:
    """Only human chat messages are captured; system events and bots are skipped."""
    if message.get("messageType", "message") != "message":
        return False
    sender = message.get("from") or {}
    if not sender.get("user") or sender.get("application"):
        return False
    return bool(strip_html((message.get("body") or {}).get("content")))


class ChatCaptureService:
    """Runs one polling job per attended meeting."""

    def __init__(
        self,
        dao,
        graph_client: GraphClient,
        classifier: MessageClassifier,
        scheduler: AsyncIOScheduler,
    ):
        self.dao = dao
        self.graph_client = graph_client
        self.classifier = classifier
        self.scheduler = scheduler
        self._seen_ids: Dict[str, Set[str]] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    @staticmethod
    def job_id(meeting_id: str) -> str:
        return f"capture_{meeting_id}"

    def is_capturing(self, meeting_id: str) -> bool:
        return self.scheduler.get_job(self.job_id(meeting_id)) is not None

    async def start(self, meeting: Meeting, attendance: Optional[AttendanceRecord] = None) -> Dict[str, Any]:
        """Start (or restart) the capture job for a meeting."""
        chat_id = attendance.chat_id if attendance else None
        if not chat_id:
            chat_id = await self._resolve_chat_id(meeting)
            if chat_id:
                await self.dao.update_item("attendance", meeting.id, {"chat_id": chat_id})

        interval = settings.chat_poll_seconds if chat_id else settings.chat_poll_fallback_seconds
        self._seen_ids.setdefault(meeting.id, set())
        self.scheduler.add_job(
            self.capture,
            trigger=IntervalTrigger(seconds=interval),
            id=self.job_id(meeting.id),
            name=f"Capture chat for {meeting.subject}",
            args=[meeting.id],
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )

        if chat_id:
            logger.info(f"💬 Chat capture started for meeting {meeting.id}", extra={"chat_id": chat_id})
            # Resumed captures do not greet again
            if settings.auto_insights_enabled and attendance is None:
                await self._post(chat_id, WELCOME_MESSAGE)
        else:
            logger.warning(
                f"⚠️ Chat not available yet for meeting {meeting.id}, polling every {interval}s until it is"
            )

        return {"chat_id": chat_id, "interval_seconds": interval, "degraded": chat_id is None}

    async def stop(self, meeting_id: str, final_capture: bool = True) -> bool:
        """Stop capturing. Returns False when nothing was running."""
        running = self.is_capturing(meeting_id)
        if running and final_capture:
            await self.capture(meeting_id, final=True)

        job = self.scheduler.get_job(self.job_id(meeting_id))
        if job is not None:
            job.remove()

        self._seen_ids.pop(meeting_id, None)
        self._locks.pop(meeting_id, None)
        if running:
            logger.info(f"🛑 Chat capture stopped for meeting {meeting_id}")
        return running

    async def _resolve_chat_id(self, meeting: Meeting) -> Optional[str]:
        if not meeting.graph_event_id or not self.graph_client.is_available():
            return None
        for attempt in range(1, settings.chat_id_lookup_attempts + 1):
            try:
                chat_id = await self.graph_client.find_chat_id(meeting.graph_event_id)
                if chat_id:
                    return chat_id
                logger.info(f"Chat not found for meeting {meeting.id} (attempt {attempt})")
                return None
            except Exception as e:
                logger.warning(f"⚠️ Chat id lookup attempt {attempt} failed for meeting {meeting.id}: {e}")
        return None

    async def capture(self, meeting_id: str, final: bool = False) -> int:
        """One poll. Returns the number of new messages stored.

        A final poll runs while the agent is leaving, after attendance has
        already been marked left.
        """
        lock = self._locks.setdefault(meeting_id, asyncio.Lock())
        async with lock:
            try:
                return await self._capture_once(meeting_id, final)
            except Exception as e:
                logger.error(f"❌ Chat capture failed for meeting {meeting_id}: {e}", exc_info=True)
                return 0

    async def _capture_once(self, meeting_id: str, final: bool = False) -> int:
        doc = await self.dao.get_item("attendance", meeting_id)
        if not doc or (doc.get("status") != AttendanceStatus.ATTENDING.value and not final):
            logger.info(f"Agent no longer attending meeting {meeting_id}, stopping capture")
            job = self.scheduler.get_job(self.job_id(meeting_id))
            if job is not None:
                job.remove()
            return 0
        attendance = AttendanceRecord(**doc)

        chat_id = attendance.chat_id
        if not chat_id:
            meeting = await self.dao.get_meeting(meeting_id)
            if meeting is None:
                return 0
            chat_id = await self._resolve_chat_id(meeting)
            if not chat_id:
                return 0
            await self.dao.update_item("attendance", meeting_id, {"chat_id": chat_id})
            self.scheduler.reschedule_job(
                self.job_id(meeting_id), trigger=IntervalTrigger(seconds=settings.chat_poll_seconds)
            )
            logger.info(f"✅ Chat found for meeting {meeting_id}, switching to live polling")

        raw_messages = await self.graph_client.list_chat_messages(chat_id)
        seen = self._seen_ids.setdefault(meeting_id, set())
        fresh = self._select_new(raw_messages, attendance.last_capture_time, seen)
        if not fresh:
            return 0

        stored: List[ChatMessageRecord] = []
        for created, raw in fresh:
            record = await self._store_message(meeting_id, raw, created)
            seen.add(raw["id"])
            if record is not None:
                stored.append(record)

        newest = max(created for created, _ in fresh)
        message_count = attendance.message_count + len(stored)
        question_count = attendance.question_count + sum(1 for r in stored if r.is_question)
        await self.dao.update_item("attendance", meeting_id, {
            "last_capture_time": newest,
            "message_count": message_count,
            "question_count": question_count,
        })

        if stored:
            logger.info(f"📥 Captured {len(stored)} new messages for meeting {meeting_id}")
            if settings.auto_insights_enabled:
                await self._post_insights(meeting_id, chat_id, stored, attendance)
        return len(stored)

    @staticmethod
    def _select_new(
        raw_messages: List[Dict[str, Any]], since: Optional[datetime], seen: Set[str]
    ) -> List[tuple]:
        fresh = []
        for raw in raw_messages:
            message_id = raw.get("id")
            created = parse_graph_datetime(raw.get("createdDateTime"))
            if not message_id or created is None or message_id in seen:
                continue
            if since is not None and created <= since:
                continue
            if not is_user_message(raw):
                continue
            fresh.append((created, raw))
        fresh.sort(key=lambda item: item[0])
        return fresh

    async def _store_message(
        self, meeting_id: str, raw: Dict[str, Any], created: datetime
    ) -> Optional[ChatMessageRecord]:
        content = strip_html((raw.get("body") or {}).get("content"))
        user = (raw.get("from") or {}).get("user") or {}
        analysis = await self.classifier.classify(content)

        record = ChatMessageRecord(
            id=raw["id"],
            meeting_id=meeting_id,
            sender=user.get("displayName") or "Unknown",
            sender_id=user.get("id"),
            content=content,
            timestamp=created,
            message_type=raw.get("messageType", "message"),
            category=analysis.category,
            is_question=analysis.is_question,
            is_action_item=analysis.is_action_item,
            is_decision=analysis.is_decision,
            urgency=analysis.urgency,
            sentiment=analysis.sentiment,
            mentions=analysis.mentions,
            shared_resource=analysis.shared_resource,
            key_topics=analysis.key_topics,
            assignee=analysis.assignee,
            deadline=analysis.deadline,
            requires_follow_up=analysis.requires_follow_up,
            analysis_source=analysis.source,
        )

        try:
            await self.dao.create_item("chats", record.to_doc())
        except ConflictError:
            logger.debug(f"Message {record.id} already captured for meeting {meeting_id}")
            return None

        if record.urgency == Urgency.HIGH.value or record.is_action_item:
            await self._notify(record)
        return record

    async def _notify(self, record: ChatMessageRecord) -> None:
        if record.urgency == Urgency.HIGH.value:
            logger.warning(
                "🚨 Urgent message detected",
                extra={"meeting_id": record.meeting_id, "sender": record.sender},
            )
        notification = MeetingNotification(
            meeting_id=record.meeting_id,
            message_id=record.id,
            notification_type="urgent_action_item" if record.is_action_item else "urgent_message",
            content=record.content,
            sender=record.sender,
            urgency=record.urgency,
        )
        try:
            await self.dao.create_item("notifications", notification.to_doc())
        except Exception as e:
            logger.warning(f"Failed to store notification for message {record.id}: {e}")

    async def _post_insights(
        self,
        meeting_id: str,
        chat_id: str,
        stored: List[ChatMessageRecord],
        attendance: AttendanceRecord,
    ) -> None:
        questions = attendance.question_count
        for record in stored:
            if record.is_action_item:
                await self._post(
                    chat_id,
                    f"📋 <b>Action Item Detected</b><br/>{record.sender}: {record.content}"
                    + (f"<br/>Assignee: {record.assignee}" if record.assignee else "")
                    + (f"<br/>Due: {record.deadline}" if record.deadline else ""),
                )
            if record.is_decision:
                await self._post(chat_id, f"✅ <b>Decision Made</b><br/>{record.content}")
            if record.is_question:
                questions += 1
                if questions % settings.question_alert_every == 0:
                    await self._post(
                        chat_id,
                        f"❓ <b>Question Pattern Alert</b><br/>{questions} questions asked so far. "
                        "Consider pausing to address open questions.",
                    )

        before = attendance.message_count
        after = before + len(stored)
        every = settings.periodic_update_every
        if every and after // every > before // every:
            analysis = await self.get_chat_analysis(meeting_id)
            await self._post(chat_id, self._progress_message(analysis))

    @staticmethod
    def _progress_message(analysis: ChatAnalysis) -> str:
        counts = analysis.categorized_counts
        lines = [
            "📊 <b>Meeting Progress Update</b>",
            f"Messages: {analysis.total_messages}",
            f"Questions: {counts.get('question', 0)}",
            f"Action items: {counts.get('action_item', 0)}",
            f"Decisions: {counts.get('decision', 0)}",
        ]
        if analysis.most_active_participant:
            lines.append(f"Most active: {analysis.most_active_participant}")
        return "<br/>".join(lines)

    async def _post(self, chat_id: str, html: str) -> bool:
        try:
            await self.graph_client.send_chat_message(chat_id, html)
            return True
        except Exception as e:
            logger.warning(f"Failed to post to meeting chat {chat_id}: {e}")
            return False

    async def post_to_meeting_chat(self, meeting_id: str, html: str) -> bool:
        """Post into the chat of an attended meeting, if its chat is known."""
        doc = await self.dao.get_item("attendance", meeting_id)
        chat_id = (doc or {}).get("chat_id")
        if not chat_id:
            return False
        return await self._post(chat_id, html)

    async def get_messages(self, meeting_id: str) -> List[ChatMessageRecord]:
        docs = await self.dao.query_items(
            "chats", {"meeting_id": meeting_id}, sort=[("timestamp", 1)]
        )
        return [ChatMessageRecord(**doc) for doc in docs]

    async def get_chat_analysis(self, meeting_id: str) -> ChatAnalysis:
        return analyze_messages(meeting_id, await self.get_messages(meeting_id))

    def get_status(self) -> CaptureStatus:
        jobs = [job for job in self.scheduler.get_jobs() if job.id.startswith("capture_")]
        return CaptureStatus(
            active_captures=len(jobs),
            meetings=[
                {
                    "meeting_id": job.id[len("capture_"):],
                    "interval_seconds": int(job.trigger.interval.total_seconds()),
                    "next_run_time": job.next_run_time,
                }
                for job in jobs
            ],
        )
