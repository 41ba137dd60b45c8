"""
Meeting summary generation.

Builds a summary from the captured chat: an AI narrative when the LLM is
available (a templated one otherwise), extracted action items, participant
insights, metrics and heuristic quality scores. Every generation is stored;
the most recent summary is the current one.
"""
import logging
import re
from collections import Counter
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from shared.errors import NotFoundError
from shared.schemas import (
    ActionItem,
    ChatMessageRecord,
    Meeting,
    MeetingSummary,
    QualityScores,
    Reminder,
    utc_now,
)
from .chat_capture import ChatCaptureService, analyze_messages
from .classifier import STOP_WORDS
from .llm_client import LLMClient
from .models import ChatAnalysis

logger = logging.getLogger(__name__)

DEFAULT_CLARITY = 7

SUMMARY_PROMPT = """Generate a {summary_type} meeting summary from the information below.

Meeting Details:
- Subject: {subject}
- Duration: {duration}
- Attendees: {attendees}

Chat Messages:
{chat}

Meeting Analytics:
- Total Messages: {total}
- Questions Asked: {questions}
- Decisions Made: {decisions}
- Action Items Mentioned: {action_items}

Respond with JSON only, in this format:
{{
  "executiveSummary": "2-3 sentence overview of purpose and key outcomes",
  "keyDiscussionPoints": ["..."],
  "decisionsAndOutcomes": [{{"decision": "...", "rationale": "...", "impact": "..."}}],
  "nextSteps": ["..."],
  "keyInsights": ["..."],
  "meetingEffectiveness": {{"score": 1-10, "strengths": ["..."], "improvements": ["..."]}}
}}"""

ACTION_ITEM_PROMPT = """Extract the action item from this meeting chat message.
Message: "{content}"
Sender: {sender}

Respond with JSON only:
{{"task": "what needs to be done", "assignee": "person responsible, the sender if unspecified",
  "deadline": "when it is due, or null", "priority": "low|medium|high"}}"""

_DEADLINE_PATTERNS = (
    re.compile(r"by (\w+day)", re.IGNORECASE),
    re.compile(r"by next (\w+)", re.IGNORECASE),
    re.compile(r"by (\w+ \d{1,2})", re.IGNORECASE),
    re.compile(r"deadline (\w+)", re.IGNORECASE),
)


def format_duration(start: datetime, end: datetime) -> str:
    """Render a meeting length as ``Xh Ym``."""
    minutes = max(int(round((end - start).total_seconds() / 60)), 0)
    return f"{minutes // 60}h {minutes % 60}m"


def extract_deadline(content: str) -> Optional[str]:
    for pattern in _DEADLINE_PATTERNS:
        match = pattern.search(content)
        if match:
            return match.group(1)
    return None


def count_flags(records: List[ChatMessageRecord]) -> Dict[str, int]:
    return {
        "questions": sum(1 for r in records if r.is_question),
        "decisions": sum(1 for r in records if r.is_decision),
        "action_items": sum(1 for r in records if r.is_action_item),
    }


def calculate_quality_scores(
    total_messages: int,
    participant_count: int,
    questions: int,
    decisions: int,
    action_items: int,
    clarity: Optional[float] = None,
) -> QualityScores:
    """Heuristic 0-10 scores. The overall score is a weighted, rounded mean."""
    participation = 0.0
    if participant_count:
        avg_per_person = total_messages / max(participant_count, 1)
        participation = min(10.0, (avg_per_person / 5) * 10)

    productivity = min(10.0, (decisions * 2 + action_items * 1.5 + questions * 0.5) / 3)
    clarity_score = float(clarity) if clarity else float(DEFAULT_CLARITY)
    action_oriented = min(10.0, ((decisions + action_items) / max(total_messages, 1)) * 20)

    overall = round(
        participation * 0.2 + productivity * 0.3 + clarity_score * 0.3 + action_oriented * 0.2
    )
    return QualityScores(
        overall=overall,
        participation=round(participation, 2),
        productivity=round(productivity, 2),
        clarity=clarity_score,
        action_oriented=round(action_oriented, 2),
    )


def engagement_level(total_messages: int, participant_count: int) -> str:
    per_participant = total_messages / max(participant_count, 1)
    if per_participant > 10:
        return "high"
    if per_participant > 5:
        return "medium"
    return "low"


class SummaryService:
    """Generates and stores meeting summaries."""

    def __init__(self, dao, chat_capture: ChatCaptureService, llm_client: Optional[LLMClient] = None):
        self.dao = dao
        self.chat_capture = chat_capture
        self.llm_client = llm_client

    def _ai_available(self) -> bool:
        return self.llm_client is not None and self.llm_client.is_available()

    async def generate(
        self,
        meeting_id: str,
        user_id: Optional[str] = None,
        summary_type: str = "comprehensive",
        auto_action_items: bool = True,
        auto_follow_up: bool = True,
    ) -> MeetingSummary:
        """Generate, store and return a new summary for the meeting."""
        meeting = await self.dao.get_meeting(meeting_id, user_id)
        if meeting is None:
            raise NotFoundError("Meeting not found")

        logger.info(f"📋 Generating meeting summary for {meeting.id}", extra={"subject": meeting.subject})

        messages = await self.chat_capture.get_messages(meeting.id)
        analysis = analyze_messages(meeting.id, messages)
        flags = count_flags(messages)

        narrative, ai_model = await self._narrative(meeting, messages, analysis, flags, summary_type)
        action_items = await self._extract_action_items(messages) if auto_action_items else []
        participant_insights = self._participant_insights(messages, analysis)

        effectiveness = narrative.get("meetingEffectiveness")
        if not isinstance(effectiveness, dict):
            effectiveness = {}
        clarity = self._coerce_score(effectiveness.get("score"))
        scores = calculate_quality_scores(
            total_messages=analysis.total_messages,
            participant_count=len(analysis.participant_analysis),
            questions=flags["questions"],
            decisions=flags["decisions"],
            action_items=flags["action_items"],
            clarity=clarity,
        )

        summary = MeetingSummary(
            meeting_id=meeting.id,
            user_id=meeting.user_id,
            meeting_subject=meeting.subject,
            executive_summary=str(narrative.get("executiveSummary", "")),
            key_discussion_points=self._as_list(narrative.get("keyDiscussionPoints")),
            decisions_and_outcomes=self._as_decisions(narrative.get("decisionsAndOutcomes")),
            next_steps=self._as_list(narrative.get("nextSteps")),
            key_insights=self._as_list(narrative.get("keyInsights")),
            action_items=action_items,
            participant_insights=participant_insights,
            metrics={
                "total_messages": analysis.total_messages,
                "questions_asked": flags["questions"],
                "decisions_tracked": flags["decisions"],
                "action_items_identified": len(action_items),
                "participant_count": len(analysis.participant_analysis),
                "engagement_level": engagement_level(
                    analysis.total_messages, len(analysis.participant_analysis)
                ),
                "duration": format_duration(meeting.start_time, meeting.end_time),
                "duration_minutes": meeting.duration_minutes,
            },
            quality_scores=scores,
            follow_up_recommendations=self._follow_up_recommendations(action_items) if auto_follow_up else [],
            ai_model=ai_model,
        )

        await self.dao.create_item("summaries", summary.to_doc())
        await self.dao.update_meeting(meeting.id, {
            "has_summary": True,
            "summary_id": summary.id,
            "last_summary_generated": summary.generated_at,
        })

        if auto_follow_up and action_items:
            await self._create_reminders(meeting, action_items)

        logger.info(
            f"✅ Meeting summary generated for {meeting.id}",
            extra={
                "summary_id": summary.id,
                "action_items": len(action_items),
                "quality_score": scores.overall,
            },
        )
        return summary

    async def _narrative(
        self,
        meeting: Meeting,
        messages: List[ChatMessageRecord],
        analysis: ChatAnalysis,
        flags: Dict[str, int],
        summary_type: str,
    ) -> tuple:
        if self._ai_available():
            prompt = SUMMARY_PROMPT.format(
                summary_type=summary_type,
                subject=meeting.subject,
                duration=format_duration(meeting.start_time, meeting.end_time),
                attendees=", ".join(meeting.attendees) or "none listed",
                chat="\n".join(f"{m.sender}: {m.content}" for m in messages) or "No chat messages available.",
                total=analysis.total_messages,
                questions=flags["questions"],
                decisions=flags["decisions"],
                action_items=flags["action_items"],
            )
            try:
                data = await self.llm_client.complete_json(prompt)
                if self._usable_narrative(data):
                    logger.info("✅ AI summary generated successfully")
                    return data, self.llm_client.model
                logger.warning("AI summary response had no executive summary, using basic summary")
            except Exception as e:
                logger.warning(f"AI summary generation failed, using basic summary: {e}")

        return self.basic_summary(meeting, analysis, flags), "basic"

    @staticmethod
    def basic_summary(meeting: Meeting, analysis: ChatAnalysis, flags: Dict[str, int]) -> Dict[str, Any]:
        """Template summary used when no AI narrative is available."""
        duration = format_duration(meeting.start_time, meeting.end_time)
        return {
            "executiveSummary": (
                f'Meeting "{meeting.subject}" was held with {len(meeting.attendees)} attendees. '
                f"{analysis.total_messages} messages were exchanged during the discussion."
            ),
            "keyDiscussionPoints": [
                f"Primary focus: {meeting.subject}",
                f"Duration: {duration}",
                f"Participants: {len(meeting.attendees)} attendees",
            ],
            "decisionsAndOutcomes": [
                {
                    "decision": "Meeting concluded",
                    "rationale": "All planned topics were discussed",
                    "impact": "Follow-up actions to be determined",
                }
            ],
            "nextSteps": [
                "Review meeting outcomes",
                "Follow up on action items",
                "Schedule next meeting if needed",
            ],
            "keyInsights": [
                f"{flags['questions']} questions were raised",
                f"{flags['decisions']} decisions were tracked",
                f"{flags['action_items']} action items were identified",
            ],
            "meetingEffectiveness": {
                "score": DEFAULT_CLARITY,
                "strengths": ["Meeting was completed as scheduled"],
                "improvements": ["Consider a more structured agenda"],
            },
        }

    async def _extract_action_items(self, messages: List[ChatMessageRecord]) -> List[ActionItem]:
        items = []
        for message in messages:
            if not (message.is_action_item or message.category == "action_item"):
                continue
            item = None
            if self._ai_available():
                try:
                    data = await self.llm_client.complete_json(
                        ACTION_ITEM_PROMPT.format(content=message.content, sender=message.sender)
                    )
                    item = ActionItem(
                        description=str(data.get("task") or message.content),
                        assignee=data.get("assignee") or message.assignee or message.sender,
                        due_date=data.get("deadline") or extract_deadline(message.content),
                        priority=str(data.get("priority") or message.urgency),
                        source_message_id=message.id,
                    )
                except Exception as e:
                    logger.debug(f"AI action item extraction failed for {message.id}: {e}")
            if item is None:
                item = ActionItem(
                    description=message.content,
                    assignee=message.assignee or message.sender,
                    due_date=message.deadline or extract_deadline(message.content),
                    priority="high" if message.urgency == "high" else "medium",
                    source_message_id=message.id,
                )
            items.append(item)
        logger.info(f"Extracted {len(items)} action items")
        return items

    @staticmethod
    def _participant_insights(
        messages: List[ChatMessageRecord], analysis: ChatAnalysis
    ) -> Dict[str, Any]:
        insights = {}
        for sender, stats in analysis.participant_analysis.items():
            total = max(stats.message_count, 1)
            score = stats.message_count + stats.questions * 2 + stats.action_items * 3 + stats.decisions * 2
            if stats.questions / total > 0.3:
                style = "inquisitive"
            elif stats.action_items / total > 0.2:
                style = "action-oriented"
            elif stats.decisions / total > 0.2:
                style = "decisive"
            else:
                style = "collaborative"

            own = [m for m in messages if m.sender == sender]
            words = Counter(
                w for m in own for w in re.findall(r"[a-z][a-z'-]*", m.content.lower())
                if len(w) > 4 and w not in STOP_WORDS
            )
            recommendations = []
            if stats.message_count < 3:
                recommendations.append("Consider encouraging more participation in future meetings")
            if stats.questions > stats.message_count * 0.5:
                recommendations.append("Asks clarifying questions that help team understanding")
            if stats.action_items > 0:
                recommendations.append("Identifies actionable next steps")

            insights[sender] = {
                "message_count": stats.message_count,
                "questions_asked": stats.questions,
                "actions_proposed": stats.action_items,
                "decisions_influenced": stats.decisions,
                "engagement_level": "high" if score > 15 else "medium" if score > 8 else "low",
                "communication_style": style,
                "key_contributions": [m.content for m in own[:3]],
                "frequent_topics": [w for w, _ in words.most_common(3)],
                "recommendations": recommendations,
            }
        return insights

    @staticmethod
    def _follow_up_recommendations(action_items: List[ActionItem]) -> List[Dict[str, Any]]:
        if not action_items:
            return []
        return [{
            "type": "action_items",
            "priority": "high",
            "recommendation": f"Follow up on {len(action_items)} action items",
            "details": "Send reminders to assignees and track progress",
            "suggested_timeline": "2-3 days",
        }]

    async def _create_reminders(self, meeting: Meeting, action_items: List[ActionItem]) -> None:
        remind_at = utc_now() + timedelta(days=1)
        for item in action_items:
            reminder = Reminder(
                meeting_id=meeting.id,
                user_id=meeting.user_id,
                action_item_id=item.id,
                description=item.description,
                assignee=item.assignee,
                due_date=item.due_date or remind_at.date().isoformat(),
            )
            try:
                await self.dao.create_item("reminders", reminder.to_doc())
            except Exception as e:
                logger.error(f"❌ Failed to store reminder for action item {item.id}: {e}")
        logger.info(f"📅 Scheduled {len(action_items)} follow-up reminders for meeting {meeting.id}")

    @staticmethod
    def _usable_narrative(data) -> bool:
        if not isinstance(data, dict):
            return False
        summary = data.get("executiveSummary")
        return isinstance(summary, str) and bool(summary.strip())

    @staticmethod
    def _as_decisions(value) -> List[Dict[str, Any]]:
        if not value:
            return []
        if isinstance(value, (str, dict)):
            value = [value]
        return [d if isinstance(d, dict) else {"decision": str(d)} for d in value]

    @staticmethod
    def _as_list(value) -> List[str]:
        if not value:
            return []
        if isinstance(value, str):
            return [value]
        return [str(v) for v in value]

    @staticmethod
    def _coerce_score(value) -> Optional[float]:
        try:
            score = float(value)
        except (TypeError, ValueError):
            return None
        return min(max(score, 0.0), 10.0) or None

    async def get_summaries(self, meeting_id: str) -> List[MeetingSummary]:
        """All summaries for a meeting, newest first."""
        docs = await self.dao.query_items(
            "summaries", {"meeting_id": meeting_id}, sort=[("generated_at", -1)]
        )
        return [MeetingSummary(**doc) for doc in docs]

    async def get_latest(self, meeting_id: str) -> Optional[MeetingSummary]:
        summaries = await self.get_summaries(meeting_id)
        return summaries[0] if summaries else None

    @staticmethod
    def format_final_message(summary: MeetingSummary) -> str:
        """Chat-ready recap posted when the agent leaves."""
        lines = [
            "📋 <b>Meeting Summary</b>",
            summary.executive_summary,
            f"Messages: {summary.metrics.get('total_messages', 0)} · "
            f"Action items: {len(summary.action_items)} · "
            f"Quality score: {summary.quality_scores.overall}/10",
        ]
        if summary.action_items:
            lines.append("<b>Action items</b>")
            for item in summary.action_items[:5]:
                owner = f" ({item.assignee})" if item.assignee else ""
                lines.append(f"• {item.description}{owner}")
        if summary.next_steps:
            lines.append("<b>Next steps</b>")
            lines.extend(f"• {step}" for step in summary.next_steps[:3])
        return "<br/>".join(lines)
