"""
Chat message classification.

Keyword heuristics always work; when the LLM is configured its JSON verdict is
preferred and the heuristics fill whatever it leaves out.
"""
import html
import logging
import re
from typing import List, Optional

from shared.schemas import MessageCategory, Sentiment, Urgency
from .llm_client import LLMClient
from .models import MessageAnalysis

logger = logging.getLogger(__name__)

QUESTION_PREFIXES = ("what", "how", "when", "where", "why", "can we")
ACTION_KEYWORDS = (
    "action item", "todo", "to do:", "will do", "need to", "by friday",
    "by next week", "deadline", "assigned to",
)
DECISION_KEYWORDS = (
    "decided", "agreed", "agree", "approved", "final decision", "we will", "let's go with",
)
RESOURCE_KEYWORDS = ("http", "www.", "shared a file", "attachment")
HIGH_URGENCY = ("urgent", "asap", "critical", "emergency", "immediately")
MEDIUM_URGENCY = ("soon", "quickly", "priority")
POSITIVE_WORDS = ("good", "great", "excellent", "awesome", "perfect", "happy")
NEGATIVE_WORDS = ("bad", "problem", "issue", "wrong", "terrible", "concerned")
FOLLOW_UP_KEYWORDS = ("follow up", "check back", "revisit")
STOP_WORDS = {
    "that", "this", "with", "from", "they", "have", "will", "were", "been", "said",
    "should", "would", "could", "there", "their", "about", "which", "because",
}

_TAG_RE = re.compile(r"<[^>]*>")
_MENTION_RE = re.compile(r"@(\w+)")
_ASSIGNEE_RE = re.compile(r"assigned to (\w+)", re.IGNORECASE)
_DEADLINE_RE = re.compile(r"by (\w+day|\w+ \d{1,2})", re.IGNORECASE)

ANALYSIS_PROMPT = """Analyze this meeting chat message and respond with JSON only.
Message: "{content}"

{{
  "primaryCategory": "question|action_item|decision|resource_sharing|discussion",
  "isActionItem": true/false,
  "isQuestion": true/false,
  "isDecision": true/false,
  "urgency": "low|medium|high",
  "sentiment": "positive|neutral|negative",
  "sharedResource": "URL or filename mentioned, otherwise null"
}}"""


def strip_html(content: Optional[str]) -> str:
    """Remove markup from a Teams message body."""
    if not content:
        return ""
    text = _TAG_RE.sub("", content)
    return html.unescape(text).strip()


def _contains(text: str, keywords) -> bool:
    return any(keyword in text for keyword in keywords)


def is_question(content: str) -> bool:
    lower = content.lower().strip()
    return "?" in lower or lower.startswith(QUESTION_PREFIXES)


def is_action_item(content: str) -> bool:
    return _contains(content.lower(), ACTION_KEYWORDS)


def is_decision(content: str) -> bool:
    return _contains(content.lower(), DECISION_KEYWORDS)


def has_shared_resource(content: str) -> bool:
    return _contains(content.lower(), RESOURCE_KEYWORDS)


def detect_urgency(content: str) -> Urgency:
    lower = content.lower()
    if _contains(lower, HIGH_URGENCY):
        return Urgency.HIGH
    if _contains(lower, MEDIUM_URGENCY):
        return Urgency.MEDIUM
    return Urgency.LOW


def detect_sentiment(content: str) -> Sentiment:
    lower = content.lower()
    if _contains(lower, POSITIVE_WORDS):
        return Sentiment.POSITIVE
    if _contains(lower, NEGATIVE_WORDS):
        return Sentiment.NEGATIVE
    return Sentiment.NEUTRAL


def extract_mentions(content: str) -> List[str]:
    return _MENTION_RE.findall(content)


def extract_assignee(content: str) -> Optional[str]:
    match = _ASSIGNEE_RE.search(content)
    return match.group(1) if match else None


def extract_deadline(content: str) -> Optional[str]:
    match = _DEADLINE_RE.search(content)
    return match.group(1) if match else None


def extract_key_topics(content: str, limit: int = 3) -> List[str]:
    words = re.findall(r"[a-z][a-z'-]*", content.lower())
    return [w for w in words if len(w) > 5 and w not in STOP_WORDS][:limit]


def primary_category(
    question: bool, action_item: bool, decision: bool, shared_resource: bool
) -> MessageCategory:
    if question:
        return MessageCategory.QUESTION
    if action_item:
        return MessageCategory.ACTION_ITEM
    if decision:
        return MessageCategory.DECISION
    if shared_resource:
        return MessageCategory.RESOURCE_SHARING
    return MessageCategory.DISCUSSION


def classify_keywords(content: str) -> MessageAnalysis:
    """Heuristic classification of a plain-text message."""
    question = is_question(content)
    action_item = is_action_item(content)
    decision = is_decision(content)
    shared_resource = has_shared_resource(content)
    return MessageAnalysis(
        category=primary_category(question, action_item, decision, shared_resource),
        is_question=question,
        is_action_item=action_item,
        is_decision=decision,
        urgency=detect_urgency(content),
        sentiment=detect_sentiment(content),
        mentions=extract_mentions(content),
        shared_resource=shared_resource,
        key_topics=extract_key_topics(content),
        assignee=extract_assignee(content),
        deadline=extract_deadline(content),
        requires_follow_up=_contains(content.lower(), FOLLOW_UP_KEYWORDS),
        source="keywords",
    )


def _flag_or(value, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("true", "false"):
        return value.strip().lower() == "true"
    return default


def _enum_or(enum_cls, value, default):
    try:
        return enum_cls(str(value).lower())
    except ValueError:
        return default


class MessageClassifier:
    """Classifies chat messages, preferring the LLM when it is configured."""

    def __init__(self, llm_client: Optional[LLMClient] = None):
        self.llm_client = llm_client

    def use_llm(self) -> bool:
        return self.llm_client is not None and self.llm_client.is_available()

    async def classify(self, content: str) -> MessageAnalysis:
        basic = classify_keywords(content)
        if not self.use_llm():
            return basic

        try:
            data = await self.llm_client.complete_json(ANALYSIS_PROMPT.format(content=content))
        except Exception as e:
            logger.warning(f"AI message analysis failed, using keyword analysis: {e}")
            return basic

        category_value = data.get("primaryCategory")
        if category_value == "general":
            category_value = MessageCategory.DISCUSSION.value
        category = _enum_or(MessageCategory, category_value, basic.category)
        return basic.model_copy(update={
            "category": category,
            "is_question": _flag_or(data.get("isQuestion"), basic.is_question),
            "is_action_item": _flag_or(data.get("isActionItem"), basic.is_action_item),
            "is_decision": _flag_or(data.get("isDecision"), basic.is_decision),
            "urgency": _enum_or(Urgency, data.get("urgency"), basic.urgency),
            "sentiment": _enum_or(Sentiment, data.get("sentiment"), basic.sentiment),
            "shared_resource": basic.shared_resource or _flag_or(data.get("sharedResource"), False),
            "source": "llm",
        })
