"""Pytest configuration and fixtures."""

import os
from datetime import timedelta
from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

# Set test environment variables
os.environ["AZURE_CLIENT_ID"] = "test-client-id"
os.environ["AZURE_CLIENT_SECRET"] = "test-client-secret"
os.environ["AZURE_TENANT_ID"] = "test-tenant"
os.environ["MEETING_ORGANIZER_EMAIL"] = "organizer@company.com"
os.environ["MONGODB_URL"] = "mongodb://localhost:27017"
os.environ["MONGODB_DATABASE"] = "teams_agent_test"
os.environ.pop("GEMINI_API_KEY", None)

from apscheduler.schedulers.asyncio import AsyncIOScheduler  # noqa: E402

from services.api.dao import MongoDBDAO  # noqa: E402
from services.teams_agent.graph_client import GraphClient  # noqa: E402
from services.teams_agent.llm_client import LLMClient  # noqa: E402
from services.teams_agent.main import MeetingAgentService  # noqa: E402
from shared.errors import ConflictError  # noqa: E402
from shared.schemas import AgentConfig, Meeting, utc_now  # noqa: E402


def _matches(doc: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    for field, condition in filters.items():
        value = doc.get(field)
        if isinstance(condition, dict):
            for op, operand in condition.items():
                if op == "$in":
                    ok = value in operand
                elif op == "$ne":
                    ok = value != operand
                elif value is None:
                    ok = False
                elif op == "$gte":
                    ok = value >= operand
                elif op == "$gt":
                    ok = value > operand
                elif op == "$lte":
                    ok = value <= operand
                elif op == "$lt":
                    ok = value < operand
                else:
                    raise NotImplementedError(op)
                if not ok:
                    return False
        elif value != condition:
            return False
    return True


class InMemoryDAO(MongoDBDAO):
    """MongoDBDAO with the collection layer replaced by dictionaries."""

    def __init__(self):
        super().__init__()
        self.data: Dict[str, Dict[Any, Dict[str, Any]]] = {}
        self.initialized = True

    @staticmethod
    def _doc_key(container: str, doc: Dict[str, Any]):
        if container == "chats":
            return (doc.get("meeting_id"), doc["id"])
        return doc["id"]

    def _container(self, container: str) -> Dict[Any, Dict[str, Any]]:
        return self.data.setdefault(container, {})

    def _find(self, container: str, item_id: str, partition_key: Optional[str]):
        for doc in self._container(container).values():
            if doc["id"] != item_id:
                continue
            if partition_key is not None and container in ("meetings", "chats", "summaries"):
                field = "user_id" if container == "meetings" else "meeting_id"
                if doc.get(field) != partition_key:
                    continue
            return doc
        return None

    async def create_item(self, container, item):
        key = self._doc_key(container, item)
        if key in self._container(container):
            raise ConflictError(f"{container} item {item.get('id')} already exists")
        self._container(container)[key] = dict(item)
        return dict(item)

    async def upsert_item(self, container, item):
        self._container(container)[self._doc_key(container, item)] = dict(item)
        return dict(item)

    async def get_item(self, container, item_id, partition_key=None):
        doc = self._find(container, item_id, partition_key)
        return dict(doc) if doc else None

    async def update_item(self, container, item_id, updates, partition_key=None, expected=None):
        doc = self._find(container, item_id, partition_key)
        if doc is None or not _matches(doc, expected or {}):
            return None
        changes = dict(updates)
        changes.pop("id", None)
        doc.update(changes)
        doc["updated_at"] = utc_now()
        return dict(doc)

    async def delete_item(self, container, item_id, partition_key=None):
        doc = self._find(container, item_id, partition_key)
        if doc is None:
            return False
        del self._container(container)[self._doc_key(container, doc)]
        return True

    async def delete_items(self, container, filters):
        keys = [k for k, d in self._container(container).items() if _matches(d, filters)]
        for key in keys:
            del self._container(container)[key]
        return len(keys)

    async def query_items(self, container, filters=None, sort=None, limit=None, skip=0):
        docs = [dict(d) for d in self._container(container).values() if _matches(d, filters or {})]
        for field, direction in reversed(list(sort or [])):
            docs.sort(key=lambda d: d.get(field), reverse=direction < 0)
        docs = docs[skip:]
        return docs[:limit] if limit else docs

    async def count_items(self, container, filters=None):
        return len(await self.query_items(container, filters))

    def all(self, container: str) -> List[Dict[str, Any]]:
        return [dict(d) for d in self._container(container).values()]


@pytest.fixture
def store():
    """Provide an in-memory store."""
    return InMemoryDAO()


@pytest.fixture
def graph_client():
    """Provide a Graph client mock with a resolvable meeting chat."""
    client = MagicMock(spec=GraphClient)
    client.is_available.return_value = True
    client.initialize = AsyncMock()
    client.cleanup = AsyncMock()
    client.create_event = AsyncMock(return_value={
        "graph_event_id": "event-123",
        "join_url": "https://teams.microsoft.com/l/meetup-join/abc",
        "web_url": "https://outlook.office365.com/owa/?itemid=event-123",
        "organizer_email": "organizer@company.com",
    })
    client.update_event = AsyncMock(return_value={})
    client.cancel_event = AsyncMock(return_value=None)
    client.check_availability = AsyncMock(return_value={
        "all_available": True, "attendees": [], "conflicts": [],
        "summary": {"total": 0, "available": 0, "busy": 0},
    })
    client.find_chat_id = AsyncMock(return_value="chat-1")
    client.list_chat_messages = AsyncMock(return_value=[])
    client.send_chat_message = AsyncMock(return_value={"id": "posted"})
    client.search_users = AsyncMock(return_value=[])
    client.list_users = AsyncMock(return_value=[])
    client.resolve_users = AsyncMock(return_value=[])
    client.send_user_message = AsyncMock(return_value={"chat_id": "dm-1", "message_id": "msg-1"})
    return client


@pytest.fixture
def llm_client():
    """Provide an LLM client that is not configured."""
    client = MagicMock(spec=LLMClient)
    client.is_available.return_value = False
    client.model = "gemini-1.5-flash"
    client.complete_json = AsyncMock(side_effect=AssertionError("LLM should not be called"))
    client.cleanup = AsyncMock()
    return client


@pytest_asyncio.fixture
async def job_scheduler():
    """Provide a started but paused APScheduler so jobs register without firing."""
    scheduler = AsyncIOScheduler(timezone="UTC")
    scheduler.start(paused=True)
    yield scheduler
    if scheduler.running:
        scheduler.shutdown(wait=False)


@pytest_asyncio.fixture
async def agent(store, graph_client, llm_client, job_scheduler):
    """Provide a fully wired agent service over the in-memory store."""
    return MeetingAgentService(store, graph_client, llm_client, job_scheduler)


@pytest.fixture
def make_meeting(store):
    """Factory that stores a meeting relative to now."""

    async def _make(
        start_in_minutes: float = 0,
        duration_minutes: float = 30,
        **overrides,
    ) -> Meeting:
        start = utc_now() + timedelta(minutes=start_in_minutes)
        fields = dict(
            user_id="demo-user-123",
            subject="Sprint planning",
            start_time=start,
            end_time=start + timedelta(minutes=duration_minutes),
            attendees=["alice@company.com", "bob@company.com"],
            graph_event_id="event-123",
            join_url="https://teams.microsoft.com/l/meetup-join/abc",
            agent_config=AgentConfig(),
        )
        fields.update(overrides)
        meeting = Meeting(**fields)
        await store.create_meeting(meeting)
        return meeting

    return _make


def chat_message(
    message_id: str,
    content: str,
    sender: str = "Alice",
    created=None,
    sender_id: str = "user-alice",
) -> Dict[str, Any]:
    """Build a Graph chatMessage payload."""
    created = created or utc_now()
    return {
        "id": message_id,
        "messageType": "message",
        "createdDateTime": created.strftime("%Y-%m-%dT%H:%M:%S.%fZ"),
        "from": {"user": {"id": sender_id, "displayName": sender}, "application": None},
        "body": {"contentType": "html", "content": f"<p>{content}</p>"},
    }


@pytest.fixture
def make_chat_message():
    """Provide the Graph chatMessage builder."""
    return chat_message
