"""Unit tests for the Microsoft Graph client."""

import pytest
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import aiohttp

from services.teams_agent.graph_client import (
    GraphClient,
    format_graph_datetime,
    parse_graph_datetime,
)
from shared.errors import ServiceUnavailableError, UpstreamError, ValidationError


class FakeResponse:
    def __init__(self, status=200, payload=None, reason="OK"):
        self.status = status
        self.reason = reason
        self._payload = payload

    async def json(self, content_type=None):
        return self._payload

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


class FakeSession:
    """Records requests and replays queued responses."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def request(self, method, url, headers=None, params=None, json=None):
        self.calls.append({"method": method, "url": url, "headers": headers, "params": params, "json": json})
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    async def close(self):
        pass


@pytest.fixture
def auth():
    provider = MagicMock()
    provider.is_available.return_value = True
    provider.get_app_token = AsyncMock(return_value="token-abc")
    return provider


def _client(auth, *responses, organizer="organizer@company.com"):
    session = FakeSession(*responses)
    client = GraphClient(
        auth, session=session, base_url="https://graph.test/v1.0", organizer_email=organizer
    )
    return client, session


START = datetime(2025, 3, 10, 14, 0, tzinfo=timezone.utc)
END = datetime(2025, 3, 10, 15, 0, tzinfo=timezone.utc)


class TestDatetimeHelpers:
    def test_format_graph_datetime(self):
        assert format_graph_datetime(START) == {"dateTime": "2025-03-10T14:00:00", "timeZone": "UTC"}

    @pytest.mark.parametrize("value", [
        "2025-03-10T14:00:00Z",
        "2025-03-10T14:00:00.0000000",
        {"dateTime": "2025-03-10T14:00:00.0000000", "timeZone": "UTC"},
        "2025-03-10T16:00:00+02:00",
    ])
    def test_parse_graph_datetime(self, value):
        assert parse_graph_datetime(value) == START

    def test_parse_invalid(self):
        assert parse_graph_datetime(None) is None
        assert parse_graph_datetime("not a date") is None


class TestEvents:
    """Test calendar event calls."""

    @pytest.mark.asyncio
    async def test_create_event(self, auth):
        """Test creating a Teams meeting event."""
        client, session = _client(auth, FakeResponse(201, {
            "id": "event-123",
            "webLink": "https://outlook.office365.com/event-123",
            "onlineMeeting": {"joinUrl": "https://teams.microsoft.com/l/meetup-join/abc"},
        }))

        result = await client.create_event(
            "Planning", START, END, ["alice@company.com", "Organizer@company.com"], "Agenda"
        )

        assert result == {
            "graph_event_id": "event-123",
            "join_url": "https://teams.microsoft.com/l/meetup-join/abc",
            "web_url": "https://outlook.office365.com/event-123",
            "organizer_email": "organizer@company.com",
        }
        call = session.calls[0]
        assert call["method"] == "POST"
        assert call["url"] == "https://graph.test/v1.0/users/organizer@company.com/events"
        assert call["headers"]["Authorization"] == "Bearer token-abc"
        body = call["json"]
        assert body["isOnlineMeeting"] is True
        assert body["onlineMeetingProvider"] == "teamsForBusiness"
        assert [a["emailAddress"]["address"] for a in body["attendees"]] == ["alice@company.com"]
        assert body["start"] == {"dateTime": "2025-03-10T14:00:00", "timeZone": "UTC"}

    @pytest.mark.asyncio
    async def test_create_event_requires_organizer(self, auth):
        client, _ = _client(auth, organizer="")
        assert client.is_available() is False
        with pytest.raises(ServiceUnavailableError):
            await client.create_event("Planning", START, END, [])

    @pytest.mark.asyncio
    async def test_update_event_sends_only_changes(self, auth):
        client, session = _client(auth, FakeResponse(200, {"id": "event-123"}))
        await client.update_event("event-123", subject="Renamed")
        assert session.calls[0]["method"] == "PATCH"
        assert session.calls[0]["json"] == {"subject": "Renamed"}

    @pytest.mark.asyncio
    async def test_update_event_without_changes(self, auth):
        client, session = _client(auth)
        assert await client.update_event("event-123") == {}
        assert session.calls == []

    @pytest.mark.asyncio
    async def test_cancel_event(self, auth):
        client, session = _client(auth, FakeResponse(202, None))
        await client.cancel_event("event-123", "Cancelled")
        assert session.calls[0]["url"].endswith("/events/event-123/cancel")
        assert session.calls[0]["json"] == {"comment": "Cancelled"}


class TestErrors:
    """Test Graph error mapping."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status,prefix", [
        (401, "Authentication failed"),
        (403, "Permission denied"),
        (404, "Not found"),
        (400, "Bad request"),
        (500, "Get Teams meeting failed"),
    ])
    async def test_error_mapping(self, auth, status, prefix):
        client, _ = _client(auth, FakeResponse(status, {"error": {"message": "details"}}, reason="Err"))
        with pytest.raises(UpstreamError) as exc_info:
            await client.get_event("event-123")
        assert str(exc_info.value).startswith(prefix)
        assert exc_info.value.upstream_status == status

    @pytest.mark.asyncio
    async def test_transport_error(self, auth):
        client, _ = _client(auth, aiohttp.ClientConnectionError("connection reset"))
        with pytest.raises(UpstreamError):
            await client.get_event("event-123")

    @pytest.mark.asyncio
    async def test_no_content(self, auth):
        client, _ = _client(auth, FakeResponse(204))
        assert await client.send_chat_message("chat-1", "hi") == {}


class TestAvailability:
    @pytest.mark.asyncio
    async def test_check_availability(self, auth):
        """Test busy attendees are reported as conflicts."""
        client, session = _client(auth, FakeResponse(200, {"value": [
            {"scheduleId": "alice@company.com", "scheduleItems": [], "availabilityView": "0"},
            {
                "scheduleId": "bob@company.com",
                "scheduleItems": [{
                    "status": "busy",
                    "start": {"dateTime": "2025-03-10T14:00:00.0000000", "timeZone": "UTC"},
                    "end": {"dateTime": "2025-03-10T14:30:00.0000000", "timeZone": "UTC"},
                }],
                "availabilityView": "2",
            },
        ]}))

        result = await client.check_availability(["alice@company.com", "bob@company.com"], START, END)

        assert result["all_available"] is False
        assert result["conflicts"] == ["bob@company.com"]
        assert result["summary"] == {"total": 2, "available": 1, "busy": 1}
        assert result["attendees"][1]["busy_times"][0]["start"] == START
        assert session.calls[0]["url"].endswith("/calendar/getSchedule")

    @pytest.mark.asyncio
    async def test_check_availability_validates_range(self, auth):
        client, _ = _client(auth)
        with pytest.raises(ValidationError):
            await client.check_availability(["a@b.com"], END, START)

    @pytest.mark.asyncio
    async def test_no_attendees(self, auth):
        client, session = _client(auth)
        result = await client.check_availability([], START, END)
        assert result["all_available"] is True
        assert session.calls == []


class TestDirectory:
    @pytest.mark.asyncio
    async def test_search_users(self, auth):
        client, session = _client(auth, FakeResponse(200, {"value": [
            {"id": "1", "displayName": "Alice Smith", "mail": "alice@company.com", "jobTitle": "PM"},
        ]}))

        users = await client.search_users("O'Al")

        assert users == [{
            "id": "1", "display_name": "Alice Smith", "email": "alice@company.com",
            "job_title": "PM", "department": None,
        }]
        assert "startswith(displayName,'O''Al')" in session.calls[0]["params"]["$filter"]

    @pytest.mark.asyncio
    async def test_list_users_skips_accounts_without_mail(self, auth):
        client, _ = _client(auth, FakeResponse(200, {"value": [
            {"id": "1", "displayName": "Alice", "mail": "alice@company.com"},
            {"id": "2", "displayName": "Room 1", "mail": None},
        ]}))
        users = await client.list_users()
        assert [u["id"] for u in users] == ["1"]

    @pytest.mark.asyncio
    async def test_resolve_users_skips_unmatched_names(self, auth):
        client, session = _client(
            auth,
            FakeResponse(200, {"value": [{"id": "1", "displayName": "Sean O'Neil", "mail": "sean@company.com"}]}),
            FakeResponse(200, {"value": []}),
        )

        users = await client.resolve_users([" O'Neil ", "", "Nobody"])

        assert len(session.calls) == 2
        assert session.calls[0]["params"]["$filter"] == "startswith(displayName,'O''Neil')"
        assert session.calls[0]["params"]["$top"] == "1"
        assert users == [{
            "id": "1", "display_name": "Sean O'Neil", "email": "sean@company.com",
            "job_title": None, "department": None, "requested_name": "O'Neil",
        }]


class TestChat:
    """Test meeting chat calls."""

    @pytest.mark.asyncio
    async def test_find_chat_id_from_event(self, auth):
        client, session = _client(auth, FakeResponse(200, {
            "onlineMeeting": {"joinUrl": "https://join", "chatInfo": {"threadId": "19:meeting@thread.v2"}},
        }))
        assert await client.find_chat_id("event-123") == "19:meeting@thread.v2"
        assert len(session.calls) == 1

    @pytest.mark.asyncio
    async def test_find_chat_id_via_online_meeting(self, auth):
        client, session = _client(
            auth,
            FakeResponse(200, {"onlineMeeting": {"joinUrl": "https://join"}}),
            FakeResponse(200, {"value": [{"chatInfo": {"threadId": "19:found@thread.v2"}}]}),
        )
        assert await client.find_chat_id("event-123") == "19:found@thread.v2"
        assert session.calls[1]["params"] == {"$filter": "JoinWebUrl eq 'https://join'"}

    @pytest.mark.asyncio
    async def test_find_chat_id_without_online_meeting(self, auth):
        client, _ = _client(auth, FakeResponse(200, {"id": "event-123"}))
        assert await client.find_chat_id("event-123") is None

    @pytest.mark.asyncio
    async def test_list_chat_messages(self, auth):
        client, session = _client(auth, FakeResponse(200, {"value": [{"id": "m1"}]}))
        assert await client.list_chat_messages("chat-1") == [{"id": "m1"}]
        assert session.calls[0]["url"] == "https://graph.test/v1.0/chats/chat-1/messages"
        assert session.calls[0]["params"]["$top"] == "50"

    @pytest.mark.asyncio
    async def test_send_chat_message(self, auth):
        client, session = _client(auth, FakeResponse(201, {"id": "posted"}))
        await client.send_chat_message("chat-1", "<b>hi</b>")
        assert session.calls[0]["json"] == {"body": {"contentType": "html", "content": "<b>hi</b>"}}


class TestDirectMessages:
    """Test one-on-one chat calls."""

    @pytest.mark.asyncio
    async def test_send_user_message(self, auth):
        client, session = _client(
            auth,
            FakeResponse(201, {"id": "19:dm@unq.gbl.spaces"}),
            FakeResponse(201, {"id": "msg-1"}),
        )

        result = await client.send_user_message(" alice@company.com ", "hello")

        assert result == {"chat_id": "19:dm@unq.gbl.spaces", "message_id": "msg-1"}
        create = session.calls[0]
        assert create["method"] == "POST"
        assert create["url"] == "https://graph.test/v1.0/chats"
        assert create["json"]["chatType"] == "oneOnOne"
        binds = [m["user@odata.bind"] for m in create["json"]["members"]]
        assert binds == [
            "https://graph.test/v1.0/users('organizer@company.com')",
            "https://graph.test/v1.0/users('alice@company.com')",
        ]
        assert session.calls[1]["url"] == "https://graph.test/v1.0/chats/19:dm@unq.gbl.spaces/messages"
        assert session.calls[1]["json"] == {"body": {"contentType": "html", "content": "hello"}}

    @pytest.mark.asyncio
    async def test_cannot_message_the_organizer(self, auth):
        client, session = _client(auth)
        with pytest.raises(ValidationError):
            await client.get_or_create_user_chat("Organizer@Company.com")
        assert session.calls == []

    @pytest.mark.asyncio
    async def test_chat_without_id(self, auth):
        client, session = _client(auth, FakeResponse(201, {}))
        with pytest.raises(UpstreamError):
            await client.send_user_message("alice@company.com", "hello")
        assert len(session.calls) == 1
