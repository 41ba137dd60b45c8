"""
Microsoft Graph client for Teams calendar events, directory and meeting chat.

All calls use app-only credentials from the auth provider and act on the
organizer mailbox configured in settings.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import aiohttp
from dateutil import parser as date_parser

from shared.config import get_settings
from shared.errors import ServiceUnavailableError, UpstreamError, ValidationError
from .auth_provider import GraphAuthProvider

logger = logging.getLogger(__name__)
settings = get_settings()


def format_graph_datetime(value: datetime) -> Dict[str, str]:
    """Graph dateTimeTimeZone payload in UTC."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return {"dateTime": value.strftime("%Y-%m-%dT%H:%M:%S"), "timeZone": "UTC"}


def parse_graph_datetime(value: Any) -> Optional[datetime]:
    """Parse a Graph timestamp or dateTimeTimeZone dict into aware UTC."""
    if not value:
        return None
    if isinstance(value, dict):
        value = value.get("dateTime")
        if not value:
            return None
    try:
        parsed = date_parser.isoparse(value)
    except (TypeError, ValueError):
        logger.warning(f"Could not parse Graph datetime: {value}")
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


class GraphClient:
    """Thin async wrapper over the Graph endpoints the agent needs."""

    def __init__(
        self,
        auth_provider: Optional[GraphAuthProvider] = None,
        session: Optional[aiohttp.ClientSession] = None,
        base_url: Optional[str] = None,
        organizer_email: Optional[str] = None,
    ):
        self.auth_provider = auth_provider or GraphAuthProvider()
        self.session = session
        self.base_url = (base_url or settings.graph_api_endpoint).rstrip("/")
        self.organizer_email = organizer_email if organizer_email is not None else settings.meeting_organizer_email
        self._owns_session = session is None

    async def initialize(self) -> None:
        """Create the HTTP session."""
        if self.session is None:
            timeout = aiohttp.ClientTimeout(total=settings.graph_request_timeout_seconds)
            self.session = aiohttp.ClientSession(timeout=timeout)
            self._owns_session = True
        logger.info("Graph client initialized", extra={"available": self.is_available()})

    async def cleanup(self) -> None:
        if self.session and self._owns_session:
            await self.session.close()
        self.session = None

    def is_available(self) -> bool:
        return self.auth_provider.is_available() and bool(self.organizer_email)

    def _organizer(self) -> str:
        if not self.organizer_email:
            raise ServiceUnavailableError("MEETING_ORGANIZER_EMAIL is not configured")
        return self.organizer_email

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Dict[str, Any]] = None,
        context: str = "Graph request",
    ) -> Dict[str, Any]:
        if self.session is None:
            await self.initialize()

        token = await self.auth_provider.get_app_token()
        headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        }
        url = path if path.startswith("http") else f"{self.base_url}{path}"

        try:
            async with self.session.request(
                method, url, headers=headers, params=params, json=json_body
            ) as response:
                if response.status >= 400:
                    message = await self._error_message(response)
                    logger.error(
                        f"❌ {context} failed",
                        extra={"status": response.status, "url": url, "error": message},
                    )
                    raise self._map_error(response.status, message, context)

                if response.status == 204:
                    return {}
                return await response.json(content_type=None) or {}

        except aiohttp.ClientError as e:
            logger.error(f"❌ {context} failed: {e}")
            raise UpstreamError(f"{context} failed: {e}")

    @staticmethod
    async def _error_message(response) -> str:
        try:
            data = await response.json(content_type=None)
            return (data or {}).get("error", {}).get("message") or response.reason or "Unknown error"
        except (ValueError, aiohttp.ContentTypeError):
            return response.reason or "Unknown error"

    def _map_error(self, status: int, message: str, context: str) -> UpstreamError:
        if status == 401:
            text = "Authentication failed: check the Graph app credentials"
        elif status == 403:
            text = f"Permission denied: check the app's Graph permissions for {self.organizer_email}"
        elif status == 404:
            text = f"Not found: {message}"
        elif status == 400:
            text = f"Bad request: {message}"
        else:
            text = f"{context} failed: {message}"
        return UpstreamError(text, upstream_status=status)

    # Calendar events

    async def create_event(
        self,
        subject: str,
        start_time: datetime,
        end_time: datetime,
        attendees: List[str],
        description: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Create a Teams online meeting on the organizer calendar."""
        organizer = self._organizer()
        attendee_list = [
            {"emailAddress": {"address": email, "name": email.split("@")[0]}, "type": "required"}
            for email in attendees
            if email and email.lower() != organizer.lower()
        ]
        body = {
            "subject": subject,
            "body": {"contentType": "HTML", "content": description or ""},
            "start": format_graph_datetime(start_time),
            "end": format_graph_datetime(end_time),
            "attendees": attendee_list,
            "isOnlineMeeting": True,
            "onlineMeetingProvider": "teamsForBusiness",
            "allowNewTimeProposals": True,
        }

        logger.info(f"📅 Creating Teams meeting: {subject}", extra={"attendees": len(attendee_list)})
        event = await self._request(
            "POST", f"/users/{organizer}/events", json_body=body, context="Create Teams meeting"
        )
        online_meeting = event.get("onlineMeeting") or {}
        return {
            "graph_event_id": event.get("id"),
            "join_url": online_meeting.get("joinUrl"),
            "web_url": event.get("webLink"),
            "organizer_email": organizer,
        }

    async def update_event(
        self,
        graph_event_id: str,
        subject: Optional[str] = None,
        description: Optional[str] = None,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        attendees: Optional[List[str]] = None,
    ) -> Dict[str, Any]:
        organizer = self._organizer()
        body: Dict[str, Any] = {}
        if subject is not None:
            body["subject"] = subject
        if description is not None:
            body["body"] = {"contentType": "HTML", "content": description}
        if start_time is not None:
            body["start"] = format_graph_datetime(start_time)
        if end_time is not None:
            body["end"] = format_graph_datetime(end_time)
        if attendees is not None:
            body["attendees"] = [
                {"emailAddress": {"address": email}, "type": "required"} for email in attendees
            ]
        if not body:
            return {}
        return await self._request(
            "PATCH", f"/users/{organizer}/events/{graph_event_id}", json_body=body,
            context="Update Teams meeting",
        )

    async def cancel_event(self, graph_event_id: str, comment: str = "") -> None:
        organizer = self._organizer()
        await self._request(
            "POST", f"/users/{organizer}/events/{graph_event_id}/cancel",
            json_body={"comment": comment}, context="Cancel Teams meeting",
        )
        logger.info(f"Cancelled Teams meeting {graph_event_id}")

    async def get_event(self, graph_event_id: str) -> Dict[str, Any]:
        organizer = self._organizer()
        return await self._request(
            "GET", f"/users/{organizer}/events/{graph_event_id}", context="Get Teams meeting"
        )

    # Availability

    async def get_free_busy(
        self, emails: List[str], start_time: datetime, end_time: datetime
    ) -> List[Dict[str, Any]]:
        """Free/busy status per attendee over the window."""
        organizer = self._organizer()
        body = {
            "schedules": emails,
            "startTime": format_graph_datetime(start_time),
            "endTime": format_graph_datetime(end_time),
            "availabilityViewInterval": 60,
        }
        logger.info(f"🔍 Checking availability for {len(emails)} attendees")
        data = await self._request(
            "POST", f"/users/{organizer}/calendar/getSchedule", json_body=body,
            context="Free/busy lookup",
        )

        results = []
        for index, schedule in enumerate(data.get("value", [])):
            email = schedule.get("scheduleId") or (emails[index] if index < len(emails) else None)
            busy = [
                item for item in schedule.get("scheduleItems", [])
                if item.get("status", "busy") != "free"
            ]
            results.append({
                "email": email,
                "status": "busy" if busy else "free",
                "busy_times": [
                    {
                        "start": parse_graph_datetime(item.get("start")),
                        "end": parse_graph_datetime(item.get("end")),
                        "status": item.get("status"),
                    }
                    for item in busy
                ],
                "availability_view": schedule.get("availabilityView"),
            })
        return results

    async def check_availability(
        self, emails: List[str], start_time: datetime, end_time: datetime
    ) -> Dict[str, Any]:
        duration_minutes = (end_time - start_time).total_seconds() / 60
        if duration_minutes <= 0:
            raise ValidationError("End time must be after start time")
        if duration_minutes > settings.max_meeting_duration_minutes:
            raise ValidationError("Meeting duration cannot exceed 24 hours")

        if not emails:
            return {
                "all_available": True,
                "attendees": [],
                "summary": {"total": 0, "available": 0, "busy": 0},
            }

        statuses = await self.get_free_busy(emails, start_time, end_time)
        busy = [s for s in statuses if s["status"] == "busy"]
        return {
            "all_available": not busy,
            "attendees": statuses,
            "conflicts": [s["email"] for s in busy],
            "summary": {
                "total": len(statuses),
                "available": len(statuses) - len(busy),
                "busy": len(busy),
            },
        }

    # Directory

    async def search_users(self, term: str, limit: int = 20) -> List[Dict[str, Any]]:
        safe = term.replace("'", "''")
        params = {
            "$filter": (
                f"startswith(displayName,'{safe}') or startswith(givenName,'{safe}') "
                f"or startswith(surname,'{safe}') or startswith(mail,'{safe}')"
            ),
            "$select": "id,displayName,mail,userPrincipalName,jobTitle,department",
            "$top": str(limit),
        }
        data = await self._request("GET", "/users", params=params, context="User search")
        return [self._user_summary(user) for user in data.get("value", [])]

    async def list_users(self, limit: int = 50) -> List[Dict[str, Any]]:
        params = {
            "$select": "id,displayName,mail,userPrincipalName,jobTitle,department",
            "$top": str(limit),
        }
        data = await self._request("GET", "/users", params=params, context="List users")
        return [self._user_summary(user) for user in data.get("value", []) if user.get("mail")]

    async def resolve_users(self, names: List[str]) -> List[Dict[str, Any]]:
        """Map display names to directory users. Names with no match are left out."""
        resolved = []
        for name in names:
            term = (name or "").strip()
            if not term:
                continue
            safe = term.replace("'", "''")
            params = {
                "$filter": f"startswith(displayName,'{safe}')",
                "$select": "id,displayName,mail,userPrincipalName,jobTitle,department",
                "$top": "1",
            }
            logger.info(f"🔍 Searching for user: {term}")
            data = await self._request("GET", "/users", params=params, context="User lookup")
            users = data.get("value", [])
            if not users:
                logger.warning(f"⚠️ Could not find user: {term}")
                continue
            user = self._user_summary(users[0])
            user["requested_name"] = term
            resolved.append(user)
        return resolved

    @staticmethod
    def _user_summary(user: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "id": user.get("id"),
            "display_name": user.get("displayName"),
            "email": user.get("mail") or user.get("userPrincipalName"),
            "job_title": user.get("jobTitle"),
            "department": user.get("department"),
        }

    # Meeting chat

    async def find_chat_id(self, graph_event_id: str) -> Optional[str]:
        """Resolve the meeting chat thread id through the online meeting."""
        organizer = self._organizer()
        event = await self.get_event(graph_event_id)

        online_meeting = event.get("onlineMeeting") or {}
        chat_id = (online_meeting.get("chatInfo") or {}).get("threadId")
        if chat_id:
            return chat_id

        join_url = online_meeting.get("joinUrl")
        if not join_url:
            logger.warning(f"Event {graph_event_id} has no online meeting join URL")
            return None

        safe_url = join_url.replace("'", "''")
        data = await self._request(
            "GET",
            f"/users/{organizer}/onlineMeetings",
            params={"$filter": f"JoinWebUrl eq '{safe_url}'"},
            context="Online meeting lookup",
        )
        meetings = data.get("value", [])
        if not meetings:
            return None
        return (meetings[0].get("chatInfo") or {}).get("threadId")

    async def list_chat_messages(self, chat_id: str, top: Optional[int] = None) -> List[Dict[str, Any]]:
        params = {
            "$top": str(top or settings.chat_fetch_top),
            "$orderby": "createdDateTime desc",
        }
        data = await self._request(
            "GET", f"/chats/{chat_id}/messages", params=params, context="List chat messages"
        )
        return data.get("value", [])

    async def send_chat_message(self, chat_id: str, html: str) -> Dict[str, Any]:
        body = {"body": {"contentType": "html", "content": html}}
        return await self._request(
            "POST", f"/chats/{chat_id}/messages", json_body=body, context="Send chat message"
        )

    # Direct messages

    def _chat_member(self, email: str) -> Dict[str, Any]:
        return {
            "@odata.type": "#microsoft.graph.aadUserConversationMember",
            "roles": ["owner"],
            "user@odata.bind": f"{self.base_url}/users('{email}')",
        }

    async def get_or_create_user_chat(self, email: str) -> str:
        """One-on-one chat between the organizer and ``email``.

        Graph hands back the existing chat when the pair already has one.
        """
        organizer = self._organizer()
        if email.strip().lower() == organizer.lower():
            raise ValidationError("Cannot open a one-on-one chat with the organizer mailbox itself")
        body = {
            "chatType": "oneOnOne",
            "members": [self._chat_member(organizer), self._chat_member(email.strip())],
        }
        data = await self._request("POST", "/chats", json_body=body, context="Create one-on-one chat")
        chat_id = data.get("id")
        if not chat_id:
            raise UpstreamError("Create one-on-one chat failed: no chat id returned")
        return chat_id

    async def send_user_message(self, email: str, html: str) -> Dict[str, Any]:
        """Post ``html`` to the one-on-one chat with ``email``."""
        chat_id = await self.get_or_create_user_chat(email)
        message = await self.send_chat_message(chat_id, html)
        logger.info(f"📨 Direct message sent to {email}", extra={"chat_id": chat_id})
        return {"chat_id": chat_id, "message_id": message.get("id")}


def create_graph_client() -> GraphClient:
    """Factory function to create a Graph client."""
    return GraphClient()
