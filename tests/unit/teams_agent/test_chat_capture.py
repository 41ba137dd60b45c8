"""Unit tests for meeting chat capture."""

import pytest
import pytest_asyncio
from datetime import timedelta

from services.teams_agent.chat_capture import (
    ChatCaptureService,
    WELCOME_MESSAGE,
    analyze_messages,
    is_user_message,
)
from services.teams_agent.classifier import MessageClassifier
from shared.schemas import ChatMessageRecord, utc_now


@pytest_asyncio.fixture
async def joined(agent, make_meeting):
    """A meeting in progress that the agent has joined."""
    meeting = await make_meeting(start_in_minutes=-1, duration_minutes=30)
    await agent.attendance.join(meeting.id)
    return meeting


def _posted(graph_client):
    return [call.args[1] for call in graph_client.send_chat_message.await_args_list]


class TestCaptureLifecycle:
    """Test starting and stopping capture jobs."""

    @pytest.mark.asyncio
    async def test_start_with_chat(self, agent, joined, store, graph_client):
        """Test a resolvable chat polls at the live interval and greets once."""
        capture = agent.chat_capture
        assert capture.is_capturing(joined.id)

        job = agent.job_scheduler.get_job(ChatCaptureService.job_id(joined.id))
        assert job.trigger.interval == timedelta(seconds=15)
        assert store.all("attendance")[0]["chat_id"] == "chat-1"
        assert _posted(graph_client) == [WELCOME_MESSAGE]

    @pytest.mark.asyncio
    async def test_start_without_chat_is_degraded(self, agent, make_meeting, graph_client):
        """Test an unresolved chat polls at the fallback interval."""
        graph_client.find_chat_id.return_value = None
        meeting = await make_meeting(start_in_minutes=-1)

        await agent.attendance.join(meeting.id)

        job = agent.job_scheduler.get_job(ChatCaptureService.job_id(meeting.id))
        assert job.trigger.interval == timedelta(seconds=45)
        graph_client.send_chat_message.assert_not_called()

    @pytest.mark.asyncio
    async def test_degraded_capture_switches_to_live(self, agent, make_meeting, graph_client, store):
        """Test the chat id is retried each poll and the interval tightens once found."""
        graph_client.find_chat_id.return_value = None
        meeting = await make_meeting(start_in_minutes=-1)
        await agent.attendance.join(meeting.id)

        assert await agent.chat_capture.capture(meeting.id) == 0
        graph_client.list_chat_messages.assert_not_called()

        graph_client.find_chat_id.return_value = "chat-late"
        await agent.chat_capture.capture(meeting.id)

        job = agent.job_scheduler.get_job(ChatCaptureService.job_id(meeting.id))
        assert job.trigger.interval == timedelta(seconds=15)
        assert (await store.get_item("attendance", meeting.id))["chat_id"] == "chat-late"
        graph_client.list_chat_messages.assert_awaited_with("chat-late")

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, agent, joined):
        assert await agent.chat_capture.stop(joined.id) is True
        assert not agent.chat_capture.is_capturing(joined.id)
        assert await agent.chat_capture.stop(joined.id) is False

    @pytest.mark.asyncio
    async def test_resumed_capture_does_not_greet(self, agent, joined, graph_client):
        attendance = await agent.attendance.get_attendance(joined.id)
        await agent.chat_capture.stop(joined.id, final_capture=False)
        graph_client.send_chat_message.reset_mock()

        await agent.chat_capture.start(joined, attendance)

        assert agent.chat_capture.is_capturing(joined.id)
        graph_client.send_chat_message.assert_not_called()
        graph_client.find_chat_id.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_capture_stops_when_agent_left(self, agent, joined, store, graph_client):
        await store.update_item("attendance", joined.id, {"status": "left"})
        assert await agent.chat_capture.capture(joined.id) == 0
        assert not agent.chat_capture.is_capturing(joined.id)
        graph_client.list_chat_messages.assert_not_called()


class TestCapture:
    """Test polling, dedup and storage."""

    @pytest.mark.asyncio
    async def test_new_messages_are_classified_and_stored(
        self, agent, joined, store, graph_client, make_chat_message
    ):
        now = utc_now()
        graph_client.list_chat_messages.return_value = [
            make_chat_message("m2", "We agreed on Tuesday", sender="Bob", created=now),
            make_chat_message("m1", "Is the demo ready?", created=now - timedelta(seconds=5)),
        ]

        assert await agent.chat_capture.capture(joined.id) == 2

        messages = await agent.chat_capture.get_messages(joined.id)
        assert [m.id for m in messages] == ["m1", "m2"]
        assert messages[0].content == "Is the demo ready?"
        assert messages[0].category == "question"
        assert messages[1].is_decision is True
        assert messages[1].sender == "Bob"

        attendance = await agent.attendance.get_attendance(joined.id)
        assert attendance.message_count == 2
        assert attendance.question_count == 1
        assert abs((attendance.last_capture_time - now).total_seconds()) < 0.001

    @pytest.mark.asyncio
    async def test_no_duplicate_records(self, agent, joined, store, graph_client, make_chat_message):
        """Test the same source message is stored once per meeting across polls."""
        created = utc_now()
        batch = [
            make_chat_message("m1", "first", created=created - timedelta(seconds=1)),
            make_chat_message("m2", "second", created=created),
        ]
        graph_client.list_chat_messages.return_value = batch

        assert await agent.chat_capture.capture(joined.id) == 2
        assert await agent.chat_capture.capture(joined.id) == 0

        graph_client.list_chat_messages.return_value = batch + [
            make_chat_message("m3", "third", created=created + timedelta(seconds=1)),
        ]
        assert await agent.chat_capture.capture(joined.id) == 1

        ids = sorted(doc["id"] for doc in store.all("chats"))
        assert ids == ["m1", "m2", "m3"]

    @pytest.mark.asyncio
    async def test_no_duplicates_after_restart(self, agent, joined, store, graph_client, make_chat_message):
        """Test a fresh capture service relies on the stored capture time."""
        batch = [make_chat_message("m1", "hello")]
        graph_client.list_chat_messages.return_value = batch
        await agent.chat_capture.capture(joined.id)

        restarted = ChatCaptureService(
            store, graph_client, MessageClassifier(None), agent.job_scheduler
        )
        assert await restarted.capture(joined.id) == 0
        assert len(store.all("chats")) == 1

    @pytest.mark.asyncio
    async def test_store_conflict_is_skipped(self, agent, joined, store, make_chat_message):
        created = utc_now()
        raw = make_chat_message("m1", "hello", created=created)
        first = await agent.chat_capture._store_message(joined.id, raw, created)
        second = await agent.chat_capture._store_message(joined.id, raw, created)
        assert first is not None
        assert second is None
        assert len(store.all("chats")) == 1

    @pytest.mark.asyncio
    async def test_skips_system_and_bot_messages(self, agent, joined, graph_client, make_chat_message):
        system = make_chat_message("s1", "joined")
        system["messageType"] = "systemEventMessage"
        bot = make_chat_message("b1", "hello from a bot")
        bot["from"] = {"user": None, "application": {"displayName": "Bot"}}
        empty = make_chat_message("e1", "")
        graph_client.list_chat_messages.return_value = [system, bot, empty]

        assert await agent.chat_capture.capture(joined.id) == 0

    @pytest.mark.asyncio
    async def test_graph_failure_is_logged_not_raised(self, agent, joined, graph_client):
        graph_client.list_chat_messages.side_effect = RuntimeError("Graph down")
        assert await agent.chat_capture.capture(joined.id) == 0
        assert agent.chat_capture.is_capturing(joined.id)


class TestInsights:
    """Test insights posted back to the meeting chat."""

    @pytest.mark.asyncio
    async def test_action_item_insight_and_notification(
        self, agent, joined, store, graph_client, make_chat_message
    ):
        graph_client.list_chat_messages.return_value = [
            make_chat_message("m1", "Action item: send notes, assigned to Dana by Monday"),
        ]
        await agent.chat_capture.capture(joined.id)

        posted = _posted(graph_client)
        assert any("Action Item Detected" in text and "Assignee: Dana" in text for text in posted)
        notifications = store.all("notifications")
        assert len(notifications) == 1
        assert notifications[0]["notification_type"] == "urgent_action_item"

    @pytest.mark.asyncio
    async def test_urgent_message_notification(self, agent, joined, store, graph_client, make_chat_message):
        graph_client.list_chat_messages.return_value = [
            make_chat_message("m1", "Production is down, urgent"),
        ]
        await agent.chat_capture.capture(joined.id)
        notifications = store.all("notifications")
        assert notifications[0]["notification_type"] == "urgent_message"
        assert notifications[0]["urgency"] == "high"

    @pytest.mark.asyncio
    async def test_question_pattern_alert_every_third_question(
        self, agent, joined, graph_client, make_chat_message
    ):
        created = utc_now()
        graph_client.list_chat_messages.return_value = [
            make_chat_message(f"q{i}", f"Question number {i}?", created=created + timedelta(seconds=i))
            for i in range(3)
        ]
        await agent.chat_capture.capture(joined.id)

        alerts = [text for text in _posted(graph_client) if "Question Pattern Alert" in text]
        assert len(alerts) == 1
        assert "3 questions" in alerts[0]

    @pytest.mark.asyncio
    async def test_progress_update_every_twenty_messages(
        self, agent, joined, graph_client, make_chat_message
    ):
        created = utc_now()
        graph_client.list_chat_messages.return_value = [
            make_chat_message(f"m{i}", f"note {i}", created=created + timedelta(seconds=i))
            for i in range(20)
        ]
        await agent.chat_capture.capture(joined.id)

        updates = [text for text in _posted(graph_client) if "Meeting Progress Update" in text]
        assert len(updates) == 1
        assert "Messages: 20" in updates[0]


class TestAnalysis:
    """Test chat analysis aggregation."""

    def test_analyze_messages(self):
        base = utc_now().replace(second=0, microsecond=0)
        records = [
            ChatMessageRecord(id="1", meeting_id="m", sender="Alice", content="a?",
                              timestamp=base, category="question", is_question=True),
            ChatMessageRecord(id="2", meeting_id="m", sender="Alice", content="b",
                              timestamp=base + timedelta(seconds=10), urgency="high"),
            ChatMessageRecord(id="3", meeting_id="m", sender="Bob", content="c",
                              timestamp=base + timedelta(minutes=1), category="decision", is_decision=True),
        ]
        analysis = analyze_messages("m", records)

        assert analysis.total_messages == 3
        assert analysis.categorized_counts == {"question": 1, "discussion": 1, "decision": 1}
        assert analysis.most_active_participant == "Alice"
        assert analysis.participant_analysis["Alice"].questions == 1
        assert analysis.participant_analysis["Bob"].decisions == 1
        assert analysis.urgent_messages == 1
        assert list(analysis.timeline.values()) == [2, 1]

    def test_empty_analysis(self):
        analysis = analyze_messages("m", [])
        assert analysis.total_messages == 0
        assert analysis.most_active_participant is None

    def test_is_user_message(self, make_chat_message):
        assert is_user_message(make_chat_message("1", "hello")) is True
        assert is_user_message(make_chat_message("2", "")) is False

    @pytest.mark.asyncio
    async def test_status_lists_active_captures(self, agent, joined):
        status = agent.chat_capture.get_status()
        assert status.active_captures == 1
        assert status.meetings[0]["meeting_id"] == joined.id
        assert status.meetings[0]["interval_seconds"] == 15
