"""
Integration tests for the meeting lifecycle.

Creates a meeting through the service layer, lets the agent join it, captures
chat, leaves and checks the summary that comes out the other end.
"""
import pytest
from datetime import timedelta

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from services.api.service_meeting import ServiceMeeting
from services.teams_agent.main import MeetingAgentService
from shared.schemas import MeetingStatus, ScheduleRecord, utc_now


@pytest.fixture
def chat_transcript(make_chat_message):
    start = utc_now() - timedelta(minutes=1)
    return [
        make_chat_message("m1", "What is the launch date?", created=start),
        make_chat_message("m2", "Action item: Bob will send the deck by Friday", sender="Bob",
                          sender_id="user-bob", created=start + timedelta(seconds=10)),
        make_chat_message("m3", "We agreed to launch in May", sender="Carol",
                          sender_id="user-carol", created=start + timedelta(seconds=20)),
    ]


def _posted(graph_client):
    return [call.args[1] for call in graph_client.send_chat_message.call_args_list]


class TestMeetingLifecycle:
    """End-to-end flow over the in-memory store and mocked Graph."""

    @pytest.mark.asyncio
    async def test_create_join_capture_leave_summarize(self, agent, store, graph_client, chat_transcript):
        """Test a meeting from creation to its posted recap."""
        service = ServiceMeeting(store, agent)
        start = utc_now() + timedelta(minutes=1)

        created = await service.create_meeting(
            user_id="demo-user-123",
            subject="Launch sync",
            start_time=start,
            end_time=start + timedelta(minutes=30),
            attendees=["alice@company.com", "bob@company.com", "carol@company.com"],
        )
        meeting = created["meeting"]

        assert created["agent_status"]["joined"] is True
        assert meeting.status == MeetingStatus.IN_PROGRESS.value
        assert agent.chat_capture.is_capturing(meeting.id)
        assert agent.job_scheduler.get_job(agent.scheduler.leave_job_id(meeting.id)) is not None
        assert len(_posted(graph_client)) == 1

        graph_client.list_chat_messages.return_value = chat_transcript
        assert await agent.chat_capture.capture(meeting.id) == 3
        assert await agent.chat_capture.capture(meeting.id) == 0

        analysis = await agent.chat_capture.get_chat_analysis(meeting.id)
        assert analysis.total_messages == 3
        assert analysis.categorized_counts["question"] == 1
        assert analysis.categorized_counts["decision"] == 1

        result = await agent.leave(meeting.id)

        assert result.was_attending is True
        assert result.summary_error is None
        assert not agent.chat_capture.is_capturing(meeting.id)
        assert agent.job_scheduler.get_job(agent.scheduler.leave_job_id(meeting.id)) is None

        stored = await store.get_meeting(meeting.id)
        assert stored.status == MeetingStatus.COMPLETED.value
        assert stored.summary_id == result.summary_id

        summary = await agent.summary_service.get_latest(meeting.id)
        assert summary.id == result.summary_id
        assert summary.metrics["total_messages"] == 3
        assert len(summary.action_items) == 1
        assert len(store.all("reminders")) == 1
        assert "Meeting Summary" in _posted(graph_client)[-1]

        schedule = await store.get_item("schedules", ScheduleRecord.id_for(meeting.id))
        assert schedule["completion_reason"] == "joined"

        again = await agent.leave(meeting.id)
        assert again.was_attending is False
        assert len(await agent.summary_service.get_summaries(meeting.id)) == 1

    @pytest.mark.asyncio
    async def test_restart_resumes_attendance(
        self, agent, store, graph_client, llm_client, make_meeting, chat_transcript
    ):
        """Test a fresh process picks up the meeting the agent was attending."""
        meeting = await make_meeting(start_in_minutes=-5, duration_minutes=60)
        await agent.join(meeting.id)
        graph_client.list_chat_messages.return_value = chat_transcript
        await agent.chat_capture.capture(meeting.id)
        posts_before_restart = len(_posted(graph_client))

        job_scheduler = AsyncIOScheduler(timezone="UTC")
        job_scheduler.start(paused=True)
        try:
            restarted = MeetingAgentService(store, graph_client, llm_client, job_scheduler)

            assert await restarted.scheduler.reconcile() == {"resumed": 1, "closed": 0}
            assert restarted.chat_capture.is_capturing(meeting.id)
            leave_job = job_scheduler.get_job(restarted.scheduler.leave_job_id(meeting.id))
            assert leave_job.next_run_time == meeting.end_time
            assert len(_posted(graph_client)) == posts_before_restart

            assert await restarted.chat_capture.capture(meeting.id) == 0
        finally:
            job_scheduler.shutdown(wait=False)

    @pytest.mark.asyncio
    async def test_cancelled_meeting_is_never_joined(self, agent, store, graph_client):
        service = ServiceMeeting(store, agent)
        start = utc_now() + timedelta(minutes=30)
        created = await service.create_meeting(
            user_id="demo-user-123",
            subject="Dropped",
            start_time=start,
            end_time=start + timedelta(minutes=30),
        )
        meeting_id = created["meeting"].id

        await service.cancel_meeting(meeting_id, "demo-user-123")
        record = await store.get_item("schedules", ScheduleRecord.id_for(meeting_id))
        await store.update_item("schedules", record["id"], {"scheduled_join_time": utc_now()})
        await agent.scheduler.tick()

        assert (await store.get_meeting(meeting_id)).status == MeetingStatus.CANCELLED.value
        assert store.all("attendance") == []
        graph_client.send_chat_message.assert_not_called()
