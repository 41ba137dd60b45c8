"""
Scheduler service for automatic meeting joins.

Schedule records live in the store. A one-minute tick picks up records whose
meeting is about to start and joins the agent; a one-shot date job per
meeting makes the agent leave at the meeting end. Attendance state is durable,
so on startup leave timers and capture loops are re-armed from the store.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

from shared.config import get_settings
from shared.errors import ValidationError
from shared.schemas import (
    CompletionReason,
    DeadLetter,
    Meeting,
    MeetingStatus,
    ScheduleRecord,
    ScheduleStatus,
    utc_now,
)
from .attendance import AttendanceService
from .chat_capture import ChatCaptureService
from .models import JoinResult, ScheduleOutcome, SchedulerStatus

logger = logging.getLogger(__name__)
settings = get_settings()

TICK_JOB_ID = "check_meetings"
CLEANUP_JOB_ID = "cleanup_schedules"


class MeetingScheduler:
    """Drives auto-join and auto-leave for scheduled meetings."""

    def __init__(
        self,
        dao,
        attendance: AttendanceService,
        chat_capture: ChatCaptureService,
        scheduler: AsyncIOScheduler,
    ):
        self.dao = dao
        self.attendance = attendance
        self.chat_capture = chat_capture
        self.scheduler = scheduler
        self.is_running = False

    @staticmethod
    def leave_job_id(meeting_id: str) -> str:
        return f"leave_{meeting_id}"

    async def start(self) -> None:
        """Register periodic jobs, start the scheduler and recover state."""
        logger.info("Starting meeting scheduler...")

        try:
            self.scheduler.add_job(
                self.tick,
                trigger=IntervalTrigger(seconds=settings.scheduler_tick_seconds),
                id=TICK_JOB_ID,
                name="Check for upcoming meetings",
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )
            self.scheduler.add_job(
                self.cleanup,
                trigger=IntervalTrigger(minutes=settings.cleanup_interval_minutes),
                id=CLEANUP_JOB_ID,
                name="Clean up completed schedules",
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )
            if not self.scheduler.running:
                self.scheduler.start()
            self.is_running = True

            await self.reconcile()
            upcoming = await self.dao.count_items("schedules", {
                "status": ScheduleStatus.SCHEDULED.value,
                "scheduled_join_time": {
                    "$gte": utc_now() - timedelta(minutes=settings.join_grace_minutes),
                    "$lte": utc_now() + timedelta(hours=settings.startup_lookahead_hours),
                },
            })
            logger.info(f"Meeting scheduler started successfully ({upcoming} upcoming auto-joins)")
            await self.tick()

        except Exception as e:
            logger.error(f"Failed to start meeting scheduler: {e}")
            raise

    async def stop(self) -> None:
        """Stop the meeting scheduler."""
        logger.info("Stopping meeting scheduler...")
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        self.is_running = False

    # Scheduling

    async def schedule(self, meeting: Meeting) -> Optional[ScheduleOutcome]:
        """Create the auto-join schedule for a meeting.

        Scheduling the same meeting twice keeps a single record. A meeting that
        starts within the immediate-join window is joined right away.
        """
        if not meeting.agent_config.auto_join or not settings.meeting_auto_join_enabled:
            logger.info(f"Auto-join disabled for meeting {meeting.id}")
            return None

        record_id = ScheduleRecord.id_for(meeting.id)
        existing = await self.dao.get_item("schedules", record_id)
        if existing and existing.get("status") == ScheduleStatus.SCHEDULED.value:
            record = ScheduleRecord(**existing)
            if record.scheduled_join_time != meeting.start_time:
                updated = await self.dao.update_item(
                    "schedules", record_id, {"scheduled_join_time": meeting.start_time}
                )
                record = ScheduleRecord(**updated)
            logger.info(f"Meeting {meeting.id} already scheduled for auto-join")
        else:
            record = ScheduleRecord(
                id=record_id,
                meeting_id=meeting.id,
                user_id=meeting.user_id,
                scheduled_join_time=meeting.start_time,
            )
            await self.dao.upsert_item("schedules", record.to_doc())
            logger.info(
                f"⏰ Scheduled auto-join for meeting {meeting.id}",
                extra={"scheduled_join_time": meeting.start_time.isoformat()},
            )

        minutes_until_start = (meeting.start_time - utc_now()).total_seconds() / 60
        if -settings.join_grace_minutes <= minutes_until_start <= settings.immediate_join_minutes:
            logger.info(f"🚀 Meeting {meeting.id} starts in {minutes_until_start:.1f} minutes, joining now")
            record = await self.process(record)

        return ScheduleOutcome(
            schedule=record,
            joined=record.completion_reason == CompletionReason.JOINED.value,
            error=record.last_error,
        )

    async def tick(self) -> int:
        """Process every schedule record that is due. Returns how many were processed."""
        now = utc_now()
        due = await self.dao.query_items("schedules", {
            "status": ScheduleStatus.SCHEDULED.value,
            "scheduled_join_time": {
                "$gte": now - timedelta(minutes=settings.scheduler_window_before_minutes),
                "$lte": now + timedelta(minutes=settings.scheduler_window_after_minutes),
            },
        })
        retries = await self.dao.query_items("schedules", {
            "status": ScheduleStatus.SCHEDULED.value,
            "attempts": {"$gt": 0},
            "scheduled_join_time": {"$gte": now - timedelta(minutes=settings.join_grace_minutes)},
        })

        records = {doc["id"]: doc for doc in due + retries}
        if records:
            logger.info(f"🔍 Processing {len(records)} due schedule records")

        processed = 0
        for doc in records.values():
            try:
                await self.process(ScheduleRecord(**doc))
                processed += 1
            except Exception as e:
                logger.error(f"❌ Failed to process schedule {doc.get('id')}: {e}", exc_info=True)
        return processed

    async def process(self, record: ScheduleRecord) -> ScheduleRecord:
        """Decide what to do with one schedule record. No-op unless it is still scheduled."""
        if record.status != ScheduleStatus.SCHEDULED.value:
            return record

        meeting = await self.dao.get_meeting(record.meeting_id)
        if meeting is None:
            logger.warning(f"Meeting {record.meeting_id} not found for schedule {record.id}")
            return await self._complete(record, CompletionReason.MEETING_NOT_FOUND)

        if meeting.status == MeetingStatus.CANCELLED.value:
            return await self._mark_cancelled(record)

        if meeting.agent_attended:
            return await self._complete(record, CompletionReason.ALREADY_JOINED)

        minutes_since_start = (utc_now() - meeting.start_time).total_seconds() / 60
        if minutes_since_start > settings.join_grace_minutes:
            logger.warning(
                f"⏰ Missed auto-join for meeting {meeting.id} ({minutes_since_start:.1f} minutes late)"
            )
            return await self._complete(record, CompletionReason.MISSED)

        if minutes_since_start < -settings.immediate_join_minutes:
            return record

        try:
            await self.execute_join(meeting)
        except Exception as e:
            return await self._join_failed(record, meeting, e)

        return await self._complete(record, CompletionReason.JOINED)

    async def execute_join(self, meeting: Meeting) -> JoinResult:
        """Join the meeting and arm its leave timer."""
        result = await self.attendance.join(meeting.id, meeting.user_id)
        self.arm_end_timer(meeting.id, meeting.end_time)
        logger.info(f"✅ Auto-joined meeting {meeting.id}")
        return result

    async def _join_failed(self, record: ScheduleRecord, meeting: Meeting, error: Exception) -> ScheduleRecord:
        attempts = record.attempts + 1
        retryable = not isinstance(error, ValidationError)
        logger.error(
            f"❌ Auto-join failed for meeting {meeting.id} (attempt {attempts}): {error}",
            extra={"meeting_id": meeting.id, "attempts": attempts},
        )

        if retryable and attempts < settings.meeting_max_join_attempts:
            updated = await self.dao.update_item("schedules", record.id, {
                "attempts": attempts,
                "last_error": str(error),
            })
            return ScheduleRecord(**updated) if updated else record

        await self.dao.update_meeting(meeting.id, {"auto_join_error": str(error)})
        await self._dead_letter(meeting.id, "auto_join", error, attempts)
        return await self._complete(record, CompletionReason.ERROR, error=str(error), attempts=attempts)

    async def _complete(
        self,
        record: ScheduleRecord,
        reason: CompletionReason,
        error: Optional[str] = None,
        attempts: Optional[int] = None,
    ) -> ScheduleRecord:
        updates: Dict[str, Any] = {
            "status": ScheduleStatus.COMPLETED.value,
            "completion_reason": reason.value,
            "completed_at": utc_now(),
        }
        if error is not None:
            updates["last_error"] = error
        if attempts is not None:
            updates["attempts"] = attempts
        updated = await self.dao.update_item("schedules", record.id, updates)
        logger.info(f"Schedule {record.id} completed: {reason.value}")
        if updated is None:
            return record.model_copy(update=updates)
        return ScheduleRecord(**updated)

    async def _mark_cancelled(self, record: ScheduleRecord) -> ScheduleRecord:
        updates = {"status": ScheduleStatus.CANCELLED.value, "cancelled_at": utc_now()}
        updated = await self.dao.update_item("schedules", record.id, updates)
        return ScheduleRecord(**updated) if updated else record.model_copy(update=updates)

    async def _dead_letter(self, meeting_id: str, operation: str, error: Exception, attempts: int = 1) -> None:
        letter = DeadLetter(meeting_id=meeting_id, operation=operation, error=str(error), attempts=attempts)
        try:
            await self.dao.create_item("dead_letters", letter.to_doc())
        except Exception as e:
            logger.error(f"Failed to record {operation} failure for meeting {meeting_id}: {e}")

    # End-of-meeting timers

    def arm_end_timer(self, meeting_id: str, end_time: datetime) -> None:
        """Leave the meeting once at ``end_time``. Re-arming replaces the previous timer."""
        run_at = max(end_time, utc_now())
        self.scheduler.add_job(
            self._end_meeting,
            trigger=DateTrigger(run_date=run_at),
            id=self.leave_job_id(meeting_id),
            name=f"Leave meeting {meeting_id}",
            args=[meeting_id],
            replace_existing=True,
            misfire_grace_time=None,
        )
        logger.info(f"⏲️ Leave timer armed for meeting {meeting_id} at {run_at.isoformat()}")

    def clear_end_timer(self, meeting_id: str) -> bool:
        job = self.scheduler.get_job(self.leave_job_id(meeting_id))
        if job is None:
            return False
        job.remove()
        return True

    async def _end_meeting(self, meeting_id: str) -> None:
        logger.info(f"⏰ Meeting {meeting_id} reached its end time, leaving")
        try:
            await self.attendance.leave(meeting_id)
        except Exception as e:
            logger.error(f"❌ Automatic leave failed for meeting {meeting_id}: {e}", exc_info=True)
            await self._dead_letter(meeting_id, "auto_leave", e)

    # Maintenance

    async def cancel(self, meeting_id: str) -> bool:
        """Cancel a pending auto-join and its leave timer."""
        cancelled = False
        doc = await self.dao.get_item("schedules", ScheduleRecord.id_for(meeting_id))
        if doc and doc.get("status") == ScheduleStatus.SCHEDULED.value:
            await self._mark_cancelled(ScheduleRecord(**doc))
            cancelled = True
        if self.clear_end_timer(meeting_id):
            cancelled = True
        if cancelled:
            logger.info(f"🚫 Auto-join cancelled for meeting {meeting_id}")
        return cancelled

    async def reconcile(self) -> Dict[str, int]:
        """Restore leave timers and capture loops for meetings the agent is still in."""
        restored, left = 0, 0
        now = utc_now()
        for record in await self.attendance.list_active():
            try:
                if record.leave_deadline <= now:
                    await self.attendance.leave(record.id)
                    left += 1
                    continue

                meeting = await self.dao.get_meeting(record.id)
                if meeting is None:
                    logger.warning(f"Attendance {record.id} has no meeting, skipping")
                    continue
                self.arm_end_timer(meeting.id, record.leave_deadline)
                if meeting.agent_config.enable_chat_capture and not self.chat_capture.is_capturing(meeting.id):
                    await self.chat_capture.start(meeting, record)
                restored += 1
            except Exception as e:
                logger.error(f"❌ Failed to reconcile attendance {record.id}: {e}", exc_info=True)

        if restored or left:
            logger.info(f"♻️ Reconciled attendance: {restored} resumed, {left} closed")
        return {"resumed": restored, "closed": left}

    async def cleanup(self) -> int:
        """Delete old completed schedules and settle stale ones."""
        now = utc_now()
        stale = await self.dao.query_items("schedules", {
            "status": ScheduleStatus.SCHEDULED.value,
            "scheduled_join_time": {"$lt": now - timedelta(minutes=settings.join_grace_minutes)},
        })
        for doc in stale:
            try:
                await self.process(ScheduleRecord(**doc))
            except Exception as e:
                logger.error(f"Failed to settle stale schedule {doc.get('id')}: {e}")

        deleted = await self.dao.delete_items("schedules", {
            "status": ScheduleStatus.COMPLETED.value,
            "completed_at": {"$lt": now - timedelta(hours=settings.schedule_retention_hours)},
        })
        if deleted:
            logger.info(f"🧹 Removed {deleted} completed schedule records")
        return deleted

    async def force_check(self) -> int:
        logger.info("Manual schedule check requested")
        return await self.tick()

    async def get_failures(self, limit: int = 50) -> List[Dict[str, Any]]:
        return await self.dao.query_items(
            "dead_letters", {}, sort=[("created_at", -1)], limit=limit
        )

    async def get_status(self) -> SchedulerStatus:
        jobs = self.scheduler.get_jobs()
        pending = await self.dao.count_items("schedules", {"status": ScheduleStatus.SCHEDULED.value})
        return SchedulerStatus(
            is_running=self.is_running and self.scheduler.running,
            jobs=[
                {"id": job.id, "name": job.name, "next_run_time": job.next_run_time}
                for job in jobs
                if not job.id.startswith(("capture_", "leave_"))
            ],
            pending_schedules=pending,
            active_leave_timers=sum(1 for job in jobs if job.id.startswith("leave_")),
            auto_join_enabled=settings.meeting_auto_join_enabled,
        )
