"""Periodic notification jobs on APScheduler's asyncio scheduler.

- Upcoming-appointment reminders every `reminder_interval_minutes`.
- Failed-notification retry every `retry_interval_minutes`.

Both jobs are single-instance and coalesced: a slow run is never overlapped
by the next tick, and missed ticks collapse into one.
"""

from __future__ import annotations

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from medibook.config import settings
from medibook.events import emit
from medibook.notifications.dispatcher import NotificationDispatcher, notification_dispatcher
from medibook.schemas.events import EventType, SystemEvent

logger = logging.getLogger(__name__)

REMINDER_JOB_ID = "send_upcoming_reminders"
RETRY_JOB_ID = "retry_failed_notifications"


async def run_reminder_sweep(dispatcher: NotificationDispatcher | None = None) -> dict[str, int]:
    """Scheduled entry point for reminders. Never raises."""
    try:
        summary = await (dispatcher or notification_dispatcher).send_upcoming_reminders()
    except Exception:
        logger.exception("Reminder job failed")
        return {"successful": 0, "failed": 0}

    if summary["successful"] or summary["failed"]:
        await emit(SystemEvent(
            event_type=EventType.SYSTEM_MAINTENANCE,
            data={"action": REMINDER_JOB_ID, **summary},
            source_module="notifications.jobs",
        ))
    return summary


async def run_notification_retry(dispatcher: NotificationDispatcher | None = None) -> dict[str, int]:
    """Scheduled entry point for the failed-notification retry. Never raises."""
    try:
        summary = await (dispatcher or notification_dispatcher).retry_failed_notifications()
    except Exception:
        logger.exception("Notification retry job failed")
        return {"successful": 0, "failed": 0}

    if summary["successful"] or summary["failed"]:
        await emit(SystemEvent(
            event_type=EventType.SYSTEM_MAINTENANCE,
            data={"action": RETRY_JOB_ID, **summary},
            source_module="notifications.jobs",
        ))
    return summary


def create_scheduler() -> AsyncIOScheduler:
    """Build (but do not start) the scheduler with both jobs registered."""
    cfg = settings.notifications
    scheduler = AsyncIOScheduler(timezone=settings.tz)

    scheduler.add_job(
        run_reminder_sweep,
        IntervalTrigger(minutes=cfg.reminder_interval_minutes),
        id=REMINDER_JOB_ID,
        name="Send Upcoming Appointment Reminders",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    scheduler.add_job(
        run_notification_retry,
        IntervalTrigger(minutes=cfg.retry_interval_minutes),
        id=RETRY_JOB_ID,
        name="Retry Failed Notifications",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )

    logger.info(
        "Notification jobs registered: reminders every %d min, retries every %d min",
        cfg.reminder_interval_minutes,
        cfg.retry_interval_minutes,
    )
    return scheduler
