"""Notification dispatcher — durable log first, delivery best-effort.

Nothing in here raises into the caller. Emails and realtime pushes are
attempted, failures are logged and written to `notification_errors`
(one row per appointment and kind, retry_count bumped on repeat), and the
hourly retry job works that table down.

Callers run these methods from post-commit hooks, so every database write
here opens its own short transaction.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from datetime import date, datetime, time, timedelta
from enum import Enum
from typing import Any

from sqlalchemy import and_, delete, or_, select, text, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from medibook.config import settings
from medibook.db.engine import transaction
from medibook.errors import NotificationDeliveryFailed
from medibook.events import emit
from medibook.models.appointment import Appointment
from medibook.models.base import utcnow
from medibook.models.enums import AppointmentStatus, NotificationKind
from medibook.models.notification import Notification, NotificationError
from medibook.notifications import templates
from medibook.notifications.mailer import ResendMailer, mailer
from medibook.notifications.realtime import RedisRealtimeGateway, realtime_gateway, room_for
from medibook.notifications.retry import RetryPolicy
from medibook.scheduling.clock import clinic_now
from medibook.schemas.appointments import QueueEntry
from medibook.schemas.events import EventType, SystemEvent
from medibook.schemas.notifications import DeliveryReport, NotificationMessage

logger = logging.getLogger(__name__)

SessionScope = Callable[[], AbstractAsyncContextManager[AsyncSession]]

# Realtime event names the socket clients listen for
EVENT_WAIT_TIME = "wait-time-update"
EVENT_STATUS = "appointment-status-changed"
EVENT_QUEUE = "queue-update"
EVENT_DOCTOR_CALLING = "doctor-calling"
EVENT_REMINDER = "appointment-reminder"

# Kinds the retry job re-dispatches; doctor_calling needs a live patient and is never replayed
RETRYABLE_KINDS = (
    NotificationKind.STATUS_UPDATE.value,
    NotificationKind.WAIT_TIME_UPDATE.value,
    NotificationKind.EMAIL.value,
    NotificationKind.REMINDER.value,
)


class NotificationDispatcher:
    """Sends emails and realtime pushes, and keeps the durable failure store."""

    def __init__(
        self,
        mail: ResendMailer | None = None,
        gateway: RedisRealtimeGateway | None = None,
        retry: RetryPolicy | None = None,
        session_scope: SessionScope | None = None,
    ) -> None:
        self._mailer = mail or mailer
        self._gateway = gateway or realtime_gateway
        self._retry = retry or RetryPolicy.from_settings()
        self._session_scope = session_scope or transaction

    # ── Email ────────────────────────────────────────────────────────

    async def send(self, message: NotificationMessage, log_failures: bool = True) -> bool:
        """Persist a notification row, then email it. Returns whether the email went out."""
        notification_id: uuid.UUID | None = None
        try:
            async with self._session_scope() as db:
                row = Notification(
                    recipient_email=message.to,
                    subject=message.subject,
                    message=message.message,
                    kind=message.kind.value,
                    metadata_=_jsonable({
                        **message.data,
                        "appointment_id": message.appointment_id,
                        "user_id": message.user_id,
                    }),
                    delivered=False,
                )
                db.add(row)
                await db.flush()
                notification_id = row.id
        except Exception:
            logger.exception("Failed to store %s notification for %s", message.kind.value, message.to)

        if not message.to:
            logger.debug("Notification %s has no recipient address, stored only", message.kind.value)
            return False

        html = message.html or f"<p>{message.message}</p>"
        try:
            result = await self._mailer.send_email(message.to, message.subject, html)
        except Exception as exc:
            logger.exception("Mailer raised sending %s to %s", message.kind.value, message.to)
            delivered, error = False, str(exc)
        else:
            delivered, error = result.success, result.error

        if not delivered:
            logger.warning("Email %s to %s not delivered: %s", message.kind.value, message.to, error)
            if log_failures:
                await self.log_error(
                    appointment_id=message.appointment_id,
                    user_id=message.user_id,
                    kind=NotificationKind.EMAIL,
                    error_message=error or "email not delivered",
                    context={"to": message.to, "subject": message.subject, "html": html},
                )
            return False

        if notification_id is not None:
            try:
                async with self._session_scope() as db:
                    await db.execute(
                        update(Notification).where(Notification.id == notification_id).values(delivered=True)
                    )
            except Exception:
                logger.exception("Failed to mark notification %s delivered", notification_id)

        await emit(SystemEvent(
            event_type=EventType.NOTIFICATION_SENT,
            appointment_id=message.appointment_id,
            data={"kind": message.kind.value, "channel": "email"},
            source_module="notifications.dispatcher",
        ))
        return True

    # ── Realtime pushes (retried) ────────────────────────────────────

    async def _push(
        self,
        room: str,
        event: str,
        payload: dict[str, Any],
        *,
        kind: NotificationKind,
        appointment_id: uuid.UUID | None = None,
        user_id: uuid.UUID | None = None,
    ) -> bool:
        try:
            await self._retry.run(lambda: self._gateway.emit(room, event, payload), label=f"{event} to {room}")
        except Exception as exc:
            await self.log_error(
                appointment_id=appointment_id,
                user_id=user_id,
                kind=kind,
                error_message=str(exc),
                context={"room": room, "event": event, "payload": payload},
            )
            return False
        return True

    async def send_wait_time_update(
        self,
        patient_id: uuid.UUID,
        appointment_id: uuid.UUID,
        queue_position: int,
        estimated_wait: int,
    ) -> bool:
        payload = _jsonable({
            "appointmentId": appointment_id,
            "queuePosition": queue_position,
            "estimatedWaitTime": estimated_wait,
            "timestamp": utcnow(),
            "type": NotificationKind.WAIT_TIME_UPDATE.value,
        })
        return await self._push(
            room_for("patient", patient_id),
            EVENT_WAIT_TIME,
            payload,
            kind=NotificationKind.WAIT_TIME_UPDATE,
            appointment_id=appointment_id,
            user_id=patient_id,
        )

    async def send_status_update(
        self,
        patient_id: uuid.UUID,
        doctor_id: uuid.UUID | None,
        appointment_id: uuid.UUID,
        status: AppointmentStatus | str,
        message: str | None = None,
    ) -> bool:
        """Tell both sides of an appointment that its status changed."""
        payload = _jsonable({
            "appointmentId": appointment_id,
            "status": AppointmentStatus(status).value,
            "message": message,
            "timestamp": utcnow(),
            "type": NotificationKind.STATUS_UPDATE.value,
        })
        delivered = await self._push(
            room_for("patient", patient_id),
            EVENT_STATUS,
            payload,
            kind=NotificationKind.STATUS_UPDATE,
            appointment_id=appointment_id,
            user_id=patient_id,
        )
        if doctor_id is not None:
            delivered = await self._push(
                room_for("doctor", doctor_id),
                EVENT_STATUS,
                payload,
                kind=NotificationKind.STATUS_UPDATE,
                appointment_id=appointment_id,
            ) and delivered
        return delivered

    async def broadcast_queue(
        self,
        doctor_id: uuid.UUID,
        entries: list[QueueEntry],
        moved: set[uuid.UUID] | None = None,
    ) -> bool:
        """Send the doctor the full queue, and each moved patient their new place.

        `moved=None` pushes to every waiting patient.
        """
        payload = {
            "doctorId": str(doctor_id),
            "queue": [entry.model_dump(mode="json") for entry in entries],
            "timestamp": utcnow().isoformat(),
        }
        delivered = await self._push(
            room_for("doctor", doctor_id),
            EVENT_QUEUE,
            payload,
            kind=NotificationKind.QUEUE_UPDATE,
        )
        for entry in entries:
            if moved is not None and entry.appointment_id not in moved:
                continue
            delivered = await self.send_wait_time_update(
                entry.patient_id, entry.appointment_id, entry.queue_position, entry.estimated_wait
            ) and delivered
        return delivered

    # ── Acknowledged push (not retried) ──────────────────────────────

    async def send_doctor_calling(
        self,
        patient_id: uuid.UUID,
        appointment_id: uuid.UUID,
        doctor_name: str,
        room_label: str | None = None,
        timeout: float | None = None,
    ) -> bool:
        """Ask one live patient connection to come in; succeed only on a positive ack."""
        payload = _jsonable({
            "appointmentId": appointment_id,
            "message": f"Dr. {doctor_name} is ready to see you",
            "doctorName": doctor_name,
            "room": room_label or "Consultation Room",
            "timestamp": utcnow(),
            "type": NotificationKind.DOCTOR_CALLING.value,
        })
        room = room_for("patient", patient_id)
        try:
            ack = await self._gateway.emit_with_ack(room, EVENT_DOCTOR_CALLING, payload, timeout=timeout)
        except NotificationDeliveryFailed as exc:
            reason = exc.detail.get("reason", "failed")
            logger.warning("Doctor calling for patient %s not delivered: %s", patient_id, reason)
            await self._record_calling_failure(patient_id, appointment_id, exc.message, reason)
            return False
        except Exception as exc:
            logger.exception("Doctor calling for patient %s raised", patient_id)
            await self._record_calling_failure(patient_id, appointment_id, str(exc), "error")
            return False

        if not ack.get("success"):
            error = ack.get("error") or "negative acknowledgement"
            logger.warning("Patient %s failed to acknowledge doctor calling: %s", patient_id, error)
            await self._record_calling_failure(patient_id, appointment_id, str(error), "nack")
            return False

        logger.info("Doctor calling acknowledged by patient %s", patient_id)
        return True

    async def _record_calling_failure(
        self, patient_id: uuid.UUID, appointment_id: uuid.UUID, error: str, reason: str
    ) -> None:
        await self.log_error(
            appointment_id=appointment_id,
            user_id=patient_id,
            kind=NotificationKind.DOCTOR_CALLING,
            error_message=error,
            context={"reason": reason},
        )

    # ── Durable failure store ────────────────────────────────────────

    async def log_error(
        self,
        appointment_id: uuid.UUID | None,
        user_id: uuid.UUID | None,
        kind: NotificationKind,
        error_message: str,
        context: dict[str, Any] | None = None,
    ) -> None:
        """Upsert a notification_errors row keyed by (appointment, kind)."""
        stmt = insert(NotificationError).values(
            appointment_id=appointment_id,
            user_id=user_id,
            error_type=kind.value,
            error_message=error_message,
            context=_jsonable(context or {}),
            retry_count=1,
            last_attempt=utcnow(),
        )
        stmt = stmt.on_conflict_do_update(
            constraint="uq_notification_errors_appointment_type",
            set_={
                "retry_count": NotificationError.retry_count + 1,
                "last_attempt": stmt.excluded.last_attempt,
                "error_message": stmt.excluded.error_message,
                "context": stmt.excluded.context,
            },
        )
        try:
            async with self._session_scope() as db:
                await db.execute(stmt)
        except Exception:
            logger.exception("Failed to store %s error for appointment %s", kind.value, appointment_id)
            return

        await emit(SystemEvent(
            event_type=EventType.NOTIFICATION_FAILED,
            appointment_id=appointment_id,
            data={"kind": kind.value, "error": error_message},
            source_module="notifications.dispatcher",
        ))

    # ── Scheduled sweeps ─────────────────────────────────────────────

    async def send_upcoming_reminders(self) -> dict[str, int]:
        """Remind patients whose scheduled appointment starts within the lookahead window."""
        cfg = settings.notifications
        report = DeliveryReport()
        now = clinic_now()
        window_end = now + timedelta(minutes=cfg.reminder_lookahead_minutes)

        try:
            async with self._session_scope() as db:
                await db.execute(text(f"SET LOCAL statement_timeout = {int(cfg.reminder_statement_timeout_ms)}"))
                result = await db.execute(
                    select(Appointment)
                    .where(
                        Appointment.status == AppointmentStatus.SCHEDULED.value,
                        Appointment.notification_sent.is_(False),
                        _starts_between(now, window_end),
                    )
                    .order_by(Appointment.appointment_date, Appointment.start_time)
                    .limit(cfg.reminder_batch_size)
                )
                due = list(result.scalars().all())
        except Exception:
            logger.exception("Reminder sweep query failed")
            return report.model_dump()

        if not due:
            return report.model_dump()

        chunk = max(cfg.reminder_chunk_size, 1)
        for offset in range(0, len(due), chunk):
            for appointment in due[offset:offset + chunk]:
                try:
                    sent = await self._remind(appointment, cfg.reminder_lookahead_minutes)
                except Exception as exc:
                    logger.exception("Reminder for appointment %s failed", appointment.id)
                    sent = False
                    await self.log_error(
                        appointment_id=appointment.id,
                        user_id=appointment.patient_id,
                        kind=NotificationKind.REMINDER,
                        error_message=str(exc),
                    )
                if sent:
                    report.successful += 1
                else:
                    report.failed += 1
                await asyncio.sleep(0)

        logger.info("Reminder sweep complete: successful=%d failed=%d", report.successful, report.failed)
        return report.model_dump()

    async def _remind(self, appointment: Appointment, minutes: int) -> bool:
        patient = appointment.patient
        doctor_name = appointment.doctor.display_name if appointment.doctor else "your doctor"
        subject, body, html = templates.reminder(
            patient.name, doctor_name, appointment.appointment_date, appointment.start_time, minutes
        )

        await self._gateway.emit(
            room_for("patient", appointment.patient_id),
            EVENT_REMINDER,
            _jsonable({
                "appointmentId": appointment.id,
                "message": f"Your appointment with Dr. {doctor_name} is in {minutes} minutes",
                "doctorName": doctor_name,
                "type": "reminder",
            }),
        )
        sent = await self.send(
            NotificationMessage(
                to=patient.email,
                subject=subject,
                message=body,
                html=html,
                kind=NotificationKind.REMINDER,
                appointment_id=appointment.id,
                user_id=appointment.patient_id,
            ),
            log_failures=False,
        )
        if not sent:
            await self.log_error(
                appointment_id=appointment.id,
                user_id=appointment.patient_id,
                kind=NotificationKind.REMINDER,
                error_message="reminder email not delivered",
            )
            return False

        async with self._session_scope() as db:
            await db.execute(
                update(Appointment)
                .where(Appointment.id == appointment.id)
                .values(notification_sent=True, notification_sent_at=utcnow())
            )
        return True

    async def retry_failed_notifications(self) -> dict[str, int]:
        """Re-dispatch stored failures that are old enough and under the retry cap."""
        report = DeliveryReport()
        cutoff = utcnow() - timedelta(hours=1)

        try:
            async with self._session_scope() as db:
                result = await db.execute(
                    select(NotificationError)
                    .where(
                        NotificationError.error_type.in_(RETRYABLE_KINDS),
                        NotificationError.retry_count <= settings.notifications.max_error_retries,
                        NotificationError.last_attempt < cutoff,
                    )
                    .order_by(NotificationError.last_attempt)
                    .limit(50)
                )
                failures = list(result.scalars().all())
        except Exception:
            logger.exception("Failed-notification query failed")
            return report.model_dump()

        for failure in failures:
            try:
                ok = await self._redeliver(failure)
            except Exception:
                logger.exception("Retry of %s for appointment %s raised", failure.error_type, failure.appointment_id)
                ok = False

            async with self._session_scope() as db:
                if ok:
                    await db.execute(delete(NotificationError).where(NotificationError.id == failure.id))
                else:
                    await db.execute(
                        update(NotificationError)
                        .where(NotificationError.id == failure.id)
                        .values(retry_count=NotificationError.retry_count + 1, last_attempt=utcnow())
                    )

            if ok:
                report.successful += 1
            else:
                report.failed += 1
            await asyncio.sleep(0)

        if failures:
            logger.info("Notification retry complete: successful=%d failed=%d", report.successful, report.failed)
        return report.model_dump()

    async def _redeliver(self, failure: NotificationError) -> bool:
        """One more attempt, without writing to the error store."""
        context = failure.context or {}

        if failure.error_type in (NotificationKind.STATUS_UPDATE.value, NotificationKind.WAIT_TIME_UPDATE.value):
            if not context.get("room") or not context.get("event"):
                return False
            await self._gateway.emit(context["room"], context["event"], context.get("payload") or {})
            return True

        if failure.error_type == NotificationKind.EMAIL.value:
            if not context.get("to"):
                return False
            result = await self._mailer.send_email(context["to"], context.get("subject", ""), context.get("html", ""))
            return result.success

        if failure.error_type == NotificationKind.REMINDER.value:
            if failure.appointment_id is None:
                return False
            async with self._session_scope() as db:
                appointment = await db.get(Appointment, failure.appointment_id)
            if appointment is None or appointment.status != AppointmentStatus.SCHEDULED.value:
                # Nothing left to remind about
                return True
            if appointment.notification_sent:
                return True
            return await self._remind(appointment, settings.notifications.reminder_lookahead_minutes)

        return False


def _starts_between(start: datetime, end: datetime) -> Any:
    """Clinic-local window on (appointment_date, start_time), split at midnight."""
    if start.date() == end.date():
        return and_(
            Appointment.appointment_date == start.date(),
            Appointment.start_time >= start.time(),
            Appointment.start_time <= end.time(),
        )
    return or_(
        and_(Appointment.appointment_date == start.date(), Appointment.start_time >= start.time()),
        and_(Appointment.appointment_date == end.date(), Appointment.start_time <= end.time()),
    )


def _jsonable(value: Any) -> Any:
    """Make ids, dates and enums safe for JSONB and pub/sub payloads."""
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, list | tuple):
        return [_jsonable(v) for v in value]
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, datetime | date | time):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return value


# Module-level singleton
notification_dispatcher = NotificationDispatcher()
