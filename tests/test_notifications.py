"""Tests for the notification dispatcher and retry policy.

Covers:
- Retry backoff (1s, 2s, 4s) and exhaustion
- Push failures land in notification_errors via an upsert
- Email send: stored first, marked delivered, failures logged
- Doctor calling: ack, timeout and negative ack, never retried
- Reminder sweep: statement timeout, midnight window, per-appointment counts
- Retry job: delete on success, bump retry_count on failure
"""

from __future__ import annotations

import contextlib
import uuid
from datetime import UTC, date, datetime, time
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy import Delete, Update
from sqlalchemy.dialects import postgresql

from medibook.errors import NotificationDeliveryFailed
from medibook.models.appointment import Appointment
from medibook.models.enums import AppointmentStatus, NotificationKind
from medibook.models.notification import Notification, NotificationError
from medibook.models.user import User
from medibook.notifications.dispatcher import (
    EVENT_DOCTOR_CALLING,
    EVENT_QUEUE,
    EVENT_REMINDER,
    EVENT_STATUS,
    EVENT_WAIT_TIME,
    NotificationDispatcher,
    _starts_between,
)
from medibook.notifications.retry import RetryPolicy
from medibook.schemas.appointments import QueueEntry
from medibook.schemas.notifications import MailResult, NotificationMessage

# ── Helpers ──────────────────────────────────────────────────────────


def _sql(stmt) -> str:
    return str(stmt.compile(dialect=postgresql.dialect()))


def _assign_id(obj) -> None:
    """What a flush does for the client-side uuid default."""
    if obj.id is None:
        obj.id = uuid.uuid4()


def _rows(items: list) -> MagicMock:
    r = MagicMock()
    r.scalars.return_value.all.return_value = items
    return r


class FakeSessions:
    """Stand-in for `transaction()`: records every session and statement."""

    def __init__(self, *results) -> None:
        self.results = list(results)
        self.sessions: list[AsyncMock] = []
        self.statements: list = []
        self.gets: dict = {}

    async def _execute(self, stmt, *args, **kwargs):
        self.statements.append(stmt)
        if self.results:
            result = self.results.pop(0)
            if isinstance(result, Exception):
                raise result
            return result
        return MagicMock()

    async def _get(self, model, key):
        return self.gets.get(key)

    @contextlib.asynccontextmanager
    async def __call__(self):
        db = AsyncMock()
        db.add = MagicMock(side_effect=_assign_id)
        db.info = {}
        db.execute = AsyncMock(side_effect=self._execute)
        db.get = AsyncMock(side_effect=self._get)
        self.sessions.append(db)
        yield db

    def upserts(self) -> list:
        return [s for s in self.statements if "ON CONFLICT" in _sql(s)]


def _make_dispatcher(
    sessions: FakeSessions | None = None,
    mail_result: MailResult | None = None,
) -> tuple[NotificationDispatcher, MagicMock, MagicMock, FakeSessions]:
    mail = MagicMock()
    mail.send_email = AsyncMock(return_value=mail_result or MailResult(success=True, message_id="em_1"))
    gateway = MagicMock()
    gateway.emit = AsyncMock(return_value=1)
    gateway.emit_with_ack = AsyncMock(return_value={"success": True})
    sessions = sessions or FakeSessions()
    dispatcher = NotificationDispatcher(
        mail=mail,
        gateway=gateway,
        retry=RetryPolicy(retries=3, base_delay=1.0, sleep=AsyncMock()),
        session_scope=sessions,
    )
    return dispatcher, mail, gateway, sessions


def _make_appointment(email: str | None = "ada@example.com", start: time = time(10, 15)) -> Appointment:
    appt = Appointment(
        id=uuid.uuid4(),
        patient_id=uuid.uuid4(),
        doctor_id=uuid.uuid4(),
        appointment_date=date(2026, 11, 2),
        start_time=start,
        end_time=time(start.hour, 45),
        status=AppointmentStatus.SCHEDULED.value,
        notification_sent=False,
    )
    appt.patient = User(id=appt.patient_id, name="Ada", email=email, role="patient")
    return appt


@pytest.fixture(autouse=True)
def mock_emit():
    with patch("medibook.notifications.dispatcher.emit", new_callable=AsyncMock) as emit:
        yield emit


# ── Retry policy ─────────────────────────────────────────────────────


class TestRetryPolicy:
    def test_backoff_schedule(self):
        policy = RetryPolicy()
        assert [policy.delay_for(n) for n in (1, 2, 3)] == [1.0, 2.0, 4.0]

    def test_from_settings(self):
        policy = RetryPolicy.from_settings()
        assert (policy.retries, policy.base_delay) == (3, 1.0)

    @pytest.mark.asyncio()
    async def test_recovers_before_exhaustion(self):
        sleep = AsyncMock()
        operation = AsyncMock(side_effect=[ConnectionError("down"), ConnectionError("down"), "ok"])

        result = await RetryPolicy(sleep=sleep).run(operation)

        assert result == "ok"
        assert operation.await_count == 3
        assert [c.args[0] for c in sleep.await_args_list] == [1.0, 2.0]

    @pytest.mark.asyncio()
    async def test_exhaustion_reraises(self):
        sleep = AsyncMock()
        operation = AsyncMock(side_effect=ConnectionError("down"))

        with pytest.raises(ConnectionError):
            await RetryPolicy(sleep=sleep).run(operation)

        assert operation.await_count == 4
        assert [c.args[0] for c in sleep.await_args_list] == [1.0, 2.0, 4.0]


# ── Realtime pushes ──────────────────────────────────────────────────


class TestPushes:
    """Test status, wait-time and queue pushes."""

    @pytest.mark.asyncio()
    async def test_status_update_reaches_both_rooms(self):
        dispatcher, _, gateway, _ = _make_dispatcher()
        patient_id, doctor_id, appointment_id = uuid.uuid4(), uuid.uuid4(), uuid.uuid4()

        ok = await dispatcher.send_status_update(patient_id, doctor_id, appointment_id, "cancelled", "Cancelled")

        assert ok is True
        rooms = [c.args[0] for c in gateway.emit.await_args_list]
        assert rooms == [f"patient-{patient_id}", f"doctor-{doctor_id}"]
        room, event, payload = gateway.emit.await_args_list[0].args
        assert event == EVENT_STATUS
        assert payload["appointmentId"] == str(appointment_id)
        assert payload["status"] == "cancelled"
        assert payload["type"] == "status_update"

    @pytest.mark.asyncio()
    async def test_exhausted_push_logged(self, mock_emit):
        dispatcher, _, gateway, sessions = _make_dispatcher()
        gateway.emit.side_effect = ConnectionError("redis down")
        patient_id, appointment_id = uuid.uuid4(), uuid.uuid4()

        ok = await dispatcher.send_wait_time_update(patient_id, appointment_id, 2, 30)

        assert ok is False
        assert gateway.emit.await_count == 4
        (stmt,) = sessions.upserts()
        sql = _sql(stmt)
        assert "INSERT INTO notification_errors" in sql
        assert "ON CONFLICT ON CONSTRAINT uq_notification_errors_appointment_type DO UPDATE" in sql
        params = stmt.compile(dialect=postgresql.dialect()).params
        assert params["error_type"] == "wait_time_update"
        assert params["context"]["event"] == EVENT_WAIT_TIME
        assert params["context"]["room"] == f"patient-{patient_id}"
        assert mock_emit.await_args.args[0].event_type.value == "notification.failed"

    @pytest.mark.asyncio()
    async def test_broadcast_queue_pushes_only_moved(self):
        dispatcher, _, gateway, _ = _make_dispatcher()
        doctor_id = uuid.uuid4()
        entries = [
            QueueEntry(appointment_id=uuid.uuid4(), patient_id=uuid.uuid4(), doctor_id=doctor_id,
                       queue_position=1, estimated_wait=15),
            QueueEntry(appointment_id=uuid.uuid4(), patient_id=uuid.uuid4(), doctor_id=doctor_id,
                       queue_position=2, estimated_wait=30),
        ]

        await dispatcher.broadcast_queue(doctor_id, entries, moved={entries[1].appointment_id})

        calls = [c.args for c in gateway.emit.await_args_list]
        assert [(room, event) for room, event, _ in calls] == [
            (f"doctor-{doctor_id}", EVENT_QUEUE),
            (f"patient-{entries[1].patient_id}", EVENT_WAIT_TIME),
        ]
        assert len(calls[0][2]["queue"]) == 2
        assert calls[1][2]["queuePosition"] == 2
        assert calls[1][2]["estimatedWaitTime"] == 30


# ── Email ────────────────────────────────────────────────────────────


class TestSend:
    """Test NotificationDispatcher.send."""

    def _message(self, to: str | None = "ada@example.com") -> NotificationMessage:
        return NotificationMessage(
            to=to,
            subject="Appointment Confirmation",
            message="Your appointment is confirmed",
            kind=NotificationKind.CONFIRMATION,
            appointment_id=uuid.uuid4(),
            user_id=uuid.uuid4(),
        )

    @pytest.mark.asyncio()
    async def test_stored_then_sent(self):
        dispatcher, mail, _, sessions = _make_dispatcher()
        message = self._message()

        assert await dispatcher.send(message) is True

        row = sessions.sessions[0].add.call_args.args[0]
        assert isinstance(row, Notification)
        assert row.kind == "appointment_confirmation"
        assert row.metadata_["appointment_id"] == str(message.appointment_id)
        mail.send_email.assert_awaited_once_with("ada@example.com", "Appointment Confirmation", "<p>Your appointment is confirmed</p>")
        assert "UPDATE notifications" in _sql(sessions.statements[-1])

    @pytest.mark.asyncio()
    async def test_failed_email_logged(self):
        dispatcher, _, _, sessions = _make_dispatcher(mail_result=MailResult(success=False, error="http_500"))

        assert await dispatcher.send(self._message()) is False

        (stmt,) = sessions.upserts()
        params = stmt.compile(dialect=postgresql.dialect()).params
        assert params["error_type"] == "email"
        assert params["error_message"] == "http_500"
        assert params["context"]["to"] == "ada@example.com"

    @pytest.mark.asyncio()
    async def test_failed_email_not_logged_when_disabled(self):
        dispatcher, _, _, sessions = _make_dispatcher(mail_result=MailResult(success=False, error="timeout"))

        assert await dispatcher.send(self._message(), log_failures=False) is False
        assert sessions.upserts() == []

    @pytest.mark.asyncio()
    async def test_no_recipient_stored_only(self):
        dispatcher, mail, _, sessions = _make_dispatcher()

        assert await dispatcher.send(self._message(to=None)) is False

        mail.send_email.assert_not_awaited()
        assert len(sessions.sessions) == 1

    @pytest.mark.asyncio()
    async def test_storage_failure_does_not_block_email(self):
        dispatcher, mail, _, _ = _make_dispatcher()

        @contextlib.asynccontextmanager
        async def _broken():
            db = AsyncMock()
            db.add = MagicMock()
            db.flush.side_effect = RuntimeError("db down")
            yield db

        dispatcher._session_scope = _broken

        assert await dispatcher.send(self._message()) is True
        mail.send_email.assert_awaited_once()


# ── Doctor calling ───────────────────────────────────────────────────


class TestDoctorCalling:
    """Test NotificationDispatcher.send_doctor_calling."""

    @pytest.mark.asyncio()
    async def test_acknowledged(self):
        dispatcher, _, gateway, sessions = _make_dispatcher()
        patient_id, appointment_id = uuid.uuid4(), uuid.uuid4()

        ok = await dispatcher.send_doctor_calling(patient_id, appointment_id, "Grey", timeout=5)

        assert ok is True
        room, event, payload = gateway.emit_with_ack.await_args.args
        assert (room, event) == (f"patient-{patient_id}", EVENT_DOCTOR_CALLING)
        assert payload["message"] == "Dr. Grey is ready to see you"
        assert payload["room"] == "Consultation Room"
        assert gateway.emit_with_ack.await_args.kwargs["timeout"] == 5
        assert sessions.upserts() == []

    @pytest.mark.asyncio()
    @pytest.mark.parametrize("reason", ["timeout", "no_connection"])
    async def test_undelivered_not_retried(self, reason):
        dispatcher, _, gateway, sessions = _make_dispatcher()
        gateway.emit_with_ack.side_effect = NotificationDeliveryFailed("failed", reason=reason)

        ok = await dispatcher.send_doctor_calling(uuid.uuid4(), uuid.uuid4(), "Grey")

        assert ok is False
        assert gateway.emit_with_ack.await_count == 1
        (stmt,) = sessions.upserts()
        params = stmt.compile(dialect=postgresql.dialect()).params
        assert params["error_type"] == "doctor_calling"
        assert params["context"] == {"reason": reason}

    @pytest.mark.asyncio()
    async def test_negative_ack(self):
        dispatcher, _, gateway, sessions = _make_dispatcher()
        gateway.emit_with_ack.return_value = {"success": False, "error": "dismissed"}

        assert await dispatcher.send_doctor_calling(uuid.uuid4(), uuid.uuid4(), "Grey") is False
        assert len(sessions.upserts()) == 1


# ── Reminder sweep ───────────────────────────────────────────────────


class TestReminderSweep:
    """Test NotificationDispatcher.send_upcoming_reminders."""

    def test_window_within_one_day(self):
        clause = _starts_between(datetime(2026, 11, 2, 10, 0, tzinfo=UTC), datetime(2026, 11, 2, 10, 30, tzinfo=UTC))
        sql = _sql(clause)
        assert " OR " not in sql
        assert "appointments.start_time >=" in sql

    def test_window_across_midnight(self):
        clause = _starts_between(datetime(2026, 11, 2, 23, 45, tzinfo=UTC), datetime(2026, 11, 3, 0, 15, tzinfo=UTC))
        params = clause.compile(dialect=postgresql.dialect()).params
        assert " OR " in _sql(clause)
        assert date(2026, 11, 2) in params.values()
        assert date(2026, 11, 3) in params.values()

    @pytest.mark.asyncio()
    async def test_counts_and_marks(self):
        sent = _make_appointment()
        unsent = _make_appointment(email="bounce@example.com", start=time(10, 20))
        sessions = FakeSessions(MagicMock(), _rows([sent, unsent]))
        dispatcher, mail, gateway, _ = _make_dispatcher(sessions)

        async def _send_email(to, subject, html):
            return MailResult(success=to == "ada@example.com", error=None if to == "ada@example.com" else "http_422")

        mail.send_email.side_effect = _send_email

        with patch("medibook.notifications.dispatcher.clinic_now", return_value=datetime(2026, 11, 2, 10, 0, tzinfo=UTC)):
            report = await dispatcher.send_upcoming_reminders()

        assert report == {"successful": 1, "failed": 1}
        assert "SET LOCAL statement_timeout = 5000" in str(sessions.statements[0])
        events = [c.args[1] for c in gateway.emit.await_args_list]
        assert events == [EVENT_REMINDER, EVENT_REMINDER]

        marked = [s for s in sessions.statements if isinstance(s, Update) and "appointments" in _sql(s)]
        assert len(marked) == 1
        (error,) = sessions.upserts()
        assert error.compile(dialect=postgresql.dialect()).params["error_type"] == "appointment_reminder"

    @pytest.mark.asyncio()
    async def test_nothing_due(self):
        dispatcher, mail, _, _ = _make_dispatcher(FakeSessions(MagicMock(), _rows([])))

        assert await dispatcher.send_upcoming_reminders() == {"successful": 0, "failed": 0}
        mail.send_email.assert_not_awaited()

    @pytest.mark.asyncio()
    async def test_query_failure_returns_zero(self):
        dispatcher, _, _, _ = _make_dispatcher(FakeSessions(MagicMock(), RuntimeError("canceling statement due to statement timeout")))

        assert await dispatcher.send_upcoming_reminders() == {"successful": 0, "failed": 0}


# ── Retry job ────────────────────────────────────────────────────────


class TestRetryFailed:
    """Test NotificationDispatcher.retry_failed_notifications."""

    def _failure(self, kind: NotificationKind, context: dict, appointment_id: uuid.UUID | None = None) -> NotificationError:
        return NotificationError(
            id=uuid.uuid4(),
            appointment_id=appointment_id or uuid.uuid4(),
            error_type=kind.value,
            context=context,
            retry_count=1,
        )

    @pytest.mark.asyncio()
    async def test_success_deletes_failure_bumps(self):
        email = self._failure(NotificationKind.EMAIL, {"to": "ada@example.com", "subject": "Hi", "html": "<p>Hi</p>"})
        broken = self._failure(NotificationKind.STATUS_UPDATE, {})
        sessions = FakeSessions(_rows([email, broken]))
        dispatcher, mail, _, _ = _make_dispatcher(sessions)

        report = await dispatcher.retry_failed_notifications()

        assert report == {"successful": 1, "failed": 1}
        mail.send_email.assert_awaited_once_with("ada@example.com", "Hi", "<p>Hi</p>")
        query, *writes = sessions.statements
        sql = _sql(query)
        assert "notification_errors.error_type IN" in sql
        assert "notification_errors.retry_count <=" in sql
        assert isinstance(writes[0], Delete)
        assert isinstance(writes[1], Update)
        assert "retry_count" in _sql(writes[1])

    @pytest.mark.asyncio()
    async def test_push_replayed_from_context(self):
        push = self._failure(
            NotificationKind.WAIT_TIME_UPDATE,
            {"room": "patient-1", "event": EVENT_WAIT_TIME, "payload": {"queuePosition": 1}},
        )
        dispatcher, _, gateway, _ = _make_dispatcher(FakeSessions(_rows([push])))

        report = await dispatcher.retry_failed_notifications()

        assert report == {"successful": 1, "failed": 0}
        gateway.emit.assert_awaited_once_with("patient-1", EVENT_WAIT_TIME, {"queuePosition": 1})

    @pytest.mark.asyncio()
    async def test_reminder_for_cancelled_appointment_resolved(self):
        appt = _make_appointment()
        appt.status = AppointmentStatus.CANCELLED.value
        failure = self._failure(NotificationKind.REMINDER, {}, appointment_id=appt.id)
        sessions = FakeSessions(_rows([failure]))
        sessions.gets[appt.id] = appt
        dispatcher, mail, _, _ = _make_dispatcher(sessions)

        report = await dispatcher.retry_failed_notifications()

        assert report == {"successful": 1, "failed": 0}
        mail.send_email.assert_not_awaited()
