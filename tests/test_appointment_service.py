"""Tests for the appointment service.

Covers:
- Booking: role check, past slots, conflicts, the lost-race path, payment mode
- Reschedule: excludes itself from the conflict check, policy window, admin bypass
- Cancel: policy window, post-commit refund and notice, unpaid cancellations
- Check-in / start / complete: same-day rule, queue delegation, feedback placeholder
- Reads: visibility and pagination
"""

from __future__ import annotations

import asyncio
import contextlib
import uuid
from datetime import UTC, date, datetime, time
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy.exc import IntegrityError

from medibook.db.engine import run_post_commit
from medibook.errors import (
    Forbidden,
    InvalidStateTransition,
    NotFound,
    PolicyViolation,
    SlotConflict,
    ValidationError,
)
from medibook.models.appointment import Appointment
from medibook.models.doctor import Doctor
from medibook.models.enums import AppointmentStatus, UserRole
from medibook.models.user import User
from medibook.scheduling.service import AppointmentService
from medibook.schemas.appointments import Principal, QueueTicket
from medibook.schemas.payments import RefundResult

NOW = datetime(2026, 11, 2, 8, 0, tzinfo=UTC)
TODAY = NOW.date()
TOMORROW = date(2026, 11, 3)

PATIENT = Principal(id=uuid.uuid4(), role=UserRole.PATIENT)
OTHER_PATIENT = Principal(id=uuid.uuid4(), role=UserRole.PATIENT)
DOCTOR_USER = Principal(id=uuid.uuid4(), role=UserRole.DOCTOR)
ADMIN = Principal(id=uuid.uuid4(), role=UserRole.ADMIN)


# ── Helpers ──────────────────────────────────────────────────────────


def _make_doctor() -> Doctor:
    return Doctor(id=uuid.uuid4(), user_id=DOCTOR_USER.id, consultation_fee=Decimal("150.00"))


def _make_patient() -> User:
    return User(id=PATIENT.id, name="Ada Patient", email="ada@example.com", role=UserRole.PATIENT.value)


def _make_appointment(
    status: AppointmentStatus = AppointmentStatus.SCHEDULED,
    day: date = TOMORROW,
    start: time = time(14, 0),
    doctor: Doctor | None = None,
) -> Appointment:
    doctor = doctor or _make_doctor()
    appt = Appointment(
        id=uuid.uuid4(),
        patient_id=PATIENT.id,
        doctor_id=doctor.id,
        appointment_date=day,
        start_time=start,
        end_time=time(start.hour, 30),
        status=status.value,
        notification_sent=True,
    )
    appt.doctor = doctor
    return appt


def _result(value=None, rows=None) -> MagicMock:
    r = MagicMock()
    r.scalar_one_or_none.return_value = value
    r.scalars.return_value.all.return_value = rows or []
    return r


def _make_db(*objects, execute_results=None) -> AsyncMock:
    """AsyncSession double: `get` looks objects up by id, `execute` replays results."""
    db = AsyncMock()
    db.add = MagicMock()
    db.info = {}
    store = {obj.id: obj for obj in objects}

    async def _get(model, key):
        obj = store.get(key)
        return obj if isinstance(obj, model) else None

    db.get = AsyncMock(side_effect=_get)
    if execute_results is not None:
        db.execute = AsyncMock(side_effect=list(execute_results))
    return db


def _locking_db(appt: Appointment, *extra_results) -> AsyncMock:
    """A session whose first execute is the row lock returning `appt`."""
    return _make_db(appt, appt.doctor, execute_results=[_result(appt), *extra_results])


def _make_service() -> tuple[AppointmentService, MagicMock, MagicMock, MagicMock, MagicMock]:
    checker = MagicMock()
    checker.ensure_bookable = AsyncMock()
    queue = MagicMock()
    queue.lock_queue = AsyncMock()
    queue.add_to_queue = AsyncMock()
    queue.complete_appointment = AsyncMock()
    queue.call_next_patient = AsyncMock()
    queue.remove_from_queue = AsyncMock()
    queue.get_queue_status = AsyncMock(return_value=[])
    payments = MagicMock()
    payments.maybe_refund = AsyncMock(return_value=RefundResult(refunded=False, reason="no_payment"))
    meetings = MagicMock()
    meetings.create_meeting = AsyncMock()
    meetings.invalidate_meeting = AsyncMock()
    service = AppointmentService(checker=checker, queue=queue, payments=payments, meetings=meetings)
    return service, checker, queue, payments, meetings


def _booking(doctor: Doctor, day: date = TOMORROW, start: str = "10:00", end: str = "10:30") -> dict:
    return {"doctor_id": str(doctor.id), "date": day.isoformat(), "start": start, "end": end}


@pytest.fixture(autouse=True)
def frozen_clock():
    """Pin clinic time to NOW for every test."""
    with (
        patch("medibook.scheduling.clock.clinic_now", return_value=NOW),
        patch("medibook.scheduling.service.clinic_now", return_value=NOW),
        patch("medibook.scheduling.service.clinic_today", return_value=TODAY),
        patch("medibook.events.emit", new_callable=AsyncMock),
    ):
        yield


@pytest.fixture()
def notify():
    with patch("medibook.scheduling.service.notify") as mock_notify:
        mock_notify.appointment_confirmed = AsyncMock()
        mock_notify.appointment_rescheduled = AsyncMock()
        mock_notify.appointment_cancelled = AsyncMock()
        mock_notify.appointment_completed = AsyncMock()
        yield mock_notify


@contextlib.asynccontextmanager
async def _fake_transaction():
    yield _make_db()


# ── Booking ──────────────────────────────────────────────────────────


class TestBook:
    """Test AppointmentService.book."""

    @pytest.mark.asyncio()
    async def test_books_scheduled_and_confirms_after_commit(self, notify):
        service, checker, *_ = _make_service()
        doctor = _make_doctor()
        db = _make_db(doctor, _make_patient())

        appt = await service.book(db, PATIENT, _booking(doctor), require_payment=False)

        assert appt.status == "scheduled"
        assert appt.patient_id == PATIENT.id
        assert appt.start_time == time(10, 0)
        db.add.assert_called_once_with(appt)
        checker.ensure_bookable.assert_awaited_once_with(db, doctor.id, TOMORROW, time(10, 0), time(10, 30))
        notify.appointment_confirmed.assert_not_awaited()

        await run_post_commit(db)
        notify.appointment_confirmed.assert_awaited_once_with(appt)

    @pytest.mark.asyncio()
    async def test_payment_mode_books_pending(self, notify):
        service, *_ = _make_service()
        doctor = _make_doctor()
        db = _make_db(doctor, _make_patient())

        appt = await service.book(db, PATIENT, _booking(doctor), require_payment=True)
        await run_post_commit(db)

        assert appt.status == "pending_payment"
        notify.appointment_confirmed.assert_not_awaited()

    @pytest.mark.asyncio()
    async def test_only_patients_book(self):
        service, *_ = _make_service()
        doctor = _make_doctor()

        with pytest.raises(Forbidden):
            await service.book(_make_db(doctor), DOCTOR_USER, _booking(doctor))

    @pytest.mark.asyncio()
    async def test_unknown_doctor(self):
        service, *_ = _make_service()

        with pytest.raises(NotFound):
            await service.book(_make_db(_make_patient()), PATIENT, _booking(_make_doctor()))

    @pytest.mark.asyncio()
    async def test_past_slot_rejected(self):
        service, checker, *_ = _make_service()
        doctor = _make_doctor()

        with pytest.raises(ValidationError):
            await service.book(_make_db(doctor, _make_patient()), PATIENT, _booking(doctor, day=TODAY, start="07:00", end="07:30"))

        checker.ensure_bookable.assert_not_awaited()

    @pytest.mark.asyncio()
    async def test_inverted_range_rejected(self):
        service, *_ = _make_service()
        doctor = _make_doctor()

        with pytest.raises(ValidationError):
            await service.book(_make_db(doctor, _make_patient()), PATIENT, _booking(doctor, start="11:00", end="10:30"))

    @pytest.mark.asyncio()
    async def test_conflict_propagates(self):
        service, checker, *_ = _make_service()
        checker.ensure_bookable.side_effect = SlotConflict("Time slot already booked", reason="overlap")
        doctor = _make_doctor()
        db = _make_db(doctor, _make_patient())

        with pytest.raises(SlotConflict) as exc_info:
            await service.book(db, PATIENT, _booking(doctor))

        assert exc_info.value.detail["reason"] == "overlap"
        db.add.assert_not_called()

    @pytest.mark.asyncio()
    async def test_concurrent_bookings_one_wins(self):
        """Both requests pass the pre-check; the unique constraint decides."""
        service, *_ = _make_service()
        doctor = _make_doctor()
        winner_db = _make_db(doctor, _make_patient())
        loser_db = _make_db(doctor, _make_patient())
        loser_db.flush.side_effect = IntegrityError(
            "INSERT INTO appointments",
            {},
            Exception('duplicate key value violates unique constraint "uq_appointments_doctor_slot"'),
        )

        results = await asyncio.gather(
            service.book(winner_db, PATIENT, _booking(doctor), require_payment=False),
            service.book(loser_db, PATIENT, _booking(doctor), require_payment=False),
            return_exceptions=True,
        )

        assert isinstance(results[0], Appointment)
        assert isinstance(results[1], SlotConflict)
        assert loser_db.info == {}

    @pytest.mark.asyncio()
    async def test_unrelated_integrity_error_reraised(self):
        service, *_ = _make_service()
        doctor = _make_doctor()
        db = _make_db(doctor, _make_patient())
        db.flush.side_effect = IntegrityError("INSERT", {}, Exception("violates foreign key constraint"))

        with pytest.raises(IntegrityError):
            await service.book(db, PATIENT, _booking(doctor))


# ── Reschedule ───────────────────────────────────────────────────────


class TestReschedule:
    """Test AppointmentService.reschedule."""

    @pytest.mark.asyncio()
    async def test_moves_slot_and_excludes_itself(self, notify):
        service, checker, *_ = _make_service()
        appt = _make_appointment()
        db = _locking_db(appt)
        request = {"date": "2026-11-04", "start": "09:00", "end": "09:30"}

        result = await service.reschedule(db, PATIENT, appt.id, request)

        assert result.appointment_date == date(2026, 11, 4)
        assert (result.start_time, result.end_time) == (time(9, 0), time(9, 30))
        assert result.status == "scheduled"
        assert result.notification_sent is False
        assert checker.ensure_bookable.call_args.kwargs["exclude_appointment_id"] == appt.id

        await run_post_commit(db)
        notify.appointment_rescheduled.assert_awaited_once_with(appt, TOMORROW, time(14, 0))

    @pytest.mark.asyncio()
    async def test_window_blocks_patient(self):
        service, checker, *_ = _make_service()
        appt = _make_appointment(day=TODAY, start=time(13, 0))  # 5h away

        with pytest.raises(PolicyViolation) as exc_info:
            await service.reschedule(_locking_db(appt), PATIENT, appt.id, {"date": "2026-11-04", "start": "09:00", "end": "09:30"})

        assert exc_info.value.detail["required_hours"] == 12
        checker.ensure_bookable.assert_not_awaited()

    @pytest.mark.asyncio()
    async def test_admin_bypasses_window(self, notify):
        service, *_ = _make_service()
        appt = _make_appointment(day=TODAY, start=time(13, 0))

        result = await service.reschedule(
            _locking_db(appt), ADMIN, appt.id, {"date": "2026-11-04", "start": "09:00", "end": "09:30"}
        )

        assert result.appointment_date == date(2026, 11, 4)

    @pytest.mark.asyncio()
    async def test_pending_payment_cannot_reschedule(self):
        service, *_ = _make_service()
        appt = _make_appointment(AppointmentStatus.PENDING_PAYMENT)

        with pytest.raises(InvalidStateTransition):
            await service.reschedule(_locking_db(appt), PATIENT, appt.id, {"date": "2026-11-04", "start": "09:00", "end": "09:30"})

    @pytest.mark.asyncio()
    async def test_other_patient_forbidden(self):
        service, *_ = _make_service()
        appt = _make_appointment()

        with pytest.raises(Forbidden):
            await service.reschedule(_locking_db(appt), OTHER_PATIENT, appt.id, {"date": "2026-11-04", "start": "09:00", "end": "09:30"})


# ── Cancel ───────────────────────────────────────────────────────────


class TestCancel:
    """Test AppointmentService.cancel."""

    @pytest.mark.asyncio()
    async def test_inside_window_rejected(self):
        service, *_ = _make_service()
        appt = _make_appointment(day=TODAY, start=time(10, 0))  # 2h away

        with pytest.raises(PolicyViolation) as exc_info:
            await service.cancel(_locking_db(appt), PATIENT, appt.id)

        assert exc_info.value.detail["hours_before_start"] == 2.0
        assert appt.status == "scheduled"

    @pytest.mark.asyncio()
    async def test_outside_window_cancels_and_refunds(self, notify):
        service, _, _, payments, _ = _make_service()
        payments.maybe_refund.return_value = RefundResult(refunded=True, refund_id="re_123")
        appt = _make_appointment(day=TOMORROW, start=time(14, 0))  # 30h away
        db = _locking_db(appt)

        result = await service.cancel(db, PATIENT, appt.id, reason="travel")

        assert result.status == "cancelled"
        assert result.cancelled_at is not None
        assert result.cancellation_reason == "travel"
        payments.maybe_refund.assert_not_awaited()

        with patch("medibook.scheduling.service.transaction", _fake_transaction):
            await run_post_commit(db)

        assert payments.maybe_refund.await_args.args[1] == appt.id
        notify.appointment_cancelled.assert_awaited_once_with(appt, True)

    @pytest.mark.asyncio()
    async def test_refund_failure_still_notifies(self, notify):
        service, _, _, payments, _ = _make_service()
        payments.maybe_refund.side_effect = RuntimeError("db down")
        appt = _make_appointment()
        db = _locking_db(appt)

        await service.cancel(db, PATIENT, appt.id)
        with patch("medibook.scheduling.service.transaction", _fake_transaction):
            await run_post_commit(db)

        notify.appointment_cancelled.assert_awaited_once_with(appt, False)

    @pytest.mark.asyncio()
    async def test_unpaid_cancellation_ignores_window(self, notify):
        service, *_ = _make_service()
        appt = _make_appointment(AppointmentStatus.PENDING_PAYMENT, day=TODAY, start=time(9, 0))

        result = await service.cancel(_locking_db(appt), PATIENT, appt.id)

        assert result.status == "cancelled"

    @pytest.mark.asyncio()
    async def test_completed_cannot_cancel(self):
        service, *_ = _make_service()
        appt = _make_appointment(AppointmentStatus.COMPLETED)

        with pytest.raises(InvalidStateTransition):
            await service.cancel(_locking_db(appt), PATIENT, appt.id)

    @pytest.mark.asyncio()
    async def test_rollback_drops_side_effects(self, notify):
        service, _, _, payments, _ = _make_service()
        appt = _make_appointment()
        db = _locking_db(appt)

        await service.cancel(db, PATIENT, appt.id)
        db.info.clear()  # what discard_post_commit does on rollback
        await run_post_commit(db)

        payments.maybe_refund.assert_not_awaited()
        notify.appointment_cancelled.assert_not_awaited()


# ── Same-day flow ────────────────────────────────────────────────────


class TestSameDay:
    """Test check_in, start and complete."""

    @pytest.mark.asyncio()
    async def test_check_in_delegates_to_queue(self):
        service, _, queue, *_ = _make_service()
        appt = _make_appointment(day=TODAY)
        ticket = QueueTicket(appointment_id=appt.id, queue_position=1, estimated_wait=15)
        queue.add_to_queue.return_value = ticket

        result = await service.check_in(_locking_db(appt), PATIENT, appt.id)

        assert result == ticket
        queue.lock_queue.assert_awaited_once()
        assert queue.add_to_queue.await_args.args[1:] == (appt, "check_in", PATIENT)

    @pytest.mark.asyncio()
    async def test_check_in_only_on_the_day(self):
        service, _, queue, *_ = _make_service()
        appt = _make_appointment(day=TOMORROW)

        with pytest.raises(InvalidStateTransition):
            await service.check_in(_locking_db(appt), PATIENT, appt.id)

        queue.add_to_queue.assert_not_awaited()

    @pytest.mark.asyncio()
    async def test_check_in_by_doctor_forbidden(self):
        service, *_ = _make_service()
        appt = _make_appointment(day=TODAY)

        with pytest.raises(Forbidden):
            await service.check_in(_locking_db(appt), DOCTOR_USER, appt.id)

    @pytest.mark.asyncio()
    async def test_start_opens_meeting(self):
        service, _, queue, _, meetings = _make_service()
        appt = _make_appointment(day=TODAY)
        queue.add_to_queue.return_value = QueueTicket(appointment_id=appt.id, queue_position=1, estimated_wait=15)
        meeting = MagicMock(room_id="consult-abc")
        meetings.create_meeting.return_value = meeting

        ticket, result = await service.start(_locking_db(appt), DOCTOR_USER, appt.id)

        assert ticket.queue_position == 1
        assert result is meeting
        assert appt.started_at is not None
        meetings.create_meeting.assert_awaited_once_with(appt.id, appt.patient_id, appt.doctor_id)

    @pytest.mark.asyncio()
    async def test_start_by_patient_forbidden(self):
        service, *_ = _make_service()
        appt = _make_appointment(day=TODAY)

        with pytest.raises(Forbidden):
            await service.start(_locking_db(appt), PATIENT, appt.id)

    @pytest.mark.asyncio()
    async def test_complete_adds_feedback_placeholder(self, notify):
        service, _, queue, _, meetings = _make_service()
        appt = _make_appointment(AppointmentStatus.IN_CONSULTATION, day=TODAY)
        db = _locking_db(appt, _result(None))

        await service.complete(db, DOCTOR_USER, appt.id, {"diagnosis": "flu", "prescription": "rest"})

        queue.complete_appointment.assert_awaited_once()
        assert (appt.diagnosis, appt.prescription, appt.doctor_notes) == ("flu", "rest", None)
        feedback = db.add.call_args.args[0]
        assert feedback.appointment_id == appt.id
        assert feedback.patient_id == PATIENT.id

        await run_post_commit(db)
        notify.appointment_completed.assert_awaited_once_with(appt)
        meetings.invalidate_meeting.assert_awaited_once_with(appt.id)

    @pytest.mark.asyncio()
    async def test_complete_keeps_existing_feedback(self, notify):
        service, *_ = _make_service()
        appt = _make_appointment(AppointmentStatus.IN_CONSULTATION, day=TODAY)
        db = _locking_db(appt, _result(uuid.uuid4()))

        await service.complete(db, DOCTOR_USER, appt.id)

        db.add.assert_not_called()

    @pytest.mark.asyncio()
    async def test_complete_by_other_doctor_forbidden(self):
        service, *_ = _make_service()
        appt = _make_appointment(AppointmentStatus.IN_CONSULTATION, day=TODAY)
        stranger = Principal(id=uuid.uuid4(), role=UserRole.DOCTOR)

        with pytest.raises(Forbidden):
            await service.complete(_locking_db(appt), stranger, appt.id)


# ── Queue front doors ────────────────────────────────────────────────


class TestQueueFrontDoors:
    """Test call_next and queue_status authorization."""

    @pytest.mark.asyncio()
    async def test_call_next_by_owning_doctor(self):
        service, _, queue, *_ = _make_service()
        doctor = _make_doctor()

        await service.call_next(_make_db(doctor), DOCTOR_USER, doctor.id, TODAY)

        queue.call_next_patient.assert_awaited_once()

    @pytest.mark.asyncio()
    async def test_call_next_by_patient_forbidden(self):
        service, _, queue, *_ = _make_service()
        doctor = _make_doctor()

        with pytest.raises(Forbidden):
            await service.call_next(_make_db(doctor), PATIENT, doctor.id)

        queue.call_next_patient.assert_not_awaited()

    @pytest.mark.asyncio()
    async def test_patient_sees_only_own_entries(self):
        service, _, queue, *_ = _make_service()
        mine = MagicMock(patient_id=PATIENT.id)
        theirs = MagicMock(patient_id=OTHER_PATIENT.id)
        queue.get_queue_status.return_value = [theirs, mine]

        entries = await service.queue_status(_make_db(), PATIENT, uuid.uuid4())

        assert entries == [mine]


# ── Reads ────────────────────────────────────────────────────────────


class TestReads:
    """Test get and list_for_patient."""

    @pytest.mark.asyncio()
    async def test_get_visible_to_owner_doctor_admin(self):
        service, *_ = _make_service()
        appt = _make_appointment()
        db = _make_db(appt)

        for principal in (PATIENT, DOCTOR_USER, ADMIN):
            assert await service.get(db, principal, appt.id) is appt

    @pytest.mark.asyncio()
    async def test_get_hidden_from_strangers(self):
        service, *_ = _make_service()
        appt = _make_appointment()

        with pytest.raises(NotFound):
            await service.get(_make_db(appt), OTHER_PATIENT, appt.id)

    @pytest.mark.asyncio()
    async def test_list_for_patient_page(self):
        service, *_ = _make_service()
        rows = [_make_appointment(), _make_appointment()]
        db = _make_db(execute_results=[_result(rows=rows)])
        db.scalar = AsyncMock(return_value=12)

        page = await service.list_for_patient(db, PATIENT, status="scheduled", page=2, limit=5)

        assert page.items == rows
        assert (page.page, page.limit, page.total, page.pages) == (2, 5, 12, 3)

    @pytest.mark.asyncio()
    @pytest.mark.parametrize(("page", "limit"), [(0, 10), (1, 0), (1, 101)])
    async def test_list_rejects_bad_pagination(self, page, limit):
        service, *_ = _make_service()

        with pytest.raises(ValidationError):
            await service.list_for_patient(_make_db(), PATIENT, page=page, limit=limit)
