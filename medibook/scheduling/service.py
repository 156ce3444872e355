"""Appointment service — the role-checked front door to the lifecycle.

Each operation runs inside the caller's unit of work (`get_session()` or
`transaction()`): authorization first, then the state guard, then the
mutation. Emails, pushes, refunds and events are registered as post-commit
hooks and never run if the transaction rolls back.

Lock order is doctor row, then appointment row, whenever the queue is
involved.
"""

from __future__ import annotations

import logging
import uuid
from datetime import date
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from medibook.config import settings
from medibook.db.engine import after_commit, transaction
from medibook.errors import Forbidden, InvalidStateTransition, NotFound, PolicyViolation, SlotConflict, ValidationError
from medibook.events import emit_after_commit
from medibook.models.appointment import SLOT_CONSTRAINT, Appointment
from medibook.models.base import utcnow
from medibook.models.doctor import Doctor
from medibook.models.enums import AppointmentStatus, UserRole
from medibook.models.feedback import Feedback
from medibook.models.user import User
from medibook.payments.service import PaymentCoordinator, payment_coordinator
from medibook.queue.service import QueueManager, queue_manager
from medibook.scheduling import notify
from medibook.scheduling.clock import clinic_now, clinic_today, hours_until, slot_start
from medibook.scheduling.conflicts import SlotConflictChecker, slot_checker
from medibook.scheduling.fsm import appointment_fsm
from medibook.schemas.appointments import (
    AppointmentPage,
    BookAppointmentRequest,
    CompleteAppointmentRequest,
    Principal,
    QueueEntry,
    QueueTicket,
    RescheduleRequest,
    parse_request,
)
from medibook.schemas.events import EventType, SystemEvent
from medibook.video.meetings import Meeting, MeetingService, meeting_service

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100


class AppointmentService:
    """Books, moves, cancels and runs appointments through their lifecycle."""

    def __init__(
        self,
        checker: SlotConflictChecker | None = None,
        queue: QueueManager | None = None,
        payments: PaymentCoordinator | None = None,
        meetings: MeetingService | None = None,
    ) -> None:
        self._checker = checker or slot_checker
        self._queue = queue or queue_manager
        self._payments = payments or payment_coordinator
        self._meetings = meetings or meeting_service

    # ── Loading and locking ──────────────────────────────────────────

    async def _load(self, db: AsyncSession, appointment_id: uuid.UUID) -> Appointment:
        appointment = await db.get(Appointment, appointment_id)
        if appointment is None:
            raise NotFound("Appointment not found", appointment_id=str(appointment_id))
        return appointment

    async def _lock(self, db: AsyncSession, appointment_id: uuid.UUID) -> Appointment:
        """Re-read the appointment under a row lock."""
        result = await db.execute(
            select(Appointment)
            .where(Appointment.id == appointment_id)
            .with_for_update(of=Appointment)
            .execution_options(populate_existing=True)
        )
        appointment = result.scalar_one_or_none()
        if appointment is None:
            raise NotFound("Appointment not found", appointment_id=str(appointment_id))
        return appointment

    async def _lock_with_queue(self, db: AsyncSession, appointment: Appointment) -> Appointment:
        await self._queue.lock_queue(db, appointment.doctor_id)
        return await self._lock(db, appointment.id)

    # ── Authorization ────────────────────────────────────────────────

    @staticmethod
    def _is_patient(appointment: Appointment, principal: Principal) -> bool:
        return principal.role == UserRole.PATIENT and appointment.patient_id == principal.id

    @staticmethod
    def _is_doctor(appointment: Appointment, principal: Principal) -> bool:
        return (
            principal.role == UserRole.DOCTOR
            and appointment.doctor is not None
            and appointment.doctor.user_id == principal.id
        )

    def _require_patient_or_admin(self, appointment: Appointment, principal: Principal, action: str) -> None:
        if not (principal.is_admin or self._is_patient(appointment, principal)):
            raise Forbidden(f"Not allowed to {action} this appointment", appointment_id=str(appointment.id))

    def _require_doctor_or_admin(self, appointment: Appointment, principal: Principal, action: str) -> None:
        if not (principal.is_admin or self._is_doctor(appointment, principal)):
            raise Forbidden(f"Not allowed to {action} this appointment", appointment_id=str(appointment.id))

    async def _doctor_for(self, db: AsyncSession, principal: Principal, doctor_id: uuid.UUID) -> Doctor:
        doctor = await db.get(Doctor, doctor_id)
        if doctor is None:
            raise NotFound("Doctor not found", doctor_id=str(doctor_id))
        if not (principal.is_admin or (principal.role == UserRole.DOCTOR and doctor.user_id == principal.id)):
            raise Forbidden("Not allowed to manage this doctor's queue", doctor_id=str(doctor_id))
        return doctor

    # ── Guards ───────────────────────────────────────────────────────

    @staticmethod
    def _check_window(appointment: Appointment, principal: Principal, hours: int, action: str) -> None:
        if principal.is_admin:
            return
        remaining = hours_until(appointment.appointment_date, appointment.start_time)
        if remaining < hours:
            raise PolicyViolation(
                f"Appointments can only be {action} at least {hours} hours in advance",
                appointment_id=str(appointment.id),
                hours_before_start=round(remaining, 2),
                required_hours=hours,
            )

    @staticmethod
    def _check_future(day: date, request: Any) -> None:
        if slot_start(day, request.start) <= clinic_now():
            raise ValidationError("Cannot book a slot in the past", date=day.isoformat(), start=request.start.isoformat())

    @staticmethod
    async def _flush_slot(db: AsyncSession, doctor_id: uuid.UUID, request: Any) -> None:
        """Flush, turning a lost race on the slot constraint into SlotConflict."""
        try:
            await db.flush()
        except IntegrityError as exc:
            if SLOT_CONSTRAINT in str(exc.orig):
                raise SlotConflict(
                    "Time slot already booked",
                    reason="overlap",
                    doctor_id=str(doctor_id),
                    date=request.date.isoformat(),
                    start=request.start.isoformat(),
                ) from exc
            raise

    # ── Booking ──────────────────────────────────────────────────────

    async def book(
        self,
        db: AsyncSession,
        principal: Principal,
        request: BookAppointmentRequest | dict[str, Any],
        require_payment: bool | None = None,
    ) -> Appointment:
        """Book a slot for the calling patient.

        Raises:
            Forbidden: Caller is not a patient.
            NotFound: Unknown doctor.
            ValidationError: Bad request shape, or a slot in the past.
            SlotConflict: Outside availability, overlapping, or lost the race.
        """
        if isinstance(request, dict):
            request = parse_request(BookAppointmentRequest, request)
        if principal.role != UserRole.PATIENT:
            raise Forbidden("Only patients can book appointments")

        doctor = await db.get(Doctor, request.doctor_id)
        if doctor is None:
            raise NotFound("Doctor not found", doctor_id=str(request.doctor_id))
        patient = await db.get(User, principal.id)
        if patient is None:
            raise NotFound("Patient not found", patient_id=str(principal.id))

        self._check_future(request.date, request)
        await self._checker.ensure_bookable(db, doctor.id, request.date, request.start, request.end)

        needs_payment = settings.policy.require_payment if require_payment is None else require_payment
        status = AppointmentStatus.PENDING_PAYMENT if needs_payment else AppointmentStatus.SCHEDULED

        appointment = Appointment(
            id=uuid.uuid4(),
            patient_id=patient.id,
            doctor_id=doctor.id,
            appointment_date=request.date,
            start_time=request.start,
            end_time=request.end,
            consultation_type=request.consultation_type.value,
            notes=request.notes,
            status=status.value,
            notification_sent=False,
        )
        appointment.patient = patient
        appointment.doctor = doctor
        db.add(appointment)
        await self._flush_slot(db, doctor.id, request)

        emit_after_commit(db, SystemEvent(
            event_type=EventType.APPOINTMENT_BOOKED,
            appointment_id=appointment.id,
            actor_id=str(principal.id),
            actor_role=principal.role.value,
            data={
                "doctor_id": str(doctor.id),
                "date": request.date.isoformat(),
                "start": request.start.isoformat(),
                "status": status.value,
            },
            source_module="scheduling.service",
        ))

        if status == AppointmentStatus.SCHEDULED:
            async def _confirm() -> None:
                await notify.appointment_confirmed(appointment)

            after_commit(db, _confirm)

        logger.info(
            "Appointment %s booked: doctor=%s %s %s-%s (%s)",
            appointment.id,
            doctor.id,
            request.date,
            request.start,
            request.end,
            status.value,
        )
        return appointment

    async def reschedule(
        self,
        db: AsyncSession,
        principal: Principal,
        appointment_id: uuid.UUID,
        request: RescheduleRequest | dict[str, Any],
    ) -> Appointment:
        """Move a scheduled appointment to a new slot with the same doctor."""
        if isinstance(request, dict):
            request = parse_request(RescheduleRequest, request)

        appointment = await self._lock(db, appointment_id)
        self._require_patient_or_admin(appointment, principal, "reschedule")
        appointment_fsm.next_state(appointment.status, "reschedule")
        self._check_window(appointment, principal, settings.policy.reschedule_window_hours, "rescheduled")

        self._check_future(request.date, request)
        await self._checker.ensure_bookable(
            db,
            appointment.doctor_id,
            request.date,
            request.start,
            request.end,
            exclude_appointment_id=appointment.id,
        )

        old_day, old_start = appointment.appointment_date, appointment.start_time
        appointment_fsm.apply(db, appointment, "reschedule", principal)
        appointment.appointment_date = request.date
        appointment.start_time = request.start
        appointment.end_time = request.end
        appointment.notification_sent = False
        appointment.notification_sent_at = None
        await self._flush_slot(db, appointment.doctor_id, request)

        emit_after_commit(db, SystemEvent(
            event_type=EventType.APPOINTMENT_RESCHEDULED,
            appointment_id=appointment.id,
            actor_id=str(principal.id),
            actor_role=principal.role.value,
            data={
                "from": f"{old_day.isoformat()}T{old_start.isoformat()}",
                "to": f"{request.date.isoformat()}T{request.start.isoformat()}",
            },
            source_module="scheduling.service",
        ))

        async def _notify() -> None:
            await notify.appointment_rescheduled(appointment, old_day, old_start)

        after_commit(db, _notify)
        return appointment

    async def cancel(
        self,
        db: AsyncSession,
        principal: Principal,
        appointment_id: uuid.UUID,
        reason: str | None = None,
    ) -> Appointment:
        """Cancel a scheduled or unpaid appointment; refund after commit when paid."""
        appointment = await self._lock(db, appointment_id)
        self._require_patient_or_admin(appointment, principal, "cancel")
        appointment_fsm.next_state(appointment.status, "cancel")
        if appointment.status == AppointmentStatus.SCHEDULED.value:
            self._check_window(appointment, principal, settings.policy.cancel_window_hours, "cancelled")

        appointment_fsm.apply(db, appointment, "cancel", principal)
        appointment.cancellation_reason = reason
        appointment.clear_queue_fields()
        await db.flush()

        emit_after_commit(db, SystemEvent(
            event_type=EventType.APPOINTMENT_CANCELLED,
            appointment_id=appointment.id,
            actor_id=str(principal.id),
            actor_role=principal.role.value,
            data={"reason": reason},
            source_module="scheduling.service",
        ))

        async def _refund_and_notify() -> None:
            refunded = False
            try:
                async with transaction() as session:
                    result = await self._payments.maybe_refund(session, appointment.id)
                refunded = result.refunded
                if not result.refunded:
                    logger.debug("No refund for appointment %s: %s", appointment.id, result.reason)
            except Exception:
                logger.exception("Refund after cancelling appointment %s failed", appointment.id)
            await notify.appointment_cancelled(appointment, refunded)

        after_commit(db, _refund_and_notify)
        return appointment

    # ── Same-day flow ────────────────────────────────────────────────

    async def check_in(self, db: AsyncSession, principal: Principal, appointment_id: uuid.UUID) -> QueueTicket:
        """Patient arrives in the waiting room on the day of the appointment."""
        appointment = await self._load(db, appointment_id)
        if not self._is_patient(appointment, principal):
            raise Forbidden("Only the patient can check in", appointment_id=str(appointment_id))

        appointment = await self._lock_with_queue(db, appointment)
        appointment_fsm.next_state(appointment.status, "check_in")
        if appointment.appointment_date != clinic_today():
            raise InvalidStateTransition(
                "Check-in is only possible on the day of the appointment",
                status=appointment.status,
                event="check_in",
                date=appointment.appointment_date.isoformat(),
            )

        return await self._queue.add_to_queue(db, appointment, "check_in", principal)

    async def start(
        self,
        db: AsyncSession,
        principal: Principal,
        appointment_id: uuid.UUID,
    ) -> tuple[QueueTicket, Meeting]:
        """Doctor opens a scheduled appointment: it joins the queue and gets a meeting room."""
        appointment = await self._load(db, appointment_id)
        self._require_doctor_or_admin(appointment, principal, "start")

        appointment = await self._lock_with_queue(db, appointment)
        appointment_fsm.next_state(appointment.status, "start")

        ticket = await self._queue.add_to_queue(db, appointment, "start", principal)
        appointment.started_at = utcnow()
        meeting = await self._meetings.create_meeting(appointment.id, appointment.patient_id, appointment.doctor_id)
        await db.flush()

        emit_after_commit(db, SystemEvent(
            event_type=EventType.APPOINTMENT_STARTED,
            appointment_id=appointment.id,
            actor_id=str(principal.id),
            actor_role=principal.role.value,
            data={"room_id": meeting.room_id, "queue_position": ticket.queue_position},
            source_module="scheduling.service",
        ))
        return ticket, meeting

    async def complete(
        self,
        db: AsyncSession,
        principal: Principal,
        appointment_id: uuid.UUID,
        request: CompleteAppointmentRequest | dict[str, Any] | None = None,
    ) -> Appointment:
        """Record the consultation outcome and close the appointment."""
        if request is None:
            request = CompleteAppointmentRequest()
        elif isinstance(request, dict):
            request = parse_request(CompleteAppointmentRequest, request)

        appointment = await self._load(db, appointment_id)
        self._require_doctor_or_admin(appointment, principal, "complete")

        appointment = await self._lock_with_queue(db, appointment)
        await self._queue.complete_appointment(db, appointment, principal)

        if request.diagnosis is not None:
            appointment.diagnosis = request.diagnosis
        if request.prescription is not None:
            appointment.prescription = request.prescription
        if request.doctor_notes is not None:
            appointment.doctor_notes = request.doctor_notes

        existing = await db.execute(select(Feedback.id).where(Feedback.appointment_id == appointment.id))
        if existing.scalar_one_or_none() is None:
            db.add(Feedback(
                appointment_id=appointment.id,
                patient_id=appointment.patient_id,
                doctor_id=appointment.doctor_id,
            ))
        await db.flush()

        emit_after_commit(db, SystemEvent(
            event_type=EventType.APPOINTMENT_COMPLETED,
            appointment_id=appointment.id,
            actor_id=str(principal.id),
            actor_role=principal.role.value,
            source_module="scheduling.service",
        ))

        async def _wrap_up() -> None:
            await notify.appointment_completed(appointment)
            await self._meetings.invalidate_meeting(appointment.id)

        after_commit(db, _wrap_up)
        return appointment

    # ── Queue front doors ────────────────────────────────────────────

    async def call_next(
        self,
        db: AsyncSession,
        principal: Principal,
        doctor_id: uuid.UUID,
        day: date | None = None,
    ) -> Appointment:
        await self._doctor_for(db, principal, doctor_id)
        return await self._queue.call_next_patient(db, doctor_id, day, principal)

    async def remove_from_queue(
        self,
        db: AsyncSession,
        principal: Principal,
        appointment_id: uuid.UUID,
    ) -> Appointment:
        appointment = await self._load(db, appointment_id)
        if not (
            principal.is_admin
            or self._is_patient(appointment, principal)
            or self._is_doctor(appointment, principal)
        ):
            raise Forbidden("Not allowed to remove this appointment from the queue", appointment_id=str(appointment_id))

        appointment = await self._lock_with_queue(db, appointment)
        return await self._queue.remove_from_queue(db, appointment, principal)

    async def queue_status(
        self,
        db: AsyncSession,
        principal: Principal,
        doctor_id: uuid.UUID,
        day: date | None = None,
    ) -> list[QueueEntry]:
        """Full queue for the doctor and admins; a patient sees only their own entries."""
        if principal.role == UserRole.PATIENT:
            entries = await self._queue.get_queue_status(db, doctor_id, day)
            return [entry for entry in entries if entry.patient_id == principal.id]
        await self._doctor_for(db, principal, doctor_id)
        return await self._queue.get_queue_status(db, doctor_id, day)

    # ── Reads ────────────────────────────────────────────────────────

    async def get(self, db: AsyncSession, principal: Principal, appointment_id: uuid.UUID) -> Appointment:
        """Appointment visible to the caller; anything else looks absent."""
        appointment = await self._load(db, appointment_id)
        if principal.is_admin or self._is_patient(appointment, principal) or self._is_doctor(appointment, principal):
            return appointment
        raise NotFound("Appointment not found", appointment_id=str(appointment_id))

    async def list_for_patient(
        self,
        db: AsyncSession,
        principal: Principal,
        status: AppointmentStatus | str | None = None,
        page: int = 1,
        limit: int = 10,
    ) -> AppointmentPage:
        """The caller's appointments, newest first."""
        if page < 1 or not 1 <= limit <= MAX_PAGE_SIZE:
            raise ValidationError("Invalid pagination", page=page, limit=limit)

        filters = [Appointment.patient_id == principal.id]
        if status is not None:
            filters.append(Appointment.status == AppointmentStatus(status).value)

        total = await db.scalar(select(func.count()).select_from(Appointment).where(*filters))
        result = await db.execute(
            select(Appointment)
            .where(*filters)
            .order_by(Appointment.appointment_date.desc(), Appointment.start_time.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        return AppointmentPage(items=list(result.scalars().all()), page=page, limit=limit, total=total or 0)


# Module-level singleton
appointment_service = AppointmentService()
