"""Queue manager — the same-day virtual waiting room of each doctor.

A queue entry is an `in-progress` appointment with a position. Every
mutation first locks the doctor row, so check-ins, calls and removals for
one doctor run one at a time, and positions stay exactly 1..N.

Broadcasts are registered as post-commit hooks and carry a snapshot of the
queue taken inside the transaction.
"""

from __future__ import annotations

import logging
import uuid
from datetime import date

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from medibook.config import settings
from medibook.db.engine import after_commit
from medibook.errors import InvalidStateTransition, NotFound
from medibook.events import emit_after_commit
from medibook.models.appointment import Appointment
from medibook.models.base import utcnow
from medibook.models.doctor import Doctor
from medibook.models.enums import AppointmentStatus
from medibook.notifications.dispatcher import notification_dispatcher
from medibook.scheduling.clock import clinic_today
from medibook.scheduling.fsm import appointment_fsm
from medibook.schemas.appointments import Principal, QueueEntry, QueueTicket
from medibook.schemas.events import EventType, SystemEvent

logger = logging.getLogger(__name__)


class QueueManager:
    """Position bookkeeping for in-progress appointments, per (doctor, day)."""

    @property
    def per_patient_minutes(self) -> int:
        return settings.queue.per_patient_minutes

    # ── Serialization and reads ──────────────────────────────────────

    async def lock_queue(self, db: AsyncSession, doctor_id: uuid.UUID) -> None:
        """Take the doctor row lock that serializes this doctor's queue."""
        result = await db.execute(select(Doctor.id).where(Doctor.id == doctor_id).with_for_update())
        if result.scalar_one_or_none() is None:
            raise NotFound("Doctor not found", doctor_id=str(doctor_id))

    async def _queue_entries(self, db: AsyncSession, doctor_id: uuid.UUID, day: date) -> list[Appointment]:
        result = await db.execute(
            select(Appointment)
            .where(
                Appointment.doctor_id == doctor_id,
                Appointment.appointment_date == day,
                Appointment.status == AppointmentStatus.IN_PROGRESS.value,
            )
            .order_by(
                Appointment.queue_position.asc().nulls_last(),
                Appointment.check_in_time.asc().nulls_last(),
                Appointment.id.asc(),
            )
        )
        return list(result.scalars().all())

    def _compact(self, entries: list[Appointment]) -> list[Appointment]:
        """Renumber `entries` (already in queue order) to 1..N.

        An entry moving up k places has its wait reduced by k service
        intervals, never below zero. Returns the entries that changed.
        """
        changed: list[Appointment] = []
        for position, entry in enumerate(entries, start=1):
            current = entry.queue_position
            if current == position:
                continue
            if current is None:
                entry.estimated_wait_time = position * self.per_patient_minutes
            else:
                shift = current - position
                wait = (entry.estimated_wait_time or 0) - shift * self.per_patient_minutes
                entry.estimated_wait_time = max(wait, 0)
            entry.queue_position = position
            entry.touch()
            changed.append(entry)
        return changed

    # ── Operations ───────────────────────────────────────────────────

    async def add_to_queue(
        self,
        db: AsyncSession,
        appointment: Appointment,
        event: str = "check_in",
        principal: Principal | None = None,
    ) -> QueueTicket:
        """Put a scheduled appointment at the tail of its doctor's queue for the day."""
        await self.lock_queue(db, appointment.doctor_id)
        entries = await self._queue_entries(db, appointment.doctor_id, appointment.appointment_date)

        appointment_fsm.apply(db, appointment, event, principal)
        position = len(entries) + 1
        appointment.queue_position = position
        appointment.estimated_wait_time = position * self.per_patient_minutes
        appointment.check_in_time = utcnow()
        await db.flush()

        self._after_change(db, appointment.doctor_id, [*entries, appointment], changed=[appointment])
        emit_after_commit(db, SystemEvent(
            event_type=EventType.QUEUE_JOINED,
            appointment_id=appointment.id,
            actor_id=str(principal.id) if principal else None,
            actor_role=principal.role.value if principal else None,
            data={"doctor_id": str(appointment.doctor_id), "queue_position": position},
            source_module="queue.service",
        ))

        logger.info(
            "Appointment %s joined queue of doctor %s at position %d",
            appointment.id,
            appointment.doctor_id,
            position,
        )
        return QueueTicket(
            appointment_id=appointment.id,
            queue_position=position,
            estimated_wait=appointment.estimated_wait_time,
        )

    async def get_queue_status(
        self,
        db: AsyncSession,
        doctor_id: uuid.UUID,
        day: date | None = None,
    ) -> list[QueueEntry]:
        entries = await self._queue_entries(db, doctor_id, day or clinic_today())
        return [QueueEntry.from_appointment(entry) for entry in entries]

    async def call_next_patient(
        self,
        db: AsyncSession,
        doctor_id: uuid.UUID,
        day: date | None = None,
        principal: Principal | None = None,
    ) -> Appointment:
        """Move the head of the queue into consultation and close the gap.

        Raises:
            NotFound: Nobody is waiting.
        """
        await self.lock_queue(db, doctor_id)
        entries = await self._queue_entries(db, doctor_id, day or clinic_today())
        if not entries:
            raise NotFound("No patients in queue", doctor_id=str(doctor_id))

        head, remaining = entries[0], entries[1:]
        appointment_fsm.apply(db, head, "call_next", principal)
        head.called_time = utcnow()
        head.clear_queue_fields()
        changed = self._compact(remaining)
        await db.flush()

        self._after_change(db, doctor_id, remaining, changed)

        doctor_name = head.doctor.display_name if head.doctor is not None else "your doctor"
        patient_id, appointment_id = head.patient_id, head.id

        async def _call_patient() -> None:
            await notification_dispatcher.send_doctor_calling(patient_id, appointment_id, doctor_name)

        after_commit(db, _call_patient)
        emit_after_commit(db, SystemEvent(
            event_type=EventType.QUEUE_CALLED,
            appointment_id=head.id,
            actor_id=str(principal.id) if principal else None,
            actor_role=principal.role.value if principal else None,
            data={"doctor_id": str(doctor_id), "remaining": len(remaining)},
            source_module="queue.service",
        ))

        logger.info("Doctor %s called appointment %s, %d still waiting", doctor_id, head.id, len(remaining))
        return head

    async def complete_appointment(
        self,
        db: AsyncSession,
        appointment: Appointment,
        principal: Principal | None = None,
    ) -> Appointment:
        """Complete an appointment, compacting the queue if it was still waiting."""
        was_queued = appointment.status == AppointmentStatus.IN_PROGRESS.value
        appointment_fsm.next_state(appointment.status, "complete")

        remaining: list[Appointment] = []
        if was_queued:
            await self.lock_queue(db, appointment.doctor_id)
            entries = await self._queue_entries(db, appointment.doctor_id, appointment.appointment_date)
            remaining = [entry for entry in entries if entry.id != appointment.id]

        stamp = utcnow()
        appointment_fsm.apply(db, appointment, "complete", principal, at=stamp)
        appointment.completed_time = stamp
        appointment.clear_queue_fields()

        if was_queued:
            changed = self._compact(remaining)
            self._after_change(db, appointment.doctor_id, remaining, changed)
        await db.flush()

        logger.info("Appointment %s completed (was_queued=%s)", appointment.id, was_queued)
        return appointment

    async def remove_from_queue(
        self,
        db: AsyncSession,
        appointment: Appointment,
        principal: Principal | None = None,
    ) -> Appointment:
        """Take a waiting appointment out of the queue without completing it."""
        if appointment.status != AppointmentStatus.IN_PROGRESS.value:
            raise InvalidStateTransition(
                "Appointment is not waiting in the queue",
                status=appointment.status,
                event="leave_queue",
            )

        await self.lock_queue(db, appointment.doctor_id)
        entries = await self._queue_entries(db, appointment.doctor_id, appointment.appointment_date)
        remaining = [entry for entry in entries if entry.id != appointment.id]

        appointment_fsm.apply(db, appointment, "leave_queue", principal)
        appointment.clear_queue_fields()
        appointment.check_in_time = None
        changed = self._compact(remaining)
        await db.flush()

        self._after_change(db, appointment.doctor_id, remaining, changed)

        doctor_id, patient_id, appointment_id = appointment.doctor_id, appointment.patient_id, appointment.id

        async def _notify_left() -> None:
            await notification_dispatcher.send_status_update(
                patient_id, doctor_id, appointment_id, AppointmentStatus.SCHEDULED, "You have left the queue"
            )

        after_commit(db, _notify_left)
        emit_after_commit(db, SystemEvent(
            event_type=EventType.QUEUE_LEFT,
            appointment_id=appointment.id,
            actor_id=str(principal.id) if principal else None,
            actor_role=principal.role.value if principal else None,
            data={"doctor_id": str(appointment.doctor_id)},
            source_module="queue.service",
        ))

        logger.info("Appointment %s left queue of doctor %s", appointment.id, appointment.doctor_id)
        return appointment

    # ── Broadcasts ───────────────────────────────────────────────────

    def _after_change(
        self,
        db: AsyncSession,
        doctor_id: uuid.UUID,
        entries: list[Appointment],
        changed: list[Appointment],
    ) -> None:
        """Queue the doctor broadcast and each moved patient's wait-time push."""
        snapshot = [QueueEntry.from_appointment(entry) for entry in entries]
        moved = {entry.id for entry in changed}

        async def _broadcast() -> None:
            await self.broadcast_queue_update(doctor_id, snapshot, moved)

        after_commit(db, _broadcast)

    async def broadcast_queue_update(
        self,
        doctor_id: uuid.UUID,
        snapshot: list[QueueEntry],
        moved: set[uuid.UUID] | None = None,
    ) -> None:
        """Push the queue to the doctor's room and new positions to moved patients."""
        await notification_dispatcher.broadcast_queue(doctor_id, snapshot, moved)


# Module-level singleton
queue_manager = QueueManager()
