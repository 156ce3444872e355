"""Slot conflict checker — is [start, end) inside the doctor's availability and free?

Pure read-then-decide. The decision is advisory: two requests can both pass
the check, and the unique constraint on (doctor_id, appointment_date,
start_time) decides the race at flush time (see AppointmentService).
"""

from __future__ import annotations

import logging
import uuid
from datetime import date, datetime, time, timedelta

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from medibook.errors import SlotConflict
from medibook.models.appointment import Appointment
from medibook.models.doctor import DoctorAvailability
from medibook.models.enums import AppointmentStatus
from medibook.scheduling.clock import day_of_week

logger = logging.getLogger(__name__)

OUTSIDE_AVAILABILITY = "outside_availability"
OVERLAP = "overlap"


def intervals_overlap(a_start: time, a_end: time, b_start: time, b_end: time) -> bool:
    """Half-open interval test: [a_start, a_end) ∩ [b_start, b_end) ≠ ∅."""
    return a_start < b_end and a_end > b_start


def generate_slots(
    window_start: time,
    window_end: time,
    booked: list[tuple[time, time]],
    slot_minutes: int = 30,
) -> list[time]:
    """Fixed-length start times inside the window that overlap no booked range."""
    anchor = date(2000, 1, 1)
    step = timedelta(minutes=slot_minutes)
    current = datetime.combine(anchor, window_start)
    end = datetime.combine(anchor, window_end)

    slots: list[time] = []
    while current + step <= end:
        slot_end = current + step
        if not any(
            intervals_overlap(current.time(), slot_end.time(), b_start, b_end)
            for b_start, b_end in booked
        ):
            slots.append(current.time())
        current = slot_end
    return slots


class SlotConflictChecker:
    """Availability + overlap checks for a (doctor, date, start, end) slot."""

    async def is_bookable(
        self,
        db: AsyncSession,
        doctor_id: uuid.UUID,
        day: date,
        start: time,
        end: time,
        exclude_appointment_id: uuid.UUID | None = None,
    ) -> bool:
        return await self.find_conflict(db, doctor_id, day, start, end, exclude_appointment_id) is None

    async def ensure_bookable(
        self,
        db: AsyncSession,
        doctor_id: uuid.UUID,
        day: date,
        start: time,
        end: time,
        exclude_appointment_id: uuid.UUID | None = None,
    ) -> None:
        """Raise SlotConflict with the reason when the slot cannot be booked."""
        reason = await self.find_conflict(db, doctor_id, day, start, end, exclude_appointment_id)
        if reason == OUTSIDE_AVAILABILITY:
            raise SlotConflict(
                "Doctor not available at this time",
                reason=reason,
                doctor_id=str(doctor_id),
                date=day.isoformat(),
            )
        if reason == OVERLAP:
            raise SlotConflict(
                "Time slot already booked",
                reason=reason,
                doctor_id=str(doctor_id),
                date=day.isoformat(),
                start=start.isoformat(),
                end=end.isoformat(),
            )

    async def find_conflict(
        self,
        db: AsyncSession,
        doctor_id: uuid.UUID,
        day: date,
        start: time,
        end: time,
        exclude_appointment_id: uuid.UUID | None = None,
    ) -> str | None:
        """Return None when bookable, otherwise the reason it is not."""
        if end <= start:
            return OUTSIDE_AVAILABILITY

        window = await db.execute(
            select(DoctorAvailability.id)
            .where(
                DoctorAvailability.doctor_id == doctor_id,
                DoctorAvailability.day_of_week == day_of_week(day),
                DoctorAvailability.is_available.is_(True),
                DoctorAvailability.start_time <= start,
                DoctorAvailability.end_time >= end,
            )
            .limit(1)
        )
        if window.scalar_one_or_none() is None:
            logger.debug("Slot outside availability: doctor=%s %s %s-%s", doctor_id, day, start, end)
            return OUTSIDE_AVAILABILITY

        overlap_query = select(Appointment.id).where(
            Appointment.doctor_id == doctor_id,
            Appointment.appointment_date == day,
            Appointment.status != AppointmentStatus.CANCELLED.value,
            Appointment.start_time < end,
            Appointment.end_time > start,
        )
        if exclude_appointment_id is not None:
            overlap_query = overlap_query.where(Appointment.id != exclude_appointment_id)

        overlap = await db.execute(overlap_query.limit(1))
        if overlap.scalar_one_or_none() is not None:
            logger.debug("Slot overlaps existing appointment: doctor=%s %s %s-%s", doctor_id, day, start, end)
            return OVERLAP
        return None

    async def available_slots(
        self,
        db: AsyncSession,
        doctor_id: uuid.UUID,
        day: date,
        slot_minutes: int = 30,
    ) -> list[time]:
        """Free start times for the day, empty when the doctor does not work that day."""
        window_result = await db.execute(
            select(DoctorAvailability).where(
                DoctorAvailability.doctor_id == doctor_id,
                DoctorAvailability.day_of_week == day_of_week(day),
                DoctorAvailability.is_available.is_(True),
            )
        )
        window = window_result.scalars().first()
        if window is None:
            return []

        booked_result = await db.execute(
            select(Appointment.start_time, Appointment.end_time).where(
                Appointment.doctor_id == doctor_id,
                Appointment.appointment_date == day,
                Appointment.status != AppointmentStatus.CANCELLED.value,
            )
        )
        booked = [(row[0], row[1]) for row in booked_result.all()]
        return generate_slots(window.start_time, window.end_time, booked, slot_minutes)


# Module-level singleton
slot_checker = SlotConflictChecker()
