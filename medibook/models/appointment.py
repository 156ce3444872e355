"""Appointment model — one booked consultation and its queue bookkeeping.

Rows are never deleted: cancellation is a status. The unique constraint on
(doctor_id, appointment_date, start_time) is the final arbiter against
double booking when two requests race past the conflict checker.
"""

from __future__ import annotations

import uuid
from datetime import date, datetime, time
from typing import TYPE_CHECKING

from sqlalchemy import Boolean, Date, DateTime, ForeignKey, Integer, String, Text, Time, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from medibook.models.base import Base, TimestampMixin
from medibook.models.enums import AppointmentStatus, ConsultationType

if TYPE_CHECKING:
    from medibook.models.doctor import Doctor
    from medibook.models.user import User

SLOT_CONSTRAINT = "uq_appointments_doctor_slot"


class Appointment(TimestampMixin, Base):
    """A consultation between a patient and a doctor."""

    __tablename__ = "appointments"
    __table_args__ = (
        UniqueConstraint("doctor_id", "appointment_date", "start_time", name=SLOT_CONSTRAINT),
    )

    # Foreign keys
    patient_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    doctor_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("doctors.id", ondelete="CASCADE"), nullable=False, index=True
    )

    # Slot
    appointment_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    start_time: Mapped[time] = mapped_column(Time, nullable=False)
    end_time: Mapped[time] = mapped_column(Time, nullable=False)

    consultation_type: Mapped[str] = mapped_column(
        String(20), default=ConsultationType.VIDEO.value, nullable=False
    )
    notes: Mapped[str | None] = mapped_column(Text)
    status: Mapped[str] = mapped_column(
        String(20), default=AppointmentStatus.SCHEDULED.value, nullable=False, index=True
    )

    # Filled on completion
    diagnosis: Mapped[str | None] = mapped_column(Text)
    prescription: Mapped[str | None] = mapped_column(Text)
    doctor_notes: Mapped[str | None] = mapped_column(Text)

    cancellation_reason: Mapped[str | None] = mapped_column(String(500))

    # Queue
    queue_position: Mapped[int | None] = mapped_column(Integer)
    estimated_wait_time: Mapped[int | None] = mapped_column(Integer, comment="Minutes")
    check_in_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    called_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    completed_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    # Lifecycle stamps
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    # Reminder sweep
    notification_sent: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    notification_sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    # Relationships
    patient: Mapped[User] = relationship("User", lazy="joined")
    doctor: Mapped[Doctor] = relationship("Doctor", lazy="joined")

    def clear_queue_fields(self) -> None:
        self.queue_position = None
        self.estimated_wait_time = None

    def __repr__(self) -> str:
        return (
            f"<Appointment id={self.id} status={self.status} "
            f"at={self.appointment_date} {self.start_time}-{self.end_time}>"
        )
