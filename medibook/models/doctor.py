"""Doctor and weekly availability models."""

from __future__ import annotations

import uuid
from datetime import time
from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy import Boolean, ForeignKey, Numeric, SmallInteger, String, Time, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from medibook.models.base import Base, TimestampMixin

if TYPE_CHECKING:
    from medibook.models.user import User


class Doctor(TimestampMixin, Base):
    """A doctor profile. Its row doubles as the serialization point for the doctor's queue."""

    __tablename__ = "doctors"

    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id"), nullable=False, unique=True
    )
    specialization: Mapped[str | None] = mapped_column(String(100))
    consultation_fee: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)

    user: Mapped[User] = relationship("User", lazy="joined")
    availability: Mapped[list[DoctorAvailability]] = relationship(
        "DoctorAvailability", back_populates="doctor"
    )

    @property
    def display_name(self) -> str:
        return self.user.name if self.user is not None else "your doctor"

    def __repr__(self) -> str:
        return f"<Doctor id={self.id} fee={self.consultation_fee}>"


class DoctorAvailability(TimestampMixin, Base):
    """A weekly availability window. `day_of_week` is 0 = Sunday … 6 = Saturday."""

    __tablename__ = "doctor_availability"
    __table_args__ = (UniqueConstraint("doctor_id", "day_of_week", name="uq_availability_doctor_day"),)

    doctor_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("doctors.id", ondelete="CASCADE"), nullable=False, index=True
    )
    day_of_week: Mapped[int] = mapped_column(SmallInteger, nullable=False)
    start_time: Mapped[time] = mapped_column(Time, nullable=False)
    end_time: Mapped[time] = mapped_column(Time, nullable=False)
    is_available: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    doctor: Mapped[Doctor] = relationship("Doctor", back_populates="availability")

    def __repr__(self) -> str:
        return f"<DoctorAvailability doctor={self.doctor_id} day={self.day_of_week} {self.start_time}-{self.end_time}>"
