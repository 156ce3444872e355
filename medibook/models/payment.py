"""PaymentRecord model — one provider payment intent per appointment."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Integer, String
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from medibook.models.base import Base, TimestampMixin
from medibook.models.enums import PaymentStatus


class PaymentRecord(TimestampMixin, Base):
    """Tracks the charge for an appointment. Keyed by appointment (unique)."""

    __tablename__ = "payments"

    appointment_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("appointments.id"), nullable=False, unique=True
    )
    provider_intent_id: Mapped[str | None] = mapped_column(String(255), index=True)
    amount: Mapped[int] = mapped_column(Integer, nullable=False, comment="Minor currency units")
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default=PaymentStatus.CREATED.value, nullable=False)

    refund_id: Mapped[str | None] = mapped_column(String(255))
    succeeded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    failed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    @property
    def is_live(self) -> bool:
        """A created or succeeded record blocks a new intent."""
        return self.status in (PaymentStatus.CREATED.value, PaymentStatus.SUCCEEDED.value)

    def __repr__(self) -> str:
        return f"<PaymentRecord appointment={self.appointment_id} status={self.status} amount={self.amount}>"
