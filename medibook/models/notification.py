"""Notification log and durable delivery-failure store."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint, func
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from medibook.models.base import Base, TimestampMixin


class Notification(TimestampMixin, Base):
    """Every transactional message we attempted, whatever the email outcome."""

    __tablename__ = "notifications"

    recipient_email: Mapped[str | None] = mapped_column(String(255))
    subject: Mapped[str | None] = mapped_column(String(255))
    message: Mapped[str] = mapped_column(Text, nullable=False)
    kind: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    metadata_: Mapped[dict[str, Any] | None] = mapped_column("metadata", JSONB)
    delivered: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)


class NotificationError(TimestampMixin, Base):
    """A delivery that exhausted its retries. One row per (appointment, kind)."""

    __tablename__ = "notification_errors"
    __table_args__ = (
        UniqueConstraint("appointment_id", "error_type", name="uq_notification_errors_appointment_type"),
    )

    appointment_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("appointments.id"), index=True
    )
    user_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id"))
    error_type: Mapped[str] = mapped_column(String(50), nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text)
    context: Mapped[dict[str, Any] | None] = mapped_column(JSONB)
    retry_count: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    last_attempt: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    def __repr__(self) -> str:
        return f"<NotificationError appointment={self.appointment_id} type={self.error_type} retries={self.retry_count}>"
