"""Pydantic schemas for outbound notifications."""

from __future__ import annotations

import uuid
from typing import Any

from pydantic import BaseModel, Field

from medibook.models.enums import NotificationKind


class NotificationMessage(BaseModel):
    """One transactional message: persisted first, emailed best-effort."""

    to: str | None = None
    subject: str
    message: str
    html: str | None = None
    kind: NotificationKind = NotificationKind.GENERAL
    data: dict[str, Any] = Field(default_factory=dict)

    # Used to key durable failures
    appointment_id: uuid.UUID | None = None
    user_id: uuid.UUID | None = None


class MailResult(BaseModel):
    success: bool
    message_id: str | None = None
    error: str | None = None


class DeliveryReport(BaseModel):
    """Outcome counts of a sweep or retry run."""

    successful: int = 0
    failed: int = 0
