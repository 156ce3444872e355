"""The event record published on the in-process bus.

Booking, queue, payment and notification code emit one of these for every
change worth auditing; subscribers receive them off the request path.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class EventType(str, Enum):
    """Dotted `area.action` names."""

    # Appointment lifecycle
    APPOINTMENT_BOOKED = "appointment.booked"
    APPOINTMENT_RESCHEDULED = "appointment.rescheduled"
    APPOINTMENT_CANCELLED = "appointment.cancelled"
    APPOINTMENT_STARTED = "appointment.started"
    APPOINTMENT_COMPLETED = "appointment.completed"
    APPOINTMENT_STATE_CHANGED = "appointment.state_changed"

    # Queue
    QUEUE_JOINED = "queue.joined"
    QUEUE_CALLED = "queue.called"
    QUEUE_LEFT = "queue.left"

    # Payments
    PAYMENT_INTENT_CREATED = "payment.intent_created"
    PAYMENT_SUCCEEDED = "payment.succeeded"
    PAYMENT_FAILED = "payment.failed"
    PAYMENT_REFUNDED = "payment.refunded"

    # Notifications
    NOTIFICATION_SENT = "notification.sent"
    NOTIFICATION_FAILED = "notification.failed"

    # Jobs
    SYSTEM_MAINTENANCE = "system.maintenance"


class SystemEvent(BaseModel):
    """One audited change. Frozen after construction.

    `medibook.security.audit` stores every instance in audit_log.
    """

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    event_type: EventType
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    # Job events carry no appointment
    appointment_id: uuid.UUID | None = None
    actor_id: str | None = None
    actor_role: str | None = None

    data: dict[str, Any] = Field(default_factory=dict)

    source_module: str | None = Field(default=None, description="Emitting module")

    model_config = {"frozen": True}
