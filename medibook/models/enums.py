"""Domain enums used across SQLAlchemy models and Pydantic schemas.

All enums use str mixin for JSON serialization; columns store the `.value`.
"""

from __future__ import annotations

from enum import Enum


class UserRole(str, Enum):
    """Role carried by the authenticated principal."""

    PATIENT = "patient"
    DOCTOR = "doctor"
    ADMIN = "admin"


class AppointmentStatus(str, Enum):
    """Appointment lifecycle states."""

    PENDING_PAYMENT = "pending_payment"
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in-progress"  # checked in, waiting in the queue
    IN_CONSULTATION = "in-consultation"  # called by the doctor
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class ConsultationType(str, Enum):
    """How the consultation is held."""

    VIDEO = "video"
    VOICE = "voice"
    CHAT = "chat"


class PaymentStatus(str, Enum):
    """Payment record states. `created` is the only non-terminal one."""

    CREATED = "created"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REFUNDED = "refunded"


class NotificationKind(str, Enum):
    """Notification categories — also the `error_type` of notification_errors."""

    GENERAL = "general"
    CONFIRMATION = "appointment_confirmation"
    REMINDER = "appointment_reminder"
    RESCHEDULED = "appointment_rescheduled"
    CANCELLED = "appointment_cancelled"
    COMPLETED = "appointment_completed"
    EMAIL = "email"
    STATUS_UPDATE = "status_update"
    WAIT_TIME_UPDATE = "wait_time_update"
    QUEUE_UPDATE = "queue_update"
    DOCTOR_CALLING = "doctor_calling"
