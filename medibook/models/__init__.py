"""SQLAlchemy ORM models for MediBook.

Import all models here so Alembic and Base.metadata.create_all() discover them.
"""

from __future__ import annotations

from medibook.models.appointment import Appointment
from medibook.models.audit import AuditLog
from medibook.models.base import Base
from medibook.models.doctor import Doctor, DoctorAvailability
from medibook.models.enums import (
    AppointmentStatus,
    ConsultationType,
    NotificationKind,
    PaymentStatus,
    UserRole,
)
from medibook.models.feedback import Feedback
from medibook.models.notification import Notification, NotificationError
from medibook.models.payment import PaymentRecord
from medibook.models.user import User

__all__ = [
    # Base
    "Base",
    # Models
    "User",
    "Doctor",
    "DoctorAvailability",
    "Appointment",
    "PaymentRecord",
    "Notification",
    "NotificationError",
    "Feedback",
    "AuditLog",
    # Enums
    "UserRole",
    "AppointmentStatus",
    "ConsultationType",
    "PaymentStatus",
    "NotificationKind",
]
