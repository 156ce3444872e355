"""Domain error taxonomy.

Every failure a caller can act on is a `MediBookError` subclass carrying a
stable `code` and a `detail` dict (enough for a client to retry with a
different slot or action). `NotificationDeliveryFailed` is soft: it is raised
and caught inside the notification dispatcher and never reaches a caller.
"""

from __future__ import annotations

from typing import Any


class MediBookError(Exception):
    """Base class for all domain errors."""

    code = "internal_error"

    def __init__(self, message: str, **detail: Any) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "detail": self.detail}


class NotFound(MediBookError):
    code = "not_found"


class Forbidden(MediBookError):
    code = "forbidden"


class InvalidStateTransition(MediBookError):
    code = "invalid_state_transition"


class PolicyViolation(InvalidStateTransition):
    """A legal transition refused by a booking policy window."""

    code = "policy_violation"


class SlotConflict(MediBookError):
    code = "slot_conflict"


class ValidationError(MediBookError):
    code = "validation_error"


class PaymentNotEligible(MediBookError):
    code = "payment_not_eligible"


class NotificationDeliveryFailed(MediBookError):
    code = "notification_delivery_failed"
