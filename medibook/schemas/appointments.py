"""Pydantic commands and views for the appointment, queue and payment core.

One explicit request shape per operation: a slot is always a
``{date, start, end}`` triple.
"""

from __future__ import annotations

import datetime as dt
import uuid
from typing import Any, TypeVar

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic import ValidationError as PydanticValidationError

from medibook.errors import ValidationError
from medibook.models.enums import ConsultationType, UserRole

_Request = TypeVar("_Request", bound=BaseModel)


def parse_request(model: type[_Request], payload: dict[str, Any]) -> _Request:
    """Validate a raw payload, turning pydantic failures into the domain ValidationError."""
    try:
        return model.model_validate(payload)
    except PydanticValidationError as exc:
        raise ValidationError(
            f"Invalid {model.__name__}",
            errors=exc.errors(include_url=False, include_context=False),
        ) from exc


class Principal(BaseModel):
    """Authenticated caller, as supplied by the identity provider."""

    id: uuid.UUID
    role: UserRole

    model_config = ConfigDict(frozen=True)

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN


class SlotRequest(BaseModel):
    """A (date, start, end) triple. End must be after start."""

    date: dt.date
    start: dt.time
    end: dt.time

    @model_validator(mode="after")
    def check_range(self) -> SlotRequest:
        if self.end <= self.start:
            msg = "end must be after start"
            raise ValueError(msg)
        return self


class BookAppointmentRequest(SlotRequest):
    doctor_id: uuid.UUID
    consultation_type: ConsultationType = ConsultationType.VIDEO
    notes: str | None = Field(default=None, max_length=2000)


class RescheduleRequest(SlotRequest):
    pass


class CompleteAppointmentRequest(BaseModel):
    diagnosis: str | None = None
    prescription: str | None = None
    doctor_notes: str | None = None


class QueueTicket(BaseModel):
    """Result of joining the queue."""

    appointment_id: uuid.UUID
    queue_position: int
    estimated_wait: int  # minutes


class QueueEntry(BaseModel):
    """Read view over an in-progress appointment."""

    appointment_id: uuid.UUID
    patient_id: uuid.UUID
    doctor_id: uuid.UUID
    queue_position: int
    estimated_wait: int
    check_in_time: dt.datetime | None = None
    called_time: dt.datetime | None = None

    model_config = ConfigDict(from_attributes=True)

    @classmethod
    def from_appointment(cls, appointment: Any) -> QueueEntry:
        return cls(
            appointment_id=appointment.id,
            patient_id=appointment.patient_id,
            doctor_id=appointment.doctor_id,
            queue_position=appointment.queue_position or 0,
            estimated_wait=appointment.estimated_wait_time or 0,
            check_in_time=appointment.check_in_time,
            called_time=appointment.called_time,
        )


class AppointmentPage(BaseModel):
    items: list[Any]
    page: int
    limit: int
    total: int

    @property
    def pages(self) -> int:
        return -(-self.total // self.limit) if self.limit else 0
