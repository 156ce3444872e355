"""Lifecycle emails and status pushes for an appointment.

Only called from post-commit hooks; the dispatcher never raises.
"""

from __future__ import annotations

from datetime import date, time

from medibook.models.appointment import Appointment
from medibook.models.enums import NotificationKind
from medibook.notifications import templates
from medibook.notifications.dispatcher import notification_dispatcher
from medibook.schemas.notifications import NotificationMessage


def _doctor_name(appointment: Appointment) -> str:
    return appointment.doctor.display_name if appointment.doctor is not None else "your doctor"


def _patient(appointment: Appointment) -> tuple[str | None, str]:
    patient = appointment.patient
    if patient is None:
        return None, "there"
    return patient.email, patient.name


async def _deliver(appointment: Appointment, kind: NotificationKind, rendered: templates.Rendered) -> bool:
    email, _ = _patient(appointment)
    subject, text, html = rendered
    return await notification_dispatcher.send(NotificationMessage(
        to=email,
        subject=subject,
        message=text,
        html=html,
        kind=kind,
        data={"status": appointment.status},
        appointment_id=appointment.id,
        user_id=appointment.patient_id,
    ))


async def _status(appointment: Appointment, message: str) -> None:
    await notification_dispatcher.send_status_update(
        appointment.patient_id, appointment.doctor_id, appointment.id, appointment.status, message
    )


async def appointment_confirmed(appointment: Appointment) -> None:
    _, name = _patient(appointment)
    rendered = templates.confirmation(
        name, _doctor_name(appointment), appointment.appointment_date, appointment.start_time
    )
    await _deliver(appointment, NotificationKind.CONFIRMATION, rendered)
    await _status(appointment, rendered[1])


async def appointment_rescheduled(appointment: Appointment, old_day: date, old_start: time) -> None:
    _, name = _patient(appointment)
    rendered = templates.rescheduled(
        name,
        _doctor_name(appointment),
        old_day,
        old_start,
        appointment.appointment_date,
        appointment.start_time,
    )
    await _deliver(appointment, NotificationKind.RESCHEDULED, rendered)
    await _status(appointment, rendered[1])


async def appointment_cancelled(appointment: Appointment, refunded: bool) -> None:
    _, name = _patient(appointment)
    rendered = templates.cancellation(
        name, _doctor_name(appointment), appointment.appointment_date, appointment.start_time, refunded
    )
    await _deliver(appointment, NotificationKind.CANCELLED, rendered)
    await _status(appointment, rendered[1])


async def appointment_completed(appointment: Appointment) -> None:
    _, name = _patient(appointment)
    rendered = templates.completion(name, _doctor_name(appointment))
    await _deliver(appointment, NotificationKind.COMPLETED, rendered)
    await _status(appointment, rendered[1])
