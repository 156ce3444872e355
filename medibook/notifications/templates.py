"""Transactional email bodies.

Each builder returns (subject, plain_text, html). Plain text is what the
notifications table stores; html is what goes to the mail transport.
"""

from __future__ import annotations

from datetime import date, time
from html import escape

_BRAND = "MediBook"

_LAYOUT = """<html>
<body style="font-family: Arial, sans-serif; color: #333;">
  <div style="max-width: 600px; margin: 0 auto;">
    <div style="background-color: #4a90e2; color: white; padding: 16px; text-align: center;">
      <h1>{title}</h1>
    </div>
    <div style="padding: 20px;">
      <h2>Hello {name},</h2>
      {body}
    </div>
    <div style="font-size: 12px; color: #888; text-align: center; padding: 12px;">
      <p>{brand}. Please do not reply to this email.</p>
    </div>
  </div>
</body>
</html>"""

Rendered = tuple[str, str, str]


def _when(day: date, start: time) -> str:
    return f"{day.strftime('%A %d %B %Y')} at {start.strftime('%H:%M')}"


def _render(title: str, name: str, paragraphs: list[str]) -> str:
    body = "\n      ".join(f"<p>{escape(p)}</p>" for p in paragraphs)
    return _LAYOUT.format(title=escape(title), name=escape(name), body=body, brand=_BRAND)


def confirmation(patient_name: str, doctor_name: str, day: date, start: time) -> Rendered:
    text = f"Your appointment with Dr. {doctor_name} on {_when(day, start)} is confirmed."
    html = _render("Appointment Confirmed", patient_name, [
        text,
        "If you need to reschedule or cancel, please do so at least 24 hours in advance.",
    ])
    return "Your Appointment Confirmation", text, html


def reminder(patient_name: str, doctor_name: str, day: date, start: time, minutes: int) -> Rendered:
    text = f"Dear {patient_name}, your appointment with Dr. {doctor_name} is in {minutes} minutes."
    html = _render("Appointment Reminder", patient_name, [
        f"Your appointment with Dr. {doctor_name} starts {_when(day, start)}.",
        "Please be ready to join a few minutes early.",
    ])
    return "Appointment Reminder", text, html


def cancellation(patient_name: str, doctor_name: str, day: date, start: time, refunded: bool) -> Rendered:
    text = f"Your appointment with Dr. {doctor_name} on {_when(day, start)} has been cancelled."
    paragraphs = [text]
    if refunded:
        paragraphs.append("Your payment has been refunded to the original payment method.")
    return "Appointment Cancelled", text, _render("Appointment Cancelled", patient_name, paragraphs)


def rescheduled(
    patient_name: str,
    doctor_name: str,
    old_day: date,
    old_start: time,
    day: date,
    start: time,
) -> Rendered:
    text = (
        f"Your appointment with Dr. {doctor_name} has moved from {_when(old_day, old_start)} "
        f"to {_when(day, start)}."
    )
    return "Appointment Rescheduled", text, _render("Appointment Rescheduled", patient_name, [text])


def completion(patient_name: str, doctor_name: str) -> Rendered:
    text = f"Your consultation with Dr. {doctor_name} is complete. You can now leave feedback."
    html = _render("Consultation Completed", patient_name, [
        text,
        "Your diagnosis and prescription are available in your appointment history.",
    ])
    return "Consultation Completed", text, html
