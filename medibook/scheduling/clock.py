"""Clinic-local time helpers.

Appointment dates and times are naive values in the clinic's timezone;
lifecycle timestamps are aware UTC. These helpers are the only place the
two meet, and the seam tests patch to freeze "now".
"""

from __future__ import annotations

from datetime import date, datetime, time

from medibook.config import settings


def clinic_now() -> datetime:
    """Aware 'now' in the clinic timezone."""
    return datetime.now(settings.tz)


def clinic_today() -> date:
    return clinic_now().date()


def slot_start(day: date, start: time) -> datetime:
    """Aware datetime for a clinic-local (date, time) pair."""
    return datetime.combine(day, start, tzinfo=settings.tz)


def hours_until(day: date, start: time, now: datetime | None = None) -> float:
    """Hours from `now` until the slot starts (negative once it has started)."""
    current = now or clinic_now()
    return (slot_start(day, start) - current).total_seconds() / 3600


def day_of_week(day: date) -> int:
    """0 = Sunday … 6 = Saturday, the convention availability rows are stored in."""
    return day.isoweekday() % 7
