"""Appointment state definitions and transition map.

Services never assign `status` directly; every change goes through the
map below via AppointmentStateMachine.
"""

from __future__ import annotations

from medibook.models.enums import AppointmentStatus

# Transition map: {current_state: {event: next_state}}
TRANSITIONS: dict[AppointmentStatus, dict[str, AppointmentStatus]] = {
    AppointmentStatus.PENDING_PAYMENT: {
        "payment_succeeded": AppointmentStatus.SCHEDULED,
        "payment_failed": AppointmentStatus.CANCELLED,
        "cancel": AppointmentStatus.CANCELLED,
    },
    AppointmentStatus.SCHEDULED: {
        "reschedule": AppointmentStatus.SCHEDULED,
        "cancel": AppointmentStatus.CANCELLED,
        "check_in": AppointmentStatus.IN_PROGRESS,
        "start": AppointmentStatus.IN_PROGRESS,
        "complete": AppointmentStatus.COMPLETED,
    },
    AppointmentStatus.IN_PROGRESS: {
        "call_next": AppointmentStatus.IN_CONSULTATION,
        "leave_queue": AppointmentStatus.SCHEDULED,
        "complete": AppointmentStatus.COMPLETED,
    },
    AppointmentStatus.IN_CONSULTATION: {
        "complete": AppointmentStatus.COMPLETED,
    },
    # Terminal states
    AppointmentStatus.COMPLETED: {},
    AppointmentStatus.CANCELLED: {},
}

TERMINAL_STATES: frozenset[AppointmentStatus] = frozenset(
    state for state, events in TRANSITIONS.items() if not events
)
