"""Appointment state machine.

Validates lifecycle events against TRANSITIONS and applies them to an
Appointment row. Only this module assigns `Appointment.status`.
"""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from medibook.errors import InvalidStateTransition
from medibook.events import emit_after_commit
from medibook.models.appointment import Appointment
from medibook.models.base import utcnow
from medibook.models.enums import AppointmentStatus
from medibook.scheduling.states import TERMINAL_STATES, TRANSITIONS
from medibook.schemas.appointments import Principal
from medibook.schemas.events import EventType, SystemEvent

logger = logging.getLogger(__name__)


class AppointmentStateMachine:
    """Stateless: every call works on the status stored on the row."""

    @staticmethod
    def can(status: AppointmentStatus | str, event: str) -> bool:
        """Check if `event` is legal from `status`."""
        return event in TRANSITIONS.get(AppointmentStatus(status), {})

    @staticmethod
    def valid_events(status: AppointmentStatus | str) -> list[str]:
        return list(TRANSITIONS.get(AppointmentStatus(status), {}).keys())

    @staticmethod
    def is_terminal(status: AppointmentStatus | str) -> bool:
        return AppointmentStatus(status) in TERMINAL_STATES

    def next_state(self, status: AppointmentStatus | str, event: str) -> AppointmentStatus:
        """Resolve the target state.

        Raises:
            InvalidStateTransition: If the event is not legal from `status`.
        """
        current = AppointmentStatus(status)
        targets = TRANSITIONS.get(current, {})
        if event not in targets:
            raise InvalidStateTransition(
                f"Cannot {event.replace('_', ' ')} an appointment that is {current.value}",
                status=current.value,
                event=event,
                allowed=list(targets.keys()),
            )
        return targets[event]

    def apply(
        self,
        db: AsyncSession,
        appointment: Appointment,
        event: str,
        principal: Principal | None = None,
        at: datetime | None = None,
    ) -> AppointmentStatus:
        """Move `appointment` along `event`, stamping `updated_at` and terminal times.

        The row is not flushed here; the caller's unit of work does that.
        A state-changed event is published once the transaction commits.
        """
        old_state = AppointmentStatus(appointment.status)
        new_state = self.next_state(old_state, event)

        stamp = appointment.touch(at or utcnow())
        appointment.status = new_state.value
        if new_state == AppointmentStatus.CANCELLED:
            appointment.cancelled_at = stamp
        elif new_state == AppointmentStatus.COMPLETED:
            appointment.completed_at = stamp

        logger.info(
            "Appointment transition: %s --%s--> %s (appointment=%s)",
            old_state.value,
            event,
            new_state.value,
            appointment.id,
        )

        emit_after_commit(db, SystemEvent(
            event_type=EventType.APPOINTMENT_STATE_CHANGED,
            appointment_id=appointment.id,
            actor_id=str(principal.id) if principal else "system",
            actor_role=principal.role.value if principal else "system",
            data={"from_state": old_state.value, "to_state": new_state.value, "event": event},
            source_module="scheduling.fsm",
        ))
        return new_state


# Module-level singleton
appointment_fsm = AppointmentStateMachine()
