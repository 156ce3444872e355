"""Audit trail: every SystemEvent on the bus becomes an audit_log row.

Subscribed for all event types at startup. A failed insert is logged and
dropped so the bus keeps delivering.
"""

from __future__ import annotations

import logging

from medibook.db.engine import async_session_factory
from medibook.models.audit import AuditLog
from medibook.schemas.events import SystemEvent

logger = logging.getLogger(__name__)


async def audit_on_event(event: SystemEvent) -> None:
    """Insert one audit_log row in its own session."""
    try:
        async with async_session_factory() as db:
            db.add(AuditLog(
                event_type=event.event_type.value,
                appointment_id=event.appointment_id,
                actor_id=event.actor_id,
                actor_role=event.actor_role,
                data={**event.data, "source": event.source_module} if event.source_module else event.data,
            ))
            await db.commit()
    except Exception:
        logger.exception(
            "audit write failed for %s (appointment=%s)",
            event.event_type.value,
            event.appointment_id,
        )
