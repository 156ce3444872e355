"""Video consultation rooms.

One meeting per appointment, held in the TTL store. Tokens are opaque
random strings; the video provider's own signing lives outside this package.
"""

from __future__ import annotations

import logging
import secrets
import uuid
from datetime import datetime, timedelta

from pydantic import BaseModel

from medibook.config import settings
from medibook.models.base import utcnow
from medibook.storage.kv import KeyValueStore, build_kv_store

logger = logging.getLogger(__name__)


class Meeting(BaseModel):
    appointment_id: uuid.UUID
    room_id: str
    patient_token: str
    doctor_token: str
    expires_at: datetime


class MeetingService:
    """Create, look up and tear down the room for an appointment."""

    def __init__(self, store: KeyValueStore | None = None, ttl_seconds: int | None = None) -> None:
        self._store = store if store is not None else build_kv_store()
        self._ttl = ttl_seconds or settings.video.meeting_ttl_seconds

    @staticmethod
    def _key(appointment_id: uuid.UUID) -> str:
        return f"meeting:{appointment_id}"

    async def create_meeting(
        self,
        appointment_id: uuid.UUID,
        patient_id: uuid.UUID,
        doctor_id: uuid.UUID,
    ) -> Meeting:
        """Return the live meeting for the appointment, creating one if needed."""
        existing = await self.get_meeting(appointment_id)
        if existing is not None:
            return existing

        meeting = Meeting(
            appointment_id=appointment_id,
            room_id=f"consult-{appointment_id.hex[:12]}-{secrets.token_hex(4)}",
            patient_token=f"{patient_id.hex[:8]}.{secrets.token_urlsafe(24)}",
            doctor_token=f"{doctor_id.hex[:8]}.{secrets.token_urlsafe(24)}",
            expires_at=utcnow() + timedelta(seconds=self._ttl),
        )
        await self._store.set(self._key(appointment_id), meeting.model_dump(mode="json"), self._ttl)
        logger.info("Meeting %s created for appointment %s", meeting.room_id, appointment_id)
        return meeting

    async def get_meeting(self, appointment_id: uuid.UUID) -> Meeting | None:
        raw = await self._store.get(self._key(appointment_id))
        if raw is None:
            return None
        meeting = Meeting.model_validate(raw)
        if meeting.expires_at <= utcnow():
            await self._store.delete(self._key(appointment_id))
            return None
        return meeting

    async def invalidate_meeting(self, appointment_id: uuid.UUID) -> None:
        await self._store.delete(self._key(appointment_id))
        logger.debug("Meeting for appointment %s invalidated", appointment_id)


# Module-level singleton
meeting_service = MeetingService()
