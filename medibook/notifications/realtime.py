"""Room-addressed realtime push over Redis.

A socket bridge outside this package subscribes to
``{prefix}:room:{room}``, forwards each message to the sockets joined to that
room, keeps ``{prefix}:presence:{room}`` filled with live connection ids, and
pushes client acknowledgements onto ``{prefix}:ack:{ack_id}``.

Rooms are named ``{role}-{id}``, e.g. ``patient-42`` or ``doctor-7``.
"""

from __future__ import annotations

import json
import logging
import uuid
from typing import Any

import redis.asyncio as aioredis

from medibook.config import settings
from medibook.errors import NotificationDeliveryFailed

logger = logging.getLogger(__name__)


def room_for(role: str, user_id: uuid.UUID | str) -> str:
    return f"{role}-{user_id}"


class RedisRealtimeGateway:
    """Publishes events to rooms, optionally waiting for a client acknowledgement."""

    def __init__(self, redis: aioredis.Redis | None = None, prefix: str | None = None) -> None:
        self._redis = redis
        self._prefix = prefix or settings.notifications.channel_prefix

    @property
    def redis(self) -> aioredis.Redis:
        if self._redis is None:
            from medibook.db.engine import redis_client

            self._redis = redis_client
        return self._redis

    def channel(self, room: str) -> str:
        return f"{self._prefix}:room:{room}"

    def presence_key(self, room: str) -> str:
        return f"{self._prefix}:presence:{room}"

    def ack_key(self, ack_id: str) -> str:
        return f"{self._prefix}:ack:{ack_id}"

    async def emit(self, room: str, event: str, payload: dict[str, Any]) -> int:
        """Broadcast to every socket in `room`. Returns the bridge subscriber count."""
        message = json.dumps({"event": event, "payload": payload}, default=str)
        receivers = await self.redis.publish(self.channel(room), message)
        logger.debug("Published %s to %s (%d receivers)", event, room, receivers)
        return int(receivers)

    async def emit_with_ack(
        self,
        room: str,
        event: str,
        payload: dict[str, Any],
        timeout: float | None = None,
    ) -> dict[str, Any]:
        """Send to one live connection of `room` and wait for its acknowledgement.

        Raises:
            NotificationDeliveryFailed: No connection in the room, or no
                acknowledgement within `timeout` seconds.
        """
        wait = settings.notifications.ack_timeout_seconds if timeout is None else timeout

        connection_id = await self.redis.srandmember(self.presence_key(room))
        if not connection_id:
            raise NotificationDeliveryFailed("No active connection", room=room, reason="no_connection")

        ack_id = uuid.uuid4().hex
        message = json.dumps(
            {"event": event, "payload": payload, "connection_id": connection_id, "ack_id": ack_id},
            default=str,
        )
        await self.redis.publish(self.channel(room), message)

        reply = await self.redis.blpop([self.ack_key(ack_id)], timeout=wait)
        if reply is None:
            raise NotificationDeliveryFailed(
                "Acknowledgement timed out", room=room, reason="timeout", timeout=wait
            )

        _, raw = reply
        try:
            ack = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("Malformed acknowledgement for %s in %s: %r", event, room, raw)
            return {"success": False}
        return ack if isinstance(ack, dict) else {"success": bool(ack)}


# Module-level singleton
realtime_gateway = RedisRealtimeGateway()
