"""In-process pub/sub for SystemEvents.

Publishers hand events to a background queue and return immediately; a
single worker task fans each event out to the matching handlers.

Usage:
    from medibook.events import emit_after_commit, subscribe

    emit_after_commit(db, SystemEvent(
        event_type=EventType.QUEUE_JOINED,
        appointment_id=appointment.id,
    ))

    subscribe(on_payment, [EventType.PAYMENT_SUCCEEDED])
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Coroutine
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from medibook.db.engine import after_commit
from medibook.schemas.events import EventType, SystemEvent

logger = logging.getLogger(__name__)

EventHandler = Callable[[SystemEvent], Coroutine[Any, Any, None]]


class EventBus:
    """Queue-backed dispatcher with global and per-type subscribers."""

    def __init__(self) -> None:
        self._subscribers: list[EventHandler] = []
        self._type_subscribers: dict[EventType, list[EventHandler]] = {}
        self._queue: asyncio.Queue[SystemEvent] | None = None
        self._worker_task: asyncio.Task[None] | None = None

    def subscribe(self, handler: EventHandler, event_types: list[EventType] | None = None) -> None:
        """Add `handler` for the listed types, or for every type when None."""
        if event_types is None:
            self._subscribers.append(handler)
            logger.info("subscriber %s added for all events", handler.__name__)
            return
        for et in event_types:
            self._type_subscribers.setdefault(et, []).append(handler)
        logger.info(
            "subscriber %s added for %s",
            handler.__name__,
            ", ".join(t.value for t in event_types),
        )

    def unsubscribe(self, handler: EventHandler) -> None:
        if handler in self._subscribers:
            self._subscribers.remove(handler)
        for handlers in self._type_subscribers.values():
            if handler in handlers:
                handlers.remove(handler)

    async def emit(self, event: SystemEvent) -> None:
        """Queue an event for dispatch."""
        if self._queue is None:
            self._queue = asyncio.Queue()
        self._ensure_worker()
        await self._queue.put(event)
        logger.debug("queued %s (appointment=%s)", event.event_type.value, event.appointment_id)

    async def dispatch(self, event: SystemEvent) -> None:
        """Deliver one event to every matching subscriber, isolating failures."""
        handlers = list(self._subscribers)
        handlers.extend(self._type_subscribers.get(event.event_type, []))
        if not handlers:
            return

        results = await asyncio.gather(
            *[self._safe_call(handler, event) for handler in handlers],
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, Exception):
                logger.error("%s: subscriber error %r", event.event_type.value, result)

    @staticmethod
    async def _safe_call(handler: EventHandler, event: SystemEvent) -> None:
        try:
            await handler(event)
        except Exception:
            logger.exception("%s raised on %s", handler.__name__, event.event_type.value)
            raise

    # ── Background worker ────────────────────────────────────────────

    def _ensure_worker(self) -> None:
        if self._worker_task is None or self._worker_task.done():
            self._worker_task = asyncio.create_task(self._worker())
            logger.info("event dispatcher task running")

    async def _worker(self) -> None:
        while True:
            queue = self._queue
            if queue is None:
                return
            try:
                event = await queue.get()
                await self.dispatch(event)
                queue.task_done()
            except asyncio.CancelledError:
                logger.info("event dispatcher task cancelled")
                break
            except Exception:
                logger.exception("event dispatcher loop error")

    # ── Lifecycle ────────────────────────────────────────────────────

    async def start(self) -> None:
        self._queue = asyncio.Queue()
        self._ensure_worker()
        logger.info(
            "event bus up (%d catch-all, %d typed handlers)",
            len(self._subscribers),
            sum(len(v) for v in self._type_subscribers.values()),
        )

    async def stop(self) -> None:
        """Drain pending events, then cancel the worker."""
        if self._queue is not None:
            await self._queue.join()

        if self._worker_task is not None and not self._worker_task.done():
            self._worker_task.cancel()
            try:
                await self._worker_task
            except asyncio.CancelledError:
                pass

        self._worker_task = None
        self._queue = None
        logger.info("event bus drained and stopped")


# Process-wide bus
event_bus = EventBus()
subscribe = event_bus.subscribe
unsubscribe = event_bus.unsubscribe
start_event_system = event_bus.start
stop_event_system = event_bus.stop


async def emit(event: SystemEvent) -> None:
    await event_bus.emit(event)


def emit_after_commit(db: AsyncSession, event: SystemEvent) -> None:
    """Publish `event` only once the current transaction has committed."""

    async def _publish() -> None:
        await emit(event)

    after_commit(db, _publish)
