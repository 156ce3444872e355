"""Bounded retry with exponential backoff for realtime pushes."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TypeVar

from medibook.config import settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryPolicy:
    """Run an async operation, retrying failures up to `retries` more times.

    Delays grow as base_delay * factor ** (n - 1) for the n-th retry:
    1s, 2s, 4s with the defaults.
    """

    retries: int = 3
    base_delay: float = 1.0
    factor: float = 2.0
    sleep: Callable[[float], Awaitable[None]] = field(default=asyncio.sleep, repr=False)

    @classmethod
    def from_settings(cls) -> RetryPolicy:
        return cls(
            retries=settings.notifications.push_retries,
            base_delay=settings.notifications.push_backoff_seconds,
        )

    def delay_for(self, retry: int) -> float:
        return self.base_delay * self.factor ** (retry - 1)

    async def run(self, operation: Callable[[], Awaitable[T]], label: str = "operation") -> T:
        """Await `operation()`; re-raise the last error once retries are exhausted."""
        retry = 0
        while True:
            try:
                return await operation()
            except Exception as exc:
                if retry >= self.retries:
                    logger.warning("%s failed after %d retries: %s", label, retry, exc)
                    raise
                retry += 1
                delay = self.delay_for(retry)
                logger.debug("%s failed (%s), retry %d/%d in %.1fs", label, exc, retry, self.retries, delay)
                await self.sleep(delay)
