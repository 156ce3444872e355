"""MediBook core service process.

Usage:
    python -m medibook.main

Hosts the health probe and the notification jobs. Appointment, queue and
payment operations are called in-process by the product's API layer.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
import uvicorn
from fastapi import FastAPI

from medibook.config import settings
from medibook.db.engine import db_lifespan
from medibook.events import start_event_system, stop_event_system, subscribe, unsubscribe
from medibook.notifications.jobs import create_scheduler
from medibook.security.audit import audit_on_event

# ── Logging ──────────────────────────────────────────────────────────

logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    stream=sys.stdout,
)
_renderer = structlog.processors.JSONRenderer() if settings.is_production else structlog.dev.ConsoleRenderer()
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _renderer,
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Bring up storage, events, audit and jobs; tear down in reverse."""
    logger.info("MediBook core starting (env=%s, tz=%s)", settings.environment, settings.clinic_timezone)

    async with db_lifespan():
        await start_event_system()
        subscribe(audit_on_event)

        scheduler = create_scheduler()
        scheduler.start()
        app.state.scheduler = scheduler
        logger.info("Storage, event bus, audit subscriber and scheduler ready")

        try:
            yield
        finally:
            scheduler.shutdown(wait=False)
            app.state.scheduler = None
            await stop_event_system()
            unsubscribe(audit_on_event)
            logger.info("Scheduler and event bus stopped")

    logger.info("MediBook core stopped")


app = FastAPI(
    title="MediBook Core",
    description="Appointment lifecycle, waiting-room queue, payments and notifications",
    version="0.1.0",
    lifespan=lifespan,
)


@app.get("/health")
async def health_check() -> dict[str, str]:
    scheduler = getattr(app.state, "scheduler", None)
    return {
        "status": "ok",
        "environment": settings.environment,
        "scheduler": "running" if scheduler is not None and scheduler.running else "stopped",
    }


if __name__ == "__main__":
    uvicorn.run(
        "medibook.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.environment == "development",
        log_level=settings.log_level.lower(),
    )
