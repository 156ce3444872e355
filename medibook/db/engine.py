"""Postgres (SQLAlchemy async over asyncpg) and Redis handles, plus the unit of work.

Side effects (notifications, refunds, events) never run inside the
transaction that changed state. Services register them with
``after_commit(db, callback)``; the callbacks run once the surrounding
``get_session()`` / ``transaction()`` commits, and are dropped on rollback.
"""

from __future__ import annotations

import contextlib
import logging
from collections.abc import AsyncGenerator, Awaitable, Callable

import redis.asyncio as aioredis
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from medibook.config import settings

logger = logging.getLogger(__name__)

PostCommitCallback = Callable[[], Awaitable[None]]

_POST_COMMIT_KEY = "medibook.post_commit"

# ── Async PostgreSQL engine ──────────────────────────────────────────

engine: AsyncEngine = create_async_engine(
    settings.db.database_url,
    echo=settings.log_level == "DEBUG",
    pool_size=10,
    max_overflow=20,
    pool_pre_ping=True,
    pool_recycle=3600,
)

# ── Session factory ──────────────────────────────────────────────────

async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


# ── Post-commit hooks ────────────────────────────────────────────────


def after_commit(db: AsyncSession, callback: PostCommitCallback) -> None:
    """Queue ``callback`` to run after ``db`` commits successfully."""
    db.info.setdefault(_POST_COMMIT_KEY, []).append(callback)


def discard_post_commit(db: AsyncSession) -> None:
    """Drop queued callbacks (the transaction rolled back)."""
    db.info.pop(_POST_COMMIT_KEY, None)


async def run_post_commit(db: AsyncSession) -> None:
    """Run and clear queued callbacks. Failures are logged, never raised."""
    callbacks: list[PostCommitCallback] = db.info.pop(_POST_COMMIT_KEY, [])
    for callback in callbacks:
        try:
            await callback()
        except Exception:
            logger.exception("Post-commit callback %r failed", callback)


@contextlib.asynccontextmanager
async def _unit_of_work() -> AsyncGenerator[AsyncSession, None]:
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            discard_post_commit(session)
            raise
        await run_post_commit(session)


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Request-scoped unit of work, for `Depends(get_session)` in the API layer."""
    async with _unit_of_work() as session:
        yield session


@contextlib.asynccontextmanager
async def transaction() -> AsyncGenerator[AsyncSession, None]:
    """Unit of work for jobs, webhooks and post-commit hooks.

    Usage:
        async with transaction() as db:
            await payment_coordinator.maybe_refund(db, appointment_id)
    """
    async with _unit_of_work() as session:
        yield session


# ── Redis client ─────────────────────────────────────────────────────

redis_client: aioredis.Redis = aioredis.from_url(
    settings.db.redis_url,
    decode_responses=True,
)


# ── Lifespan helpers ─────────────────────────────────────────────────


async def init_db() -> None:
    """Open the pool; outside production, create any missing tables.

    Production schemas come from `alembic upgrade head`.
    """
    from medibook.models import Base

    async with engine.begin() as conn:
        if not settings.is_production:
            await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    await engine.dispose()
    await redis_client.aclose()


@contextlib.asynccontextmanager
async def db_lifespan() -> AsyncGenerator[None, None]:
    """Postgres and Redis for the lifetime of the app."""
    await init_db()
    try:
        yield
    finally:
        await close_db()
