"""ORM base class plus the id/timestamp columns every MediBook table shares."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime

from sqlalchemy import DateTime, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    """Timezone-aware 'now' used for every event timestamp."""
    return datetime.now(UTC)


class Base(DeclarativeBase):
    """Registry root; alembic reads `Base.metadata`."""

    pass


class TimestampMixin:
    """UUID primary key with created/updated stamps.

    Server-side defaults cover inserts; state transitions call `touch()` so
    the new `updated_at` is visible before the row is flushed.
    """

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=func.gen_random_uuid(),
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    def touch(self, at: datetime | None = None) -> datetime:
        """Stamp `updated_at` and return the timestamp used."""
        stamp = at or utcnow()
        self.updated_at = stamp
        return stamp
