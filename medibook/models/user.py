"""User model — patients, doctors and admins as issued by the identity provider.

Read-only from this core's perspective: signup, OTP and credentials live
elsewhere. We only need a name and an email address to notify people.
"""

from __future__ import annotations

from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column

from medibook.models.base import Base, TimestampMixin
from medibook.models.enums import UserRole


class User(TimestampMixin, Base):
    """A person who can authenticate against MediBook."""

    __tablename__ = "users"

    name: Mapped[str] = mapped_column(String(100), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    phone: Mapped[str | None] = mapped_column(String(20))
    role: Mapped[str] = mapped_column(String(20), default=UserRole.PATIENT.value, nullable=False)

    def __repr__(self) -> str:
        return f"<User id={self.id} role={self.role}>"
