"""Pydantic schemas for payment intents, provider events and refunds."""

from __future__ import annotations

import uuid
from typing import Any

from pydantic import BaseModel, Field

SUCCEEDED_EVENT = "payment_intent.succeeded"
FAILED_EVENT = "payment_intent.payment_failed"


class ProviderIntent(BaseModel):
    """What the provider hands back when an intent is created."""

    id: str
    client_secret: str


class PaymentIntentResult(BaseModel):
    provider: str  # "stripe" or "bypass"
    intent_id: str
    client_secret: str
    amount: int
    currency: str


class ProviderEvent(BaseModel):
    """A webhook delivery, reduced to what the coordinator needs."""

    type: str
    intent_id: str | None = None
    metadata: dict[str, str] = Field(default_factory=dict)

    @classmethod
    def from_payload(cls, event: dict[str, Any]) -> ProviderEvent:
        """Build from a Stripe-shaped event dict (``data.object`` is the intent)."""
        intent = (event.get("data") or {}).get("object") or {}
        metadata = intent.get("metadata") or {}
        return cls(
            type=str(event.get("type", "")),
            intent_id=intent.get("id"),
            metadata={str(k): str(v) for k, v in dict(metadata).items()},
        )

    @property
    def appointment_id(self) -> uuid.UUID | None:
        raw = self.metadata.get("appointmentId")
        if not raw:
            return None
        try:
            return uuid.UUID(raw)
        except ValueError:
            return None


class RefundResult(BaseModel):
    refunded: bool
    reason: str | None = None
    refund_id: str | None = None
