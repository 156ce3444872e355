"""Stripe adapter.

The stripe SDK is blocking; every call runs in a worker thread. The API key
is passed per request so the SDK's module-global key is never touched.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

import stripe

from medibook.config import settings
from medibook.errors import ValidationError
from medibook.schemas.payments import ProviderEvent, ProviderIntent

logger = logging.getLogger(__name__)


class StripePaymentProvider:
    """Payment intents, refunds and webhook verification."""

    name = "stripe"

    def __init__(self, api_key: str | None = None, webhook_secret: str | None = None) -> None:
        self._api_key = settings.payments.stripe_secret_key if api_key is None else api_key
        self._webhook_secret = (
            settings.payments.stripe_webhook_secret if webhook_secret is None else webhook_secret
        )
        if not self._api_key:
            logger.warning("Stripe API key not configured, payments run in bypass mode")

    @property
    def is_live(self) -> bool:
        return bool(self._api_key)

    async def create_intent(self, amount: int, currency: str, metadata: dict[str, str]) -> ProviderIntent:
        intent = await asyncio.to_thread(
            stripe.PaymentIntent.create,
            amount=amount,
            currency=currency,
            metadata=metadata,
            automatic_payment_methods={"enabled": True},
            api_key=self._api_key,
        )
        logger.info("Stripe intent %s created for %s %d", intent.id, currency, amount)
        return ProviderIntent(id=intent.id, client_secret=intent.client_secret)

    async def refund(self, intent_id: str) -> str:
        """Refund the full captured amount. Returns the provider refund id."""
        refund = await asyncio.to_thread(
            stripe.Refund.create,
            payment_intent=intent_id,
            api_key=self._api_key,
        )
        logger.info("Stripe refund %s issued for intent %s", refund.id, intent_id)
        return refund.id

    def parse_webhook(self, payload: bytes | str, signature: str | None) -> ProviderEvent:
        """Verify (when a secret is configured) and reduce a webhook delivery.

        Raises:
            ValidationError: Bad signature or a body that is not an event.
        """
        if self._webhook_secret:
            try:
                stripe.Webhook.construct_event(payload, signature or "", self._webhook_secret)
            except stripe.SignatureVerificationError as exc:
                logger.error("Webhook signature verification failed: %s", exc)
                raise ValidationError("Invalid webhook signature") from exc

        try:
            body: Any = json.loads(payload)
        except ValueError as exc:
            raise ValidationError("Webhook body is not valid JSON") from exc
        if not isinstance(body, dict):
            raise ValidationError("Webhook body is not an event object")
        return ProviderEvent.from_payload(body)


# Module-level singleton
stripe_provider = StripePaymentProvider()
