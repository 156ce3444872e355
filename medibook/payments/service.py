"""Payment coordinator — intents, provider callbacks and refunds.

Payment state lives apart from appointment state. Every provider callback
re-reads both rows under lock and decides from what is stored, so replayed
or out-of-order webhooks converge on the same result.
"""

from __future__ import annotations

import logging
import uuid
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from medibook.config import settings
from medibook.db.engine import after_commit, transaction
from medibook.errors import Forbidden, NotFound, PaymentNotEligible, ValidationError
from medibook.events import emit_after_commit
from medibook.models.appointment import Appointment
from medibook.models.base import utcnow
from medibook.models.enums import AppointmentStatus, PaymentStatus
from medibook.models.payment import PaymentRecord
from medibook.payments.provider import StripePaymentProvider, stripe_provider
from medibook.scheduling import notify
from medibook.scheduling.fsm import appointment_fsm
from medibook.schemas.events import EventType, SystemEvent
from medibook.schemas.payments import (
    FAILED_EVENT,
    SUCCEEDED_EVENT,
    PaymentIntentResult,
    ProviderEvent,
    ProviderIntent,
    RefundResult,
)

logger = logging.getLogger(__name__)

BYPASS_PREFIX = "bypass_"


def to_minor_units(amount: Decimal | float | str) -> int:
    """Major currency units to integer minor units, rounding half up."""
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class PaymentCoordinator:
    """Drives the payment side of the appointment lifecycle."""

    def __init__(self, provider: StripePaymentProvider | None = None) -> None:
        self._provider = provider or stripe_provider

    async def _lock_appointment(self, db: AsyncSession, appointment_id: uuid.UUID) -> Appointment | None:
        result = await db.execute(
            select(Appointment)
            .where(Appointment.id == appointment_id)
            .with_for_update(of=Appointment)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _payment_record(self, db: AsyncSession, appointment_id: uuid.UUID) -> PaymentRecord | None:
        result = await db.execute(
            select(PaymentRecord)
            .where(PaymentRecord.appointment_id == appointment_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    # ── Intents ──────────────────────────────────────────────────────

    async def create_intent(
        self,
        db: AsyncSession,
        appointment_id: uuid.UUID,
        requester_id: uuid.UUID,
    ) -> PaymentIntentResult:
        """Open a provider intent for a pending_payment appointment.

        Raises:
            NotFound: Unknown appointment.
            Forbidden: Requester is not the appointment's patient.
            PaymentNotEligible: Not pending_payment, or a live record exists.
            ValidationError: Amount below the provider's minimum charge.
        """
        appointment = await self._lock_appointment(db, appointment_id)
        if appointment is None:
            raise NotFound("Appointment not found", appointment_id=str(appointment_id))
        if appointment.patient_id != requester_id:
            raise Forbidden("Only the patient can pay for this appointment")
        if appointment.status != AppointmentStatus.PENDING_PAYMENT.value:
            raise PaymentNotEligible(
                "Appointment is not awaiting payment",
                appointment_id=str(appointment_id),
                status=appointment.status,
            )

        record = await self._payment_record(db, appointment_id)
        if record is not None and record.is_live:
            raise PaymentNotEligible(
                "A payment already exists for this appointment",
                appointment_id=str(appointment_id),
                payment_status=record.status,
            )

        amount = to_minor_units(appointment.doctor.consultation_fee)
        minimum = settings.payments.min_charge_minor_units
        if amount < minimum:
            raise ValidationError("Amount below minimum charge", amount=amount, minimum=minimum)
        currency = settings.payments.stripe_currency

        if self._provider.is_live:
            try:
                intent = await self._provider.create_intent(
                    amount,
                    currency,
                    {"appointmentId": str(appointment.id), "patientId": str(appointment.patient_id)},
                )
            except Exception as exc:
                logger.error("Intent creation failed for appointment %s: %s", appointment_id, exc)
                raise PaymentNotEligible(
                    "Payment provider rejected the intent", appointment_id=str(appointment_id)
                ) from exc
            provider = self._provider.name
            status = PaymentStatus.CREATED
        else:
            token = uuid.uuid4().hex
            intent = ProviderIntent(id=f"{BYPASS_PREFIX}{token}", client_secret=f"{BYPASS_PREFIX}secret_{token}")
            provider = "bypass"
            status = PaymentStatus.SUCCEEDED

        if record is None:
            record = PaymentRecord(appointment_id=appointment.id)
            db.add(record)
        record.provider_intent_id = intent.id
        record.amount = amount
        record.currency = currency
        record.status = status.value
        record.refund_id = None
        record.failed_at = None
        record.touch()

        emit_after_commit(db, SystemEvent(
            event_type=EventType.PAYMENT_INTENT_CREATED,
            appointment_id=appointment.id,
            actor_id=str(requester_id),
            actor_role="patient",
            data={"provider": provider, "intent_id": intent.id, "amount": amount, "currency": currency},
            source_module="payments.service",
        ))

        if status == PaymentStatus.SUCCEEDED:
            # No provider configured: confirm on the spot
            record.succeeded_at = utcnow()
            self._confirm(db, appointment)

        await db.flush()
        logger.info("Payment intent %s (%s) for appointment %s", intent.id, provider, appointment_id)

        return PaymentIntentResult(
            provider=provider,
            intent_id=intent.id,
            client_secret=intent.client_secret,
            amount=amount,
            currency=currency,
        )

    def _confirm(self, db: AsyncSession, appointment: Appointment) -> None:
        appointment_fsm.apply(db, appointment, "payment_succeeded")
        emit_after_commit(db, SystemEvent(
            event_type=EventType.PAYMENT_SUCCEEDED,
            appointment_id=appointment.id,
            source_module="payments.service",
        ))

        async def _notify() -> None:
            await notify.appointment_confirmed(appointment)

        after_commit(db, _notify)

    # ── Provider callbacks ───────────────────────────────────────────

    async def handle_provider_event(self, db: AsyncSession, event: ProviderEvent) -> bool:
        """Apply a webhook. Returns True when stored state changed.

        Safe to call any number of times with the same event.
        """
        if event.type not in (SUCCEEDED_EVENT, FAILED_EVENT):
            logger.debug("Ignoring provider event %s", event.type)
            return False

        appointment_id = event.appointment_id
        if appointment_id is None:
            logger.warning("Provider event %s without appointmentId metadata (intent=%s)", event.type, event.intent_id)
            return False

        appointment = await self._lock_appointment(db, appointment_id)
        if appointment is None:
            logger.warning("Provider event %s for unknown appointment %s", event.type, appointment_id)
            return False

        record = await self._payment_record(db, appointment_id)
        if record is None:
            logger.warning("Provider event %s for appointment %s with no payment record", event.type, appointment_id)
            return False

        if event.type == SUCCEEDED_EVENT:
            return self._on_succeeded(db, appointment, record)
        return self._on_failed(db, appointment, record)

    def _on_succeeded(self, db: AsyncSession, appointment: Appointment, record: PaymentRecord) -> bool:
        changed = False
        if record.status in (PaymentStatus.CREATED.value, PaymentStatus.FAILED.value):
            record.status = PaymentStatus.SUCCEEDED.value
            record.succeeded_at = utcnow()
            record.touch()
            changed = True

        status = AppointmentStatus(appointment.status)
        if status == AppointmentStatus.PENDING_PAYMENT:
            self._confirm(db, appointment)
            changed = True
        elif status == AppointmentStatus.CANCELLED and record.status == PaymentStatus.SUCCEEDED.value:
            # Money arrived after the slot was released
            appointment_id = appointment.id

            async def _refund_late_payment() -> None:
                async with transaction() as session:
                    await self.maybe_refund(session, appointment_id)

            after_commit(db, _refund_late_payment)
            logger.warning("Late payment for cancelled appointment %s, refund queued", appointment.id)

        if changed:
            logger.info("Payment succeeded for appointment %s", appointment.id)
        return changed

    def _on_failed(self, db: AsyncSession, appointment: Appointment, record: PaymentRecord) -> bool:
        if record.status != PaymentStatus.CREATED.value:
            # failed already, or a success we must never downgrade
            logger.debug("Ignoring failure for appointment %s, payment is %s", appointment.id, record.status)
            return False

        record.status = PaymentStatus.FAILED.value
        record.failed_at = utcnow()
        record.touch()

        if appointment.status == AppointmentStatus.PENDING_PAYMENT.value:
            appointment_fsm.apply(db, appointment, "payment_failed")
            appointment.cancellation_reason = "payment_failed"

            async def _notify() -> None:
                await notify.appointment_cancelled(appointment, refunded=False)

            after_commit(db, _notify)

        emit_after_commit(db, SystemEvent(
            event_type=EventType.PAYMENT_FAILED,
            appointment_id=appointment.id,
            source_module="payments.service",
        ))
        logger.info("Payment failed for appointment %s", appointment.id)
        return True

    async def process_webhook(self, payload: bytes | str, signature: str | None) -> bool:
        """Verify, parse and apply a raw webhook delivery in its own transaction."""
        event = self._provider.parse_webhook(payload, signature)
        async with transaction() as db:
            return await self.handle_provider_event(db, event)

    # ── Refunds ──────────────────────────────────────────────────────

    async def maybe_refund(self, db: AsyncSession, appointment_id: uuid.UUID) -> RefundResult:
        """Refund a succeeded payment. Never raises for ineligible or failed refunds."""
        record = await self._payment_record(db, appointment_id)
        if record is None:
            return RefundResult(refunded=False, reason="no_payment")
        if record.status != PaymentStatus.SUCCEEDED.value:
            return RefundResult(refunded=False, reason="not_eligible")

        intent_id = record.provider_intent_id or ""
        if intent_id.startswith(BYPASS_PREFIX) or not self._provider.is_live:
            refund_id = None
            reason = "no_provider"
        else:
            try:
                refund_id = await self._provider.refund(intent_id)
            except Exception as exc:
                logger.warning("Refund failed for appointment %s: %s", appointment_id, exc)
                return RefundResult(refunded=False, reason="provider_error")
            reason = None

        record.status = PaymentStatus.REFUNDED.value
        record.refund_id = refund_id
        record.refunded_at = utcnow()
        record.touch()
        await db.flush()

        emit_after_commit(db, SystemEvent(
            event_type=EventType.PAYMENT_REFUNDED,
            appointment_id=appointment_id,
            data={"refund_id": refund_id, "amount": record.amount},
            source_module="payments.service",
        ))
        logger.info("Payment refunded for appointment %s (refund=%s)", appointment_id, refund_id)
        return RefundResult(refunded=True, reason=reason, refund_id=refund_id)

    # ── Reads ────────────────────────────────────────────────────────

    async def get_status(self, db: AsyncSession, appointment_id: uuid.UUID) -> PaymentRecord:
        result = await db.execute(select(PaymentRecord).where(PaymentRecord.appointment_id == appointment_id))
        record = result.scalar_one_or_none()
        if record is None:
            raise NotFound("No payment for this appointment", appointment_id=str(appointment_id))
        return record


# Module-level singleton
payment_coordinator = PaymentCoordinator()
