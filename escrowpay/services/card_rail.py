"""Card rail: Stripe payment intents and webhook handling"""

import logging
import uuid
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from escrowpay.db.models import Payment, PaymentRail, PaymentStatus, WebhookEvent
from escrowpay.services.errors import ExternalProviderError, InvariantViolation
from escrowpay.services.payment_intake import IN_FLIGHT_STATUSES, PaymentIntakeService
from escrowpay.services.settlement import SettlementService
from escrowpay.services.stripe_gateway import PROVIDER, StripeGateway

logger = logging.getLogger(__name__)

HANDLED_EVENT_TYPES = {
    "payment_intent.succeeded",
    "payment_intent.payment_failed",
    "payment_intent.canceled",
    "charge.refunded",
}


class CardRailService:
    """Drives card payments from intent creation to webhook resolution"""

    def __init__(self, db: AsyncSession, gateway: StripeGateway | None = None):
        self.db = db
        self.gateway = gateway or StripeGateway()
        self.intake = PaymentIntakeService(db)

    async def create_intent(
        self,
        invoice_id: uuid.UUID,
        amount: int,
        currency: str,
        idempotency_key: str,
        customer_email: str | None = None,
    ) -> tuple[Payment, str | None]:
        """
        Open a card payment and obtain a client secret for checkout

        A retried call with the same idempotency key reuses both the payment
        and the processor intent.

        Returns:
            The payment and the client secret, None once the payment is resolved
        """
        payment = await self.intake.create_payment_attempt(
            invoice_id=invoice_id,
            amount=amount,
            currency=currency,
            method="card",
            rail=PaymentRail.CARD,
            provider=PROVIDER,
            idempotency_key=idempotency_key,
        )
        if payment.status not in IN_FLIGHT_STATUSES:
            return payment, None

        if payment.provider_ref:
            intent = await self.gateway.retrieve_payment_intent(payment.provider_ref)
            return payment, intent["client_secret"]

        try:
            intent = await self.gateway.create_payment_intent(
                amount=payment.amount,
                currency=payment.currency,
                metadata={
                    "payment_id": str(payment.id),
                    "invoice_id": str(payment.invoice_id),
                    "vendor_id": str(payment.vendor_id),
                },
                idempotency_key=f"intent-{payment.id}",
                receipt_email=customer_email,
            )
        except ExternalProviderError as e:
            if not e.transient:
                await self.intake.cancel_payment_attempt(payment.id, reason=str(e))
            raise

        payment = await self.intake.attach_provider_ref(payment.id, intent["id"])
        payment = await self.intake.advance_to_processing(payment.id)

        logger.info(f"Created payment intent {intent['id']} for payment {payment.id}")
        return payment, intent["client_secret"]

    async def handle_webhook(self, payload: bytes, sig_header: str | None) -> dict[str, Any]:
        """Verify and apply a raw Stripe webhook delivery"""
        event = self.gateway.construct_event(payload, sig_header)
        return await self.handle_event(event)

    async def handle_event(self, event: dict[str, Any]) -> dict[str, Any]:
        """
        Apply a verified Stripe event exactly once

        Deliveries are deduplicated by event id and correlated to a payment
        strictly by its intent id.
        """
        event_id = event["id"]
        event_type = event["type"]

        seen = await self.db.execute(
            select(WebhookEvent.id).where(
                WebhookEvent.provider == PROVIDER,
                WebhookEvent.event_id == event_id,
            )
        )
        if seen.scalar_one_or_none() is not None:
            logger.info(f"Duplicate Stripe event {event_id} ({event_type}) acknowledged")
            return {"status": "duplicate", "event_type": event_type, "payment_id": None}

        payment_id = None
        if event_type not in HANDLED_EVENT_TYPES:
            logger.info(f"Unhandled Stripe webhook event type: {event_type}")
            status = "ignored"
        else:
            obj = event["data"]["object"]
            if event_type == "charge.refunded":
                payment_id = await self._handle_charge_refunded(obj)
            else:
                payment_id = await self._handle_payment_intent(event_type, obj, event_id)
            status = "processed" if payment_id else "ignored"

        await self._record_event(event_id, event_type, event)
        return {"status": status, "event_type": event_type, "payment_id": payment_id}

    async def _handle_payment_intent(
        self, event_type: str, intent: dict[str, Any], event_id: str
    ) -> uuid.UUID | None:
        payment = await self._find_payment_for_intent(intent)
        if payment is None:
            logger.warning(f"No payment found for intent {intent['id']} ({event_type})")
            return None

        if event_type == "payment_intent.succeeded":
            received = intent.get("amount_received", intent.get("amount"))
            if received is not None and received != payment.amount:
                logger.critical(
                    f"Intent {intent['id']} captured {received} but payment {payment.id} "
                    f"is for {payment.amount}"
                )
                raise InvariantViolation("Captured amount does not match payment amount")
            payment = await self.intake.resolve_outcome(
                payment.id,
                PaymentStatus.SUCCEEDED,
                provider_ref=intent["id"],
                provider_metadata={
                    "latest_charge": intent.get("latest_charge"),
                    "event_id": event_id,
                },
            )
        elif event_type == "payment_intent.payment_failed":
            error = intent.get("last_payment_error") or {}
            payment = await self.intake.resolve_outcome(
                payment.id,
                PaymentStatus.FAILED,
                provider_ref=intent["id"],
                failure_reason=error.get("message", "Card payment failed"),
                provider_metadata={"decline_code": error.get("decline_code"), "event_id": event_id},
            )
        elif event_type == "payment_intent.canceled":
            if payment.status in IN_FLIGHT_STATUSES:
                payment = await self.intake.cancel_payment_attempt(
                    payment.id, reason=intent.get("cancellation_reason") or "Intent canceled"
                )
            else:
                logger.info(f"Ignoring cancel for payment {payment.id} in {payment.status.value}")

        return payment.id

    async def _handle_charge_refunded(self, charge: dict[str, Any]) -> uuid.UUID | None:
        intent_id = charge.get("payment_intent")
        payment = await self.intake.find_by_provider_ref(PROVIDER, intent_id) if intent_id else None
        if payment is None:
            logger.warning(f"No payment found for refunded charge {charge.get('id')}")
            return None

        refunds = (charge.get("refunds") or {}).get("data") or []
        refund_ref = refunds[0]["id"] if refunds else charge.get("id")
        await SettlementService(self.db).confirm_processor_refund(
            payment.id, refund_ref, charge.get("amount_refunded", 0)
        )
        return payment.id

    async def _find_payment_for_intent(self, intent: dict[str, Any]) -> Payment | None:
        payment = await self.intake.find_by_provider_ref(PROVIDER, intent["id"])
        if payment is not None:
            return payment

        # The webhook can beat attach_provider_ref; accept the intent's own
        # payment only while it is still unbound
        metadata = intent.get("metadata") or {}
        raw_id = metadata.get("payment_id")
        if not raw_id:
            return None
        try:
            payment_id = uuid.UUID(raw_id)
        except ValueError:
            return None
        payment = await self.db.get(Payment, payment_id)
        if payment is None or payment.provider != PROVIDER or payment.provider_ref is not None:
            return None
        return payment

    async def _record_event(self, event_id: str, event_type: str, event: dict[str, Any]) -> None:
        self.db.add(
            WebhookEvent(
                provider=PROVIDER,
                event_id=event_id,
                event_type=event_type,
                payload={"id": event_id, "type": event_type, "created": event.get("created")},
            )
        )
        try:
            await self.db.commit()
        except IntegrityError:
            # A concurrent delivery of the same event got there first
            await self.db.rollback()
            logger.info(f"Stripe event {event_id} recorded concurrently")
