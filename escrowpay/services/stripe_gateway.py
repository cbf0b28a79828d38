"""Thin wrapper around the Stripe SDK used by the card rail and refunds"""

import asyncio
import logging
from typing import Any, Callable

import stripe

from escrowpay.config import settings
from escrowpay.services.errors import ExternalProviderError, ValidationError

logger = logging.getLogger(__name__)

PROVIDER = "stripe"

# Network trouble, throttling and 5xx responses are worth retrying
TRANSIENT_ERRORS = (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError)


class StripeGateway:
    """Card processor calls with retry and backoff for transient failures"""

    def __init__(
        self,
        api_key: str | None = None,
        webhook_secret: str | None = None,
        max_retries: int | None = None,
        base_delay: float | None = None,
    ):
        # Configure Stripe
        stripe.api_key = api_key or settings.stripe_secret_key
        self.stripe_client = stripe
        self.webhook_secret = webhook_secret or settings.stripe_webhook_secret
        self.max_retries = settings.provider_max_retries if max_retries is None else max_retries
        self.base_delay = settings.provider_retry_base_delay if base_delay is None else base_delay

    async def create_payment_intent(
        self,
        amount: int,
        currency: str,
        metadata: dict[str, str],
        idempotency_key: str,
        receipt_email: str | None = None,
    ) -> dict[str, Any]:
        intent_data = {
            "amount": amount,
            "currency": currency.lower(),
            "metadata": metadata,
            "automatic_payment_methods": {"enabled": True},
        }
        if receipt_email:
            intent_data["receipt_email"] = receipt_email

        intent = await self._call(
            self.stripe_client.PaymentIntent.create,
            idempotency_key=idempotency_key,
            **intent_data,
        )
        return {"id": intent.id, "client_secret": intent.client_secret, "status": intent.status}

    async def retrieve_payment_intent(self, intent_id: str) -> dict[str, Any]:
        intent = await self._call(self.stripe_client.PaymentIntent.retrieve, intent_id)
        return {"id": intent.id, "client_secret": intent.client_secret, "status": intent.status}

    async def create_refund(
        self,
        payment_intent_id: str,
        amount: int,
        idempotency_key: str,
        metadata: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        refund = await self._call(
            self.stripe_client.Refund.create,
            payment_intent=payment_intent_id,
            amount=amount,
            metadata=metadata or {},
            idempotency_key=idempotency_key,
        )
        return {"id": refund.id, "status": refund.status}

    def construct_event(self, payload: bytes, sig_header: str | None) -> dict[str, Any]:
        """Verify a webhook signature and parse the event"""
        if not sig_header:
            raise ValidationError("Missing Stripe signature")
        try:
            event = self.stripe_client.Webhook.construct_event(
                payload, sig_header, self.webhook_secret
            )
        except ValueError as e:
            logger.error(f"Invalid Stripe webhook payload: {e}")
            raise ValidationError("Invalid payload")
        except stripe.SignatureVerificationError as e:
            logger.error(f"Invalid Stripe webhook signature: {e}")
            raise ValidationError("Invalid signature")
        return event.to_dict() if hasattr(event, "to_dict") else dict(event)

    async def _call(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Run a Stripe call, backing off exponentially on transient errors"""
        attempt = 0
        while True:
            try:
                return func(*args, **kwargs)
            except TRANSIENT_ERRORS as e:
                if attempt >= self.max_retries:
                    logger.error(f"Stripe call failed after {attempt + 1} attempts: {e}")
                    raise ExternalProviderError(str(e), transient=True)
                delay = self.base_delay * (2 ** attempt)
                logger.warning(
                    f"Transient Stripe error ({type(e).__name__}), retrying in {delay:.2f}s"
                )
                await asyncio.sleep(delay)
                attempt += 1
            except stripe.StripeError as e:
                logger.error(f"Stripe rejected the request: {e}")
                raise ExternalProviderError(str(e), transient=False)
