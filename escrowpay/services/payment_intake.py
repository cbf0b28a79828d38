"""Payment intake: payment attempts, their status machine and idempotency"""

import logging
import uuid
from typing import Any, Awaitable, Callable, TypeVar

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from escrowpay.config import settings
from escrowpay.db.models import (
    Invoice,
    InvoiceStatus,
    Payment,
    PaymentRail,
    PaymentStatus,
    Receipt,
    utcnow,
)
from escrowpay.services.errors import (
    ConflictError,
    EscrowError,
    InvalidAmount,
    InvalidTransition,
    InvariantViolation,
    InvoiceNotPayable,
    NotFoundError,
    ReceiptRequired,
    ValidationError,
)
from escrowpay.services.invoices import load_invoice_for_update
from escrowpay.services.policy import load_policy

logger = logging.getLogger(__name__)

T = TypeVar("T")

PAYABLE_INVOICE_STATUSES = {
    InvoiceStatus.PENDING,
    InvoiceStatus.PARTIALLY_PAID,
    InvoiceStatus.OVERDUE,
}
IN_FLIGHT_STATUSES = (PaymentStatus.PENDING, PaymentStatus.PROCESSING)
RESOLVED_STATUSES = {
    PaymentStatus.SUCCEEDED,
    PaymentStatus.FAILED,
    PaymentStatus.CANCELLED,
    PaymentStatus.REFUNDED,
    PaymentStatus.PARTIALLY_REFUNDED,
}


def recompute_invoice_status(invoice: Invoice) -> None:
    """Derive PAID / PARTIALLY_PAID from the paid amount"""
    if invoice.paid_amount == invoice.total_amount:
        invoice.status = InvoiceStatus.PAID
        invoice.paid_at = invoice.paid_at or utcnow()
    elif invoice.paid_amount > 0:
        invoice.status = InvoiceStatus.PARTIALLY_PAID


async def run_with_lock_retries(db: AsyncSession, operation: Callable[[], Awaitable[T]]) -> T:
    """Re-run a unit of work when another writer bumped the invoice version"""
    for attempt in range(1, settings.optimistic_lock_retries + 1):
        try:
            return await operation()
        except StaleDataError:
            await db.rollback()
            logger.warning(f"Invoice changed concurrently, retrying (attempt {attempt})")
        except EscrowError:
            await db.rollback()
            raise
    raise ConflictError("Invoice is busy, please retry")


class PaymentIntakeService:
    """The only writer of Payment status"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create_payment_attempt(
        self,
        invoice_id: uuid.UUID,
        amount: int,
        currency: str,
        method: str,
        rail: PaymentRail,
        provider: str,
        idempotency_key: str | None = None,
        user_id: uuid.UUID | None = None,
    ) -> Payment:
        """
        Open a PENDING payment against an invoice

        Repeating the call with the same idempotency key returns the payment
        created by the first call.

        Args:
            invoice_id: Invoice being paid
            amount: Amount in minor units
            currency: Must match the invoice currency
            method: Rail-specific method, e.g. card or mpesa
            rail: Card or mobile money
            provider: Processor name used for provider_ref correlation
            idempotency_key: Client-supplied retry token

        Returns:
            The new or previously created payment
        """
        if idempotency_key:
            existing = await self._get_by_idempotency_key(invoice_id, idempotency_key)
            if existing is not None:
                logger.info(f"Idempotent replay of payment attempt {existing.id}")
                return existing

        return await run_with_lock_retries(
            self.db,
            lambda: self._create_payment_attempt(
                invoice_id, amount, currency, method, rail, provider, idempotency_key, user_id
            )
        )

    async def _create_payment_attempt(
        self,
        invoice_id: uuid.UUID,
        amount: int,
        currency: str,
        method: str,
        rail: PaymentRail,
        provider: str,
        idempotency_key: str | None,
        user_id: uuid.UUID | None,
    ) -> Payment:
        if amount <= 0:
            raise InvalidAmount("Payment amount must be greater than zero")

        invoice = await load_invoice_for_update(self.db, invoice_id)
        if invoice.status not in PAYABLE_INVOICE_STATUSES:
            raise InvoiceNotPayable(f"Invoice is not payable in status {invoice.status.value}")
        if currency.upper() != invoice.currency:
            raise ValidationError(
                f"Payment currency {currency.upper()} does not match invoice currency {invoice.currency}"
            )

        reserved = await self._in_flight_total(invoice.id)
        available = invoice.remaining_amount - reserved
        if amount > available:
            raise InvoiceNotPayable(
                f"Payment amount ({amount}) exceeds remaining amount ({available})"
            )

        payment = Payment(
            id=uuid.uuid4(),
            invoice_id=invoice.id,
            inquiry_id=invoice.inquiry_id,
            user_id=user_id or invoice.user_id,
            vendor_id=invoice.vendor_id,
            amount=amount,
            currency=invoice.currency,
            method=method,
            rail=rail,
            status=PaymentStatus.PENDING,
            provider=provider,
            idempotency_key=idempotency_key,
            refund_amount=0,
            provider_metadata={},
        )
        self.db.add(payment)
        # Bump the invoice version so concurrent attempts serialize on the ceiling check
        invoice.updated_at = utcnow()

        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            if idempotency_key:
                existing = await self._get_by_idempotency_key(invoice_id, idempotency_key)
                if existing is not None:
                    logger.info(f"Concurrent duplicate payment attempt resolved to {existing.id}")
                    return existing
            raise

        logger.info(
            f"Created {rail.value} payment {payment.id} for invoice {invoice.invoice_number}: "
            f"{amount} {invoice.currency}"
        )
        return payment

    async def advance_to_processing(self, payment_id: uuid.UUID) -> Payment:
        """PENDING -> PROCESSING, right before the processor confirm step"""
        payment = await self.get_payment(payment_id)
        if payment.status == PaymentStatus.PROCESSING:
            return payment
        if payment.status != PaymentStatus.PENDING:
            raise InvalidTransition(
                f"Cannot move payment from {payment.status.value} to PROCESSING"
            )

        payment.status = PaymentStatus.PROCESSING
        await self.db.commit()
        return payment

    async def attach_provider_ref(self, payment_id: uuid.UUID, provider_ref: str) -> Payment:
        """Bind the processor's id to a payment for webhook correlation"""
        payment = await self.get_payment(payment_id)
        if payment.provider_ref == provider_ref:
            return payment
        if payment.provider_ref is not None:
            raise ConflictError(
                f"Payment {payment_id} is already bound to {payment.provider_ref}",
                existing_id=payment.id,
            )

        provider = payment.provider
        payment.provider_ref = provider_ref
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            other = await self.find_by_provider_ref(provider, provider_ref)
            raise ConflictError(
                f"Provider reference {provider_ref} already used",
                existing_id=other.id if other else None,
            )
        return payment

    async def resolve_outcome(
        self,
        payment_id: uuid.UUID,
        outcome: PaymentStatus,
        provider_ref: str | None,
        failure_reason: str | None = None,
        provider_metadata: dict[str, Any] | None = None,
    ) -> Payment:
        """
        Resolve a payment to SUCCEEDED or FAILED

        The payment update and the invoice paid_amount update commit together.
        A payment already resolved is returned unchanged, so duplicate
        webhook deliveries have no effect. The exception is a capture that
        lands after the attempt was cancelled or its card declined: it is
        credited while the invoice can take it, otherwise queued for a full
        refund.
        """
        if outcome not in (PaymentStatus.SUCCEEDED, PaymentStatus.FAILED):
            raise ValidationError(f"Cannot resolve a payment to {outcome.value}")

        return await run_with_lock_retries(
            self.db,
            lambda: self._resolve_outcome(
                payment_id, outcome, provider_ref, failure_reason, provider_metadata
            )
        )

    async def _resolve_outcome(
        self,
        payment_id: uuid.UUID,
        outcome: PaymentStatus,
        provider_ref: str | None,
        failure_reason: str | None,
        provider_metadata: dict[str, Any] | None,
    ) -> Payment:
        payment = await self._load_payment(payment_id)
        provider = payment.provider
        previous_status = payment.status

        if provider_ref:
            owner = await self.find_by_provider_ref(provider, provider_ref)
            if owner is not None and owner.id != payment.id:
                raise ConflictError(
                    f"Provider reference {provider_ref} belongs to payment {owner.id}",
                    existing_id=owner.id,
                )

        # The card processor can still capture after a decline or our cancel;
        # a rejected mobile-money receipt is final
        late_capture = outcome == PaymentStatus.SUCCEEDED and (
            payment.status == PaymentStatus.CANCELLED
            or (payment.status == PaymentStatus.FAILED and payment.rail == PaymentRail.CARD)
        )
        if payment.status in RESOLVED_STATUSES and not late_capture:
            if payment.status != outcome:
                logger.warning(
                    f"Ignoring {outcome.value} for payment {payment.id}, "
                    f"already resolved to {payment.status.value}"
                )
            else:
                logger.info(f"Duplicate {outcome.value} resolution for payment {payment.id} ignored")
            return payment

        if payment.rail == PaymentRail.MOBILE_MONEY and not await self._has_receipt(payment.id):
            raise ReceiptRequired("Mobile-money payments need a receipt before they can be resolved")

        invoice = await load_invoice_for_update(self.db, payment.invoice_id)
        now = utcnow()

        if provider_ref:
            payment.provider_ref = provider_ref
        if provider_metadata:
            payment.provider_metadata = {**(payment.provider_metadata or {}), **provider_metadata}
        payment.processed_at = now

        if outcome == PaymentStatus.SUCCEEDED:
            policy = await load_policy(self.db, invoice.policy_version)
            platform_fee, vendor_amount = policy.split_payment(payment.amount)
            payment.status = PaymentStatus.SUCCEEDED
            payment.platform_fee_amount = platform_fee
            payment.vendor_amount = vendor_amount
            payment.failure_reason = None

            new_paid = invoice.paid_amount + payment.amount
            if invoice.status == InvoiceStatus.CANCELLED or (
                late_capture
                and (invoice.status not in PAYABLE_INVOICE_STATUSES or new_paid > invoice.total_amount)
            ):
                # paid_amount is frozen; the late capture goes straight back to the customer
                payment.refund_amount = payment.amount
                payment.refund_status = PaymentStatus.PENDING
                invoice.refund_settled = False
                invoice.updated_at = now
                logger.warning(
                    f"Payment {payment.id} captured while {previous_status.value} on invoice "
                    f"{invoice.invoice_number} ({invoice.status.value}); queued for full refund"
                )
            else:
                if new_paid > invoice.total_amount:
                    logger.critical(
                        f"Payment {payment.id} would overpay invoice {invoice.id}: "
                        f"{new_paid} > {invoice.total_amount}"
                    )
                    raise InvariantViolation("paid_amount would exceed total_amount")
                invoice.paid_amount = new_paid
                recompute_invoice_status(invoice)
        else:
            payment.status = PaymentStatus.FAILED
            payment.failure_reason = failure_reason or "Payment failed"
            # Touch the invoice so a failed attempt frees its reservation atomically
            invoice.updated_at = now

        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            owner = await self.find_by_provider_ref(provider, provider_ref) if provider_ref else None
            raise ConflictError(
                f"Provider reference {provider_ref} already used",
                existing_id=owner.id if owner else None,
            )

        logger.info(
            f"Payment {payment.id} resolved to {payment.status.value}; invoice "
            f"{invoice.invoice_number} paid {invoice.paid_amount}/{invoice.total_amount}"
        )
        return payment

    async def cancel_payment_attempt(self, payment_id: uuid.UUID, reason: str | None = None) -> Payment:
        """Abandon an unresolved attempt, releasing its share of the invoice"""
        payment = await self._load_payment(payment_id)
        if payment.status == PaymentStatus.CANCELLED:
            return payment
        if payment.status not in IN_FLIGHT_STATUSES:
            raise InvalidTransition(f"Cannot cancel a payment in status {payment.status.value}")
        if payment.rail == PaymentRail.MOBILE_MONEY and await self._has_receipt(payment.id):
            # Submitted evidence leaves PENDING only through receipt verification
            raise InvalidTransition("Payment has a receipt awaiting verification")

        payment.status = PaymentStatus.CANCELLED
        payment.failure_reason = reason
        payment.processed_at = utcnow()
        await self.db.commit()

        logger.info(f"Cancelled payment attempt {payment.id}")
        return payment

    def cancel_in_flight(self, payments: list[Payment], reason: str) -> None:
        """Cancel unresolved attempts of a cancelled invoice; the caller commits"""
        now = utcnow()
        for payment in payments:
            if payment.status in IN_FLIGHT_STATUSES:
                payment.status = PaymentStatus.CANCELLED
                payment.failure_reason = reason
                payment.processed_at = now

    def stage_refund(self, payment: Payment, amount: int) -> None:
        """Record the refund owed on a captured payment; the caller commits"""
        if payment.status != PaymentStatus.SUCCEEDED:
            raise InvalidTransition(f"Cannot refund a payment in status {payment.status.value}")
        if amount < 0 or amount > payment.amount:
            raise InvariantViolation(f"Refund {amount} outside 0..{payment.amount}")
        payment.refund_amount = amount
        payment.refund_status = PaymentStatus.PENDING if amount > 0 else None

    def mark_refund_processing(self, payment: Payment, refund_ref: str) -> None:
        """The processor accepted a refund but has not settled it; the caller commits"""
        if payment.refund_amount == 0:
            raise InvalidTransition("No refund is owed on this payment")
        payment.refund_status = PaymentStatus.PROCESSING
        payment.refund_ref = refund_ref

    def record_refund_result(
        self,
        payment: Payment,
        succeeded: bool,
        refund_ref: str | None = None,
        failure_reason: str | None = None,
    ) -> None:
        """Apply a processor refund outcome; the caller commits"""
        if succeeded:
            payment.refund_status = PaymentStatus.SUCCEEDED
            payment.refund_ref = refund_ref
            payment.refunded_at = utcnow()
            payment.status = (
                PaymentStatus.REFUNDED
                if payment.refund_amount == payment.amount
                else PaymentStatus.PARTIALLY_REFUNDED
            )
        else:
            payment.refund_status = PaymentStatus.FAILED
            payment.failure_reason = failure_reason

    def record_transfer(self, payments: list[Payment]) -> None:
        """Stamp vendor transfer on captured payments; the caller commits"""
        now = utcnow()
        for payment in payments:
            payment.transfer_status = "transferred"
            payment.transferred_at = now

    async def get_payment(self, payment_id: uuid.UUID) -> Payment:
        payment = await self.db.get(Payment, payment_id)
        if payment is None:
            raise NotFoundError(f"Payment {payment_id} not found")
        return payment

    async def find_by_provider_ref(self, provider: str, provider_ref: str) -> Payment | None:
        stmt = select(Payment).where(
            Payment.provider == provider,
            Payment.provider_ref == provider_ref,
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def list_payments(
        self,
        invoice_id: uuid.UUID | None = None,
        vendor_id: uuid.UUID | None = None,
        status: PaymentStatus | None = None,
        limit: int = 50,
    ) -> list[Payment]:
        stmt = select(Payment).order_by(Payment.created_at.desc()).limit(limit)
        if invoice_id:
            stmt = stmt.where(Payment.invoice_id == invoice_id)
        if vendor_id:
            stmt = stmt.where(Payment.vendor_id == vendor_id)
        if status:
            stmt = stmt.where(Payment.status == status)

        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def _load_payment(self, payment_id: uuid.UUID) -> Payment:
        stmt = (
            select(Payment)
            .where(Payment.id == payment_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        payment = result.scalar_one_or_none()
        if payment is None:
            raise NotFoundError(f"Payment {payment_id} not found")
        return payment

    async def _get_by_idempotency_key(self, invoice_id: uuid.UUID, key: str) -> Payment | None:
        stmt = select(Payment).where(
            Payment.invoice_id == invoice_id,
            Payment.idempotency_key == key,
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def _in_flight_total(self, invoice_id: uuid.UUID) -> int:
        stmt = select(func.coalesce(func.sum(Payment.amount), 0)).where(
            Payment.invoice_id == invoice_id,
            Payment.status.in_(IN_FLIGHT_STATUSES),
        )
        result = await self.db.execute(stmt)
        return int(result.scalar() or 0)

    async def _has_receipt(self, payment_id: uuid.UUID) -> bool:
        result = await self.db.execute(select(Receipt.id).where(Receipt.payment_id == payment_id))
        return result.scalar_one_or_none() is not None
