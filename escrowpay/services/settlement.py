"""Settlement and refund engine: cancellations, refunds, claw-backs and escrow release"""

import logging
import uuid

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from escrowpay.db.models import (
    Cancellation,
    CancellationStage,
    CancelledBy,
    Inquiry,
    InquiryStatus,
    Invoice,
    InvoiceStatus,
    Payment,
    PaymentRail,
    PaymentStatus,
    Payout,
    utcnow,
)
from escrowpay.services.errors import (
    ConflictError,
    ExternalProviderError,
    InvalidTransition,
    InvariantViolation,
    NotFoundError,
    ValidationError,
)
from escrowpay.services.invoices import load_invoice_for_update
from escrowpay.services.payment_intake import PaymentIntakeService, run_with_lock_retries
from escrowpay.services.policy import CancellationSplit, allocate_proportionally, load_policy
from escrowpay.services.stripe_gateway import PROVIDER as STRIPE_PROVIDER
from escrowpay.services.stripe_gateway import StripeGateway

logger = logging.getLogger(__name__)

PAYOUT_PROVIDER = "manual"
OPEN_REFUND_STATUSES = (PaymentStatus.PENDING, PaymentStatus.PROCESSING, PaymentStatus.FAILED)
# Payouts that count against the vendor's entitlement
COMMITTED_PAYOUT_STATUSES = (PaymentStatus.PENDING, PaymentStatus.SUCCEEDED)


def determine_stage(
    cancelled_by: CancelledBy,
    inquiry_status: InquiryStatus,
    work_started: bool,
) -> CancellationStage:
    """Map who cancelled and how far the booking got to a cancellation stage"""
    if cancelled_by == CancelledBy.VENDOR:
        return CancellationStage.VENDOR_CANCELLED
    if inquiry_status != InquiryStatus.ACCEPTED:
        return CancellationStage.PRE_CONFIRMATION
    if work_started:
        return CancellationStage.POST_WORK_START
    return CancellationStage.POST_CONFIRMATION


def _captured(payments: list[Payment]) -> list[Payment]:
    """Succeeded payments that count towards the escrowed total"""
    return [
        p for p in payments
        if p.status == PaymentStatus.SUCCEEDED and p.refund_amount == 0
    ]


class SettlementService:
    """
    Decides and executes what happens to escrowed money

    This service is the only writer of Payout and Cancellation rows. Payment
    refund state goes through PaymentIntakeService.
    """

    def __init__(self, db: AsyncSession, gateway: StripeGateway | None = None):
        self.db = db
        self.intake = PaymentIntakeService(db)
        self._gateway = gateway

    @property
    def gateway(self) -> StripeGateway:
        if self._gateway is None:
            self._gateway = StripeGateway()
        return self._gateway

    async def compute_cancellation(
        self,
        invoice_id: uuid.UUID,
        cancelled_by: CancelledBy,
        work_started: bool | None = None,
    ) -> CancellationSplit:
        """
        Preview the split a cancellation would produce right now

        Args:
            invoice_id: Invoice to cancel
            cancelled_by: Customer or vendor
            work_started: Overrides the invoice's own work-started flag

        Returns:
            Customer refund, vendor and platform shares summing to the paid total
        """
        invoice = await self.db.get(Invoice, invoice_id)
        if invoice is None:
            raise NotFoundError(f"Invoice {invoice_id} not found")
        payments = await self._payments_for_invoice(invoice_id)
        return await self._split_for(invoice, payments, cancelled_by, work_started)

    async def execute_cancellation(
        self,
        invoice_id: uuid.UUID,
        cancelled_by: CancelledBy,
        event_token: str,
        work_started: bool | None = None,
        reason: str | None = None,
    ) -> Cancellation:
        """
        Cancel an invoice and settle its escrow

        Idempotent per (invoice_id, event_token): re-invoking with the same
        token returns the recorded cancellation without refunding again.
        """
        existing = await self._get_cancellation(invoice_id)
        if existing is not None:
            return self._replay(existing, event_token)

        try:
            cancellation = await run_with_lock_retries(
                self.db,
                lambda: self._execute_cancellation(
                    invoice_id, cancelled_by, event_token, work_started, reason
                ),
            )
        except IntegrityError:
            # Another request cancelled the invoice between our check and commit
            await self.db.rollback()
            existing = await self._get_cancellation(invoice_id)
            if existing is None:
                raise
            return self._replay(existing, event_token)

        if cancellation.customer_refund > 0:
            await self._execute_refunds(invoice_id)
        return cancellation

    async def _execute_cancellation(
        self,
        invoice_id: uuid.UUID,
        cancelled_by: CancelledBy,
        event_token: str,
        work_started: bool | None,
        reason: str | None,
    ) -> Cancellation:
        invoice = await load_invoice_for_update(self.db, invoice_id)
        if invoice.status == InvoiceStatus.CANCELLED:
            existing = await self._get_cancellation(invoice_id)
            if existing is not None:
                return self._replay(existing, event_token)
            raise InvariantViolation(f"Invoice {invoice_id} is cancelled without a settlement")

        payments = await self._payments_for_invoice(invoice_id)
        split = await self._split_for(invoice, payments, cancelled_by, work_started)
        now = utcnow()

        captured = _captured(payments)
        refunds = allocate_proportionally(split.customer_refund, [p.amount for p in captured])
        for payment, refund in zip(captured, refunds):
            if refund > 0:
                self.intake.stage_refund(payment, refund)
        self.intake.cancel_in_flight(payments, reason="Invoice cancelled")

        # Unconfirmed payouts have not left the platform; stop them instead of clawing back
        payouts = await self._payouts_for_invoice(invoice_id)
        for payout in payouts:
            if payout.status == PaymentStatus.PENDING and payout.amount > 0:
                payout.status = PaymentStatus.CANCELLED
                payout.failure_reason = "Invoice cancelled"
        released = sum(p.amount for p in payouts if p.status == PaymentStatus.SUCCEEDED)
        clawback = max(released - split.vendor_retained, 0)
        if clawback > 0:
            self.db.add(
                Payout(
                    id=uuid.uuid4(),
                    vendor_id=invoice.vendor_id,
                    invoice_id=invoice.id,
                    amount=-clawback,
                    currency=invoice.currency,
                    method="clawback",
                    status=PaymentStatus.PENDING,
                    provider=PAYOUT_PROVIDER,
                    description=f"Claw-back for cancelled invoice {invoice.invoice_number}",
                )
            )
            logger.warning(
                f"Scheduled claw-back of {clawback} {invoice.currency} from vendor "
                f"{invoice.vendor_id} for invoice {invoice.invoice_number}"
            )

        cancellation = Cancellation(
            id=uuid.uuid4(),
            invoice_id=invoice.id,
            event_token=event_token,
            cancelled_by=cancelled_by,
            stage=split.stage,
            policy_version=invoice.policy_version,
            reason=reason,
            paid_total=split.paid_total,
            customer_refund=split.customer_refund,
            vendor_retained=split.vendor_retained,
            platform_retained=split.platform_retained,
            clawback_amount=clawback,
        )
        self.db.add(cancellation)

        invoice.status = InvoiceStatus.CANCELLED
        invoice.cancelled_at = now
        invoice.refund_settled = not any(p.refund_amount > 0 for p in payments)
        await self.db.commit()

        logger.info(
            f"Cancelled invoice {invoice.invoice_number} ({split.stage.value}) by "
            f"{cancelled_by.value}: paid {split.paid_total}, refund {split.customer_refund}, "
            f"vendor {split.vendor_retained}, platform {split.platform_retained}"
        )
        return cancellation

    async def retry_refunds(self, invoice_id: uuid.UUID) -> Invoice:
        """Re-attempt every owed refund on an invoice that has not gone through"""
        invoice = await self.db.get(Invoice, invoice_id)
        if invoice is None:
            raise NotFoundError(f"Invoice {invoice_id} not found")
        if invoice.refund_settled:
            return invoice

        await self._execute_refunds(invoice_id)
        return await self.db.get(Invoice, invoice_id, populate_existing=True)

    async def confirm_manual_refund(self, payment_id: uuid.UUID, reference: str) -> Payment:
        """Record a mobile-money refund an operator sent by hand"""
        payment = await self.intake.get_payment(payment_id)
        if payment.rail != PaymentRail.MOBILE_MONEY:
            raise ValidationError("Card refunds are confirmed by the processor")
        if payment.refund_amount == 0:
            raise InvalidTransition("No refund is owed on this payment")
        if payment.refund_status == PaymentStatus.SUCCEEDED:
            return payment

        self.intake.record_refund_result(payment, succeeded=True, refund_ref=reference)
        await self.db.commit()
        logger.info(f"Manual refund {reference} recorded for payment {payment.id}")

        await self._refresh_refund_settled(payment.invoice_id)
        return payment

    async def confirm_processor_refund(
        self,
        payment_id: uuid.UUID,
        refund_ref: str | None,
        amount_refunded: int,
    ) -> Payment:
        """Apply the card processor's asynchronous refund confirmation"""
        payment = await self.intake.get_payment(payment_id)
        if payment.refund_status == PaymentStatus.SUCCEEDED:
            return payment
        if payment.refund_amount == 0:
            logger.warning(
                f"Processor reported a refund of {amount_refunded} on payment {payment.id} "
                "that this engine did not request"
            )
            return payment
        if amount_refunded < payment.refund_amount:
            logger.info(
                f"Partial refund progress on payment {payment.id}: "
                f"{amount_refunded}/{payment.refund_amount}"
            )
            return payment

        self.intake.record_refund_result(payment, succeeded=True, refund_ref=refund_ref)
        await self.db.commit()
        await self._refresh_refund_settled(payment.invoice_id)
        return payment

    async def release_to_vendor(self, invoice_id: uuid.UUID) -> Payout:
        """
        Release the vendor's unreleased share of an invoice's escrow

        A paid invoice releases the vendor_amount of its payments once its work
        is completed; a cancelled one releases what the vendor retained under
        the cancellation.
        """
        return await run_with_lock_retries(self.db, lambda: self._release_to_vendor(invoice_id))

    async def _release_to_vendor(self, invoice_id: uuid.UUID) -> Payout:
        invoice = await load_invoice_for_update(self.db, invoice_id)

        if invoice.status == InvoiceStatus.PAID:
            if not invoice.work_completed:
                raise InvalidTransition("Escrow is held until the work is marked completed")
            payments = await self._payments_for_invoice(invoice_id)
            entitlement = sum(p.vendor_amount or 0 for p in _captured(payments))
        elif invoice.status == InvoiceStatus.CANCELLED:
            cancellation = await self.get_cancellation(invoice_id)
            entitlement = cancellation.vendor_retained
        else:
            raise InvalidTransition(
                f"Cannot release funds for an invoice in status {invoice.status.value}"
            )

        payouts = await self._payouts_for_invoice(invoice_id)
        committed = sum(p.amount for p in payouts if p.status in COMMITTED_PAYOUT_STATUSES)
        owed = entitlement - committed
        if owed <= 0:
            raise ValidationError("Nothing left to release for this invoice")

        payout = Payout(
            id=uuid.uuid4(),
            vendor_id=invoice.vendor_id,
            invoice_id=invoice.id,
            amount=owed,
            currency=invoice.currency,
            method="transfer",
            status=PaymentStatus.PENDING,
            provider=PAYOUT_PROVIDER,
            description=f"Escrow release for invoice {invoice.invoice_number}",
        )
        self.db.add(payout)
        # Serialize releases on the invoice version
        invoice.updated_at = utcnow()
        await self.db.commit()

        logger.info(
            f"Released {owed} {invoice.currency} to vendor {invoice.vendor_id} "
            f"for invoice {invoice.invoice_number}"
        )
        return payout

    async def confirm_payout(self, payout_id: uuid.UUID, provider_ref: str) -> Payout:
        """Record that a payout or claw-back was actually disbursed"""
        payout = await self._get_payout(payout_id)
        if payout.status == PaymentStatus.SUCCEEDED:
            return payout
        if payout.status != PaymentStatus.PENDING:
            raise InvalidTransition(f"Cannot confirm a payout in status {payout.status.value}")

        payout.status = PaymentStatus.SUCCEEDED
        payout.provider_ref = provider_ref
        payout.processed_at = utcnow()

        if payout.amount > 0 and payout.invoice_id is not None:
            payments = await self._payments_for_invoice(payout.invoice_id)
            self.intake.record_transfer(
                [p for p in payments if p.status == PaymentStatus.SUCCEEDED and p.transferred_at is None]
            )

        await self.db.commit()
        logger.info(f"Payout {payout.id} of {payout.amount} {payout.currency} confirmed")
        return payout

    async def fail_payout(self, payout_id: uuid.UUID, reason: str) -> Payout:
        payout = await self._get_payout(payout_id)
        if payout.status == PaymentStatus.FAILED:
            return payout
        if payout.status != PaymentStatus.PENDING:
            raise InvalidTransition(f"Cannot fail a payout in status {payout.status.value}")

        payout.status = PaymentStatus.FAILED
        payout.failure_reason = reason
        payout.processed_at = utcnow()
        await self.db.commit()

        logger.warning(f"Payout {payout.id} failed: {reason}")
        return payout

    async def get_cancellation(self, invoice_id: uuid.UUID) -> Cancellation:
        cancellation = await self._get_cancellation(invoice_id)
        if cancellation is None:
            raise NotFoundError(f"Invoice {invoice_id} has not been cancelled")
        return cancellation

    async def list_payouts(
        self,
        vendor_id: uuid.UUID | None = None,
        invoice_id: uuid.UUID | None = None,
        status: PaymentStatus | None = None,
        limit: int = 50,
    ) -> list[Payout]:
        stmt = select(Payout).order_by(Payout.created_at.desc()).limit(limit)
        if vendor_id:
            stmt = stmt.where(Payout.vendor_id == vendor_id)
        if invoice_id:
            stmt = stmt.where(Payout.invoice_id == invoice_id)
        if status:
            stmt = stmt.where(Payout.status == status)

        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def _split_for(
        self,
        invoice: Invoice,
        payments: list[Payment],
        cancelled_by: CancelledBy,
        work_started: bool | None,
    ) -> CancellationSplit:
        inquiry = await self.db.get(Inquiry, invoice.inquiry_id)
        if inquiry is None:
            raise NotFoundError(f"Inquiry {invoice.inquiry_id} not found")

        started = invoice.work_started if work_started is None else work_started
        stage = determine_stage(cancelled_by, inquiry.status, started)
        policy = await load_policy(self.db, invoice.policy_version)
        paid_total = sum(p.amount for p in _captured(payments))

        split = policy.split_cancellation(stage, paid_total)
        if split.customer_refund + split.vendor_retained + split.platform_retained != paid_total:
            logger.critical(f"Cancellation split for invoice {invoice.id} leaks money: {split}")
            raise InvariantViolation("Cancellation split does not conserve the paid total")
        return split

    async def _execute_refunds(self, invoice_id: uuid.UUID) -> None:
        """Push owed refunds through each payment's rail"""
        payments = await self._payments_for_invoice(invoice_id)
        for payment in payments:
            if payment.refund_amount == 0 or payment.refund_status not in OPEN_REFUND_STATUSES:
                continue

            if payment.rail == PaymentRail.MOBILE_MONEY:
                # Sent by an operator and recorded through confirm_manual_refund
                if payment.refund_status == PaymentStatus.PENDING:
                    logger.info(
                        f"Refund of {payment.refund_amount} on payment {payment.id} "
                        "queued for manual mobile-money disbursement"
                    )
                continue

            if payment.refund_status == PaymentStatus.PROCESSING:
                continue
            await self._refund_card_payment(payment)

        await self._refresh_refund_settled(invoice_id)

    async def _refund_card_payment(self, payment: Payment) -> None:
        if payment.provider != STRIPE_PROVIDER or not payment.provider_ref:
            self.intake.record_refund_result(
                payment, succeeded=False, failure_reason="Payment has no processor reference"
            )
            await self.db.commit()
            logger.error(f"Cannot refund payment {payment.id}: no processor reference")
            return

        try:
            refund = await self.gateway.create_refund(
                payment_intent_id=payment.provider_ref,
                amount=payment.refund_amount,
                idempotency_key=f"refund-{payment.id}",
                metadata={"payment_id": str(payment.id), "invoice_id": str(payment.invoice_id)},
            )
        except ExternalProviderError as e:
            self.intake.record_refund_result(payment, succeeded=False, failure_reason=str(e))
            await self.db.commit()
            logger.warning(f"Refund for payment {payment.id} failed, left for retry: {e}")
            return

        if refund["status"] == "succeeded":
            self.intake.record_refund_result(payment, succeeded=True, refund_ref=refund["id"])
        elif refund["status"] in ("pending", "requires_action"):
            self.intake.mark_refund_processing(payment, refund["id"])
        else:
            self.intake.record_refund_result(
                payment, succeeded=False, failure_reason=f"Refund {refund['status']}"
            )
        await self.db.commit()
        logger.info(f"Refund {refund['id']} for payment {payment.id}: {refund['status']}")

    async def _refresh_refund_settled(self, invoice_id: uuid.UUID) -> None:
        async def refresh() -> None:
            invoice = await load_invoice_for_update(self.db, invoice_id)
            open_refunds = await self.db.execute(
                select(func.count(Payment.id)).where(
                    Payment.invoice_id == invoice_id,
                    Payment.refund_amount > 0,
                    Payment.refund_status.in_(OPEN_REFUND_STATUSES),
                )
            )
            settled = (open_refunds.scalar() or 0) == 0
            if invoice.refund_settled != settled:
                invoice.refund_settled = settled
                await self.db.commit()
                if settled:
                    logger.info(f"All refunds settled for invoice {invoice.invoice_number}")

        await run_with_lock_retries(self.db, refresh)

    def _replay(self, existing: Cancellation, event_token: str) -> Cancellation:
        if existing.event_token != event_token:
            raise ConflictError(
                "Invoice has already been cancelled",
                existing_id=existing.id,
            )
        logger.info(f"Cancellation {event_token} for invoice {existing.invoice_id} already applied")
        return existing

    async def _get_cancellation(self, invoice_id: uuid.UUID) -> Cancellation | None:
        result = await self.db.execute(
            select(Cancellation).where(Cancellation.invoice_id == invoice_id)
        )
        return result.scalar_one_or_none()

    async def _get_payout(self, payout_id: uuid.UUID) -> Payout:
        payout = await self.db.get(Payout, payout_id)
        if payout is None:
            raise NotFoundError(f"Payout {payout_id} not found")
        return payout

    async def _payments_for_invoice(self, invoice_id: uuid.UUID) -> list[Payment]:
        result = await self.db.execute(
            select(Payment)
            .where(Payment.invoice_id == invoice_id)
            .order_by(Payment.created_at.asc(), Payment.id.asc())
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def _payouts_for_invoice(self, invoice_id: uuid.UUID) -> list[Payout]:
        result = await self.db.execute(
            select(Payout)
            .where(Payout.invoice_id == invoice_id)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())
