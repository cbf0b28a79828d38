"""Mobile-money rail: receipt evidence and the manual verification queue"""

import logging
import uuid
from datetime import date

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from escrowpay.db.models import (
    Payment,
    PaymentRail,
    PaymentStatus,
    Receipt,
    ReceiptStatus,
    utcnow,
)
from escrowpay.services.errors import (
    ConflictError,
    InvalidTransition,
    NotFoundError,
    ValidationError,
)
from escrowpay.services.payment_intake import PaymentIntakeService

logger = logging.getLogger(__name__)

PROVIDER = "mobile_money"


class MobileMoneyService:
    """Service for mobile-money payments confirmed by a human reviewer"""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.intake = PaymentIntakeService(db)

    async def create_payment(
        self,
        invoice_id: uuid.UUID,
        amount: int,
        currency: str,
        method: str,
        idempotency_key: str,
    ) -> Payment:
        return await self.intake.create_payment_attempt(
            invoice_id=invoice_id,
            amount=amount,
            currency=currency,
            method=method,
            rail=PaymentRail.MOBILE_MONEY,
            provider=PROVIDER,
            idempotency_key=idempotency_key,
        )

    async def submit_receipt(
        self,
        payment_id: uuid.UUID,
        image_url: str,
        claimed_reference: str,
        claimed_phone: str,
        claimed_amount: int,
        claimed_date: date | None = None,
    ) -> Receipt:
        """
        Attach transfer evidence to a pending mobile-money payment

        The payment stays PENDING until a reviewer verifies the receipt.

        Args:
            payment_id: Payment the customer paid against
            image_url: Uploaded screenshot of the operator confirmation
            claimed_reference: Transaction reference from the operator SMS
            claimed_phone: Phone number the money was sent from
            claimed_amount: Amount the customer says they sent, minor units
            claimed_date: Date of the transfer

        Returns:
            The new receipt
        """
        payment = await self.intake.get_payment(payment_id)
        if payment.rail != PaymentRail.MOBILE_MONEY:
            raise ValidationError("Receipts can only be submitted for mobile-money payments")
        if payment.status != PaymentStatus.PENDING:
            raise InvalidTransition(
                f"Cannot submit a receipt for a payment in status {payment.status.value}"
            )
        if claimed_amount <= 0:
            raise ValidationError("Claimed amount must be greater than zero")

        existing = await self.get_receipt_for_payment(payment_id)
        if existing is not None:
            raise ConflictError(
                "A receipt has already been submitted for this payment",
                existing_id=existing.id,
            )

        receipt = Receipt(
            id=uuid.uuid4(),
            payment_id=payment.id,
            image_url=image_url,
            claimed_reference_number=claimed_reference.strip(),
            claimed_phone=claimed_phone,
            claimed_amount=claimed_amount,
            claimed_date=claimed_date,
            status=ReceiptStatus.PENDING,
        )
        self.db.add(receipt)
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            existing = await self.get_receipt_for_payment(payment_id)
            raise ConflictError(
                "A receipt has already been submitted for this payment",
                existing_id=existing.id if existing else None,
            )

        if claimed_amount != payment.amount:
            logger.warning(
                f"Receipt {receipt.id} claims {claimed_amount} for payment {payment.id} "
                f"of {payment.amount}"
            )
        logger.info(f"Receipt {receipt.id} submitted for payment {payment.id}, awaiting review")
        return receipt

    async def verify_receipt(
        self,
        payment_id: uuid.UUID,
        decision: str,
        reviewer_id: uuid.UUID,
        notes: str | None = None,
    ) -> Payment:
        """Approve or reject a receipt, resolving its payment"""
        if decision not in ("approve", "reject"):
            raise ValidationError(f"Unknown decision: {decision}")

        receipt = await self.get_receipt_for_payment(payment_id)
        if receipt is None:
            raise NotFoundError(f"No receipt submitted for payment {payment_id}")
        if receipt.status != ReceiptStatus.PENDING:
            payment = await self.intake.get_payment(payment_id)
            logger.info(f"Receipt {receipt.id} already {receipt.status.value}")
            return payment

        receipt_id = receipt.id
        reference = receipt.claimed_reference_number
        if decision == "approve":
            outcome = PaymentStatus.SUCCEEDED
            failure_reason = None
        else:
            outcome = PaymentStatus.FAILED
            failure_reason = notes or "Receipt rejected by reviewer"

        payment = await self.intake.resolve_outcome(
            payment_id,
            outcome,
            provider_ref=reference if decision == "approve" else None,
            failure_reason=failure_reason,
            provider_metadata={"receipt_id": str(receipt_id), "reviewer_id": str(reviewer_id)},
        )

        # A crash before this commit is healed by re-running the review
        receipt = await self.get_receipt_for_payment(payment_id)
        receipt.status = ReceiptStatus.VERIFIED if decision == "approve" else ReceiptStatus.REJECTED
        receipt.reviewer_id = reviewer_id
        receipt.reviewed_at = utcnow()
        receipt.review_notes = notes
        await self.db.commit()

        logger.info(
            f"Receipt {receipt_id} {decision}d by {reviewer_id}; payment {payment.id} "
            f"is {payment.status.value}"
        )
        return payment

    async def get_receipt_for_payment(self, payment_id: uuid.UUID) -> Receipt | None:
        result = await self.db.execute(select(Receipt).where(Receipt.payment_id == payment_id))
        return result.scalar_one_or_none()

    async def list_pending_receipts(
        self,
        vendor_id: uuid.UUID | None = None,
        limit: int = 100,
    ) -> list[Receipt]:
        """Verification queue, oldest first"""
        stmt = (
            select(Receipt)
            .join(Payment, Payment.id == Receipt.payment_id)
            .where(Receipt.status == ReceiptStatus.PENDING)
            .order_by(Receipt.created_at.asc())
            .limit(limit)
        )
        if vendor_id:
            stmt = stmt.where(Payment.vendor_id == vendor_id)

        result = await self.db.execute(stmt)
        return list(result.scalars().all())
