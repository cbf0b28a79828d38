"""Invoice creation, publishing and the overdue sweep"""

import logging
import secrets
from datetime import date, timedelta
from uuid import UUID, uuid4

from sqlalchemy import and_, exists, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from escrowpay.config import settings
from escrowpay.db.models import (
    Inquiry,
    InquiryStatus,
    Invoice,
    InvoiceStatus,
    Payment,
    PaymentStatus,
    utcnow,
)
from escrowpay.schemas.invoices import InvoiceCreate
from escrowpay.services.errors import (
    ConflictError,
    InquiryNotEligible,
    InvalidAmount,
    InvalidTransition,
    InvoiceNumberGenerationFailed,
    NotFoundError,
    ValidationError,
)
from escrowpay.services.policy import ensure_current_policy

logger = logging.getLogger(__name__)

INVOICEABLE_INQUIRY_STATUSES = {InquiryStatus.RESPONDED, InquiryStatus.ACCEPTED}
OVERDUE_CANDIDATE_STATUSES = (InvoiceStatus.PENDING, InvoiceStatus.PARTIALLY_PAID)
IN_FLIGHT_PAYMENT_STATUSES = (PaymentStatus.PENDING, PaymentStatus.PROCESSING)

# Crockford base32 without ambiguous characters
_INVOICE_CODE_ALPHABET = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"


def generate_invoice_number(today: date | None = None) -> str:
    """Human-readable, unguessable invoice number such as INV-202501-7KQ2M9XD"""
    today = today or date.today()
    code = "".join(secrets.choice(_INVOICE_CODE_ALPHABET) for _ in range(8))
    return f"{settings.invoice_number_prefix}-{today:%Y%m}-{code}"


async def load_invoice_for_update(db: AsyncSession, invoice_id: UUID) -> Invoice:
    """Load an invoice with a row lock and fresh attribute values"""
    stmt = (
        select(Invoice)
        .where(Invoice.id == invoice_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    result = await db.execute(stmt)
    invoice = result.scalar_one_or_none()
    if invoice is None:
        raise NotFoundError(f"Invoice {invoice_id} not found")
    return invoice


class InvoiceService:
    """Service owning invoice creation and invoice lifecycle transitions"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create_invoice(self, data: InvoiceCreate) -> Invoice:
        """
        Create a DRAFT invoice for an eligible inquiry

        Args:
            data: Invoice request including the creating vendor

        Returns:
            The persisted invoice
        """
        tax_amount = data.tax_amount or 0
        discount_amount = data.discount_amount or 0
        if data.subtotal <= 0:
            raise InvalidAmount("Subtotal must be greater than zero")
        if tax_amount < 0 or discount_amount < 0:
            raise InvalidAmount("Tax and discount amounts cannot be negative")
        total_amount = data.subtotal + tax_amount - discount_amount
        if total_amount < 0:
            raise InvalidAmount("Discount cannot exceed subtotal plus tax")

        inquiry = await self.db.get(Inquiry, data.inquiry_id)
        if inquiry is None:
            raise NotFoundError(f"Inquiry {data.inquiry_id} not found")
        if inquiry.vendor_id != data.vendor_id:
            raise InquiryNotEligible("Inquiry does not belong to this vendor")
        if inquiry.status not in INVOICEABLE_INQUIRY_STATUSES:
            raise InquiryNotEligible(
                f"Cannot create invoice for inquiry with status: {inquiry.status.value}. "
                "Inquiry must be accepted or responded."
            )
        inquiry_id, user_id = inquiry.id, inquiry.user_id

        existing_draft = await self.db.execute(
            select(Invoice.id).where(
                Invoice.inquiry_id == inquiry_id,
                Invoice.type == data.type,
                Invoice.status == InvoiceStatus.DRAFT,
            )
        )
        existing_id = existing_draft.scalar_one_or_none()
        if existing_id is not None:
            raise ConflictError(
                f"A draft invoice of type {data.type.value} already exists for this inquiry",
                existing_id=existing_id,
            )

        issue_date = date.today()
        due_date = data.due_date or issue_date + timedelta(days=settings.invoice_due_days)
        if due_date < issue_date:
            raise ValidationError("Due date cannot be before the issue date")

        for attempt in range(1, settings.invoice_number_max_attempts + 1):
            invoice_number = generate_invoice_number(issue_date)
            taken = await self.db.execute(
                select(Invoice.id).where(Invoice.invoice_number == invoice_number)
            )
            if taken.scalar_one_or_none() is not None:
                logger.warning(f"Invoice number collision on attempt {attempt}")
                continue

            policy = await ensure_current_policy(self.db)
            invoice = Invoice(
                id=uuid4(),
                inquiry_id=inquiry_id,
                vendor_id=data.vendor_id,
                user_id=user_id,
                invoice_number=invoice_number,
                type=data.type,
                status=InvoiceStatus.DRAFT,
                subtotal=data.subtotal,
                tax_amount=tax_amount,
                discount_amount=discount_amount,
                total_amount=total_amount,
                paid_amount=0,
                currency=(data.currency or settings.settlement_currency).upper(),
                issue_date=issue_date,
                due_date=due_date,
                description=data.description,
                notes=data.notes,
                policy_version=policy.version,
                refund_settled=True,
            )
            self.db.add(invoice)
            try:
                await self.db.commit()
            except IntegrityError as e:
                await self.db.rollback()
                if "invoice_number" in str(e):
                    logger.warning(f"Invoice number {invoice_number} taken concurrently, retrying")
                    continue
                raise

            logger.info(
                f"Created invoice {invoice.invoice_number} ({invoice.id}) for inquiry {inquiry_id}, "
                f"total {total_amount} {invoice.currency}"
            )
            return invoice

        raise InvoiceNumberGenerationFailed(
            f"Could not allocate a unique invoice number after "
            f"{settings.invoice_number_max_attempts} attempts"
        )

    async def publish_invoice(self, invoice_id: UUID, vendor_id: UUID | None = None) -> Invoice:
        """Move a DRAFT invoice to PENDING so the customer can pay it, or straight to PAID when it is free"""
        invoice = await load_invoice_for_update(self.db, invoice_id)
        if vendor_id is not None and invoice.vendor_id != vendor_id:
            raise ValidationError("Only the invoice's vendor can publish it")
        if invoice.status != InvoiceStatus.DRAFT:
            raise InvalidTransition(
                f"Cannot publish invoice with status: {invoice.status.value}. "
                "Only DRAFT invoices can be published."
            )

        if invoice.total_amount == 0:
            # Nothing to collect, so no payment could ever settle it
            invoice.status = InvoiceStatus.PAID
            invoice.paid_at = utcnow()
        else:
            invoice.status = InvoiceStatus.PENDING
        await self._commit()

        logger.info(f"Published invoice {invoice.invoice_number}")
        return invoice

    async def mark_work_started(self, invoice_id: UUID, vendor_id: UUID | None = None) -> Invoice:
        """Record that the vendor has started work on this booking"""
        invoice = await load_invoice_for_update(self.db, invoice_id)
        if vendor_id is not None and invoice.vendor_id != vendor_id:
            raise ValidationError("Only the invoice's vendor can mark work as started")
        if invoice.status == InvoiceStatus.CANCELLED:
            raise InvalidTransition("Cannot start work on a cancelled invoice")
        if invoice.work_started_at is not None:
            return invoice

        invoice.work_started_at = utcnow()
        await self._commit()

        logger.info(f"Work started on invoice {invoice.invoice_number}")
        return invoice

    async def mark_work_completed(
        self,
        invoice_id: UUID,
        verified_by: UUID,
        notes: str | None = None,
    ) -> Invoice:
        """
        Record verified completion of the work, unlocking escrow release

        Only a fully paid invoice holds the whole escrow, so completion is
        accepted on PAID invoices only. Repeating the call is a no-op.
        """
        invoice = await load_invoice_for_update(self.db, invoice_id)
        if invoice.work_completed_at is not None:
            return invoice
        if invoice.status != InvoiceStatus.PAID:
            raise InvalidTransition(
                f"Cannot complete work on invoice with status: {invoice.status.value}. "
                "Only PAID invoices can be completed."
            )

        now = utcnow()
        invoice.work_started_at = invoice.work_started_at or now
        invoice.work_completed_at = now
        invoice.work_verified_by = verified_by
        invoice.work_completion_notes = notes
        await self._commit()

        logger.info(f"Work on invoice {invoice.invoice_number} completed, verified by {verified_by}")
        return invoice

    async def mark_overdue_invoices(self, today: date | None = None) -> list[Invoice]:
        """Flag unpaid invoices past their due date with no payment in flight"""
        today = today or date.today()
        in_flight = exists().where(
            and_(
                Payment.invoice_id == Invoice.id,
                Payment.status.in_(IN_FLIGHT_PAYMENT_STATUSES),
            )
        )
        stmt = select(Invoice).where(
            Invoice.status.in_(OVERDUE_CANDIDATE_STATUSES),
            Invoice.due_date < today,
            ~in_flight,
        )
        result = await self.db.execute(stmt)
        invoices = list(result.scalars().all())

        for invoice in invoices:
            invoice.status = InvoiceStatus.OVERDUE
        await self._commit()

        if invoices:
            logger.info(f"Marked {len(invoices)} invoice(s) overdue")
        return invoices

    async def get_invoice(self, invoice_id: UUID) -> Invoice:
        invoice = await self.db.get(Invoice, invoice_id)
        if invoice is None:
            raise NotFoundError(f"Invoice {invoice_id} not found")
        return invoice

    async def list_invoices(
        self,
        vendor_id: UUID | None = None,
        user_id: UUID | None = None,
        inquiry_id: UUID | None = None,
        status: InvoiceStatus | None = None,
        limit: int = 50,
    ) -> list[Invoice]:
        stmt = select(Invoice).order_by(Invoice.created_at.desc()).limit(limit)
        if vendor_id:
            stmt = stmt.where(Invoice.vendor_id == vendor_id)
        if user_id:
            stmt = stmt.where(Invoice.user_id == user_id)
        if inquiry_id:
            stmt = stmt.where(Invoice.inquiry_id == inquiry_id)
        if status:
            stmt = stmt.where(Invoice.status == status)

        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def _commit(self) -> None:
        try:
            await self.db.commit()
        except StaleDataError:
            await self.db.rollback()
            raise ConflictError("Invoice was modified concurrently, please retry")
