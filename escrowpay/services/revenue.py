"""Read-only vendor revenue reporting"""

import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from escrowpay.db.models import (
    Cancellation,
    Invoice,
    InvoiceStatus,
    Payment,
    PaymentRail,
    PaymentStatus,
    Payout,
)

logger = logging.getLogger(__name__)

# Payments whose money was captured, whatever happened to it afterwards
CAPTURED_STATUSES = (
    PaymentStatus.SUCCEEDED,
    PaymentStatus.PARTIALLY_REFUNDED,
    PaymentStatus.REFUNDED,
)


@dataclass
class VendorRevenueSummary:
    vendor_id: uuid.UUID
    start_date: date | None
    end_date: date | None
    total_revenue: int
    total_platform_fees: int
    total_payments: int
    paid_out: int
    pending_payout: int
    payment_count: int


@dataclass
class VendorRevenueEntry:
    """One captured payment as the vendor sees it"""
    payment_id: uuid.UUID
    invoice_id: uuid.UUID
    invoice_number: str
    inquiry_id: uuid.UUID
    amount: int
    currency: str
    platform_fee: int
    vendor_amount: int
    refund_amount: int
    method: str
    rail: PaymentRail
    payment_status: PaymentStatus
    transfer_status: str | None
    transferred_at: datetime | None
    processed_at: datetime | None


def _day_start(day: date) -> datetime:
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


def _window(stmt, column, start_date: date | None, end_date: date | None):
    if start_date:
        stmt = stmt.where(column >= _day_start(start_date))
    if end_date:
        stmt = stmt.where(column < _day_start(end_date + timedelta(days=1)))
    return stmt


class RevenueService:
    """Aggregates straight from Payment, Cancellation and Payout rows"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_vendor_revenue_summary(
        self,
        vendor_id: uuid.UUID,
        start_date: date | None = None,
        end_date: date | None = None,
    ) -> VendorRevenueSummary:
        """
        Revenue figures for one vendor

        Revenue is what the vendor is entitled to keep: the vendor_amount of
        captured payments on invoices that were not cancelled, plus the
        vendor_retained share of each cancellation. Refunded money is never
        counted as revenue.

        Args:
            vendor_id: Vendor to report on
            start_date: First day included (UTC), open if None
            end_date: Last day included (UTC), open if None

        Returns:
            total_revenue, total_platform_fees, total_payments (gross captured),
            paid_out (succeeded payouts net of claw-backs) and pending_payout
        """
        gross_stmt = _window(
            select(
                func.coalesce(func.sum(Payment.amount), 0),
                func.count(Payment.id),
            ).where(
                Payment.vendor_id == vendor_id,
                Payment.status.in_(CAPTURED_STATUSES),
            ),
            Payment.processed_at,
            start_date,
            end_date,
        )
        earned_stmt = _window(
            select(
                func.coalesce(func.sum(Payment.vendor_amount), 0),
                func.coalesce(func.sum(Payment.platform_fee_amount), 0),
            )
            .join(Invoice, Invoice.id == Payment.invoice_id)
            .where(
                Payment.vendor_id == vendor_id,
                Payment.status.in_(CAPTURED_STATUSES),
                # Late captures are refunded in full
                Payment.refund_amount == 0,
                Invoice.status != InvoiceStatus.CANCELLED,
            ),
            Payment.processed_at,
            start_date,
            end_date,
        )
        retained_stmt = _window(
            select(
                func.coalesce(func.sum(Cancellation.vendor_retained), 0),
                func.coalesce(func.sum(Cancellation.platform_retained), 0),
            )
            .join(Invoice, Invoice.id == Cancellation.invoice_id)
            .where(Invoice.vendor_id == vendor_id),
            Cancellation.created_at,
            start_date,
            end_date,
        )
        payout_stmt = _window(
            select(func.coalesce(func.sum(Payout.amount), 0)).where(
                Payout.vendor_id == vendor_id,
                Payout.status == PaymentStatus.SUCCEEDED,
            ),
            Payout.processed_at,
            start_date,
            end_date,
        )

        total_payments, payment_count = (await self.db.execute(gross_stmt)).one()
        earned_vendor, earned_platform = (await self.db.execute(earned_stmt)).one()
        retained_vendor, retained_platform = (await self.db.execute(retained_stmt)).one()
        paid_out = int((await self.db.execute(payout_stmt)).scalar() or 0)

        total_revenue = int(earned_vendor) + int(retained_vendor)
        summary = VendorRevenueSummary(
            vendor_id=vendor_id,
            start_date=start_date,
            end_date=end_date,
            total_revenue=total_revenue,
            total_platform_fees=int(earned_platform) + int(retained_platform),
            total_payments=int(total_payments),
            paid_out=paid_out,
            pending_payout=total_revenue - paid_out,
            payment_count=int(payment_count),
        )
        logger.debug(f"Revenue summary for vendor {vendor_id}: {summary}")
        return summary

    async def get_vendor_revenue_history(
        self,
        vendor_id: uuid.UUID,
        start_date: date | None = None,
        end_date: date | None = None,
        limit: int = 100,
    ) -> list[VendorRevenueEntry]:
        """Captured payments for a vendor, newest first"""
        stmt = _window(
            select(Payment, Invoice.invoice_number)
            .join(Invoice, Invoice.id == Payment.invoice_id)
            .where(
                Payment.vendor_id == vendor_id,
                Payment.status.in_(CAPTURED_STATUSES),
            ),
            Payment.processed_at,
            start_date,
            end_date,
        )
        stmt = stmt.order_by(Payment.processed_at.desc(), Payment.id.desc()).limit(limit)
        result = await self.db.execute(stmt)

        return [
            VendorRevenueEntry(
                payment_id=payment.id,
                invoice_id=payment.invoice_id,
                invoice_number=invoice_number,
                inquiry_id=payment.inquiry_id,
                amount=payment.amount,
                currency=payment.currency,
                platform_fee=payment.platform_fee_amount or 0,
                vendor_amount=payment.vendor_amount or 0,
                refund_amount=payment.refund_amount,
                method=payment.method,
                rail=payment.rail,
                payment_status=payment.status,
                transfer_status=payment.transfer_status,
                transferred_at=payment.transferred_at,
                processed_at=payment.processed_at,
            )
            for payment, invoice_number in result.all()
        ]
