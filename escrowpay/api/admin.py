"""Admin and reporting API endpoints"""

import logging
from datetime import date
from typing import Any, Dict
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy import func, select, text
from sqlalchemy.ext.asyncio import AsyncSession

from escrowpay.config import settings
from escrowpay.db.database import get_db
from escrowpay.db.models import Invoice, Payment, Payout, PaymentStatus, Receipt, ReceiptStatus
from escrowpay.schemas.invoices import OverdueSweepResponse
from escrowpay.schemas.settlement import (
    RevenueHistoryEntry,
    VendorRevenueHistoryResponse,
    VendorRevenueResponse,
)
from escrowpay.services.invoices import InvoiceService
from escrowpay.services.revenue import RevenueService

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/stats")
async def get_system_stats(db: AsyncSession = Depends(get_db)) -> Dict[str, Any]:
    """Get system statistics for admin dashboard"""
    stats = {}

    # Database connectivity check
    try:
        await db.execute(text("SELECT 1"))
        stats["database_status"] = "healthy"
    except Exception as e:
        stats["database_status"] = "unhealthy"
        logger.error(f"Database health check failed: {e}")
        return stats

    invoice_counts = await db.execute(
        select(Invoice.status, func.count(Invoice.id)).group_by(Invoice.status)
    )
    stats["invoices_by_status"] = {
        invoice_status.value: count for invoice_status, count in invoice_counts.all()
    }

    payment_counts = await db.execute(
        select(Payment.status, func.count(Payment.id)).group_by(Payment.status)
    )
    stats["payments_by_status"] = {
        payment_status.value: count for payment_status, count in payment_counts.all()
    }

    pending_receipts = await db.execute(
        select(func.count(Receipt.id)).where(Receipt.status == ReceiptStatus.PENDING)
    )
    stats["pending_receipts"] = pending_receipts.scalar() or 0

    unsettled_refunds = await db.execute(
        select(func.count(Invoice.id)).where(Invoice.refund_settled.is_(False))
    )
    stats["invoices_pending_refund"] = unsettled_refunds.scalar() or 0

    pending_payouts = await db.execute(
        select(func.count(Payout.id)).where(Payout.status == PaymentStatus.PENDING)
    )
    stats["pending_payouts"] = pending_payouts.scalar() or 0

    stats["settlement_policy"] = {
        "version": settings.settlement_policy_version,
        "platform_fee_bps": settings.platform_fee_bps,
        "work_initiation_fee_bps": settings.work_initiation_fee_bps,
    }
    return stats


@router.post("/invoices/overdue-sweep", response_model=OverdueSweepResponse)
async def run_overdue_sweep(
    as_of: date | None = Query(None),
    db: AsyncSession = Depends(get_db),
) -> OverdueSweepResponse:
    """Flag past-due unpaid invoices; invoked by the external scheduler"""
    invoices = await InvoiceService(db).mark_overdue_invoices(as_of)
    return OverdueSweepResponse(
        marked_overdue=[invoice.id for invoice in invoices],
        count=len(invoices),
    )


@router.get("/vendors/{vendor_id}/revenue", response_model=VendorRevenueResponse)
async def get_vendor_revenue(
    vendor_id: UUID,
    start_date: date | None = Query(None),
    end_date: date | None = Query(None),
    db: AsyncSession = Depends(get_db),
) -> VendorRevenueResponse:
    summary = await RevenueService(db).get_vendor_revenue_summary(vendor_id, start_date, end_date)
    return VendorRevenueResponse.model_validate(summary)


@router.get("/vendors/{vendor_id}/revenue/history", response_model=VendorRevenueHistoryResponse)
async def get_vendor_revenue_history(
    vendor_id: UUID,
    start_date: date | None = Query(None),
    end_date: date | None = Query(None),
    limit: int = Query(100, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
) -> VendorRevenueHistoryResponse:
    """Per-payment breakdown behind the vendor revenue summary"""
    entries = await RevenueService(db).get_vendor_revenue_history(vendor_id, start_date, end_date, limit)
    return VendorRevenueHistoryResponse(
        vendor_id=vendor_id,
        history=[RevenueHistoryEntry.model_validate(e) for e in entries],
        total=len(entries),
    )
