"""Settlement endpoints: cancellations, refunds and vendor payouts"""

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from escrowpay.config import settings
from escrowpay.db.database import get_db
from escrowpay.db.models import CancelledBy, PaymentStatus
from escrowpay.schemas.invoices import InvoiceResponse
from escrowpay.schemas.payments import PaymentResponse
from escrowpay.schemas.settlement import (
    CancellationPreview,
    CancellationRequest,
    CancellationResponse,
    ManualRefundConfirm,
    PayoutConfirm,
    PayoutFail,
    PayoutListResponse,
    PayoutResponse,
)
from escrowpay.services.settlement import SettlementService
from escrowpay.services.stripe_gateway import StripeGateway

logger = logging.getLogger(__name__)
router = APIRouter()


def get_refund_gateway() -> StripeGateway | None:
    """Card refunds go through Stripe when card payments are enabled"""
    return StripeGateway() if settings.enable_payments else None


@router.get("/invoices/{invoice_id}/cancellation/preview", response_model=CancellationPreview)
async def preview_cancellation(
    invoice_id: UUID,
    cancelled_by: CancelledBy = Query(...),
    work_started: bool | None = Query(None),
    db: AsyncSession = Depends(get_db),
) -> CancellationPreview:
    """Show the refund split a cancellation would produce, without applying it"""
    split = await SettlementService(db).compute_cancellation(invoice_id, cancelled_by, work_started)
    return CancellationPreview.model_validate(split)


@router.post(
    "/invoices/{invoice_id}/cancellation",
    response_model=CancellationResponse,
    status_code=status.HTTP_201_CREATED,
)
async def cancel_invoice(
    invoice_id: UUID,
    request: CancellationRequest,
    db: AsyncSession = Depends(get_db),
    gateway: StripeGateway | None = Depends(get_refund_gateway),
) -> CancellationResponse:
    """Cancel an invoice and settle its escrow; repeatable with the same event token"""
    cancellation = await SettlementService(db, gateway).execute_cancellation(
        invoice_id,
        cancelled_by=request.cancelled_by,
        event_token=request.event_token,
        work_started=request.work_started,
        reason=request.reason,
    )
    return CancellationResponse.model_validate(cancellation)


@router.get("/invoices/{invoice_id}/cancellation", response_model=CancellationResponse)
async def get_cancellation(
    invoice_id: UUID,
    db: AsyncSession = Depends(get_db),
) -> CancellationResponse:
    cancellation = await SettlementService(db).get_cancellation(invoice_id)
    return CancellationResponse.model_validate(cancellation)


@router.post("/invoices/{invoice_id}/refunds/retry", response_model=InvoiceResponse)
async def retry_refunds(
    invoice_id: UUID,
    db: AsyncSession = Depends(get_db),
    gateway: StripeGateway | None = Depends(get_refund_gateway),
) -> InvoiceResponse:
    invoice = await SettlementService(db, gateway).retry_refunds(invoice_id)
    return InvoiceResponse.model_validate(invoice)


@router.post("/payments/{payment_id}/refund-confirmation", response_model=PaymentResponse)
async def confirm_manual_refund(
    payment_id: UUID,
    request: ManualRefundConfirm,
    db: AsyncSession = Depends(get_db),
) -> PaymentResponse:
    """Record a mobile-money refund sent by an operator"""
    payment = await SettlementService(db).confirm_manual_refund(payment_id, request.reference)
    return PaymentResponse.model_validate(payment)


@router.post(
    "/invoices/{invoice_id}/release",
    response_model=PayoutResponse,
    status_code=status.HTTP_201_CREATED,
)
async def release_to_vendor(
    invoice_id: UUID,
    db: AsyncSession = Depends(get_db),
) -> PayoutResponse:
    """Release the vendor's share of a settled invoice"""
    payout = await SettlementService(db).release_to_vendor(invoice_id)
    return PayoutResponse.model_validate(payout)


@router.get("/payouts", response_model=PayoutListResponse)
async def list_payouts(
    vendor_id: UUID | None = Query(None),
    invoice_id: UUID | None = Query(None),
    payout_status: PaymentStatus | None = Query(None, alias="status"),
    limit: int = Query(50, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
) -> PayoutListResponse:
    payouts = await SettlementService(db).list_payouts(
        vendor_id=vendor_id, invoice_id=invoice_id, status=payout_status, limit=limit
    )
    return PayoutListResponse(
        payouts=[PayoutResponse.model_validate(p) for p in payouts],
        total=len(payouts),
    )


@router.post("/payouts/{payout_id}/confirm", response_model=PayoutResponse)
async def confirm_payout(
    payout_id: UUID,
    request: PayoutConfirm,
    db: AsyncSession = Depends(get_db),
) -> PayoutResponse:
    payout = await SettlementService(db).confirm_payout(payout_id, request.provider_ref)
    return PayoutResponse.model_validate(payout)


@router.post("/payouts/{payout_id}/fail", response_model=PayoutResponse)
async def fail_payout(
    payout_id: UUID,
    request: PayoutFail,
    db: AsyncSession = Depends(get_db),
) -> PayoutResponse:
    payout = await SettlementService(db).fail_payout(payout_id, request.reason)
    return PayoutResponse.model_validate(payout)
