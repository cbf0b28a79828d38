"""Manual verification queue for mobile-money receipts"""

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from escrowpay.db.database import get_db
from escrowpay.schemas.payments import (
    PaymentResponse,
    ReceiptQueueResponse,
    ReceiptResponse,
    ReceiptVerify,
)
from escrowpay.services.mobile_money import MobileMoneyService

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/pending", response_model=ReceiptQueueResponse)
async def list_pending_receipts(
    vendor_id: UUID | None = Query(None),
    limit: int = Query(100, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
) -> ReceiptQueueResponse:
    """Receipts awaiting review, oldest first"""
    receipts = await MobileMoneyService(db).list_pending_receipts(vendor_id=vendor_id, limit=limit)
    return ReceiptQueueResponse(
        receipts=[ReceiptResponse.model_validate(r) for r in receipts],
        count=len(receipts),
    )


@router.post("/{payment_id}/verify", response_model=PaymentResponse)
async def verify_receipt(
    payment_id: UUID,
    review: ReceiptVerify,
    db: AsyncSession = Depends(get_db),
) -> PaymentResponse:
    """Approve or reject the receipt attached to a payment"""
    payment = await MobileMoneyService(db).verify_receipt(
        payment_id,
        decision=review.decision,
        reviewer_id=review.reviewer_id,
        notes=review.notes,
    )
    return PaymentResponse.model_validate(payment)
