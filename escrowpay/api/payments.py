"""Checkout endpoints: card intents, mobile-money payments and status polling"""

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from escrowpay.config import settings
from escrowpay.db.database import get_db
from escrowpay.db.models import PaymentStatus
from escrowpay.schemas.payments import (
    CancelPaymentRequest,
    CardIntentRequest,
    CardIntentResponse,
    MobileMoneyPaymentRequest,
    PaymentListResponse,
    PaymentResponse,
    ReceiptResponse,
    ReceiptSubmit,
)
from escrowpay.services.card_rail import CardRailService
from escrowpay.services.mobile_money import MobileMoneyService
from escrowpay.services.payment_intake import PaymentIntakeService
from escrowpay.services.stripe_gateway import StripeGateway

logger = logging.getLogger(__name__)
router = APIRouter()


def get_stripe_gateway() -> StripeGateway:
    """Card processor client, unavailable while card payments are switched off"""
    if not settings.enable_payments:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Payment functionality is disabled",
        )
    return StripeGateway()


@router.post("/card-intents", response_model=CardIntentResponse, status_code=status.HTTP_201_CREATED)
async def create_card_intent(
    request: CardIntentRequest,
    db: AsyncSession = Depends(get_db),
    gateway: StripeGateway = Depends(get_stripe_gateway),
) -> CardIntentResponse:
    """Open a card payment and return the client secret for checkout"""
    payment, client_secret = await CardRailService(db, gateway).create_intent(
        invoice_id=request.invoice_id,
        amount=request.amount,
        currency=request.currency,
        idempotency_key=request.idempotency_key,
        customer_email=request.customer_email,
    )
    return CardIntentResponse(
        payment_id=payment.id,
        client_secret=client_secret,
        provider_ref=payment.provider_ref,
        amount=payment.amount,
        currency=payment.currency,
        status=payment.status,
    )


@router.post("/mobile-money", response_model=PaymentResponse, status_code=status.HTTP_201_CREATED)
async def create_mobile_money_payment(
    request: MobileMoneyPaymentRequest,
    db: AsyncSession = Depends(get_db),
) -> PaymentResponse:
    """Open a mobile-money payment; the customer then uploads a receipt"""
    payment = await MobileMoneyService(db).create_payment(
        invoice_id=request.invoice_id,
        amount=request.amount,
        currency=request.currency,
        method=request.method,
        idempotency_key=request.idempotency_key,
    )
    return PaymentResponse.model_validate(payment)


@router.post(
    "/{payment_id}/receipt",
    response_model=ReceiptResponse,
    status_code=status.HTTP_201_CREATED,
)
async def submit_receipt(
    payment_id: UUID,
    receipt_data: ReceiptSubmit,
    db: AsyncSession = Depends(get_db),
) -> ReceiptResponse:
    receipt = await MobileMoneyService(db).submit_receipt(
        payment_id,
        image_url=receipt_data.image_url,
        claimed_reference=receipt_data.claimed_reference,
        claimed_phone=receipt_data.claimed_phone,
        claimed_amount=receipt_data.claimed_amount,
        claimed_date=receipt_data.claimed_date,
    )
    return ReceiptResponse.model_validate(receipt)


@router.get("/", response_model=PaymentListResponse)
async def list_payments(
    invoice_id: UUID | None = Query(None),
    vendor_id: UUID | None = Query(None),
    payment_status: PaymentStatus | None = Query(None, alias="status"),
    limit: int = Query(50, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
) -> PaymentListResponse:
    payments = await PaymentIntakeService(db).list_payments(
        invoice_id=invoice_id, vendor_id=vendor_id, status=payment_status, limit=limit
    )
    return PaymentListResponse(
        payments=[PaymentResponse.model_validate(p) for p in payments],
        total=len(payments),
    )


@router.get("/{payment_id}", response_model=PaymentResponse)
async def get_payment_status(
    payment_id: UUID,
    db: AsyncSession = Depends(get_db),
) -> PaymentResponse:
    """Polled by checkout until the payment is resolved"""
    payment = await PaymentIntakeService(db).get_payment(payment_id)
    return PaymentResponse.model_validate(payment)


@router.post("/{payment_id}/cancel", response_model=PaymentResponse)
async def cancel_payment(
    payment_id: UUID,
    request: CancelPaymentRequest,
    db: AsyncSession = Depends(get_db),
) -> PaymentResponse:
    """Abandon an unresolved payment attempt"""
    payment = await PaymentIntakeService(db).cancel_payment_attempt(payment_id, reason=request.reason)
    return PaymentResponse.model_validate(payment)
