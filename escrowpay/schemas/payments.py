"""Pydantic schemas for payment, receipt and payout API"""

from datetime import date, datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, Field

from escrowpay.db.models import PaymentRail, PaymentStatus, ReceiptStatus


class CardIntentRequest(BaseModel):
    invoice_id: UUID
    amount: int = Field(..., gt=0, description="Amount in minor units")
    currency: str = Field(..., min_length=3, max_length=3)
    idempotency_key: str = Field(..., min_length=8, max_length=128)
    customer_email: str | None = None


class CardIntentResponse(BaseModel):
    payment_id: UUID
    client_secret: str | None
    provider_ref: str | None
    amount: int
    currency: str
    status: PaymentStatus


class MobileMoneyPaymentRequest(BaseModel):
    invoice_id: UUID
    amount: int = Field(..., gt=0, description="Amount in minor units")
    currency: str = Field(..., min_length=3, max_length=3)
    method: Literal["mpesa", "tigopesa", "airtelmoney", "halopesa"]
    idempotency_key: str = Field(..., min_length=8, max_length=128)


class ReceiptSubmit(BaseModel):
    image_url: str = Field(..., min_length=1)
    claimed_reference: str = Field(..., min_length=1, max_length=100)
    claimed_phone: str = Field(..., pattern=r"^\+?[0-9]{9,15}$")
    claimed_amount: int = Field(..., gt=0)
    claimed_date: date | None = None


class ReceiptVerify(BaseModel):
    decision: Literal["approve", "reject"]
    reviewer_id: UUID
    notes: str | None = None


class CancelPaymentRequest(BaseModel):
    reason: str | None = None


class PaymentResponse(BaseModel):
    id: UUID
    invoice_id: UUID
    inquiry_id: UUID
    user_id: UUID | None
    vendor_id: UUID
    amount: int
    currency: str
    method: str
    rail: PaymentRail
    status: PaymentStatus
    provider: str
    provider_ref: str | None
    processed_at: datetime | None
    failure_reason: str | None
    platform_fee_amount: int | None
    vendor_amount: int | None
    transfer_status: str | None
    transferred_at: datetime | None
    refund_amount: int
    refund_status: PaymentStatus | None
    refunded_at: datetime | None
    created_at: datetime

    model_config = {"from_attributes": True}


class PaymentListResponse(BaseModel):
    payments: list[PaymentResponse]
    total: int


class ReceiptResponse(BaseModel):
    id: UUID
    payment_id: UUID
    image_url: str
    claimed_reference_number: str
    claimed_phone: str
    claimed_amount: int
    claimed_date: date | None
    status: ReceiptStatus
    reviewer_id: UUID | None
    reviewed_at: datetime | None
    review_notes: str | None
    created_at: datetime

    model_config = {"from_attributes": True}


class ReceiptQueueResponse(BaseModel):
    receipts: list[ReceiptResponse]
    count: int
