"""Pydantic schemas for cancellation, payout and revenue API"""

from datetime import date, datetime
from uuid import UUID

from pydantic import BaseModel, Field

from escrowpay.db.models import CancellationStage, CancelledBy, PaymentRail, PaymentStatus


class CancellationRequest(BaseModel):
    cancelled_by: CancelledBy
    event_token: str = Field(..., min_length=8, max_length=128)
    work_started: bool | None = None
    reason: str | None = None


class CancellationPreview(BaseModel):
    stage: CancellationStage
    paid_total: int
    customer_refund: int
    vendor_retained: int
    platform_retained: int

    model_config = {"from_attributes": True}


class CancellationResponse(BaseModel):
    id: UUID
    invoice_id: UUID
    event_token: str
    cancelled_by: CancelledBy
    stage: CancellationStage
    policy_version: str
    reason: str | None
    paid_total: int
    customer_refund: int
    vendor_retained: int
    platform_retained: int
    clawback_amount: int
    created_at: datetime

    model_config = {"from_attributes": True}


class ManualRefundConfirm(BaseModel):
    reference: str = Field(..., min_length=1, max_length=255)


class PayoutConfirm(BaseModel):
    provider_ref: str = Field(..., min_length=1, max_length=255)


class PayoutFail(BaseModel):
    reason: str = Field(..., min_length=1)


class PayoutResponse(BaseModel):
    id: UUID
    vendor_id: UUID
    invoice_id: UUID | None
    amount: int
    currency: str
    method: str
    status: PaymentStatus
    provider: str
    provider_ref: str | None
    processed_at: datetime | None
    description: str | None
    failure_reason: str | None
    created_at: datetime

    model_config = {"from_attributes": True}


class PayoutListResponse(BaseModel):
    payouts: list[PayoutResponse]
    total: int


class VendorRevenueResponse(BaseModel):
    vendor_id: UUID
    start_date: date | None
    end_date: date | None
    total_revenue: int
    total_platform_fees: int
    total_payments: int
    paid_out: int
    pending_payout: int
    payment_count: int

    model_config = {"from_attributes": True}


class RevenueHistoryEntry(BaseModel):
    payment_id: UUID
    invoice_id: UUID
    invoice_number: str
    inquiry_id: UUID
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

    model_config = {"from_attributes": True}


class VendorRevenueHistoryResponse(BaseModel):
    vendor_id: UUID
    history: list[RevenueHistoryEntry]
    total: int
