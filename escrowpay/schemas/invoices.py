"""Pydantic schemas for invoice API"""

from datetime import date, datetime
from uuid import UUID

from pydantic import BaseModel, Field

from escrowpay.db.models import InvoiceStatus, InvoiceType


class InvoiceCreate(BaseModel):
    vendor_id: UUID
    inquiry_id: UUID
    type: InvoiceType
    subtotal: int = Field(..., description="Subtotal in minor units")
    tax_amount: int = 0
    discount_amount: int = 0
    currency: str | None = Field(None, min_length=3, max_length=3)
    due_date: date | None = None
    description: str | None = None
    notes: str | None = None


class VendorAction(BaseModel):
    vendor_id: UUID


class WorkCompletion(BaseModel):
    verified_by: UUID
    notes: str | None = None


class InvoiceResponse(BaseModel):
    id: UUID
    inquiry_id: UUID
    vendor_id: UUID
    user_id: UUID | None
    invoice_number: str
    type: InvoiceType
    status: InvoiceStatus
    subtotal: int
    tax_amount: int
    discount_amount: int
    total_amount: int
    paid_amount: int
    remaining_amount: int
    currency: str
    issue_date: date
    due_date: date
    paid_at: datetime | None
    description: str | None
    notes: str | None
    policy_version: str
    work_started_at: datetime | None
    work_completed_at: datetime | None
    work_verified_by: UUID | None
    work_completion_notes: str | None
    cancelled_at: datetime | None
    refund_settled: bool
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class InvoiceListResponse(BaseModel):
    invoices: list[InvoiceResponse]
    total: int


class OverdueSweepResponse(BaseModel):
    marked_overdue: list[UUID]
    count: int
