"""Pydantic schemas for inquiry API"""

from datetime import date, datetime
from uuid import UUID

from pydantic import BaseModel, EmailStr, Field

from escrowpay.db.models import InquiryStatus


class InquiryCreate(BaseModel):
    vendor_id: UUID
    user_id: UUID | None = None
    contact_name: str = Field(..., min_length=1, max_length=255)
    contact_email: EmailStr | None = None
    contact_phone: str | None = Field(None, pattern=r"^\+?[0-9]{9,15}$")
    event_type: str | None = Field(None, max_length=100)
    event_date: date | None = None
    guest_count: int | None = Field(None, ge=1)
    budget: int | None = Field(None, ge=0, description="Budget in minor units")
    message: str | None = None


class InquiryRespond(BaseModel):
    vendor_id: UUID
    status: InquiryStatus
    response: str | None = None


class InquiryResponse(BaseModel):
    id: UUID
    vendor_id: UUID
    user_id: UUID | None
    contact_name: str
    contact_email: str | None
    contact_phone: str | None
    event_type: str | None
    event_date: date | None
    guest_count: int | None
    budget: int | None
    message: str | None
    status: InquiryStatus
    vendor_response: str | None
    responded_at: datetime | None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class InquiryListResponse(BaseModel):
    inquiries: list[InquiryResponse]
    total: int
