"""Inquiry endpoints for the booking flow and vendor responses"""

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from escrowpay.db.database import get_db
from escrowpay.db.models import InquiryStatus
from escrowpay.schemas.inquiries import (
    InquiryCreate,
    InquiryListResponse,
    InquiryRespond,
    InquiryResponse,
)
from escrowpay.services.inquiries import InquiryService

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/", response_model=InquiryResponse, status_code=status.HTTP_201_CREATED)
async def create_inquiry(
    inquiry_data: InquiryCreate,
    db: AsyncSession = Depends(get_db),
) -> InquiryResponse:
    """Create a new inquiry for a vendor"""
    inquiry = await InquiryService(db).create_inquiry(inquiry_data)
    return InquiryResponse.model_validate(inquiry)


@router.get("/", response_model=InquiryListResponse)
async def list_inquiries(
    vendor_id: UUID | None = Query(None),
    user_id: UUID | None = Query(None),
    inquiry_status: InquiryStatus | None = Query(None, alias="status"),
    limit: int = Query(50, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
) -> InquiryListResponse:
    inquiries = await InquiryService(db).list_inquiries(
        vendor_id=vendor_id, user_id=user_id, status=inquiry_status, limit=limit
    )
    return InquiryListResponse(
        inquiries=[InquiryResponse.model_validate(i) for i in inquiries],
        total=len(inquiries),
    )


@router.get("/{inquiry_id}", response_model=InquiryResponse)
async def get_inquiry(
    inquiry_id: UUID,
    db: AsyncSession = Depends(get_db),
) -> InquiryResponse:
    inquiry = await InquiryService(db).get_inquiry(inquiry_id)
    return InquiryResponse.model_validate(inquiry)


@router.post("/{inquiry_id}/respond", response_model=InquiryResponse)
async def respond_to_inquiry(
    inquiry_id: UUID,
    response_data: InquiryRespond,
    db: AsyncSession = Depends(get_db),
) -> InquiryResponse:
    """Vendor accepts, declines, answers or closes an inquiry"""
    inquiry = await InquiryService(db).respond_to_inquiry(
        inquiry_id,
        vendor_id=response_data.vendor_id,
        status=response_data.status,
        response=response_data.response,
    )
    return InquiryResponse.model_validate(inquiry)
