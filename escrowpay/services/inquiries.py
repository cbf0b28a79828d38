"""Inquiry intake and vendor responses"""

import logging
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from escrowpay.db.models import Inquiry, InquiryStatus, utcnow
from escrowpay.schemas.inquiries import InquiryCreate
from escrowpay.services.errors import InvalidTransition, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

# Statuses that mean the vendor has answered
RESPONDED_STATUSES = {InquiryStatus.RESPONDED, InquiryStatus.ACCEPTED, InquiryStatus.DECLINED}


class InquiryService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def create_inquiry(self, data: InquiryCreate) -> Inquiry:
        """Record a new inquiry from the booking flow"""
        inquiry = Inquiry(
            id=uuid4(),
            vendor_id=data.vendor_id,
            user_id=data.user_id,
            contact_name=data.contact_name,
            contact_email=data.contact_email,
            contact_phone=data.contact_phone,
            event_type=data.event_type,
            event_date=data.event_date,
            guest_count=data.guest_count,
            budget=data.budget,
            message=data.message,
            status=InquiryStatus.PENDING,
        )
        self.db.add(inquiry)
        await self.db.commit()

        logger.info(f"Created inquiry {inquiry.id} for vendor {inquiry.vendor_id}")
        return inquiry

    async def respond_to_inquiry(
        self,
        inquiry_id: UUID,
        vendor_id: UUID,
        status: InquiryStatus,
        response: str | None = None,
    ) -> Inquiry:
        """Apply a vendor's answer to an inquiry"""
        inquiry = await self.get_inquiry(inquiry_id)

        if inquiry.vendor_id != vendor_id:
            raise ValidationError("Only the inquiry's vendor can respond to it")
        if status == InquiryStatus.PENDING:
            raise InvalidTransition("An inquiry cannot be moved back to pending")
        if inquiry.status == InquiryStatus.CLOSED:
            raise InvalidTransition("Cannot update a closed inquiry")

        inquiry.status = status
        if response:
            inquiry.vendor_response = response
        if status in RESPONDED_STATUSES:
            if inquiry.responded_at is None:
                inquiry.responded_at = utcnow()
        else:
            # closed: responded_at only accompanies an answered status
            inquiry.responded_at = None

        await self.db.commit()

        logger.info(f"Inquiry {inquiry_id} moved to {status.value}")
        return inquiry

    async def get_inquiry(self, inquiry_id: UUID) -> Inquiry:
        inquiry = await self.db.get(Inquiry, inquiry_id)
        if inquiry is None:
            raise NotFoundError(f"Inquiry {inquiry_id} not found")
        return inquiry

    async def list_inquiries(
        self,
        vendor_id: UUID | None = None,
        user_id: UUID | None = None,
        status: InquiryStatus | None = None,
        limit: int = 50,
    ) -> list[Inquiry]:
        stmt = select(Inquiry).order_by(Inquiry.created_at.desc()).limit(limit)
        if vendor_id:
            stmt = stmt.where(Inquiry.vendor_id == vendor_id)
        if user_id:
            stmt = stmt.where(Inquiry.user_id == user_id)
        if status:
            stmt = stmt.where(Inquiry.status == status)

        result = await self.db.execute(stmt)
        return list(result.scalars().all())
