"""Invoice endpoints for the vendor portal"""

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from escrowpay.db.database import get_db
from escrowpay.db.models import InvoiceStatus
from escrowpay.schemas.invoices import (
    InvoiceCreate,
    InvoiceListResponse,
    InvoiceResponse,
    VendorAction,
    WorkCompletion,
)
from escrowpay.services.invoices import InvoiceService

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/", response_model=InvoiceResponse, status_code=status.HTTP_201_CREATED)
async def create_invoice(
    invoice_data: InvoiceCreate,
    db: AsyncSession = Depends(get_db),
) -> InvoiceResponse:
    """Create a DRAFT invoice for an accepted or responded inquiry"""
    invoice = await InvoiceService(db).create_invoice(invoice_data)
    return InvoiceResponse.model_validate(invoice)


@router.get("/", response_model=InvoiceListResponse)
async def list_invoices(
    vendor_id: UUID | None = Query(None),
    user_id: UUID | None = Query(None),
    inquiry_id: UUID | None = Query(None),
    invoice_status: InvoiceStatus | None = Query(None, alias="status"),
    limit: int = Query(50, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
) -> InvoiceListResponse:
    invoices = await InvoiceService(db).list_invoices(
        vendor_id=vendor_id,
        user_id=user_id,
        inquiry_id=inquiry_id,
        status=invoice_status,
        limit=limit,
    )
    return InvoiceListResponse(
        invoices=[InvoiceResponse.model_validate(i) for i in invoices],
        total=len(invoices),
    )


@router.get("/{invoice_id}", response_model=InvoiceResponse)
async def get_invoice(
    invoice_id: UUID,
    db: AsyncSession = Depends(get_db),
) -> InvoiceResponse:
    invoice = await InvoiceService(db).get_invoice(invoice_id)
    return InvoiceResponse.model_validate(invoice)


@router.post("/{invoice_id}/publish", response_model=InvoiceResponse)
async def publish_invoice(
    invoice_id: UUID,
    action: VendorAction,
    db: AsyncSession = Depends(get_db),
) -> InvoiceResponse:
    """Send a DRAFT invoice to the customer (DRAFT -> PENDING)"""
    invoice = await InvoiceService(db).publish_invoice(invoice_id, vendor_id=action.vendor_id)
    return InvoiceResponse.model_validate(invoice)


@router.post("/{invoice_id}/work-started", response_model=InvoiceResponse)
async def mark_work_started(
    invoice_id: UUID,
    action: VendorAction,
    db: AsyncSession = Depends(get_db),
) -> InvoiceResponse:
    """Vendor signals that work on the booking has begun"""
    invoice = await InvoiceService(db).mark_work_started(invoice_id, vendor_id=action.vendor_id)
    return InvoiceResponse.model_validate(invoice)


@router.post("/{invoice_id}/work-completed", response_model=InvoiceResponse)
async def mark_work_completed(
    invoice_id: UUID,
    completion: WorkCompletion,
    db: AsyncSession = Depends(get_db),
) -> InvoiceResponse:
    """Confirm the work is done so the vendor's share can be released"""
    invoice = await InvoiceService(db).mark_work_completed(
        invoice_id, verified_by=completion.verified_by, notes=completion.notes
    )
    return InvoiceResponse.model_validate(invoice)
