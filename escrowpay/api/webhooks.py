"""Webhook endpoints for the card processor"""

import logging
from typing import Any

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from escrowpay.api.payments import get_stripe_gateway
from escrowpay.db.database import get_db
from escrowpay.services.card_rail import CardRailService
from escrowpay.services.stripe_gateway import StripeGateway

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    gateway: StripeGateway = Depends(get_stripe_gateway),
) -> dict[str, Any]:
    """Handle Stripe webhook events"""
    # Signature verification needs the raw body
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")

    result = await CardRailService(db, gateway).handle_webhook(payload, sig_header)
    logger.info(f"Stripe webhook {result['event_type']}: {result['status']}")

    return {
        "message": "Webhook processed successfully",
        "event_type": result["event_type"],
        "status": result["status"],
    }
