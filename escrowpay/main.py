"""Main FastAPI application for EscrowPay"""

import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from escrowpay.api import (
    admin,
    health,
    inquiries,
    invoices,
    payments,
    receipts,
    settlement,
    webhooks,
)
from escrowpay.config import settings
from escrowpay.db.database import close_db, init_db
from escrowpay.middleware.logging import LoggingMiddleware
from escrowpay.middleware.request_id import RequestIDMiddleware
from escrowpay.services.errors import (
    ConflictError,
    EscrowError,
    ExternalProviderError,
    InvariantViolation,
    InvoiceNumberGenerationFailed,
    NotFoundError,
    ValidationError,
)
from escrowpay.utils.logging import setup_logging

# Set up logging
setup_logging()
logger = logging.getLogger(__name__)

GENERIC_ERROR_MESSAGE = "Something went wrong, please try again or contact support."


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle"""
    logger.info("Starting EscrowPay application...")

    issues = settings.validate_configuration()
    for warning in issues["warnings"]:
        logger.warning(f"Configuration warning: {warning}")
    if issues["errors"]:
        for error in issues["errors"]:
            logger.error(f"Configuration error: {error}")
        raise RuntimeError("Invalid configuration: " + "; ".join(issues["errors"]))

    await init_db()
    logger.info("Application startup complete")

    yield

    logger.info("Shutting down EscrowPay application...")
    await close_db()
    logger.info("Application shutdown complete")


app = FastAPI(
    title="EscrowPay API",
    description="""
    ## Escrow payments and settlement for vendor bookings

    Customers pay vendor invoices by card or mobile money. The platform holds
    the funds and settles them on completion or cancellation.

    ### Key Features
    - **Invoices**: DRAFT -> PENDING -> PARTIALLY_PAID / PAID, with an overdue sweep
    - **Two rails**: Stripe card intents with webhooks, mobile money with manual receipt review
    - **Exactly-once payments**: idempotency keys and provider references are unique
    - **Cancellation policy**: staged refunds (100% / 85% / 42.5%) in integer minor units
    - **Escrow release**: vendor payouts and claw-backs, never rewriting history

    ### Workflow
    1. **Inquiry** -> vendor accepts
    2. **Invoice** -> created and published by the vendor
    3. **Payment** -> card intent or mobile-money receipt
    4. **Settlement** -> release to vendor, or cancel and refund
    """,
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs" if settings.app_debug else None,
    redoc_url="/redoc" if settings.app_debug else None,
)

# Configure middleware (order matters - last added runs first)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(LoggingMiddleware)
app.add_middleware(RequestIDMiddleware)


def _error_response(status_code: int, exc: EscrowError, **extra: Any) -> JSONResponse:
    content = {"detail": exc.user_message, "error_code": exc.error_code, **extra}
    return JSONResponse(status_code=status_code, content=content)


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError) -> JSONResponse:
    logger.info(f"Rejected {request.method} {request.url.path}: {exc}")
    return _error_response(400, exc)


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
    return _error_response(404, exc)


@app.exception_handler(ConflictError)
async def conflict_handler(request: Request, exc: ConflictError) -> JSONResponse:
    logger.info(f"Conflict on {request.method} {request.url.path}: {exc}")
    existing_id = str(exc.existing_id) if exc.existing_id else None
    return _error_response(409, exc, existing_id=existing_id)


@app.exception_handler(ExternalProviderError)
async def provider_error_handler(request: Request, exc: ExternalProviderError) -> JSONResponse:
    logger.warning(f"Provider failure on {request.url.path} (transient={exc.transient}): {exc}")
    return _error_response(502, exc)


@app.exception_handler(InvoiceNumberGenerationFailed)
@app.exception_handler(InvariantViolation)
async def internal_error_handler(request: Request, exc: EscrowError) -> JSONResponse:
    logger.critical(f"{type(exc).__name__} on {request.method} {request.url.path}: {exc}")
    return _error_response(500, exc)


@app.exception_handler(EscrowError)
async def escrow_error_handler(request: Request, exc: EscrowError) -> JSONResponse:
    logger.error(f"Unmapped engine error on {request.url.path}: {exc}")
    return _error_response(400, exc)


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle uncaught exceptions"""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": GENERIC_ERROR_MESSAGE, "error_code": "internal_error"},
    )


# API status endpoint
@app.get("/status", response_class=JSONResponse)
async def api_status() -> dict[str, Any]:
    """API status endpoint for programmatic access"""
    return {
        "name": "EscrowPay API",
        "version": "0.1.0",
        "status": "operational",
        "card_payments": settings.is_payments_configured(),
        "settlement_policy_version": settings.settlement_policy_version,
        "docs": "/docs" if settings.app_debug else None,
    }


# Include routers
app.include_router(health.router, prefix="/health", tags=["health"])
app.include_router(
    inquiries.router,
    prefix="/api/v1/inquiries",
    tags=["inquiries"]
)
app.include_router(
    invoices.router,
    prefix="/api/v1/invoices",
    tags=["invoices"]
)
app.include_router(
    payments.router,
    prefix="/api/v1/payments",
    tags=["payments"]
)
app.include_router(
    receipts.router,
    prefix="/api/v1/receipts",
    tags=["receipts"]
)
app.include_router(
    settlement.router,
    prefix="/api/v1/settlement",
    tags=["settlement"]
)
app.include_router(
    webhooks.router,
    prefix="/api/v1/webhooks",
    tags=["webhooks"]
)
app.include_router(
    admin.router,
    prefix="/api/v1/admin",
    tags=["admin"]
)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "escrowpay.main:app",
        host=settings.app_host,
        port=settings.app_port,
        reload=settings.app_debug,
        log_level=settings.log_level.lower(),
    )
