"""Pytest configuration and fixtures"""

import json
import uuid
from typing import Any, AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

# Import models so their tables are registered with Base.metadata
import escrowpay.db.models  # noqa: F401
from escrowpay.api.payments import get_stripe_gateway
from escrowpay.api.settlement import get_refund_gateway
from escrowpay.db.database import Base, get_db
from escrowpay.db.models import Inquiry, InquiryStatus, Invoice, InvoiceType, Payment, PaymentRail, PaymentStatus
from escrowpay.main import app
from escrowpay.schemas.invoices import InvoiceCreate
from escrowpay.services.errors import ValidationError
from escrowpay.services.invoices import InvoiceService
from escrowpay.services.payment_intake import PaymentIntakeService

TEST_DATABASE_URL = "sqlite+aiosqlite://"


class FakeStripeGateway:
    """In-memory stand-in for StripeGateway"""

    def __init__(self):
        self.intents: dict[str, dict[str, Any]] = {}
        self.intents_by_key: dict[str, dict[str, Any]] = {}
        self.refunds: list[dict[str, Any]] = []
        self.create_calls = 0
        self.intent_error: Exception | None = None
        self.refund_error: Exception | None = None
        self.refund_status = "succeeded"

    async def create_payment_intent(self, amount, currency, metadata, idempotency_key, receipt_email=None):
        self.create_calls += 1
        if self.intent_error is not None:
            raise self.intent_error
        if idempotency_key in self.intents_by_key:
            return self.intents_by_key[idempotency_key]

        intent_id = f"pi_{uuid.uuid4().hex[:24]}"
        intent = {
            "id": intent_id,
            "client_secret": f"{intent_id}_secret_test",
            "status": "requires_payment_method",
            "amount": amount,
            "currency": currency,
            "metadata": metadata,
        }
        self.intents[intent_id] = intent
        self.intents_by_key[idempotency_key] = intent
        return intent

    async def retrieve_payment_intent(self, intent_id):
        return self.intents[intent_id]

    async def create_refund(self, payment_intent_id, amount, idempotency_key, metadata=None):
        if self.refund_error is not None:
            raise self.refund_error
        refund = {"id": f"re_{uuid.uuid4().hex[:24]}", "status": self.refund_status}
        self.refunds.append({
            "payment_intent": payment_intent_id,
            "amount": amount,
            "idempotency_key": idempotency_key,
            **refund,
        })
        return refund

    def construct_event(self, payload, sig_header):
        if sig_header != "valid-signature":
            raise ValidationError("Invalid signature")
        return json.loads(payload)


@pytest_asyncio.fixture
async def test_db() -> AsyncGenerator[AsyncSession, None]:
    """Async SQLite in-memory session with all tables created"""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    TestSessionLocal = async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False
    )

    async with TestSessionLocal() as session:
        yield session
        await session.rollback()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def fake_gateway() -> FakeStripeGateway:
    return FakeStripeGateway()


@pytest_asyncio.fixture
async def client(
    test_db: AsyncSession, fake_gateway: FakeStripeGateway
) -> AsyncGenerator[AsyncClient, None]:
    """Create a test client with overridden database and processor dependencies"""

    async def override_get_db():
        yield test_db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_stripe_gateway] = lambda: fake_gateway
    app.dependency_overrides[get_refund_gateway] = lambda: fake_gateway

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def vendor_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture
def make_inquiry(test_db: AsyncSession, vendor_id: uuid.UUID):
    """Factory for inquiries in a given status"""

    async def _make(status: InquiryStatus = InquiryStatus.ACCEPTED, vendor: uuid.UUID | None = None) -> Inquiry:
        inquiry = Inquiry(
            id=uuid.uuid4(),
            vendor_id=vendor or vendor_id,
            user_id=uuid.uuid4(),
            contact_name="Asha Mrema",
            contact_phone="+255712345678",
            event_type="wedding",
            status=status,
        )
        test_db.add(inquiry)
        await test_db.commit()
        return inquiry

    return _make


@pytest.fixture
def make_invoice(test_db: AsyncSession, make_inquiry):
    """Factory for published (PENDING) invoices"""

    async def _make(
        total: int = 100_000,
        inquiry_status: InquiryStatus = InquiryStatus.ACCEPTED,
        invoice_type: InvoiceType = InvoiceType.FULL_PAYMENT,
        publish: bool = True,
    ) -> Invoice:
        inquiry = await make_inquiry(inquiry_status)
        service = InvoiceService(test_db)
        invoice = await service.create_invoice(
            InvoiceCreate(
                vendor_id=inquiry.vendor_id,
                inquiry_id=inquiry.id,
                type=invoice_type,
                subtotal=total,
            )
        )
        if publish:
            invoice = await service.publish_invoice(invoice.id)
        return invoice

    return _make


@pytest.fixture
def pay_invoice(test_db: AsyncSession):
    """Factory for card payments that have already succeeded"""

    async def _pay(invoice: Invoice, amount: int, provider_ref: str | None = None) -> Payment:
        intake = PaymentIntakeService(test_db)
        payment = await intake.create_payment_attempt(
            invoice_id=invoice.id,
            amount=amount,
            currency=invoice.currency,
            method="card",
            rail=PaymentRail.CARD,
            provider="stripe",
            idempotency_key=f"checkout-{uuid.uuid4().hex}",
        )
        return await intake.resolve_outcome(
            payment.id,
            PaymentStatus.SUCCEEDED,
            provider_ref=provider_ref or f"pi_{uuid.uuid4().hex[:24]}",
        )

    return _pay


@pytest.fixture
def complete_work(test_db: AsyncSession):
    """Marks a paid invoice's work as completed so its escrow can be released"""

    async def _complete(invoice: Invoice) -> Invoice:
        return await InvoiceService(test_db).mark_work_completed(
            invoice.id, verified_by=uuid.uuid4(), notes="Event delivered"
        )

    return _complete


@pytest.fixture
def stripe_event():
    """Factory for Stripe event payloads"""

    def _event(
        event_type: str,
        obj: dict[str, Any],
        event_id: str | None = None,
    ) -> dict[str, Any]:
        return {
            "id": event_id or f"evt_{uuid.uuid4().hex[:24]}",
            "type": event_type,
            "created": 1735689600,
            "data": {"object": obj},
        }

    return _event
