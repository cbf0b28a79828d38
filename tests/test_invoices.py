"""Tests for invoice creation, publishing and the overdue sweep"""

import re
import uuid
from datetime import date, timedelta

import pytest

from escrowpay.config import settings
from escrowpay.db.models import (
    InquiryStatus,
    InvoiceStatus,
    InvoiceType,
    PaymentRail,
)
from escrowpay.schemas.invoices import InvoiceCreate
from escrowpay.services import invoices as invoices_module
from escrowpay.services.errors import (
    ConflictError,
    InquiryNotEligible,
    InvalidAmount,
    InvalidTransition,
    InvoiceNumberGenerationFailed,
    ValidationError,
)
from escrowpay.services.invoices import InvoiceService, generate_invoice_number
from escrowpay.services.payment_intake import PaymentIntakeService


def invoice_request(inquiry, **overrides) -> InvoiceCreate:
    data = {
        "vendor_id": inquiry.vendor_id,
        "inquiry_id": inquiry.id,
        "type": InvoiceType.DEPOSIT,
        "subtotal": 100_000,
    }
    data.update(overrides)
    return InvoiceCreate(**data)


class TestCreateInvoice:
    async def test_creates_draft_with_computed_total(self, test_db, make_inquiry):
        inquiry = await make_inquiry()

        invoice = await InvoiceService(test_db).create_invoice(
            invoice_request(inquiry, subtotal=100_000, tax_amount=18_000, discount_amount=8_000)
        )

        assert invoice.status == InvoiceStatus.DRAFT
        assert invoice.total_amount == 110_000
        assert invoice.paid_amount == 0
        assert invoice.remaining_amount == 110_000
        assert invoice.currency == settings.settlement_currency
        assert invoice.policy_version == settings.settlement_policy_version
        assert invoice.user_id == inquiry.user_id

    async def test_default_due_date(self, test_db, make_inquiry):
        inquiry = await make_inquiry()

        invoice = await InvoiceService(test_db).create_invoice(invoice_request(inquiry))

        assert invoice.due_date == invoice.issue_date + timedelta(days=settings.invoice_due_days)

    async def test_invoice_number_format(self, test_db, make_inquiry):
        inquiry = await make_inquiry()

        invoice = await InvoiceService(test_db).create_invoice(invoice_request(inquiry))

        assert re.fullmatch(r"INV-\d{6}-[0-9A-Z]{8}", invoice.invoice_number)

    @pytest.mark.parametrize("status", [InquiryStatus.PENDING, InquiryStatus.DECLINED, InquiryStatus.CLOSED])
    async def test_ineligible_inquiry_status(self, test_db, make_inquiry, status):
        inquiry = await make_inquiry(status)

        with pytest.raises(InquiryNotEligible):
            await InvoiceService(test_db).create_invoice(invoice_request(inquiry))

    async def test_vendor_mismatch(self, test_db, make_inquiry):
        inquiry = await make_inquiry()

        with pytest.raises(InquiryNotEligible):
            await InvoiceService(test_db).create_invoice(
                invoice_request(inquiry, vendor_id=uuid.uuid4())
            )

    async def test_negative_total_rejected(self, test_db, make_inquiry):
        inquiry = await make_inquiry()

        with pytest.raises(InvalidAmount):
            await InvoiceService(test_db).create_invoice(
                invoice_request(inquiry, subtotal=10_000, discount_amount=20_000)
            )

    async def test_zero_subtotal_rejected(self, test_db, make_inquiry):
        inquiry = await make_inquiry()

        with pytest.raises(InvalidAmount):
            await InvoiceService(test_db).create_invoice(invoice_request(inquiry, subtotal=0))

    async def test_fully_discounted_invoice_is_paid_on_publish(self, test_db, make_inquiry):
        inquiry = await make_inquiry()
        service = InvoiceService(test_db)
        draft = await service.create_invoice(
            invoice_request(inquiry, subtotal=50_000, discount_amount=50_000)
        )
        assert draft.total_amount == 0

        published = await service.publish_invoice(draft.id)

        assert published.status == InvoiceStatus.PAID
        assert published.paid_at is not None
        assert published.paid_amount == 0

    async def test_due_date_before_issue_date_rejected(self, test_db, make_inquiry):
        inquiry = await make_inquiry()

        with pytest.raises(ValidationError):
            await InvoiceService(test_db).create_invoice(
                invoice_request(inquiry, due_date=date.today() - timedelta(days=1))
            )

    async def test_second_draft_of_same_type_conflicts(self, test_db, make_inquiry):
        inquiry = await make_inquiry()
        service = InvoiceService(test_db)
        first = await service.create_invoice(invoice_request(inquiry))

        with pytest.raises(ConflictError) as exc_info:
            await service.create_invoice(invoice_request(inquiry))
        assert exc_info.value.existing_id == first.id

        # A different type is fine
        balance = await service.create_invoice(invoice_request(inquiry, type=InvoiceType.BALANCE))
        assert balance.id != first.id

    async def test_invoice_number_collision_is_retried(self, test_db, make_inquiry, monkeypatch):
        inquiry = await make_inquiry()
        service = InvoiceService(test_db)
        first = await service.create_invoice(invoice_request(inquiry))

        numbers = iter([first.invoice_number, "INV-202501-FRESH001"])
        monkeypatch.setattr(invoices_module, "generate_invoice_number", lambda today=None: next(numbers))

        second = await service.create_invoice(invoice_request(inquiry, type=InvoiceType.BALANCE))

        assert second.invoice_number == "INV-202501-FRESH001"

    async def test_invoice_number_generation_exhausted(self, test_db, make_inquiry, monkeypatch):
        inquiry = await make_inquiry()
        service = InvoiceService(test_db)
        first = await service.create_invoice(invoice_request(inquiry))

        monkeypatch.setattr(
            invoices_module, "generate_invoice_number", lambda today=None: first.invoice_number
        )

        with pytest.raises(InvoiceNumberGenerationFailed):
            await service.create_invoice(invoice_request(inquiry, type=InvoiceType.BALANCE))

    def test_generated_numbers_are_unique(self):
        numbers = {generate_invoice_number(date(2025, 1, 15)) for _ in range(500)}
        assert len(numbers) == 500
        assert all(n.startswith("INV-202501-") for n in numbers)


class TestInvoiceTransitions:
    async def test_publish_moves_draft_to_pending(self, make_invoice):
        invoice = await make_invoice()
        assert invoice.status == InvoiceStatus.PENDING

    async def test_publish_only_from_draft(self, test_db, make_invoice):
        invoice = await make_invoice()

        with pytest.raises(InvalidTransition):
            await InvoiceService(test_db).publish_invoice(invoice.id)

    async def test_publish_by_other_vendor_rejected(self, test_db, make_invoice):
        invoice = await make_invoice(publish=False)

        with pytest.raises(ValidationError):
            await InvoiceService(test_db).publish_invoice(invoice.id, vendor_id=uuid.uuid4())

    async def test_publish_bumps_version(self, test_db, make_invoice):
        invoice = await make_invoice(publish=False)
        version = invoice.version

        published = await InvoiceService(test_db).publish_invoice(invoice.id)

        assert published.version == version + 1

    async def test_mark_work_started_is_idempotent(self, test_db, make_invoice):
        invoice = await make_invoice()
        service = InvoiceService(test_db)

        first = await service.mark_work_started(invoice.id, vendor_id=invoice.vendor_id)
        started_at = first.work_started_at
        second = await service.mark_work_started(invoice.id)

        assert started_at is not None
        assert second.work_started_at.replace(tzinfo=None) == started_at.replace(tzinfo=None)
        assert second.work_started

    async def test_mark_work_completed_records_verification(self, test_db, make_invoice, pay_invoice):
        invoice = await make_invoice(total=100_000)
        await pay_invoice(invoice, 100_000)
        verifier = uuid.uuid4()

        completed = await InvoiceService(test_db).mark_work_completed(
            invoice.id, verified_by=verifier, notes="Catering delivered for 200 guests"
        )

        assert completed.work_completed
        assert completed.work_started
        assert completed.work_verified_by == verifier
        assert completed.work_completion_notes == "Catering delivered for 200 guests"

        again = await InvoiceService(test_db).mark_work_completed(invoice.id, verified_by=uuid.uuid4())
        assert again.work_verified_by == verifier

    async def test_work_cannot_complete_before_full_payment(self, test_db, make_invoice, pay_invoice):
        invoice = await make_invoice(total=100_000)
        await pay_invoice(invoice, 40_000)

        with pytest.raises(InvalidTransition):
            await InvoiceService(test_db).mark_work_completed(invoice.id, verified_by=uuid.uuid4())


class TestOverdueSweep:
    async def test_marks_past_due_unpaid_invoices(self, test_db, make_invoice):
        invoice = await make_invoice()
        later = invoice.due_date + timedelta(days=1)

        marked = await InvoiceService(test_db).mark_overdue_invoices(later)

        assert [i.id for i in marked] == [invoice.id]
        assert marked[0].status == InvoiceStatus.OVERDUE

    async def test_not_yet_due_is_left_alone(self, test_db, make_invoice):
        invoice = await make_invoice()

        marked = await InvoiceService(test_db).mark_overdue_invoices(invoice.due_date)

        assert marked == []

    async def test_invoice_with_payment_in_flight_is_skipped(self, test_db, make_invoice):
        invoice = await make_invoice()
        await PaymentIntakeService(test_db).create_payment_attempt(
            invoice_id=invoice.id,
            amount=10_000,
            currency=invoice.currency,
            method="mpesa",
            rail=PaymentRail.MOBILE_MONEY,
            provider="mobile_money",
            idempotency_key="sweep-test-key",
        )

        marked = await InvoiceService(test_db).mark_overdue_invoices(invoice.due_date + timedelta(days=3))

        assert marked == []

    async def test_paid_and_draft_invoices_are_skipped(self, test_db, make_invoice, pay_invoice):
        paid = await make_invoice()
        await pay_invoice(paid, paid.total_amount)
        draft = await make_invoice(publish=False, invoice_type=InvoiceType.BALANCE)

        marked = await InvoiceService(test_db).mark_overdue_invoices(date.today() + timedelta(days=30))

        assert paid.id not in {i.id for i in marked}
        assert draft.id not in {i.id for i in marked}
