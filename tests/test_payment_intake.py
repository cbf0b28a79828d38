"""Tests for payment attempts, outcome resolution and idempotency"""

import uuid
from datetime import timedelta

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm.exc import StaleDataError

from escrowpay.db.database import Base
from escrowpay.db.models import (
    Inquiry,
    InquiryStatus,
    Invoice,
    InvoiceStatus,
    InvoiceType,
    PaymentRail,
    PaymentStatus,
)
from escrowpay.schemas.invoices import InvoiceCreate
from escrowpay.services import payment_intake as intake_module
from escrowpay.services.errors import (
    ConflictError,
    InvalidAmount,
    InvalidTransition,
    InvariantViolation,
    InvoiceNotPayable,
    ValidationError,
)
from escrowpay.services.invoices import InvoiceService, load_invoice_for_update
from escrowpay.services.payment_intake import PaymentIntakeService


async def open_card_attempt(db, invoice, amount, key=None):
    return await PaymentIntakeService(db).create_payment_attempt(
        invoice_id=invoice.id,
        amount=amount,
        currency=invoice.currency,
        method="card",
        rail=PaymentRail.CARD,
        provider="stripe",
        idempotency_key=key or f"key-{uuid.uuid4().hex}",
    )


class TestCreatePaymentAttempt:
    async def test_opens_pending_payment(self, test_db, make_invoice):
        invoice = await make_invoice()

        payment = await open_card_attempt(test_db, invoice, 60_000)

        assert payment.status == PaymentStatus.PENDING
        assert payment.invoice_id == invoice.id
        assert payment.vendor_id == invoice.vendor_id
        assert payment.inquiry_id == invoice.inquiry_id
        assert payment.currency == invoice.currency

    async def test_same_idempotency_key_returns_same_payment(self, test_db, make_invoice):
        invoice = await make_invoice()

        first = await open_card_attempt(test_db, invoice, 60_000, key="double-click-1")
        second = await open_card_attempt(test_db, invoice, 60_000, key="double-click-1")

        assert first.id == second.id
        payments = await PaymentIntakeService(test_db).list_payments(invoice_id=invoice.id)
        assert len(payments) == 1

    async def test_amount_above_remaining_rejected(self, test_db, make_invoice):
        invoice = await make_invoice(total=100_000)

        with pytest.raises(InvoiceNotPayable):
            await open_card_attempt(test_db, invoice, 100_001)

    async def test_in_flight_attempts_reserve_the_remaining_amount(self, test_db, make_invoice):
        invoice = await make_invoice(total=100_000)
        await open_card_attempt(test_db, invoice, 70_000)

        with pytest.raises(InvoiceNotPayable):
            await open_card_attempt(test_db, invoice, 40_000)

        payment = await open_card_attempt(test_db, invoice, 30_000)
        assert payment.amount == 30_000

    async def test_non_positive_amount_rejected(self, test_db, make_invoice):
        invoice = await make_invoice()

        with pytest.raises(InvalidAmount):
            await open_card_attempt(test_db, invoice, 0)

    async def test_draft_invoice_not_payable(self, test_db, make_invoice):
        invoice = await make_invoice(publish=False)

        with pytest.raises(InvoiceNotPayable):
            await open_card_attempt(test_db, invoice, 10_000)

    async def test_currency_must_match_invoice(self, test_db, make_invoice):
        invoice = await make_invoice()

        with pytest.raises(ValidationError):
            await PaymentIntakeService(test_db).create_payment_attempt(
                invoice_id=invoice.id,
                amount=10_000,
                currency="USD",
                method="card",
                rail=PaymentRail.CARD,
                provider="stripe",
                idempotency_key="currency-test",
            )

    async def test_overdue_invoice_stays_payable(self, test_db, make_invoice, pay_invoice):
        invoice = await make_invoice(total=100_000)
        await InvoiceService(test_db).mark_overdue_invoices(invoice.due_date + timedelta(days=1))

        await pay_invoice(invoice, 40_000)

        refreshed = await test_db.get(Invoice, invoice.id)
        assert refreshed.status == InvoiceStatus.PARTIALLY_PAID


class TestResolveOutcome:
    async def test_two_payments_fill_the_invoice(self, test_db, make_invoice, pay_invoice):
        invoice = await make_invoice(total=100_000)

        await pay_invoice(invoice, 60_000)
        partially = await test_db.get(Invoice, invoice.id)
        assert partially.status == InvoiceStatus.PARTIALLY_PAID
        assert partially.paid_amount == 60_000

        await pay_invoice(invoice, 40_000)
        paid = await test_db.get(Invoice, invoice.id)
        assert paid.status == InvoiceStatus.PAID
        assert paid.paid_amount == 100_000
        assert paid.paid_at is not None

    async def test_success_splits_platform_fee(self, test_db, make_invoice, pay_invoice):
        invoice = await make_invoice()

        payment = await pay_invoice(invoice, 60_000)

        assert payment.status == PaymentStatus.SUCCEEDED
        assert payment.platform_fee_amount == 9_000
        assert payment.vendor_amount == 51_000
        assert payment.platform_fee_amount + payment.vendor_amount == payment.amount
        assert payment.processed_at is not None

    async def test_duplicate_resolution_is_not_double_counted(self, test_db, make_invoice):
        invoice = await make_invoice(total=100_000)
        payment = await open_card_attempt(test_db, invoice, 60_000)
        intake = PaymentIntakeService(test_db)

        await intake.resolve_outcome(payment.id, PaymentStatus.SUCCEEDED, provider_ref="pi_dup")
        again = await intake.resolve_outcome(payment.id, PaymentStatus.SUCCEEDED, provider_ref="pi_dup")

        refreshed = await test_db.get(Invoice, invoice.id)
        assert again.status == PaymentStatus.SUCCEEDED
        assert refreshed.paid_amount == 60_000

    async def test_late_failure_does_not_undo_success(self, test_db, make_invoice):
        invoice = await make_invoice()
        payment = await open_card_attempt(test_db, invoice, 50_000)
        intake = PaymentIntakeService(test_db)

        await intake.resolve_outcome(payment.id, PaymentStatus.SUCCEEDED, provider_ref="pi_order")
        result = await intake.resolve_outcome(
            payment.id, PaymentStatus.FAILED, provider_ref="pi_order", failure_reason="late"
        )

        assert result.status == PaymentStatus.SUCCEEDED
        assert (await test_db.get(Invoice, invoice.id)).paid_amount == 50_000

    async def test_failure_leaves_paid_amount_unchanged(self, test_db, make_invoice):
        invoice = await make_invoice()
        payment = await open_card_attempt(test_db, invoice, 50_000)

        failed = await PaymentIntakeService(test_db).resolve_outcome(
            payment.id, PaymentStatus.FAILED, provider_ref="pi_fail", failure_reason="card_declined"
        )

        assert failed.status == PaymentStatus.FAILED
        assert failed.failure_reason == "card_declined"
        refreshed = await test_db.get(Invoice, invoice.id)
        assert refreshed.paid_amount == 0
        assert refreshed.status == InvoiceStatus.PENDING

    async def test_failed_attempt_frees_its_reservation(self, test_db, make_invoice):
        invoice = await make_invoice(total=100_000)
        payment = await open_card_attempt(test_db, invoice, 100_000)
        await PaymentIntakeService(test_db).resolve_outcome(
            payment.id, PaymentStatus.FAILED, provider_ref="pi_free"
        )

        retry = await open_card_attempt(test_db, invoice, 100_000)
        assert retry.status == PaymentStatus.PENDING

    async def test_capture_after_failure_credits_payable_invoice(self, test_db, make_invoice):
        invoice = await make_invoice(total=100_000)
        payment = await open_card_attempt(test_db, invoice, 40_000)
        intake = PaymentIntakeService(test_db)
        await intake.resolve_outcome(
            payment.id, PaymentStatus.FAILED, provider_ref="pi_retry", failure_reason="card_declined"
        )

        captured = await intake.resolve_outcome(payment.id, PaymentStatus.SUCCEEDED, provider_ref="pi_retry")

        assert captured.status == PaymentStatus.SUCCEEDED
        assert captured.failure_reason is None
        assert captured.refund_amount == 0
        refreshed = await test_db.get(Invoice, invoice.id)
        assert refreshed.paid_amount == 40_000
        assert refreshed.status == InvoiceStatus.PARTIALLY_PAID

    async def test_capture_after_failure_on_settled_invoice_is_refunded(
        self, test_db, make_invoice, pay_invoice
    ):
        invoice = await make_invoice(total=100_000)
        stale = await open_card_attempt(test_db, invoice, 100_000)
        intake = PaymentIntakeService(test_db)
        await intake.resolve_outcome(stale.id, PaymentStatus.FAILED, provider_ref="pi_stale")
        await pay_invoice(invoice, 100_000)

        captured = await intake.resolve_outcome(stale.id, PaymentStatus.SUCCEEDED, provider_ref="pi_stale")

        assert captured.status == PaymentStatus.SUCCEEDED
        assert captured.refund_amount == 100_000
        assert captured.refund_status == PaymentStatus.PENDING
        refreshed = await test_db.get(Invoice, invoice.id, populate_existing=True)
        assert refreshed.paid_amount == 100_000
        assert refreshed.status == InvoiceStatus.PAID
        assert not refreshed.refund_settled

    async def test_provider_ref_owned_by_another_payment(self, test_db, make_invoice, pay_invoice):
        invoice = await make_invoice()
        await pay_invoice(invoice, 10_000, provider_ref="pi_shared")
        other = await open_card_attempt(test_db, invoice, 10_000)

        with pytest.raises(ConflictError) as exc_info:
            await PaymentIntakeService(test_db).resolve_outcome(
                other.id, PaymentStatus.SUCCEEDED, provider_ref="pi_shared"
            )
        assert exc_info.value.existing_id is not None
        assert (await test_db.get(Invoice, invoice.id)).paid_amount == 10_000

    async def test_only_terminal_outcomes_accepted(self, test_db, make_invoice):
        invoice = await make_invoice()
        payment = await open_card_attempt(test_db, invoice, 10_000)

        with pytest.raises(ValidationError):
            await PaymentIntakeService(test_db).resolve_outcome(
                payment.id, PaymentStatus.PROCESSING, provider_ref=None
            )

    async def test_overpayment_is_an_invariant_violation(self, test_db, make_invoice):
        invoice = await make_invoice(total=100_000)
        payment = await open_card_attempt(test_db, invoice, 60_000)

        # Simulate a corrupted paid_amount written behind the engine's back
        locked = await load_invoice_for_update(test_db, invoice.id)
        locked.paid_amount = 50_000
        locked.status = InvoiceStatus.PARTIALLY_PAID
        await test_db.commit()

        with pytest.raises(InvariantViolation):
            await PaymentIntakeService(test_db).resolve_outcome(
                payment.id, PaymentStatus.SUCCEEDED, provider_ref="pi_over"
            )

        refreshed = await load_invoice_for_update(test_db, invoice.id)
        assert refreshed.paid_amount == 50_000
        reloaded = await PaymentIntakeService(test_db).get_payment(payment.id)
        await test_db.refresh(reloaded)
        assert reloaded.status == PaymentStatus.PENDING


class TestPaymentTransitions:
    async def test_advance_to_processing(self, test_db, make_invoice):
        invoice = await make_invoice()
        payment = await open_card_attempt(test_db, invoice, 10_000)
        intake = PaymentIntakeService(test_db)

        processing = await intake.advance_to_processing(payment.id)
        assert processing.status == PaymentStatus.PROCESSING

        await intake.resolve_outcome(payment.id, PaymentStatus.SUCCEEDED, provider_ref="pi_adv")
        with pytest.raises(InvalidTransition):
            await intake.advance_to_processing(payment.id)

    async def test_cancel_attempt(self, test_db, make_invoice):
        invoice = await make_invoice()
        payment = await open_card_attempt(test_db, invoice, 10_000)

        cancelled = await PaymentIntakeService(test_db).cancel_payment_attempt(payment.id, "abandoned")

        assert cancelled.status == PaymentStatus.CANCELLED
        assert cancelled.failure_reason == "abandoned"

    async def test_cannot_cancel_succeeded_payment(self, test_db, make_invoice, pay_invoice):
        invoice = await make_invoice()
        payment = await pay_invoice(invoice, 10_000)

        with pytest.raises(InvalidTransition):
            await PaymentIntakeService(test_db).cancel_payment_attempt(payment.id)

    async def test_refund_processing_requires_owed_refund(self, test_db, make_invoice, pay_invoice):
        invoice = await make_invoice()
        payment = await pay_invoice(invoice, 10_000)
        intake = PaymentIntakeService(test_db)

        with pytest.raises(InvalidTransition):
            intake.mark_refund_processing(payment, "re_unexpected")

        intake.stage_refund(payment, 4_000)
        intake.mark_refund_processing(payment, "re_pending")
        await test_db.commit()

        assert payment.refund_status == PaymentStatus.PROCESSING
        assert payment.refund_ref == "re_pending"

    async def test_attach_provider_ref_conflict(self, test_db, make_invoice):
        invoice = await make_invoice()
        first = await open_card_attempt(test_db, invoice, 10_000)
        second = await open_card_attempt(test_db, invoice, 10_000)
        intake = PaymentIntakeService(test_db)

        await intake.attach_provider_ref(first.id, "pi_attach")
        with pytest.raises(ConflictError):
            await intake.attach_provider_ref(second.id, "pi_attach")


@pytest_asyncio.fixture
async def file_sessions(tmp_path):
    """Two independent sessions on one SQLite file, standing in for two workers"""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'concurrency.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with factory() as first, factory() as second:
        yield first, second

    await engine.dispose()


async def _paid_invoice_setup(db, total=100_000):
    inquiry = Inquiry(
        id=uuid.uuid4(),
        vendor_id=uuid.uuid4(),
        contact_name="Baraka Mushi",
        status=InquiryStatus.ACCEPTED,
    )
    db.add(inquiry)
    await db.commit()
    service = InvoiceService(db)
    invoice = await service.create_invoice(
        InvoiceCreate(
            vendor_id=inquiry.vendor_id,
            inquiry_id=inquiry.id,
            type=InvoiceType.FULL_PAYMENT,
            subtotal=total,
        )
    )
    return await service.publish_invoice(invoice.id)


class TestConcurrentResolution:
    async def test_stale_invoice_write_is_detected(self, file_sessions):
        first, second = file_sessions
        invoice = await _paid_invoice_setup(first)

        stale = await second.get(Invoice, invoice.id)
        fresh = await load_invoice_for_update(first, invoice.id)
        fresh.paid_amount = 10_000
        fresh.status = InvoiceStatus.PARTIALLY_PAID
        await first.commit()

        stale.paid_amount = 20_000
        with pytest.raises(StaleDataError):
            await second.commit()
        await second.rollback()

    async def test_concurrent_successes_do_not_lose_an_increment(self, file_sessions, monkeypatch):
        first, second = file_sessions
        invoice = await _paid_invoice_setup(first)
        payment_a = await open_card_attempt(first, invoice, 60_000)
        payment_b = await open_card_attempt(first, invoice, 40_000)

        original_load = intake_module.load_invoice_for_update
        interleaved = False

        async def load_then_race(db, invoice_id):
            nonlocal interleaved
            loaded = await original_load(db, invoice_id)
            if db is first and not interleaved:
                interleaved = True
                # Another worker resolves payment B after we read the invoice
                await PaymentIntakeService(second).resolve_outcome(
                    payment_b.id, PaymentStatus.SUCCEEDED, provider_ref="pi_worker_b"
                )
            return loaded

        monkeypatch.setattr(intake_module, "load_invoice_for_update", load_then_race)

        await PaymentIntakeService(first).resolve_outcome(
            payment_a.id, PaymentStatus.SUCCEEDED, provider_ref="pi_worker_a"
        )

        final = await load_invoice_for_update(first, invoice.id)
        assert interleaved
        assert final.paid_amount == 100_000
        assert final.status == InvoiceStatus.PAID
