"""Database models for the escrow payment and settlement engine"""

import enum
import uuid
from datetime import date, datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from escrowpay.db.database import Base

JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TimestampMixin:
    """Mixin for adding timestamp columns to models"""
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
        nullable=False
    )


class InquiryStatus(enum.Enum):
    """Inquiry lifecycle status"""
    PENDING = "pending"
    RESPONDED = "responded"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    CLOSED = "closed"


class InvoiceType(enum.Enum):
    """What an invoice bills for"""
    DEPOSIT = "DEPOSIT"
    FULL_PAYMENT = "FULL_PAYMENT"
    BALANCE = "BALANCE"
    ADDITIONAL_SERVICE = "ADDITIONAL_SERVICE"
    REFUND = "REFUND"


class InvoiceStatus(enum.Enum):
    """Invoice payment status"""
    DRAFT = "DRAFT"
    PENDING = "PENDING"
    PAID = "PAID"
    PARTIALLY_PAID = "PARTIALLY_PAID"
    OVERDUE = "OVERDUE"
    CANCELLED = "CANCELLED"


class PaymentStatus(enum.Enum):
    """Status shared by payments, refunds and payouts"""
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"
    PARTIALLY_REFUNDED = "PARTIALLY_REFUNDED"


class PaymentRail(enum.Enum):
    """Payment channel with its own confirmation mechanics"""
    CARD = "card"
    MOBILE_MONEY = "mobile_money"


class ReceiptStatus(enum.Enum):
    """Manual verification state of mobile-money evidence"""
    PENDING = "pending"
    VERIFIED = "verified"
    REJECTED = "rejected"


class CancelledBy(enum.Enum):
    CUSTOMER = "customer"
    VENDOR = "vendor"


class CancellationStage(enum.Enum):
    """How far the transaction had progressed when it was cancelled"""
    PRE_CONFIRMATION = "pre_confirmation"
    POST_CONFIRMATION = "post_confirmation"
    POST_WORK_START = "post_work_start"
    VENDOR_CANCELLED = "vendor_cancelled"


class Inquiry(Base, TimestampMixin):
    """A customer's request for a vendor's services, pre-contract"""
    __tablename__ = "inquiries"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    vendor_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    user_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)

    # Contact details
    contact_name: Mapped[str] = mapped_column(String(255), nullable=False)
    contact_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    contact_phone: Mapped[str | None] = mapped_column(String(30), nullable=True)

    # Event details
    event_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    event_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    guest_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    budget: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)

    status: Mapped[InquiryStatus] = mapped_column(
        SQLEnum(InquiryStatus),
        default=InquiryStatus.PENDING,
        nullable=False
    )
    vendor_response: Mapped[str | None] = mapped_column(Text, nullable=True)
    responded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_inquiry_vendor", "vendor_id"),
        Index("idx_inquiry_user", "user_id"),
        Index("idx_inquiry_status", "status"),
    )


class FeePolicy(Base, TimestampMixin):
    """Versioned fee and cancellation parameters, frozen once written"""
    __tablename__ = "fee_policies"

    version: Mapped[str] = mapped_column(String(32), primary_key=True)
    platform_fee_bps: Mapped[int] = mapped_column(Integer, nullable=False)
    work_initiation_fee_bps: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (
        CheckConstraint("platform_fee_bps >= 0 AND platform_fee_bps <= 10000", name="check_platform_fee_bps"),
        CheckConstraint(
            "work_initiation_fee_bps >= 0 AND platform_fee_bps + work_initiation_fee_bps <= 10000",
            name="check_work_initiation_fee_bps",
        ),
    )


class Invoice(Base, TimestampMixin):
    """A billable amount tied to one inquiry"""
    __tablename__ = "invoices"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    inquiry_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("inquiries.id"),
        nullable=False
    )
    vendor_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    user_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    invoice_number: Mapped[str] = mapped_column(String(32), nullable=False)

    type: Mapped[InvoiceType] = mapped_column(SQLEnum(InvoiceType), nullable=False)
    status: Mapped[InvoiceStatus] = mapped_column(
        SQLEnum(InvoiceStatus),
        default=InvoiceStatus.DRAFT,
        nullable=False
    )

    # Amounts in minor units
    subtotal: Mapped[int] = mapped_column(BigInteger, nullable=False)
    tax_amount: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    discount_amount: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    total_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    paid_amount: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)

    issue_date: Mapped[date] = mapped_column(Date, nullable=False)
    due_date: Mapped[date] = mapped_column(Date, nullable=False)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Settlement
    policy_version: Mapped[str] = mapped_column(
        String(32),
        ForeignKey("fee_policies.version"),
        nullable=False
    )
    work_started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    work_completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    work_verified_by: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    work_completion_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    refund_settled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # Optimistic lock counter
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    @property
    def remaining_amount(self) -> int:
        return self.total_amount - self.paid_amount

    @property
    def work_started(self) -> bool:
        return self.work_started_at is not None

    @property
    def work_completed(self) -> bool:
        return self.work_completed_at is not None

    __table_args__ = (
        Index("idx_invoice_inquiry", "inquiry_id"),
        Index("idx_invoice_vendor", "vendor_id"),
        Index("idx_invoice_user", "user_id"),
        Index("idx_invoice_status_due", "status", "due_date"),
        UniqueConstraint("invoice_number", name="uq_invoice_number"),
        CheckConstraint("total_amount >= 0", name="check_invoice_total_non_negative"),
        CheckConstraint(
            "total_amount = subtotal + tax_amount - discount_amount",
            name="check_invoice_total_formula",
        ),
        CheckConstraint(
            "paid_amount >= 0 AND paid_amount <= total_amount",
            name="check_invoice_paid_within_total",
        ),
    )


class Payment(Base, TimestampMixin):
    """One attempt to pay (part of) an invoice through a rail"""
    __tablename__ = "payments"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    invoice_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("invoices.id"),
        nullable=False
    )
    inquiry_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    user_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    vendor_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)

    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    method: Mapped[str] = mapped_column(String(30), nullable=False)  # card, mpesa, tigopesa, ...
    rail: Mapped[PaymentRail] = mapped_column(SQLEnum(PaymentRail), nullable=False)
    status: Mapped[PaymentStatus] = mapped_column(
        SQLEnum(PaymentStatus),
        default=PaymentStatus.PENDING,
        nullable=False
    )

    provider: Mapped[str] = mapped_column(String(30), nullable=False)
    provider_ref: Mapped[str | None] = mapped_column(String(255), nullable=True)
    idempotency_key: Mapped[str | None] = mapped_column(String(128), nullable=True)
    provider_metadata: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict, nullable=False)

    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Split, set when the payment succeeds
    platform_fee_amount: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    vendor_amount: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    transfer_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    transferred_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Refund
    refund_amount: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    refund_status: Mapped[PaymentStatus | None] = mapped_column(SQLEnum(PaymentStatus), nullable=True)
    refund_ref: Mapped[str | None] = mapped_column(String(255), nullable=True)
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_payment_invoice", "invoice_id"),
        Index("idx_payment_vendor_status", "vendor_id", "status"),
        Index("idx_payment_status", "status"),
        UniqueConstraint("provider", "provider_ref", name="uq_payment_provider_ref"),
        UniqueConstraint("invoice_id", "idempotency_key", name="uq_payment_idempotency_key"),
        CheckConstraint("amount > 0", name="check_payment_amount_positive"),
        CheckConstraint(
            "refund_amount >= 0 AND refund_amount <= amount",
            name="check_payment_refund_within_amount",
        ),
    )


class Receipt(Base, TimestampMixin):
    """Mobile-money evidence awaiting manual verification"""
    __tablename__ = "receipts"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    payment_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("payments.id", ondelete="CASCADE"),
        nullable=False
    )
    image_url: Mapped[str] = mapped_column(Text, nullable=False)
    claimed_reference_number: Mapped[str] = mapped_column(String(100), nullable=False)
    claimed_phone: Mapped[str] = mapped_column(String(30), nullable=False)
    claimed_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    claimed_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    status: Mapped[ReceiptStatus] = mapped_column(
        SQLEnum(ReceiptStatus),
        default=ReceiptStatus.PENDING,
        nullable=False
    )
    reviewer_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    review_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint("payment_id", name="uq_receipt_payment"),
        Index("idx_receipt_status", "status"),
    )


class Payout(Base, TimestampMixin):
    """Funds moved from the platform to a vendor; negative amounts are claw-backs"""
    __tablename__ = "payouts"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    vendor_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    invoice_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid,
        ForeignKey("invoices.id"),
        nullable=True
    )
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    method: Mapped[str] = mapped_column(String(30), nullable=False)
    status: Mapped[PaymentStatus] = mapped_column(
        SQLEnum(PaymentStatus),
        default=PaymentStatus.PENDING,
        nullable=False
    )
    provider: Mapped[str] = mapped_column(String(30), nullable=False)
    provider_ref: Mapped[str | None] = mapped_column(String(255), nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    @property
    def is_clawback(self) -> bool:
        return self.amount < 0

    __table_args__ = (
        Index("idx_payout_vendor_status", "vendor_id", "status"),
        Index("idx_payout_invoice", "invoice_id"),
        CheckConstraint("amount <> 0", name="check_payout_amount_non_zero"),
    )


class Cancellation(Base, TimestampMixin):
    """The settled split of a cancelled invoice"""
    __tablename__ = "cancellations"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    invoice_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("invoices.id"),
        nullable=False
    )
    event_token: Mapped[str] = mapped_column(String(128), nullable=False)
    cancelled_by: Mapped[CancelledBy] = mapped_column(SQLEnum(CancelledBy), nullable=False)
    stage: Mapped[CancellationStage] = mapped_column(SQLEnum(CancellationStage), nullable=False)
    policy_version: Mapped[str] = mapped_column(String(32), nullable=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    paid_total: Mapped[int] = mapped_column(BigInteger, nullable=False)
    customer_refund: Mapped[int] = mapped_column(BigInteger, nullable=False)
    vendor_retained: Mapped[int] = mapped_column(BigInteger, nullable=False)
    platform_retained: Mapped[int] = mapped_column(BigInteger, nullable=False)
    clawback_amount: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)

    __table_args__ = (
        UniqueConstraint("invoice_id", name="uq_cancellation_invoice"),
        CheckConstraint(
            "customer_refund + vendor_retained + platform_retained = paid_total",
            name="check_cancellation_conserves_paid_total",
        ),
    )


class WebhookEvent(Base, TimestampMixin):
    """Processor deliveries already applied, keyed by the provider's event id"""
    __tablename__ = "webhook_events"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    provider: Mapped[str] = mapped_column(String(30), nullable=False)
    event_id: Mapped[str] = mapped_column(String(255), nullable=False)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict, nullable=False)

    __table_args__ = (
        UniqueConstraint("provider", "event_id", name="uq_webhook_event"),
    )
