"""Exception taxonomy for the escrow engine

Every error carries a ``user_message`` that is safe to show to a customer or
vendor and an ``error_code`` for clients. Invariant violations deliberately
hide their details behind a generic message.
"""

import uuid


class EscrowError(Exception):
    """Base class for all engine errors"""

    error_code = "escrow_error"
    user_message = "The request could not be completed."

    def __init__(self, message: str | None = None, *, user_message: str | None = None):
        super().__init__(message or self.user_message)
        if user_message is not None:
            self.user_message = user_message
        elif message is not None:
            self.user_message = message


class ValidationError(EscrowError):
    """Bad input or ineligible state, never retried automatically"""
    error_code = "validation_error"


class InvalidAmount(ValidationError):
    error_code = "invalid_amount"


class InquiryNotEligible(ValidationError):
    error_code = "inquiry_not_eligible"


class InvoiceNotPayable(ValidationError):
    error_code = "invoice_not_payable"


class InvalidTransition(ValidationError):
    error_code = "invalid_transition"


class ReceiptRequired(ValidationError):
    error_code = "receipt_required"


class NotFoundError(EscrowError):
    error_code = "not_found"


class ConflictError(EscrowError):
    """Duplicate idempotency key or lost optimistic lock; safe to retry"""
    error_code = "conflict"

    def __init__(self, message: str | None = None, *, existing_id: uuid.UUID | None = None):
        super().__init__(message)
        self.existing_id = existing_id


class ExternalProviderError(EscrowError):
    """Card processor or mobile-money network failure"""
    error_code = "provider_error"
    user_message = "Payment pending, please check back shortly."

    def __init__(self, message: str | None = None, *, transient: bool = True):
        super().__init__(message, user_message=self.user_message)
        self.transient = transient


class InvoiceNumberGenerationFailed(EscrowError):
    error_code = "invoice_number_generation_failed"
    user_message = "Something went wrong, please try again or contact support."

    def __init__(self, message: str | None = None):
        super().__init__(message, user_message=self.user_message)


class InvariantViolation(EscrowError):
    """A money invariant would break; the operation is aborted with no writes"""
    error_code = "internal_error"
    user_message = "Something went wrong, please try again or contact support."

    def __init__(self, message: str | None = None):
        super().__init__(message, user_message=self.user_message)
