# ============================================================================
# core/errors.py - Invoice lifecycle error taxonomy
# ============================================================================
"""
Every failure the lifecycle can surface derives from ``InvoiceError`` so the
API layer can render it with one handler. Validation and authorization errors
are raised before any write; precondition and not-found errors carry a message
meant to be shown to the user as-is.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(str, Enum):
    VALIDATION_ERROR = "VALIDATION_ERROR"
    FORBIDDEN = "FORBIDDEN"
    PRECONDITION_FAILED = "PRECONDITION_FAILED"
    PROCESSOR_SETUP_REQUIRED = "PROCESSOR_SETUP_REQUIRED"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    ALREADY_SIGNED = "ALREADY_SIGNED"
    NOT_FOUND = "NOT_FOUND"
    PAYMENT_URL_NOT_AVAILABLE = "PAYMENT_URL_NOT_AVAILABLE"
    CLIENT_CONTACT_NOT_FOUND = "CLIENT_CONTACT_NOT_FOUND"
    UPSTREAM_FAILURE = "UPSTREAM_FAILURE"
    PAYMENT_PROCESSOR_ERROR = "PAYMENT_PROCESSOR_ERROR"
    NOTIFICATION_FAILED = "NOTIFICATION_FAILED"
    CORRUPT_RECORD = "CORRUPT_RECORD"
    NUMBERING_EXHAUSTED = "NUMBERING_EXHAUSTED"


class InvoiceError(Exception):
    status_code = 500
    error_code = ErrorCode.UPSTREAM_FAILURE

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        error_code: Optional[ErrorCode] = None,
    ):
        self.message = message
        self.details = details or {}
        if error_code is not None:
            self.error_code = error_code
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_code": self.error_code.value,
            "message": self.message,
            "details": self.details,
        }


# ---------------------------------------------------------------------------
# Rejected locally, nothing written
# ---------------------------------------------------------------------------

class ValidationFailed(InvoiceError):
    status_code = 400
    error_code = ErrorCode.VALIDATION_ERROR


class AuthorizationFailed(InvoiceError):
    status_code = 403
    error_code = ErrorCode.FORBIDDEN


# ---------------------------------------------------------------------------
# Actionable: the caller has to do something first
# ---------------------------------------------------------------------------

class PreconditionFailed(InvoiceError):
    status_code = 409
    error_code = ErrorCode.PRECONDITION_FAILED


class ProcessorSetupRequired(PreconditionFailed):
    error_code = ErrorCode.PROCESSOR_SETUP_REQUIRED

    def __init__(self, message: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message
            or "Payment setup required: the vendor must finish Stripe onboarding "
               "before invoices can be sent for payment.",
            details,
        )


class InvalidTransition(PreconditionFailed):
    error_code = ErrorCode.INVALID_TRANSITION


class AlreadySigned(PreconditionFailed):
    error_code = ErrorCode.ALREADY_SIGNED


class NotFound(InvoiceError):
    status_code = 404
    error_code = ErrorCode.NOT_FOUND


class InvoiceNotFound(NotFound):
    def __init__(self, invoice_id: str):
        super().__init__(f"Invoice '{invoice_id}' not found", {"invoice_id": invoice_id})


class PaymentUrlNotAvailable(NotFound):
    error_code = ErrorCode.PAYMENT_URL_NOT_AVAILABLE

    def __init__(self, invoice_id: str):
        super().__init__(
            "Payment URL not available. Please contact support.",
            {"invoice_id": invoice_id},
        )


class ClientContactNotFound(NotFound):
    error_code = ErrorCode.CLIENT_CONTACT_NOT_FOUND

    def __init__(self, invoice_id: str):
        super().__init__("Client contact not found", {"invoice_id": invoice_id})


# ---------------------------------------------------------------------------
# Upstream services
# ---------------------------------------------------------------------------

class UpstreamFailure(InvoiceError):
    status_code = 502
    error_code = ErrorCode.UPSTREAM_FAILURE


class PaymentProcessorError(UpstreamFailure):
    error_code = ErrorCode.PAYMENT_PROCESSOR_ERROR


class NotificationFailed(UpstreamFailure):
    error_code = ErrorCode.NOTIFICATION_FAILED


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------

class CorruptInvoiceRecord(InvoiceError):
    status_code = 500
    error_code = ErrorCode.CORRUPT_RECORD


class NumberingConflict(Exception):
    """Duplicate legal number; retried by the store, never shown to callers."""


class NumberingExhausted(InvoiceError):
    status_code = 503
    error_code = ErrorCode.NUMBERING_EXHAUSTED
