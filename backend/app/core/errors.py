"""Error types raised by the reconciliation core.

Every failure the core can report is one of the subclasses below. Each carries
a stable ``code`` so routers, the dead-letter store and logs can match on it
without string-parsing messages.
"""

from typing import Any


class ReconciliationError(Exception):
    """Base class for all reconciliation errors."""

    code = "reconciliation_error"
    status_code = 500

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, **self.details}


class NotFoundError(ReconciliationError):
    code = "not_found"
    status_code = 404


class NotEnrolledError(ReconciliationError):
    """An event references a lineage we have never seen and carries no user."""

    code = "not_enrolled"
    status_code = 409


class AlreadyRefundedError(ReconciliationError):
    code = "already_refunded"
    status_code = 409


class PaymentNotRefundableError(ReconciliationError):
    code = "payment_not_refundable"
    status_code = 409


class UnknownProductError(ReconciliationError):
    code = "unknown_product"
    status_code = 422


class VerificationError(ReconciliationError):
    """Signature, certificate chain or bearer token could not be verified."""

    code = "verification_failed"
    status_code = 400


class MalformedPayloadError(ReconciliationError):
    """A provider payload could not be parsed into its expected shape."""

    code = "malformed_payload"
    status_code = 400


class ReceiptError(ReconciliationError):
    """Apple rejected a receipt with a non-zero status."""

    code = "receipt_error"
    status_code = 422

    def __init__(self, status: int, message: str | None = None):
        super().__init__(message or APPLE_RECEIPT_ERRORS.get(status, "Unknown receipt error"))
        self.status = status
        self.details = {"status": status}


class ProviderUnavailableError(ReconciliationError):
    """Timeout, connection failure or 5xx from a provider API."""

    code = "provider_unavailable"
    status_code = 503


class InvariantViolationError(ReconciliationError):
    code = "invariant_violation"
    status_code = 500


class InvalidTransitionError(ReconciliationError):
    code = "invalid_transition"
    status_code = 409


class InvoiceStateError(ReconciliationError):
    code = "invalid_invoice_state"
    status_code = 409


class PlanInUseError(ReconciliationError):
    code = "plan_in_use"
    status_code = 409


APPLE_RECEIPT_ERRORS: dict[int, str] = {
    21000: "The request to the App Store was not made using the HTTP POST request method",
    21001: "This status code is no longer sent by the App Store",
    21002: "The data in the receipt-data property was malformed or the service experienced a temporary issue",
    21003: "The receipt could not be authenticated",
    21004: "The shared secret you provided does not match the shared secret on file for your account",
    21005: "The receipt server was temporarily unable to provide the receipt",
    21006: "This receipt is valid but the subscription has expired",
    21007: "This receipt is from the test environment",
    21008: "This receipt is from the production environment",
    21009: "Internal data access error",
    21010: "The user account cannot be found or has been deleted",
}

# Statuses Apple documents as temporary; the request may be retried.
APPLE_RETRYABLE_STATUSES = frozenset({21005, *range(21100, 21200)})


def http_status_for(exc: ReconciliationError) -> int:
    """Map an error to the HTTP status routers respond with."""
    return exc.status_code
