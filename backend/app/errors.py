"""Domain errors for the booking-to-settlement pipeline.

Services raise these instead of ``HTTPException`` so that scheduler jobs and
the webhook handler can tell them apart without HTTP semantics. Each error
carries a stable ``kind`` that API clients can switch on; ``app.main`` maps
them to HTTP responses through ``status_code``.
"""
from typing import Any


class DomainError(Exception):
    kind: str = "domain_error"
    status_code: int = 400

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"error": self.kind, "detail": self.message}
        if self.details:
            body["details"] = self.details
        return body

    def __str__(self) -> str:
        return f"[{self.kind}] {self.message}"


class ValidationError(DomainError):
    kind = "validation_error"
    status_code = 400


class NotFound(DomainError):
    kind = "not_found"
    status_code = 404


class BookingNotFound(NotFound):
    kind = "booking_not_found"


class Forbidden(DomainError):
    kind = "forbidden"
    status_code = 403


class SlotUnavailable(DomainError):
    kind = "slot_unavailable"
    status_code = 409


class InvalidTransition(DomainError):
    kind = "invalid_transition"
    status_code = 409


class SignatureMismatch(DomainError):
    """Webhook authenticity check failed. Rejected, nothing mutated."""

    kind = "signature_mismatch"
    status_code = 400


class DuplicateSettlement(DomainError):
    """A revenue record already exists for the booking.

    Callers on the webhook path treat this as a successful no-op.
    """

    kind = "duplicate_settlement"
    status_code = 409

    def __init__(self, message: str, existing_id: Any = None, details: dict[str, Any] | None = None):
        super().__init__(message, details)
        self.existing_id = existing_id


class InsufficientBalance(DomainError):
    kind = "insufficient_balance"
    status_code = 400


class ManualReconciliationRequired(DomainError):
    kind = "manual_reconciliation_required"
    status_code = 409


class PaymentGatewayError(Exception):
    """The payment gateway rejected or could not process a request."""
