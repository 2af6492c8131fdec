from app.errors import InvalidTransition
from app.models.enums import BookingStatus

# Forward-only graph: no edge ever leads back to an earlier stage, so a late
# "pending" notification can never undo a confirmation.
ALLOWED_TRANSITIONS: dict[BookingStatus, set[BookingStatus]] = {
    BookingStatus.RESERVATION_PENDING: {
        BookingStatus.PAYMENT_PENDING,
        BookingStatus.PAYMENT_FAILED,
        BookingStatus.CONFIRMED,
        BookingStatus.CANCELLED,
    },
    BookingStatus.PAYMENT_PENDING: {
        BookingStatus.PAYMENT_FAILED,
        BookingStatus.CONFIRMED,
        BookingStatus.CANCELLED,
    },
    BookingStatus.PAYMENT_FAILED: {
        BookingStatus.PAYMENT_PENDING,  # checkout re-issued
        BookingStatus.CONFIRMED,
        BookingStatus.CANCELLED,
    },
    BookingStatus.CONFIRMED: {
        BookingStatus.CANCEL_PENDING,
        BookingStatus.CANCELLED,
        BookingStatus.REFUNDED,
        BookingStatus.COMPLETED,
    },
    BookingStatus.CANCEL_PENDING: {
        BookingStatus.CANCELLED,
        BookingStatus.REFUNDED,
    },
    BookingStatus.COMPLETED: set(),  # Terminal state
    BookingStatus.CANCELLED: set(),  # Terminal state
    BookingStatus.REFUNDED: set(),  # Terminal state
}

TERMINAL_STATUSES = frozenset(
    status for status, targets in ALLOWED_TRANSITIONS.items() if not targets
)

# States in which the client has not paid yet.
PRE_CONFIRMATION_STATUSES = frozenset({
    BookingStatus.RESERVATION_PENDING,
    BookingStatus.PAYMENT_PENDING,
    BookingStatus.PAYMENT_FAILED,
})


def can_transition(current: BookingStatus, new: BookingStatus) -> bool:
    return new in ALLOWED_TRANSITIONS.get(BookingStatus(current), set())


def is_terminal(status: BookingStatus) -> bool:
    return BookingStatus(status) in TERMINAL_STATUSES


def validate_transition(current: BookingStatus, new: BookingStatus, action: str | None = None) -> None:
    """Validate a booking status transition. Raises InvalidTransition if invalid."""
    current = BookingStatus(current)
    new = BookingStatus(new)
    if not can_transition(current, new):
        verb = action or f"move to '{new.value}'"
        raise InvalidTransition(
            f"Cannot {verb} a booking in status '{current.value}'",
            details={"current": current.value, "requested": new.value},
        )
