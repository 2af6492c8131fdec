import enum

# These enums are stored as VARCHAR columns, not native PG ENUM types, so new
# values do not need ALTER TYPE migrations.


class UserRole(str, enum.Enum):
    CLIENT = "client"
    STUDIO = "studio"
    ARTIST = "artist"
    ADMIN = "admin"


class ProviderKind(str, enum.Enum):
    STUDIO = "studio"
    ARTIST = "artist"


class BookingStatus(str, enum.Enum):
    RESERVATION_PENDING = "reservation_pending"
    PAYMENT_PENDING = "payment_pending"
    PAYMENT_FAILED = "payment_failed"
    CONFIRMED = "confirmed"
    CANCEL_PENDING = "cancel_pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


# Statuses that occupy a provider's time. reservation_pending is provisional.
BLOCKING_BOOKING_STATUSES = (
    BookingStatus.CONFIRMED,
    BookingStatus.COMPLETED,
    BookingStatus.CANCEL_PENDING,
)


class CancelledBy(str, enum.Enum):
    CLIENT = "client"
    PROVIDER = "provider"
    ADMIN = "admin"
    GATEWAY = "gateway"


class PaymentStatus(str, enum.Enum):
    PENDING = "Pending"
    COMPLETED = "Completed"
    FAILED = "Failed"
    REFUNDED = "Refunded"
    CHARGEBACK = "Chargeback"


class GatewayEvent(str, enum.Enum):
    SUCCESS = "success"
    PENDING = "pending"
    CANCELLED = "cancelled"
    FAILED = "failed"
    CHARGEBACK = "chargeback"


class RevenueStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    DISPUTED = "disputed"
    REFUNDED = "refunded"
    PAID_OUT = "paid_out"


class RefundStatus(str, enum.Enum):
    PROVISIONAL = "pending_manual_processing"
    CONFIRMED = "confirmed"


class AdjustmentType(str, enum.Enum):
    TIP = "tip"
    DISCOUNT = "discount"
    FEE = "fee"
    CORRECTION = "correction"


class PayoutStatus(str, enum.Enum):
    REQUESTED = "requested"
    APPROVED = "approved"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class TransactionType(str, enum.Enum):
    CREDIT = "credit"
    DEBIT = "debit"
    WITHDRAWAL = "withdrawal"
    COMMISSION_DEDUCTION = "commission_deduction"


class TransactionStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class WithdrawalMethod(str, enum.Enum):
    BANK_TRANSFER = "bank_transfer"
    PAYHERE_PAYOUT = "payhere_payout"


class BankAccountType(str, enum.Enum):
    SAVINGS = "savings"
    CURRENT = "current"
    CHECKING = "checking"


class SettlementRunStatus(str, enum.Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    # Paid but the booking could not be confirmed; left to an operator.
    ABANDONED = "abandoned"


class ReconciliationKind(str, enum.Enum):
    BOOKING_NOT_FOUND = "booking_not_found"
    BOOKING_NOT_PAYABLE = "booking_not_payable"
    SLOT_CONFLICT = "slot_conflict"
    AMOUNT_MISMATCH = "amount_mismatch"
    CHARGEBACK = "chargeback"
    REFUND_MANUAL_PROCESSING = "refund_manual_processing"
    SETTLEMENT_FAILED = "settlement_failed"
    DUPLICATE_PAYMENT = "duplicate_payment"


class NotificationType(str, enum.Enum):
    BOOKING_CREATED = "booking_created"
    BOOKING_CONFIRMED = "booking_confirmed"
    BOOKING_CANCELLED = "booking_cancelled"
    BOOKING_COMPLETED = "booking_completed"
    PAYMENT_RECEIVED = "payment_received"
    PAYMENT_FAILED = "payment_failed"
    WALLET_CREDITED = "wallet_credited"
    WITHDRAWAL_PROCESSED = "withdrawal_processed"
    PAYOUT_PROCESSED = "payout_processed"
