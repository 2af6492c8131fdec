import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import JSON, Boolean, CheckConstraint, DateTime, ForeignKey, Index, Numeric, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base
from app.models.enums import TransactionStatus, TransactionType, WithdrawalMethod
from app.models.types import GUID


class Wallet(Base):
    """Per provider-user balance derived from its ledger.

    Balances change only through ``app.services.wallet.add_transaction`` and
    the withdrawal processing path, never by direct edits.
    """

    __tablename__ = "wallets"
    __table_args__ = (
        CheckConstraint("available_balance >= 0", name="ck_wallet_available_non_negative"),
        CheckConstraint("pending_balance >= 0", name="ck_wallet_pending_non_negative"),
        CheckConstraint("total_balance >= 0", name="ck_wallet_total_non_negative"),
    )

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        GUID(), ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, unique=True
    )
    available_balance: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    pending_balance: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    total_balance: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    total_earnings: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    total_withdrawals: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    total_commissions: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="LKR")

    bank_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    account_number: Mapped[str | None] = mapped_column(String(50), nullable=True)
    account_holder_name: Mapped[str | None] = mapped_column(String(150), nullable=True)
    account_type: Mapped[str | None] = mapped_column(String(20), nullable=True)
    branch_code: Mapped[str | None] = mapped_column(String(20), nullable=True)
    swift_code: Mapped[str | None] = mapped_column(String(20), nullable=True)
    bank_details_verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    minimum_withdrawal: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    auto_withdrawal_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    auto_withdrawal_threshold: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)

    last_transaction_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    user: Mapped["User"] = relationship("User", lazy="raise")

    @property
    def has_bank_details(self) -> bool:
        return bool(self.bank_name and self.account_number and self.account_holder_name)


class WalletTransaction(Base):
    """Append-only ledger entry. Immutable once its status is terminal."""

    __tablename__ = "wallet_transactions"
    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_wallet_tx_amount_positive"),
        CheckConstraint("net_amount >= 0", name="ck_wallet_tx_net_non_negative"),
        Index("ix_wallet_tx_wallet_created", "wallet_id", "created_at"),
        Index("ix_wallet_tx_type_status", "type", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=uuid.uuid4)
    wallet_id: Mapped[uuid.UUID] = mapped_column(
        GUID(), ForeignKey("wallets.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    type: Mapped[TransactionType] = mapped_column(String(30), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    net_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    commission_rate: Mapped[Decimal] = mapped_column(Numeric(5, 4), nullable=False, default=Decimal("0"))
    commission_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="LKR")
    description: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[TransactionStatus] = mapped_column(
        String(20), nullable=False, default=TransactionStatus.PENDING, index=True
    )
    booking_id: Mapped[uuid.UUID | None] = mapped_column(
        GUID(), ForeignKey("bookings.id", ondelete="SET NULL"), nullable=True, index=True
    )
    payment_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    order_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    # e.g. "booking:<id>:credit"; unique so a retried settlement cannot double-credit
    idempotency_key: Mapped[str | None] = mapped_column(String(150), nullable=True, unique=True)
    reference_transaction_id: Mapped[uuid.UUID | None] = mapped_column(
        GUID(), ForeignKey("wallet_transactions.id", ondelete="SET NULL"), nullable=True
    )

    withdrawal_method: Mapped[WithdrawalMethod | None] = mapped_column(String(20), nullable=True)
    bank_account: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    processed_by: Mapped[uuid.UUID | None] = mapped_column(
        GUID(), ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    remarks: Mapped[str | None] = mapped_column(Text, nullable=True)
    metadata_json: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
