"""Recovery log for the settlement sequence and the manual reconciliation queue."""
import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import DateTime, ForeignKey, Index, Integer, Numeric, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base
from app.models.enums import ReconciliationKind, SettlementRunStatus
from app.models.types import GUID


class SettlementRun(Base):
    """One row per booking; each finished step leaves its marker here.

    A replay skips every step whose marker is set, so a crash between steps
    is resumed rather than repeated.
    """

    __tablename__ = "settlement_runs"
    __table_args__ = (
        Index("ix_settlement_run_status_updated", "status", "updated_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=uuid.uuid4)
    booking_id: Mapped[uuid.UUID] = mapped_column(
        GUID(), ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    order_id: Mapped[str] = mapped_column(String(100), nullable=False)
    payhere_payment_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    payment_method: Mapped[str | None] = mapped_column(String(50), nullable=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    status: Mapped[SettlementRunStatus] = mapped_column(
        String(20), nullable=False, default=SettlementRunStatus.IN_PROGRESS
    )
    booking_confirmed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    payment_recorded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    revenue_record_id: Mapped[uuid.UUID | None] = mapped_column(GUID(), nullable=True)
    wallet_transaction_id: Mapped[uuid.UUID | None] = mapped_column(GUID(), nullable=True)
    notified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_step: Mapped[str | None] = mapped_column(String(30), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class ReconciliationItem(Base):
    """Something an operator has to finish by hand."""

    __tablename__ = "reconciliation_items"
    __table_args__ = (
        Index("ix_reconciliation_open", "resolved_at", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=uuid.uuid4)
    kind: Mapped[ReconciliationKind] = mapped_column(String(40), nullable=False, index=True)
    order_id: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)
    booking_id: Mapped[uuid.UUID | None] = mapped_column(GUID(), nullable=True)
    payhere_payment_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    detail: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    resolved_by: Mapped[uuid.UUID | None] = mapped_column(
        GUID(), ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    resolution_note: Mapped[str | None] = mapped_column(Text, nullable=True)
