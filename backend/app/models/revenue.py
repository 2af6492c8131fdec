import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import JSON, CheckConstraint, DateTime, ForeignKey, Index, Numeric, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base
from app.models.enums import AdjustmentType, PayoutStatus, RefundStatus, RevenueStatus
from app.models.types import GUID


class RevenueRecord(Base):
    """Settlement artifact of a confirmed booking, one per booking.

    Settled totals never change after creation. Refunds, adjustments and
    payouts are appended as child rows and every mutation is written to
    ``audit_logs`` with ``entity_type="revenue_record"``.
    """

    __tablename__ = "revenue_records"
    __table_args__ = (
        CheckConstraint("subtotal >= 0", name="ck_revenue_subtotal_positive"),
        CheckConstraint("commission_rate >= 0 AND commission_rate <= 1", name="ck_revenue_commission_rate_range"),
        CheckConstraint("provider_earnings >= 0", name="ck_revenue_earnings_positive"),
        Index("ix_revenue_provider_status_created", "provider_id", "status", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=uuid.uuid4)
    # Unique: at most one settlement per booking, enforced at persistence time.
    booking_id: Mapped[uuid.UUID] = mapped_column(
        GUID(), ForeignKey("bookings.id", ondelete="RESTRICT"), nullable=False, unique=True
    )
    provider_id: Mapped[uuid.UUID] = mapped_column(
        GUID(), ForeignKey("providers.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    client_id: Mapped[uuid.UUID] = mapped_column(
        GUID(), ForeignKey("users.id", ondelete="RESTRICT"), nullable=False
    )
    breakdown: Mapped[dict] = mapped_column(JSON, nullable=False)
    subtotal: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    commission_rate: Mapped[Decimal] = mapped_column(Numeric(5, 4), nullable=False)
    commission_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    provider_earnings: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    payment_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    payment_method: Mapped[str | None] = mapped_column(String(50), nullable=True)
    payment_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    status: Mapped[RevenueStatus] = mapped_column(String(20), nullable=False, default=RevenueStatus.CONFIRMED)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    refunds: Mapped[list["RevenueRefund"]] = relationship(
        "RevenueRefund", back_populates="revenue", lazy="selectin", order_by="RevenueRefund.created_at"
    )
    adjustments: Mapped[list["RevenueAdjustment"]] = relationship(
        "RevenueAdjustment", back_populates="revenue", lazy="selectin", order_by="RevenueAdjustment.created_at"
    )
    payouts: Mapped[list["RevenuePayout"]] = relationship(
        "RevenuePayout", back_populates="revenue", lazy="selectin", order_by="RevenuePayout.created_at"
    )

    @property
    def total_refunded(self) -> Decimal:
        return sum((r.amount for r in self.refunds), Decimal("0.00"))

    @property
    def total_adjustments(self) -> Decimal:
        return sum((a.amount for a in self.adjustments), Decimal("0.00"))

    @property
    def committed_payouts(self) -> Decimal:
        """Payouts that are requested, in flight or done. Failed ones free the amount again."""
        return sum(
            (p.amount for p in self.payouts if p.status != PayoutStatus.FAILED),
            Decimal("0.00"),
        )

    @property
    def net_earnings(self) -> Decimal:
        return max(Decimal("0.00"), self.provider_earnings - self.total_refunded + self.total_adjustments)

    @property
    def pending_payout_amount(self) -> Decimal:
        return max(Decimal("0.00"), self.net_earnings - self.committed_payouts)


class RevenueRefund(Base):
    __tablename__ = "revenue_refunds"
    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_revenue_refund_amount_positive"),
    )

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=uuid.uuid4)
    revenue_id: Mapped[uuid.UUID] = mapped_column(
        GUID(), ForeignKey("revenue_records.id", ondelete="CASCADE"), nullable=False, index=True
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    refund_reference: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[RefundStatus] = mapped_column(String(30), nullable=False, default=RefundStatus.PROVISIONAL)
    external_reference: Mapped[str | None] = mapped_column(String(100), nullable=True)
    processed_by: Mapped[uuid.UUID | None] = mapped_column(
        GUID(), ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    confirmed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    revenue: Mapped["RevenueRecord"] = relationship("RevenueRecord", back_populates="refunds", lazy="raise")


class RevenueAdjustment(Base):
    __tablename__ = "revenue_adjustments"
    __table_args__ = (
        CheckConstraint("amount <> 0", name="ck_revenue_adjustment_non_zero"),
    )

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=uuid.uuid4)
    revenue_id: Mapped[uuid.UUID] = mapped_column(
        GUID(), ForeignKey("revenue_records.id", ondelete="CASCADE"), nullable=False, index=True
    )
    # Signed: tips and corrections in the provider's favour are positive.
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    type: Mapped[AdjustmentType] = mapped_column(String(20), nullable=False)
    applied_by: Mapped[uuid.UUID | None] = mapped_column(
        GUID(), ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    revenue: Mapped["RevenueRecord"] = relationship("RevenueRecord", back_populates="adjustments", lazy="raise")


class RevenuePayout(Base):
    __tablename__ = "revenue_payouts"
    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_revenue_payout_amount_positive"),
    )

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=uuid.uuid4)
    revenue_id: Mapped[uuid.UUID] = mapped_column(
        GUID(), ForeignKey("revenue_records.id", ondelete="CASCADE"), nullable=False, index=True
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    status: Mapped[PayoutStatus] = mapped_column(String(20), nullable=False, default=PayoutStatus.REQUESTED)
    payout_reference: Mapped[str | None] = mapped_column(String(100), nullable=True)
    # Account number is stored masked.
    bank_details: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    requested_by: Mapped[uuid.UUID | None] = mapped_column(
        GUID(), ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    processed_by: Mapped[uuid.UUID | None] = mapped_column(
        GUID(), ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    revenue: Mapped["RevenueRecord"] = relationship("RevenueRecord", back_populates="payouts", lazy="raise")
