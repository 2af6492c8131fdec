import uuid
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import JSON, CheckConstraint, DateTime, ForeignKey, Numeric, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base
from app.models.enums import PaymentStatus
from app.models.types import GUID


class Payment(Base):
    """Snapshot of one checkout attempt, keyed by the gateway order id.

    ``booking_snapshot`` is frozen at initiation; once the payment is
    Completed only status and refund columns change. ``status_history`` is an
    append-only list of ``{status, changed_by, reason, notes, changed_at}``.
    """

    __tablename__ = "payments"
    __table_args__ = (
        CheckConstraint("amount >= 0", name="ck_payment_amount_positive"),
        CheckConstraint(
            "refund_amount IS NULL OR refund_amount <= amount",
            name="ck_payment_refund_not_above_amount",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=uuid.uuid4)
    payhere_order_id: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    # Expired reservations are deleted; their payment attempts are kept.
    booking_id: Mapped[uuid.UUID | None] = mapped_column(
        GUID(), ForeignKey("bookings.id", ondelete="SET NULL"), nullable=True, index=True
    )
    client_id: Mapped[uuid.UUID] = mapped_column(
        GUID(), ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    provider_id: Mapped[uuid.UUID] = mapped_column(
        GUID(), ForeignKey("providers.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    status: Mapped[PaymentStatus] = mapped_column(String(20), nullable=False, default=PaymentStatus.PENDING)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    booking_snapshot: Mapped[dict] = mapped_column(JSON, nullable=False)
    status_history: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    payhere_payment_id: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)
    payment_method: Mapped[str | None] = mapped_column(String(50), nullable=True)
    refund_amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    refund_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    refund_reference: Mapped[str | None] = mapped_column(String(100), nullable=True)
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    webhook_received_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    webhook_payload: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    def record_status(
        self,
        status: PaymentStatus,
        changed_by: str,
        reason: str | None = None,
        notes: str | None = None,
        at: datetime | None = None,
    ) -> None:
        self.status = status
        entry = {
            "status": status.value,
            "changed_by": changed_by,
            "reason": reason,
            "notes": notes,
            "changed_at": (at or datetime.now(timezone.utc)).isoformat(),
        }
        # Reassign so the JSON column is flagged dirty.
        self.status_history = [*(self.status_history or []), entry]
