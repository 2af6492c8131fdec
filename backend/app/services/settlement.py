"""Revenue records: the settled split of a confirmed booking.

Settled totals are computed once, by the pure ``compute_settlement``, before
the record is built. Afterwards the record only grows child rows (refunds,
adjustments, payouts) and every mutation leaves an ``AuditLog`` entry.
"""
import uuid
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.errors import DuplicateSettlement, InsufficientBalance, InvalidTransition, NotFound, ValidationError
from app.models.audit_log import AuditLog
from app.models.booking import Booking
from app.models.enums import (
    AdjustmentType,
    BookingStatus,
    PaymentStatus,
    PayoutStatus,
    RefundStatus,
    RevenueStatus,
)
from app.models.payment import Payment
from app.models.provider import Provider
from app.models.revenue import RevenueAdjustment, RevenuePayout, RevenueRecord, RevenueRefund
from app.services.pricing import duration_hours, to_money
from app.services.wallet import debit_for_payout, release_payout
from app.utils.dates import utcnow
from app.utils.log_mask import mask_bank_details

logger = structlog.get_logger()

ZERO = Decimal("0.00")


@dataclass(frozen=True)
class LineItem:
    name: str
    amount: Decimal
    category: str | None = None
    hours: Decimal | None = None
    rate: Decimal | None = None
    description: str | None = None

    def as_json(self) -> dict:
        data = {"name": self.name, "amount": str(self.amount)}
        if self.category is not None:
            data["category"] = self.category
        if self.hours is not None:
            data["hours"] = str(self.hours)
        if self.rate is not None:
            data["rate"] = str(self.rate)
        if self.description is not None:
            data["description"] = self.description
        return data


@dataclass(frozen=True)
class Breakdown:
    slot_amount: Decimal
    slot_hours: Decimal
    slot_rate: Decimal
    services: tuple[LineItem, ...] = field(default_factory=tuple)
    equipment: tuple[LineItem, ...] = field(default_factory=tuple)
    add_ons: tuple[LineItem, ...] = field(default_factory=tuple)

    def line_total(self) -> Decimal:
        items = (*self.services, *self.equipment, *self.add_ons)
        return self.slot_amount + sum((item.amount for item in items), ZERO)

    def as_json(self) -> dict:
        return {
            "slots": {
                "amount": str(self.slot_amount),
                "hours": str(self.slot_hours),
                "rate": str(self.slot_rate),
            },
            "services": [item.as_json() for item in self.services],
            "equipment": [item.as_json() for item in self.equipment],
            "add_ons": [item.as_json() for item in self.add_ons],
        }


@dataclass(frozen=True)
class Settlement:
    subtotal: Decimal
    commission: Decimal
    earnings: Decimal


def compute_settlement(breakdown: Breakdown, commission_rate: Decimal) -> Settlement:
    """subtotal = sum of line items, commission = subtotal * rate, earnings = the rest."""
    if commission_rate < 0 or commission_rate > 1:
        raise ValidationError("Commission rate must be between 0 and 1", details={"rate": str(commission_rate)})
    subtotal = to_money(breakdown.line_total())
    commission = (subtotal * Decimal(commission_rate)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    return Settlement(subtotal=subtotal, commission=commission, earnings=subtotal - commission)


def _rate_per_hour(amount: Decimal, hours: Decimal) -> Decimal:
    if hours <= 0:
        return amount
    return to_money(amount / hours)


def build_breakdown(booking: Booking) -> Breakdown:
    hours = duration_hours(booking.start_time, booking.end_time)
    slot_amount = to_money(booking.base_price)
    services = tuple(
        LineItem(name=s["name"], amount=to_money(s["price"]), category=s.get("category"))
        for s in booking.services or []
    )
    equipment = tuple(
        LineItem(
            name=e["name"],
            amount=to_money(e["rental_price"]),
            hours=hours,
            rate=_rate_per_hour(to_money(e["rental_price"]), hours),
        )
        for e in booking.equipment or []
    )
    return Breakdown(
        slot_amount=slot_amount,
        slot_hours=hours,
        slot_rate=_rate_per_hour(slot_amount, hours),
        services=services,
        equipment=equipment,
    )


def _audit(
    db: AsyncSession,
    revenue: RevenueRecord,
    action: str,
    actor_id: uuid.UUID | None,
    detail: str | None = None,
    metadata: dict | None = None,
) -> None:
    db.add(AuditLog(
        action=action,
        entity_type="revenue_record",
        entity_id=revenue.id,
        actor_user_id=actor_id,
        detail=detail,
        metadata_json=metadata,
    ))


async def get_revenue_for_booking(db: AsyncSession, booking_id: uuid.UUID) -> RevenueRecord | None:
    result = await db.execute(select(RevenueRecord).where(RevenueRecord.booking_id == booking_id))
    return result.scalar_one_or_none()


async def get_revenue(db: AsyncSession, revenue_id: uuid.UUID) -> RevenueRecord:
    result = await db.execute(select(RevenueRecord).where(RevenueRecord.id == revenue_id))
    revenue = result.scalar_one_or_none()
    if revenue is None:
        raise NotFound("Revenue record not found", details={"revenue_id": str(revenue_id)})
    return revenue


async def create_revenue_record(
    db: AsyncSession,
    booking: Booking,
    payment: Payment | None,
    commission_rate: Decimal,
) -> RevenueRecord:
    """Persist the settlement of a confirmed booking.

    Raises DuplicateSettlement when the booking is already settled, whether
    found up front or caught by the unique constraint on ``booking_id``; the
    existing record is left untouched in both cases.
    """
    existing = await get_revenue_for_booking(db, booking.id)
    if existing is not None:
        raise DuplicateSettlement(
            "Revenue record already exists for this booking",
            existing_id=existing.id,
            details={"booking_id": str(booking.id)},
        )

    breakdown = build_breakdown(booking)
    settled = compute_settlement(breakdown, commission_rate)
    revenue = RevenueRecord(
        id=uuid.uuid4(),
        booking_id=booking.id,
        provider_id=booking.provider_id,
        client_id=booking.client_id,
        breakdown=breakdown.as_json(),
        subtotal=settled.subtotal,
        commission_rate=commission_rate,
        commission_amount=settled.commission,
        provider_earnings=settled.earnings,
        total_amount=to_money(booking.total_price),
        currency=booking.currency,
        payment_id=booking.payhere_payment_id or (payment.payhere_payment_id if payment else None),
        payment_method=booking.payment_method or (payment.payment_method if payment else None),
        payment_date=utcnow(),
        status=RevenueStatus.CONFIRMED,
        refunds=[],
        adjustments=[],
        payouts=[],
    )
    try:
        async with db.begin_nested():
            db.add(revenue)
            await db.flush()
    except IntegrityError:
        # A concurrent settlement won the race on the unique booking_id.
        existing = await get_revenue_for_booking(db, booking.id)
        raise DuplicateSettlement(
            "Revenue record already exists for this booking",
            existing_id=existing.id if existing else None,
            details={"booking_id": str(booking.id)},
        )

    _audit(
        db,
        revenue,
        "revenue_created",
        None,
        metadata={
            "subtotal": str(settled.subtotal),
            "commission": str(settled.commission),
            "earnings": str(settled.earnings),
            "commission_rate": str(commission_rate),
        },
    )
    await db.flush()
    logger.info(
        "revenue_record_created",
        revenue_id=str(revenue.id),
        booking_id=str(booking.id),
        subtotal=str(settled.subtotal),
        commission=str(settled.commission),
        earnings=str(settled.earnings),
    )
    return revenue


async def record_refund(
    db: AsyncSession,
    revenue: RevenueRecord,
    amount: Decimal,
    reason: str | None,
    actor_id: uuid.UUID | None,
    reference: str,
    status: RefundStatus = RefundStatus.PROVISIONAL,
) -> RevenueRefund:
    amount = to_money(amount)
    if amount <= 0:
        raise ValidationError("Refund amount must be positive", details={"amount": str(amount)})
    if revenue.total_refunded + amount > revenue.total_amount:
        raise ValidationError(
            "Refund exceeds the settled total",
            details={
                "amount": str(amount),
                "already_refunded": str(revenue.total_refunded),
                "total_amount": str(revenue.total_amount),
            },
        )

    refund = RevenueRefund(
        revenue_id=revenue.id,
        amount=amount,
        reason=reason,
        refund_reference=reference,
        status=status,
        processed_by=actor_id,
        confirmed_at=utcnow() if status == RefundStatus.CONFIRMED else None,
    )
    db.add(refund)
    revenue.refunds.append(refund)
    if revenue.total_refunded >= revenue.total_amount:
        revenue.status = RevenueStatus.REFUNDED

    _audit(
        db,
        revenue,
        "refund_processed",
        actor_id,
        detail=reason,
        metadata={"amount": str(amount), "reference": reference, "status": RefundStatus(status).value},
    )
    await db.flush()
    logger.info(
        "revenue_refund_recorded",
        revenue_id=str(revenue.id),
        amount=str(amount),
        reference=reference,
        status=RefundStatus(status).value,
    )
    return refund


async def confirm_refund(
    db: AsyncSession,
    revenue: RevenueRecord,
    refund_id: uuid.UUID,
    external_reference: str,
    actor_id: uuid.UUID,
) -> RevenueRefund:
    """Operator confirmation that a provisional refund went through at the gateway."""
    refund = next((r for r in revenue.refunds if r.id == refund_id), None)
    if refund is None:
        raise NotFound("Refund not found", details={"refund_id": str(refund_id)})
    if refund.status == RefundStatus.CONFIRMED:
        raise InvalidTransition("Refund is already confirmed", details={"refund_id": str(refund_id)})

    refund.status = RefundStatus.CONFIRMED
    refund.external_reference = external_reference
    refund.confirmed_at = utcnow()
    refund.processed_by = actor_id
    _audit(
        db,
        revenue,
        "refund_confirmed",
        actor_id,
        metadata={"refund_id": str(refund.id), "external_reference": external_reference},
    )
    await db.flush()
    logger.info("revenue_refund_confirmed", revenue_id=str(revenue.id), refund_id=str(refund.id))
    return refund


async def add_adjustment(
    db: AsyncSession,
    revenue: RevenueRecord,
    amount: Decimal,
    reason: str,
    adjustment_type: AdjustmentType,
    actor_id: uuid.UUID | None,
) -> RevenueAdjustment:
    amount = to_money(amount)
    if amount == 0:
        raise ValidationError("Adjustment amount must not be zero")
    if not reason or not reason.strip():
        raise ValidationError("Adjustment reason is required")

    adjustment = RevenueAdjustment(
        revenue_id=revenue.id,
        amount=amount,
        reason=reason,
        type=adjustment_type,
        applied_by=actor_id,
    )
    db.add(adjustment)
    revenue.adjustments.append(adjustment)
    _audit(
        db,
        revenue,
        "adjustment_added",
        actor_id,
        detail=reason,
        metadata={"amount": str(amount), "type": AdjustmentType(adjustment_type).value},
    )
    await db.flush()
    logger.info(
        "revenue_adjustment_added",
        revenue_id=str(revenue.id),
        amount=str(amount),
        type=AdjustmentType(adjustment_type).value,
    )
    return adjustment


async def request_payout(
    db: AsyncSession,
    provider_id: uuid.UUID,
    amount: Decimal,
    bank_details: dict | None,
    actor_id: uuid.UUID,
) -> list[RevenuePayout]:
    """Draw ``amount`` from the provider's confirmed revenue, oldest record first.

    Each payout is debited from the provider's wallet as well, so earnings paid
    out here are no longer available for a wallet withdrawal, and the reverse.
    """
    amount = to_money(amount)
    if amount <= 0:
        raise ValidationError("Payout amount must be positive")

    result = await db.execute(
        select(RevenueRecord)
        .where(
            RevenueRecord.provider_id == provider_id,
            RevenueRecord.status == RevenueStatus.CONFIRMED,
        )
        .order_by(RevenueRecord.created_at, RevenueRecord.id)
        .with_for_update()
    )
    records = list(result.scalars().all())
    available = sum((r.pending_payout_amount for r in records), ZERO)
    if amount > available:
        raise InsufficientBalance(
            "Payout exceeds pending earnings",
            details={"requested": str(amount), "available": str(available)},
        )

    masked = mask_bank_details(bank_details)
    remaining = amount
    payouts = []
    for revenue in records:
        if remaining <= 0:
            break
        share = min(remaining, revenue.pending_payout_amount)
        if share <= 0:
            continue
        payout = RevenuePayout(
            revenue_id=revenue.id,
            amount=share,
            status=PayoutStatus.REQUESTED,
            bank_details=masked,
            requested_by=actor_id,
        )
        db.add(payout)
        revenue.payouts.append(payout)
        _audit(db, revenue, "payout_requested", actor_id, metadata={"amount": str(share), "bank_details": masked})
        payouts.append(payout)
        remaining -= share

    await db.flush()
    provider = await db.get(Provider, provider_id)
    for payout in payouts:
        # Raises InsufficientBalance when the earnings were already withdrawn.
        await debit_for_payout(db, payout, provider.user_id)
    logger.info(
        "payout_requested",
        provider_id=str(provider_id),
        amount=str(amount),
        records=len(payouts),
    )
    return payouts


_PAYOUT_FLOW: dict[PayoutStatus, set[PayoutStatus]] = {
    PayoutStatus.REQUESTED: {PayoutStatus.APPROVED, PayoutStatus.PROCESSING, PayoutStatus.COMPLETED, PayoutStatus.FAILED},
    PayoutStatus.APPROVED: {PayoutStatus.PROCESSING, PayoutStatus.COMPLETED, PayoutStatus.FAILED},
    PayoutStatus.PROCESSING: {PayoutStatus.COMPLETED, PayoutStatus.FAILED},
    PayoutStatus.COMPLETED: set(),
    PayoutStatus.FAILED: set(),
}


async def process_payout(
    db: AsyncSession,
    payout_id: uuid.UUID,
    new_status: PayoutStatus,
    actor_id: uuid.UUID,
    reference: str | None = None,
    notes: str | None = None,
) -> RevenuePayout:
    result = await db.execute(select(RevenuePayout).where(RevenuePayout.id == payout_id).with_for_update())
    payout = result.scalar_one_or_none()
    if payout is None:
        raise NotFound("Payout not found", details={"payout_id": str(payout_id)})

    current = PayoutStatus(payout.status)
    new_status = PayoutStatus(new_status)
    if new_status not in _PAYOUT_FLOW[current]:
        raise InvalidTransition(
            f"Cannot move payout from '{current.value}' to '{new_status.value}'",
            details={"current": current.value, "requested": new_status.value},
        )

    payout.status = new_status
    payout.processed_by = actor_id
    payout.processed_at = utcnow()
    if reference:
        payout.payout_reference = reference
    if notes:
        payout.notes = notes

    revenue = await get_revenue(db, payout.revenue_id)
    if new_status == PayoutStatus.COMPLETED:
        paid = sum(
            (p.amount for p in revenue.payouts if p.status == PayoutStatus.COMPLETED),
            ZERO,
        )
        if revenue.status == RevenueStatus.CONFIRMED and paid >= revenue.net_earnings:
            revenue.status = RevenueStatus.PAID_OUT
    elif new_status == PayoutStatus.FAILED:
        provider = await db.get(Provider, revenue.provider_id)
        await release_payout(db, payout, provider.user_id)

    _audit(
        db,
        revenue,
        "payout_processed",
        actor_id,
        detail=notes,
        metadata={"payout_id": str(payout.id), "status": new_status.value, "reference": reference},
    )
    await db.flush()
    logger.info(
        "payout_processed",
        payout_id=str(payout.id),
        revenue_id=str(revenue.id),
        status=new_status.value,
    )
    return payout


async def sync_revenue_status(db: AsyncSession, booking: Booking, payment: Payment | None = None) -> RevenueRecord | None:
    """Reflect booking and payment outcomes on the revenue record, if one exists."""
    revenue = await get_revenue_for_booking(db, booking.id)
    if revenue is None:
        return None

    target = None
    if payment is not None and payment.status == PaymentStatus.CHARGEBACK:
        target = RevenueStatus.DISPUTED
    elif booking.status == BookingStatus.REFUNDED and revenue.total_refunded >= revenue.total_amount:
        target = RevenueStatus.REFUNDED

    if target is not None and revenue.status != target:
        previous = revenue.status
        revenue.status = target
        _audit(
            db,
            revenue,
            "status_synced",
            None,
            metadata={"from": RevenueStatus(previous).value, "to": target.value},
        )
        await db.flush()
        logger.info("revenue_status_synced", revenue_id=str(revenue.id), status=target.value)
    return revenue


async def provider_revenue_summary(db: AsyncSession, provider_id: uuid.UUID) -> dict:
    result = await db.execute(
        select(RevenueRecord)
        .where(RevenueRecord.provider_id == provider_id)
        .order_by(RevenueRecord.created_at.desc())
    )
    records = list(result.scalars().all())
    active = [r for r in records if r.status != RevenueStatus.DISPUTED]
    return {
        "records": len(records),
        "total_revenue": sum((r.total_amount for r in active), ZERO),
        "total_commission": sum((r.commission_amount for r in active), ZERO),
        "total_earnings": sum((r.provider_earnings for r in active), ZERO),
        "total_refunded": sum((r.total_refunded for r in records), ZERO),
        "net_earnings": sum((r.net_earnings for r in active), ZERO),
        "pending_payout": sum(
            (r.pending_payout_amount for r in records if r.status == RevenueStatus.CONFIRMED),
            ZERO,
        ),
        "paid_out": sum(
            (p.amount for r in records for p in r.payouts if p.status == PayoutStatus.COMPLETED),
            ZERO,
        ),
        "recent": records[:20],
    }
