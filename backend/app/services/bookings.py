"""Booking lifecycle: reservation, checkout, gateway events, cancellation, completion.

Payment success is not handled here; it goes through
``app.services.coordinator.SettlementCoordinator``.
"""
import uuid
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.errors import (
    BookingNotFound,
    Forbidden,
    ManualReconciliationRequired,
    NotFound,
    PaymentGatewayError,
    SlotUnavailable,
    ValidationError,
)
from app.metrics import BOOKINGS_CANCELLED, BOOKINGS_COMPLETED, BOOKINGS_CREATED, SLOT_CONFLICTS
from app.models.booking import Booking
from app.models.enums import (
    BookingStatus,
    CancelledBy,
    GatewayEvent,
    NotificationType,
    PaymentStatus,
    ProviderKind,
    ReconciliationKind,
    UserRole,
)
from app.models.payment import Payment
from app.models.provider import Provider
from app.models.user import User
from app.services import payhere, reconciliation, slot_hold
from app.services.availability import find_conflicts, is_available
from app.services.notifications import notify
from app.services.pricing import calculate_booking_pricing, calculate_refund
from app.services.reservations import time_remaining
from app.services.settlement import get_revenue_for_booking, record_refund, sync_revenue_status
from app.utils.booking_state import PRE_CONFIRMATION_STATUSES, can_transition, validate_transition
from app.utils.dates import as_utc, utcnow

logger = structlog.get_logger()

PROVIDER_ROLES = (UserRole.STUDIO, UserRole.ARTIST)


def _snapshot(booking: Booking, client: User, provider: Provider) -> dict:
    return {
        "client": {"id": str(client.id), "email": client.email},
        "provider": {"id": str(provider.id), "kind": ProviderKind(provider.kind).value, "name": provider.name},
        "service": booking.service,
        "services": booking.services or [],
        "equipment": booking.equipment or [],
        "start": as_utc(booking.start_time).isoformat(),
        "end": as_utc(booking.end_time).isoformat(),
        "total_price": str(booking.total_price),
    }


def _new_payment(booking: Booking, client: User, provider: Provider, order_id: str) -> Payment:
    payment = Payment(
        payhere_order_id=order_id,
        booking_id=booking.id,
        client_id=client.id,
        provider_id=provider.id,
        amount=booking.total_price,
        currency=booking.currency,
        booking_snapshot=_snapshot(booking, client, provider),
        status_history=[],
    )
    payment.record_status(PaymentStatus.PENDING, "system", reason="Checkout initiated")
    return payment


def _validate_window(start: datetime, end: datetime, now: datetime) -> tuple[datetime, datetime]:
    start, end = as_utc(start), as_utc(end)
    if end <= start:
        raise ValidationError("End time must be after start time")
    if end - start < timedelta(minutes=settings.MINIMUM_BOOKING_MINUTES):
        raise ValidationError(
            f"Bookings must last at least {settings.MINIMUM_BOOKING_MINUTES} minutes"
        )
    if start <= now:
        raise ValidationError("Booking must start in the future")
    return start, end


async def _get_active_provider(db: AsyncSession, provider_id: uuid.UUID) -> Provider:
    provider = await db.get(Provider, provider_id)
    if provider is None or not provider.is_active:
        raise NotFound("Provider not found", details={"provider_id": str(provider_id)})
    return provider


async def create_booking(
    db: AsyncSession,
    client: User,
    provider_id: uuid.UUID,
    start: datetime,
    end: datetime,
    service_name: str | None = None,
    extra_services: list[str] | None = None,
    equipment: list[str] | None = None,
    notes: str | None = None,
    now: datetime | None = None,
) -> tuple[Booking, dict]:
    """Reserve a window and return the booking with its checkout instructions."""
    if client.role != UserRole.CLIENT:
        raise Forbidden("Only clients can create bookings")
    now = as_utc(now or utcnow())
    start, end = _validate_window(start, end, now)
    provider = await _get_active_provider(db, provider_id)
    pricing = calculate_booking_pricing(provider, start, end, service_name, extra_services, equipment)

    if not await is_available(db, provider, start, end):
        SLOT_CONFLICTS.labels(stage="advisory").inc()
        raise SlotUnavailable("Requested time slot is not available")

    # Authoritative check: provider row locked until this transaction commits.
    await db.execute(select(Provider.id).where(Provider.id == provider.id).with_for_update())
    if await find_conflicts(db, provider.id, start, end):
        SLOT_CONFLICTS.labels(stage="authoritative").inc()
        logger.info("booking_slot_conflict", provider_id=str(provider.id), start=start.isoformat())
        raise SlotUnavailable("Requested time slot is not available")

    booking_id = uuid.uuid4()
    order_id = payhere.generate_order_id(booking_id, now)
    booking = Booking(
        id=booking_id,
        client_id=client.id,
        provider_id=provider.id,
        provider_kind=provider.kind,
        start_time=start,
        end_time=end,
        status=BookingStatus.RESERVATION_PENDING,
        service=pricing["service"],
        services=pricing["services"],
        equipment=pricing["equipment"],
        base_price=pricing["base_price"],
        total_price=pricing["total_price"],
        currency=pricing["currency"],
        payhere_order_id=order_id,
        client_notes=notes,
        created_at=now,
    )
    db.add(booking)
    db.add(_new_payment(booking, client, provider, order_id))
    await db.flush()

    checkout = payhere.build_checkout(booking, client, provider, order_id)
    await notify(
        db,
        client.id,
        NotificationType.BOOKING_CREATED,
        "Reservation created",
        f"Complete payment within {settings.RESERVATION_TIMEOUT_MINUTES} minutes to confirm your booking.",
        {"booking_id": str(booking.id), "order_id": order_id},
    )
    BOOKINGS_CREATED.labels(provider_kind=ProviderKind(provider.kind).value).inc()
    logger.info(
        "booking_created",
        booking_id=str(booking.id),
        provider_id=str(provider.id),
        order_id=order_id,
        total_price=str(booking.total_price),
    )
    return booking, checkout


async def _lock_booking(db: AsyncSession, booking_id: uuid.UUID) -> Booking:
    result = await db.execute(select(Booking).where(Booking.id == booking_id).with_for_update())
    booking = result.scalar_one_or_none()
    if booking is None:
        raise BookingNotFound("Booking not found", details={"booking_id": str(booking_id)})
    return booking


async def _actor_for(db: AsyncSession, user: User, booking: Booking) -> CancelledBy | None:
    """Who ``user`` is with respect to ``booking``, or None if unrelated."""
    if user.role == UserRole.ADMIN:
        return CancelledBy.ADMIN
    if booking.client_id == user.id:
        return CancelledBy.CLIENT
    provider = await db.get(Provider, booking.provider_id)
    if provider is not None and provider.user_id == user.id:
        return CancelledBy.PROVIDER
    return None


async def reissue_checkout(
    db: AsyncSession, client: User, booking_id: uuid.UUID, now: datetime | None = None
) -> tuple[Booking, dict]:
    now = as_utc(now or utcnow())
    booking = await _lock_booking(db, booking_id)
    if booking.client_id != client.id:
        raise Forbidden("Only the booking's client can pay for it")
    status = BookingStatus(booking.status)
    if status == BookingStatus.RESERVATION_PENDING:
        if time_remaining(booking, now) <= timedelta(0):
            raise ValidationError("Reservation has expired, please book again")
    elif status == BookingStatus.PAYMENT_FAILED:
        validate_transition(status, BookingStatus.PAYMENT_PENDING, "retry payment for")
        booking.status = BookingStatus.PAYMENT_PENDING
    else:
        validate_transition(status, BookingStatus.PAYMENT_PENDING, "retry payment for")

    provider = await _get_active_provider(db, booking.provider_id)

    previous = await _payment_for_order(db, booking.payhere_order_id)
    if previous is not None and previous.status == PaymentStatus.PENDING:
        previous.record_status(PaymentStatus.FAILED, "system", reason="Superseded by a new checkout", at=now)

    order_id = payhere.generate_order_id(booking.id, now)
    booking.payhere_order_id = order_id
    db.add(_new_payment(booking, client, provider, order_id))
    await db.flush()
    logger.info("booking_checkout_reissued", booking_id=str(booking.id), order_id=order_id)
    return booking, payhere.build_checkout(booking, client, provider, order_id)


async def _payment_for_order(db: AsyncSession, order_id: str | None) -> Payment | None:
    if not order_id:
        return None
    result = await db.execute(select(Payment).where(Payment.payhere_order_id == order_id))
    return result.scalar_one_or_none()


_EVENT_TARGETS = {
    GatewayEvent.PENDING: BookingStatus.PAYMENT_PENDING,
    GatewayEvent.FAILED: BookingStatus.PAYMENT_FAILED,
    GatewayEvent.CANCELLED: BookingStatus.CANCELLED,
}


async def apply_gateway_event(
    db: AsyncSession,
    payment: Payment,
    event: GatewayEvent,
    notification: payhere.PayHereNotification | None = None,
) -> str:
    """Apply a non-success gateway event. Returns ``applied`` or ``ignored``.

    Only bookings still awaiting payment move. Any late event for a booking
    that has already been confirmed, cancelled or refunded is ignored rather
    than rejected; chargebacks are handled separately.
    """
    now = utcnow()
    if notification is not None:
        payment.webhook_received_at = now
        payment.webhook_payload = notification.safe_payload()
        payment.payhere_payment_id = payment.payhere_payment_id or notification.payment_id

    if event == GatewayEvent.CHARGEBACK:
        return await _apply_chargeback(db, payment, notification)

    if payment.status == PaymentStatus.PENDING and event in (GatewayEvent.FAILED, GatewayEvent.CANCELLED):
        payment.record_status(
            PaymentStatus.FAILED,
            "payhere_webhook",
            reason="Payment cancelled" if event == GatewayEvent.CANCELLED else "Payment failed",
            notes=notification.status_message if notification else None,
            at=now,
        )

    booking = None
    if payment.booking_id is not None:
        booking = (
            await db.execute(select(Booking).where(Booking.id == payment.booking_id).with_for_update())
        ).scalar_one_or_none()
    if booking is None or booking.payhere_order_id != payment.payhere_order_id:
        # Expired reservation or a superseded checkout: nothing left to move.
        logger.info("gateway_event_no_booking", order_id=payment.payhere_order_id, gateway_event=event.value)
        await db.flush()
        return "ignored"

    target = _EVENT_TARGETS[event]
    if booking.status not in PRE_CONFIRMATION_STATUSES or not can_transition(booking.status, target):
        logger.info(
            "gateway_event_ignored",
            booking_id=str(booking.id),
            current=BookingStatus(booking.status).value,
            gateway_event=event.value,
        )
        await db.flush()
        return "ignored"

    booking.status = target
    if target == BookingStatus.CANCELLED:
        booking.cancelled_by = CancelledBy.GATEWAY
        booking.cancelled_at = now
        booking.cancellation_reason = "Payment cancelled at the gateway"
    await db.flush()

    if event in (GatewayEvent.FAILED, GatewayEvent.CANCELLED):
        await notify(
            db,
            booking.client_id,
            NotificationType.PAYMENT_FAILED,
            "Payment not completed",
            "Your payment did not go through. You can retry from your bookings.",
            {"booking_id": str(booking.id)},
        )
    logger.info(
        "gateway_event_applied",
        booking_id=str(booking.id),
        status=target.value,
        gateway_event=event.value,
    )
    return "applied"


async def _apply_chargeback(
    db: AsyncSession, payment: Payment, notification: payhere.PayHereNotification | None
) -> str:
    payment.record_status(PaymentStatus.CHARGEBACK, "payhere_webhook", reason="Chargeback reported")
    await reconciliation.open_item(
        db,
        ReconciliationKind.CHARGEBACK,
        "Chargeback reported by the gateway",
        order_id=payment.payhere_order_id,
        booking_id=payment.booking_id,
        payhere_payment_id=payment.payhere_payment_id,
        amount=payment.amount,
    )
    if payment.booking_id is not None:
        booking = await db.get(Booking, payment.booking_id)
        if booking is not None:
            await sync_revenue_status(db, booking, payment)
    await db.flush()
    logger.error("payhere_chargeback", order_id=payment.payhere_order_id, amount=str(payment.amount))
    return "applied"


def _refund_tier(rate: Decimal) -> str:
    if rate >= 1:
        return "full"
    if rate > 0:
        return "partial"
    return "none"


async def cancel_booking(
    db: AsyncSession,
    user: User,
    booking_id: uuid.UUID,
    reason: str | None = None,
    now: datetime | None = None,
) -> Booking:
    now = as_utc(now or utcnow())
    booking = await _lock_booking(db, booking_id)
    actor = await _actor_for(db, user, booking)
    if actor is None:
        raise Forbidden("You cannot cancel this booking")

    status = BookingStatus(booking.status)
    validate_transition(status, BookingStatus.CANCELLED, "cancel")

    booking.cancellation_reason = reason
    booking.cancelled_by = actor
    booking.cancelled_at = now

    if status in PRE_CONFIRMATION_STATUSES:
        payment = await _payment_for_order(db, booking.payhere_order_id)
        if payment is not None and payment.status == PaymentStatus.PENDING:
            payment.record_status(PaymentStatus.FAILED, actor.value, reason="Booking cancelled before payment", at=now)
        booking.status = BookingStatus.CANCELLED
        booking.refund_amount = Decimal("0.00")
        await db.flush()
        BOOKINGS_CANCELLED.labels(cancelled_by=actor.value, refund_tier="none").inc()
        logger.info("booking_cancelled", booking_id=str(booking.id), cancelled_by=actor.value, refund="0.00")
        return booking

    hours_until = (as_utc(booking.start_time) - now).total_seconds() / 3600
    if (
        actor == CancelledBy.CLIENT
        and status == BookingStatus.CONFIRMED
        and hours_until <= settings.CLIENT_CANCELLATION_CUTOFF_HOURS
    ):
        raise ValidationError(
            f"Cannot cancel within {settings.CLIENT_CANCELLATION_CUTOFF_HOURS} hours of start",
            details={"hours_until_start": round(hours_until, 2)},
        )

    result = await db.execute(
        select(Payment)
        .where(Payment.booking_id == booking.id, Payment.status == PaymentStatus.COMPLETED)
        .order_by(Payment.created_at.desc())
        .limit(1)
    )
    payment = result.scalar_one_or_none()
    captured = payment.amount if payment is not None else Decimal("0.00")

    if status == BookingStatus.CANCEL_PENDING and booking.refund_amount is not None:
        refund, rate = booking.refund_amount, (booking.refund_amount / captured if captured else Decimal("0"))
    else:
        refund, rate = calculate_refund(captured, booking.start_time, now)
    booking.refund_amount = refund

    if refund <= 0:
        booking.status = BookingStatus.CANCELLED
        await db.flush()
        await _notify_cancelled(db, booking, refund)
        BOOKINGS_CANCELLED.labels(cancelled_by=actor.value, refund_tier="none").inc()
        logger.info("booking_cancelled", booking_id=str(booking.id), cancelled_by=actor.value, refund="0.00")
        return booking

    booking.status = BookingStatus.CANCEL_PENDING
    await db.flush()
    try:
        receipt = await payhere.request_refund(payment.payhere_payment_id, refund, reason)
    except PaymentGatewayError as exc:
        await reconciliation.open_item(
            db,
            ReconciliationKind.REFUND_MANUAL_PROCESSING,
            f"Refund request rejected by the gateway: {exc}",
            order_id=payment.payhere_order_id,
            booking_id=booking.id,
            payhere_payment_id=payment.payhere_payment_id,
            amount=refund,
        )
        # The booking stays cancel_pending; keep that state before surfacing the error.
        await db.commit()
        logger.error(
            "booking_refund_rejected",
            booking_id=str(booking.id),
            order_id=payment.payhere_order_id,
            amount=str(refund),
            error=str(exc),
        )
        raise ManualReconciliationRequired(
            "Refund could not be requested, an operator will process it",
            details={"booking_id": str(booking.id), "refund_amount": str(refund)},
        )

    booking.status = BookingStatus.REFUNDED
    booking.refunded_at = now
    payment.refund_amount = refund
    payment.refund_reason = reason
    payment.refund_reference = receipt.reference
    payment.refunded_at = now
    payment.record_status(PaymentStatus.REFUNDED, actor.value, reason=reason, notes=receipt.status, at=now)

    revenue = await get_revenue_for_booking(db, booking.id)
    if revenue is not None:
        await record_refund(db, revenue, refund, reason, user.id, receipt.reference)
        await sync_revenue_status(db, booking, payment)
    await reconciliation.open_item(
        db,
        ReconciliationKind.REFUND_MANUAL_PROCESSING,
        f"Refund {receipt.reference} awaits manual processing",
        order_id=payment.payhere_order_id,
        booking_id=booking.id,
        payhere_payment_id=payment.payhere_payment_id,
        amount=refund,
    )
    await db.flush()
    await _notify_cancelled(db, booking, refund)
    BOOKINGS_CANCELLED.labels(cancelled_by=actor.value, refund_tier=_refund_tier(rate)).inc()
    logger.info(
        "booking_cancelled",
        booking_id=str(booking.id),
        cancelled_by=actor.value,
        refund=str(refund),
        refund_reference=receipt.reference,
    )
    return booking


async def _notify_cancelled(db: AsyncSession, booking: Booking, refund: Decimal) -> None:
    provider = await db.get(Provider, booking.provider_id)
    data = {"booking_id": str(booking.id), "refund_amount": str(refund)}
    client_msg = "Your booking has been cancelled."
    if refund > 0:
        client_msg += f" Refund amount: {booking.currency} {refund}"
    await notify(db, booking.client_id, NotificationType.BOOKING_CANCELLED, "Booking cancelled", client_msg, data)
    if provider is not None:
        await notify(
            db,
            provider.user_id,
            NotificationType.BOOKING_CANCELLED,
            "Booking cancelled",
            f"A booking has been cancelled. Reason: {booking.cancellation_reason or 'not given'}",
            data,
        )


async def complete_booking(
    db: AsyncSession,
    user: User,
    booking_id: uuid.UUID,
    notes: str | None = None,
    now: datetime | None = None,
) -> Booking:
    now = as_utc(now or utcnow())
    booking = await _lock_booking(db, booking_id)
    actor = await _actor_for(db, user, booking)
    if actor not in (CancelledBy.PROVIDER, CancelledBy.ADMIN):
        raise Forbidden("Only the provider can mark a booking as complete")
    validate_transition(booking.status, BookingStatus.COMPLETED, "complete")
    if now < as_utc(booking.start_time):
        raise ValidationError("Booking cannot be completed before it starts")

    booking.status = BookingStatus.COMPLETED
    booking.completed_at = now
    if notes:
        booking.provider_notes = notes
    await db.flush()
    await notify(
        db,
        booking.client_id,
        NotificationType.BOOKING_COMPLETED,
        "Booking completed",
        "Your booking has been completed.",
        {"booking_id": str(booking.id)},
    )
    BOOKINGS_COMPLETED.inc()
    logger.info("booking_completed", booking_id=str(booking.id))
    return booking


async def get_booking_for(db: AsyncSession, user: User, booking_id: uuid.UUID) -> Booking:
    booking = await db.get(Booking, booking_id)
    if booking is None:
        raise BookingNotFound("Booking not found", details={"booking_id": str(booking_id)})
    if await _actor_for(db, user, booking) is None:
        raise Forbidden("Access denied")
    return booking


async def list_bookings_for(
    db: AsyncSession,
    user: User,
    status: BookingStatus | None = None,
    page: int = 1,
    limit: int = 20,
) -> dict:
    query = select(Booking)
    count_query = select(func.count(Booking.id))
    if user.role == UserRole.CLIENT:
        query = query.where(Booking.client_id == user.id)
        count_query = count_query.where(Booking.client_id == user.id)
    elif user.role in PROVIDER_ROLES:
        owned = select(Provider.id).where(Provider.user_id == user.id)
        query = query.where(Booking.provider_id.in_(owned))
        count_query = count_query.where(Booking.provider_id.in_(owned))
    if status is not None:
        query = query.where(Booking.status == status)
        count_query = count_query.where(Booking.status == status)

    total = (await db.execute(count_query)).scalar_one()
    result = await db.execute(
        query.order_by(Booking.start_time.desc()).offset((page - 1) * limit).limit(limit)
    )
    return {"items": list(result.scalars().all()), "total": total, "page": page, "limit": limit}


async def booked_slots(db: AsyncSession, provider_id: uuid.UUID, day: date) -> dict:
    """Blocking bookings on ``day`` (UTC) plus the advisory holds currently placed."""
    provider = await db.get(Provider, provider_id)
    if provider is None:
        raise NotFound("Provider not found", details={"provider_id": str(provider_id)})
    day_start = datetime.combine(day, time(0, 0), tzinfo=timezone.utc)
    day_end = day_start + timedelta(days=1)
    bookings = await find_conflicts(db, provider_id, day_start, day_end)
    holds = [
        h for h in await slot_hold.active_holds(provider_id)
        if h["start"] < day_end and h["end"] > day_start
    ]
    return {
        "booked": sorted(
            (
                {
                    "start": as_utc(b.start_time),
                    "end": as_utc(b.end_time),
                    "status": BookingStatus(b.status).value,
                }
                for b in bookings
            ),
            key=lambda slot: slot["start"],
        ),
        "held": holds,
    }
