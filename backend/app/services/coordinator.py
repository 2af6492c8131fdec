"""Settlement of a successful payment: confirm, record revenue, credit, notify.

Each step commits on its own and leaves a marker on the booking's
``SettlementRun``. A replay (duplicate webhook, scheduler retry after a
crash) skips every step whose marker is already set, and the steps
themselves are idempotent, so the booking is confirmed once, the revenue
record exists once and the provider is credited once.
"""
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal

import structlog
from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.errors import DuplicateSettlement, ManualReconciliationRequired
from app.metrics import SETTLEMENTS
from app.models.booking import Booking
from app.models.enums import (
    BookingStatus,
    CancelledBy,
    NotificationType,
    PaymentStatus,
    ReconciliationKind,
    SettlementRunStatus,
)
from app.models.payment import Payment
from app.models.provider import Provider
from app.models.revenue import RevenueRecord
from app.models.settlement_run import SettlementRun
from app.services import reconciliation
from app.services.availability import find_conflicts
from app.services.notifications import notify
from app.services.payhere import PayHereNotification
from app.services.settlement import create_revenue_record, get_revenue_for_booking
from app.services.wallet import credit_from_revenue
from app.utils.booking_state import can_transition
from app.utils.dates import as_utc, utcnow

logger = structlog.get_logger()

SCHEDULER_BATCH_SIZE = 20

# Statuses in which a booking counts as confirmed for settlement purposes.
_SETTLED_BOOKING_STATUSES = (
    BookingStatus.CONFIRMED,
    BookingStatus.COMPLETED,
    BookingStatus.CANCEL_PENDING,
    BookingStatus.REFUNDED,
)


@dataclass
class SettlementResult:
    run: SettlementRun
    replayed: bool = False


class SettlementCoordinator:
    def __init__(self, commission_rate: Decimal | None = None):
        self.commission_rate = (
            settings.PLATFORM_COMMISSION_RATE if commission_rate is None else Decimal(commission_rate)
        )

    async def settle(
        self,
        db: AsyncSession,
        payment: Payment,
        notification: PayHereNotification | None = None,
    ) -> SettlementResult:
        """Run (or resume) the settlement of ``payment``.

        Raises ManualReconciliationRequired when the payment cannot be tied
        to a confirmable booking, or when the booking was already settled
        through a different order. Any other failure marks the run failed,
        opens a reconciliation item and is re-raised so the gateway retries.
        """
        log = logger.bind(order_id=payment.payhere_order_id, amount=str(payment.amount))

        if notification is not None:
            await self._check_amount_reconciliation(db, payment, notification)

        booking = None
        if payment.booking_id is not None:
            result = await db.execute(
                select(Booking).where(Booking.id == payment.booking_id).with_for_update()
            )
            booking = result.scalar_one_or_none()
        if booking is None:
            await self._reconcile(
                db,
                ReconciliationKind.BOOKING_NOT_FOUND,
                "Payment succeeded for a booking that no longer exists",
                payment,
                notification,
            )
            log.error("payhere_webhook_booking_not_found", booking_id=str(payment.booking_id))
            raise ManualReconciliationRequired(
                "Booking not found for payment", details={"order_id": payment.payhere_order_id}
            )

        log = log.bind(booking_id=str(booking.id))
        run = await self._get_or_create_run(db, booking, payment, notification)
        if run.order_id != payment.payhere_order_id:
            await self._record_duplicate_payment(db, run, booking, payment, notification)
        if run.status == SettlementRunStatus.COMPLETED:
            SETTLEMENTS.labels(outcome="already_settled").inc()
            log.info("settlement_already_completed", run_id=str(run.id))
            return SettlementResult(run=run, replayed=True)
        if run.status == SettlementRunStatus.ABANDONED:
            raise ManualReconciliationRequired(
                "Settlement was abandoned and needs an operator", details={"booking_id": str(booking.id)}
            )

        run_id = run.id
        run.attempts = (run.attempts or 0) + 1
        run.status = SettlementRunStatus.IN_PROGRESS
        await db.commit()

        step = "confirm"
        try:
            if run.booking_confirmed_at is None:
                await self._confirm(db, run, booking, payment, notification)
            step = "revenue"
            if run.revenue_record_id is None:
                revenue = await self._record_revenue(db, run, booking, payment)
            else:
                revenue = await db.get(RevenueRecord, run.revenue_record_id)
            step = "credit"
            if run.wallet_transaction_id is None:
                await self._credit(db, run, booking, revenue)
            step = "notify"
            if run.notified_at is None:
                await self._notify(db, run, booking)
            run.status = SettlementRunStatus.COMPLETED
            run.failed_step = None
            run.last_error = None
            await db.commit()
        except ManualReconciliationRequired:
            raise
        except Exception as exc:
            await db.rollback()
            await self._mark_failed(db, run_id, step, exc)
            SETTLEMENTS.labels(outcome="failed").inc()
            log.exception("settlement_failed", step=step, run_id=str(run_id))
            raise

        SETTLEMENTS.labels(outcome="settled").inc()
        log.info("settlement_completed", run_id=str(run.id), attempts=run.attempts)
        return SettlementResult(run=run)

    async def _check_amount_reconciliation(
        self, db: AsyncSession, payment: Payment, notification: PayHereNotification
    ) -> None:
        """The captured amount and currency must match what the checkout asked for."""
        amount_matches = notification.amount_decimal == payment.amount
        currency_matches = notification.currency.upper() == (payment.currency or "").upper()
        if amount_matches and currency_matches:
            return
        await self._reconcile(
            db,
            ReconciliationKind.AMOUNT_MISMATCH,
            f"Gateway reported {notification.amount} {notification.currency}, "
            f"expected {payment.amount} {payment.currency}",
            payment,
            notification,
        )
        logger.error(
            "payhere_amount_mismatch",
            order_id=payment.payhere_order_id,
            expected=str(payment.amount),
            received=notification.amount,
            currency=notification.currency,
        )
        raise ManualReconciliationRequired(
            "Captured amount does not match the booking", details={"order_id": payment.payhere_order_id}
        )

    async def _get_or_create_run(
        self,
        db: AsyncSession,
        booking: Booking,
        payment: Payment,
        notification: PayHereNotification | None,
    ) -> SettlementRun:
        result = await db.execute(select(SettlementRun).where(SettlementRun.booking_id == booking.id))
        run = result.scalar_one_or_none()
        if run is not None:
            return run
        run = SettlementRun(
            booking_id=booking.id,
            order_id=payment.payhere_order_id,
            payhere_payment_id=notification.payment_id if notification else payment.payhere_payment_id,
            payment_method=notification.method if notification else payment.payment_method,
            amount=payment.amount,
            status=SettlementRunStatus.IN_PROGRESS,
            attempts=0,
        )
        try:
            async with db.begin_nested():
                db.add(run)
                await db.flush()
        except IntegrityError:
            result = await db.execute(select(SettlementRun).where(SettlementRun.booking_id == booking.id))
            run = result.scalar_one()
        return run

    async def _confirm(
        self,
        db: AsyncSession,
        run: SettlementRun,
        booking: Booking,
        payment: Payment,
        notification: PayHereNotification | None,
    ) -> None:
        now = utcnow()
        # The lock taken in settle() ended with the run commit.
        result = await db.execute(
            select(Booking)
            .where(Booking.id == booking.id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        booking = result.scalar_one()
        if booking.status not in _SETTLED_BOOKING_STATUSES:
            if not can_transition(booking.status, BookingStatus.CONFIRMED):
                await self._abandon(
                    db,
                    run,
                    booking,
                    payment,
                    ReconciliationKind.BOOKING_NOT_PAYABLE,
                    f"Payment succeeded for a booking in status '{BookingStatus(booking.status).value}'",
                )
            # reservation_pending does not block, so another client may have
            # paid for the same window first.
            await db.execute(select(Provider.id).where(Provider.id == booking.provider_id).with_for_update())
            conflicts = await find_conflicts(
                db, booking.provider_id, as_utc(booking.start_time), as_utc(booking.end_time),
                exclude_booking_id=booking.id,
            )
            if conflicts:
                booking.status = BookingStatus.CANCELLED
                booking.cancelled_by = CancelledBy.GATEWAY
                booking.cancelled_at = now
                booking.cancellation_reason = "Slot was taken before the payment completed"
                await self._abandon(
                    db,
                    run,
                    booking,
                    payment,
                    ReconciliationKind.SLOT_CONFLICT,
                    "Payment succeeded but the slot was already confirmed for another booking; refund due",
                )
            booking.status = BookingStatus.CONFIRMED
            booking.confirmed_at = now

        payment_id = (notification.payment_id if notification else None) or run.payhere_payment_id
        method = (notification.method if notification else None) or run.payment_method
        booking.payhere_payment_id = booking.payhere_payment_id or payment_id
        booking.payment_method = booking.payment_method or method

        if payment.status != PaymentStatus.COMPLETED:
            payment.payhere_payment_id = payment_id
            payment.payment_method = method
            payment.record_status(PaymentStatus.COMPLETED, "payhere_webhook", reason="Payment successful", at=now)
        if notification is not None:
            payment.webhook_received_at = now
            payment.webhook_payload = notification.safe_payload()

        run.booking_confirmed_at = now
        run.payment_recorded_at = now
        run.payhere_payment_id = payment_id
        run.payment_method = method
        await db.commit()
        logger.info("booking_confirmed", booking_id=str(booking.id), order_id=payment.payhere_order_id)

    async def _record_revenue(
        self, db: AsyncSession, run: SettlementRun, booking: Booking, payment: Payment
    ) -> RevenueRecord:
        try:
            revenue = await create_revenue_record(db, booking, payment, self.commission_rate)
        except DuplicateSettlement as exc:
            logger.info("revenue_record_exists", booking_id=str(booking.id), revenue_id=str(exc.existing_id))
            revenue = await get_revenue_for_booking(db, booking.id)
        run.revenue_record_id = revenue.id
        await db.commit()
        return revenue

    async def _credit(self, db: AsyncSession, run: SettlementRun, booking: Booking, revenue: RevenueRecord) -> None:
        provider = await db.get(Provider, booking.provider_id)
        tx = await credit_from_revenue(db, revenue, provider.user_id, order_id=run.order_id)
        run.wallet_transaction_id = tx.id
        await db.commit()

    async def _notify(self, db: AsyncSession, run: SettlementRun, booking: Booking) -> None:
        provider = await db.get(Provider, booking.provider_id)
        start = as_utc(booking.start_time).isoformat()
        data = {"booking_id": str(booking.id)}
        await notify(
            db,
            booking.client_id,
            NotificationType.BOOKING_CONFIRMED,
            "Booking confirmed",
            f"Your booking with {provider.name} on {start} is confirmed.",
            data,
        )
        await notify(
            db,
            provider.user_id,
            NotificationType.PAYMENT_RECEIVED,
            "New paid booking",
            f"A booking on {start} has been paid and confirmed.",
            data,
        )
        run.notified_at = utcnow()
        await db.commit()

    async def _abandon(
        self,
        db: AsyncSession,
        run: SettlementRun,
        booking: Booking,
        payment: Payment,
        kind: ReconciliationKind,
        detail: str,
    ) -> None:
        if payment.status != PaymentStatus.COMPLETED:
            payment.record_status(PaymentStatus.COMPLETED, "payhere_webhook", reason="Payment successful", notes=detail)
        run.status = SettlementRunStatus.ABANDONED
        run.failed_step = "confirm"
        run.last_error = detail
        await reconciliation.open_item(
            db,
            kind,
            detail,
            order_id=payment.payhere_order_id,
            booking_id=booking.id,
            payhere_payment_id=run.payhere_payment_id,
            amount=payment.amount,
        )
        await db.commit()
        SETTLEMENTS.labels(outcome="abandoned").inc()
        logger.error(
            "settlement_abandoned",
            booking_id=str(booking.id),
            order_id=payment.payhere_order_id,
            amount=str(payment.amount),
            kind=kind.value,
        )
        raise ManualReconciliationRequired(detail, details={"booking_id": str(booking.id)})

    async def _record_duplicate_payment(
        self,
        db: AsyncSession,
        run: SettlementRun,
        booking: Booking,
        payment: Payment,
        notification: PayHereNotification | None,
    ) -> None:
        """A second checkout for the same booking was captured; the booking settles once."""
        detail = (
            f"Booking already settled by order {run.order_id}; "
            f"payment for order {payment.payhere_order_id} needs a refund"
        )
        if payment.status != PaymentStatus.COMPLETED:
            if notification is not None:
                payment.payhere_payment_id = notification.payment_id
                payment.payment_method = notification.method
                payment.webhook_received_at = utcnow()
                payment.webhook_payload = notification.safe_payload()
            payment.record_status(PaymentStatus.COMPLETED, "payhere_webhook", reason="Payment successful", notes=detail)
        await reconciliation.open_item(
            db,
            ReconciliationKind.DUPLICATE_PAYMENT,
            detail,
            order_id=payment.payhere_order_id,
            booking_id=booking.id,
            payhere_payment_id=payment.payhere_payment_id,
            amount=payment.amount,
        )
        await db.commit()
        SETTLEMENTS.labels(outcome="duplicate_payment").inc()
        logger.error(
            "settlement_duplicate_payment",
            booking_id=str(booking.id),
            order_id=payment.payhere_order_id,
            settled_order_id=run.order_id,
            amount=str(payment.amount),
        )
        raise ManualReconciliationRequired(detail, details={"booking_id": str(booking.id)})

    async def _reconcile(
        self,
        db: AsyncSession,
        kind: ReconciliationKind,
        detail: str,
        payment: Payment,
        notification: PayHereNotification | None,
    ) -> None:
        await reconciliation.open_item(
            db,
            kind,
            detail,
            order_id=payment.payhere_order_id,
            booking_id=payment.booking_id,
            payhere_payment_id=notification.payment_id if notification else payment.payhere_payment_id,
            amount=notification.amount_decimal if notification else payment.amount,
        )
        await db.commit()

    async def _mark_failed(
        self, db: AsyncSession, run_id: uuid.UUID, step: str, exc: Exception
    ) -> None:
        run = await db.get(SettlementRun, run_id, populate_existing=True)
        if run is None:
            return
        run.status = SettlementRunStatus.FAILED
        run.failed_step = step
        run.last_error = f"{type(exc).__name__}: {exc}"[:2000]
        await reconciliation.open_item(
            db,
            ReconciliationKind.SETTLEMENT_FAILED,
            f"Settlement failed at step '{step}': {type(exc).__name__}",
            order_id=run.order_id,
            booking_id=run.booking_id,
            payhere_payment_id=run.payhere_payment_id,
            amount=run.amount,
        )
        await db.commit()


async def resume_pending_settlements(
    db: AsyncSession,
    coordinator: SettlementCoordinator | None = None,
    now: datetime | None = None,
    limit: int = SCHEDULER_BATCH_SIZE,
) -> dict[str, int]:
    """Replay failed runs and in-progress runs that have gone stale."""
    coordinator = coordinator or SettlementCoordinator()
    stale_before = as_utc(now or utcnow()) - timedelta(minutes=settings.SETTLEMENT_RETRY_AFTER_MINUTES)
    result = await db.execute(
        select(SettlementRun.id, SettlementRun.order_id)
        .where(
            or_(
                SettlementRun.status == SettlementRunStatus.FAILED,
                (SettlementRun.status == SettlementRunStatus.IN_PROGRESS)
                & (SettlementRun.updated_at < stale_before),
            )
        )
        .order_by(SettlementRun.updated_at)
        .limit(limit)
    )
    candidates = result.all()

    counts = {"settled": 0, "failed": 0, "manual": 0}
    for run_id, order_id in candidates:
        payment = (
            await db.execute(select(Payment).where(Payment.payhere_order_id == order_id))
        ).scalar_one_or_none()
        if payment is None:
            logger.error("settlement_resume_payment_missing", run_id=str(run_id), order_id=order_id)
            counts["manual"] += 1
            continue
        try:
            await coordinator.settle(db, payment)
            counts["settled"] += 1
        except ManualReconciliationRequired:
            counts["manual"] += 1
        except Exception:
            # Already recorded on the run by settle(); move on to the next one.
            counts["failed"] += 1
    if candidates:
        logger.info("settlement_resume_finished", **counts)
    return counts
