from datetime import timedelta
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.errors import ManualReconciliationRequired
from app.models.booking import Booking
from app.models.enums import (
    BookingStatus,
    CancelledBy,
    PaymentStatus,
    ReconciliationKind,
    SettlementRunStatus,
)
from app.models.notification import Notification
from app.models.payment import Payment
from app.models.provider import Provider
from app.models.revenue import RevenueRecord
from app.models.settlement_run import ReconciliationItem, SettlementRun
from app.models.user import User
from app.models.wallet import Wallet, WalletTransaction
from app.services import payhere
from app.services.bookings import reissue_checkout
from app.services.coordinator import SettlementCoordinator, resume_pending_settlements
from app.utils.dates import utcnow
from tests.conftest import make_booking, notification_form

RATE = Decimal("0.071")


async def _payment(db: AsyncSession, booking_id) -> Payment:
    return (await db.execute(select(Payment).where(Payment.booking_id == booking_id))).scalar_one()


def _notification(booking: Booking, amount: str = "5000.00", currency: str = "LKR"):
    return payhere.parse_notification(
        notification_form(booking.payhere_order_id, amount=amount, currency=currency, booking_id=str(booking.id))
    )


async def _count(db: AsyncSession, column, *where) -> int:
    return (await db.execute(select(func.count(column)).where(*where))).scalar_one()


@pytest.mark.asyncio
async def test_settle_confirms_records_credits_and_notifies(
    db: AsyncSession, client_user: User, studio: Provider, studio_user: User
):
    booking = await make_booking(db, client_user, studio)
    payment = await _payment(db, booking.id)

    result = await SettlementCoordinator(RATE).settle(db, payment, _notification(booking))

    assert result.replayed is False
    run = result.run
    assert run.status == SettlementRunStatus.COMPLETED
    assert run.attempts == 1
    assert run.booking_confirmed_at is not None
    assert run.notified_at is not None

    assert booking.status == BookingStatus.CONFIRMED
    assert booking.payhere_payment_id == "320025071234"
    assert booking.payment_method == "VISA"
    assert payment.status == PaymentStatus.COMPLETED
    assert payment.status_history[-1]["status"] == "Completed"
    assert "md5sig" not in payment.webhook_payload

    revenue = await db.get(RevenueRecord, run.revenue_record_id)
    assert revenue.commission_amount == Decimal("355.00")
    assert revenue.provider_earnings == Decimal("4645.00")

    wallet = (await db.execute(select(Wallet).where(Wallet.user_id == studio_user.id))).scalar_one()
    assert wallet.available_balance == Decimal("4645.00")
    assert run.wallet_transaction_id is not None

    assert await _count(db, Notification.id, Notification.user_id == client_user.id) == 1
    assert await _count(db, Notification.id, Notification.user_id == studio_user.id) == 1


@pytest.mark.asyncio
async def test_replay_is_a_no_op(db: AsyncSession, client_user: User, studio: Provider, studio_user: User):
    booking = await make_booking(db, client_user, studio)
    payment = await _payment(db, booking.id)
    coordinator = SettlementCoordinator(RATE)
    await coordinator.settle(db, payment, _notification(booking))

    replay = await coordinator.settle(db, payment, _notification(booking))

    assert replay.replayed is True
    assert replay.run.attempts == 1
    assert await _count(db, RevenueRecord.id) == 1
    assert await _count(db, WalletTransaction.id) == 1
    wallet = (await db.execute(select(Wallet).where(Wallet.user_id == studio_user.id))).scalar_one()
    assert wallet.available_balance == Decimal("4645.00")


@pytest.mark.asyncio
async def test_crash_after_revenue_resumes_without_duplicates(
    db: AsyncSession, client_user: User, studio: Provider, studio_user: User
):
    booking = await make_booking(db, client_user, studio)
    booking_id, order_id, studio_user_id = booking.id, booking.payhere_order_id, studio_user.id
    payment = await _payment(db, booking_id)
    notification = _notification(booking)
    coordinator = SettlementCoordinator(RATE)

    with patch(
        "app.services.coordinator.credit_from_revenue",
        new_callable=AsyncMock,
        side_effect=RuntimeError("wallet store unavailable"),
    ):
        with pytest.raises(RuntimeError):
            await coordinator.settle(db, payment, notification)

    run = (await db.execute(select(SettlementRun).where(SettlementRun.booking_id == booking_id))).scalar_one()
    assert run.status == SettlementRunStatus.FAILED
    assert run.failed_step == "credit"
    assert run.revenue_record_id is not None
    assert "wallet store unavailable" in run.last_error
    item = (
        await db.execute(
            select(ReconciliationItem).where(ReconciliationItem.kind == ReconciliationKind.SETTLEMENT_FAILED)
        )
    ).scalar_one()
    assert item.order_id == order_id

    payment = (await db.execute(select(Payment).where(Payment.payhere_order_id == order_id))).scalar_one()
    result = await coordinator.settle(db, payment, notification)

    assert result.run.status == SettlementRunStatus.COMPLETED
    assert result.run.attempts == 2
    assert result.run.failed_step is None
    assert await _count(db, RevenueRecord.id) == 1
    assert await _count(db, WalletTransaction.id) == 1
    wallet = (await db.execute(select(Wallet).where(Wallet.user_id == studio_user_id))).scalar_one()
    assert wallet.available_balance == Decimal("4645.00")


@pytest.mark.asyncio
async def test_resume_pending_settlements_picks_up_failed_runs(
    db: AsyncSession, client_user: User, studio: Provider
):
    booking = await make_booking(db, client_user, studio)
    booking_id = booking.id
    payment = await _payment(db, booking_id)
    coordinator = SettlementCoordinator(RATE)

    with patch(
        "app.services.coordinator.notify",
        new_callable=AsyncMock,
        side_effect=RuntimeError("push relay down"),
    ):
        with pytest.raises(RuntimeError):
            await coordinator.settle(db, payment, _notification(booking))

    counts = await resume_pending_settlements(db, coordinator)

    assert counts == {"settled": 1, "failed": 0, "manual": 0}
    run = (await db.execute(select(SettlementRun).where(SettlementRun.booking_id == booking_id))).scalar_one()
    assert run.status == SettlementRunStatus.COMPLETED
    assert await _count(db, WalletTransaction.id) == 1


@pytest.mark.asyncio
async def test_amount_mismatch_goes_to_reconciliation(db: AsyncSession, client_user: User, studio: Provider):
    booking = await make_booking(db, client_user, studio)
    payment = await _payment(db, booking.id)

    with pytest.raises(ManualReconciliationRequired):
        await SettlementCoordinator(RATE).settle(db, payment, _notification(booking, amount="50.00"))

    assert booking.status == BookingStatus.RESERVATION_PENDING
    assert await _count(db, RevenueRecord.id) == 0
    kinds = (await db.execute(select(ReconciliationItem.kind))).scalars().all()
    assert kinds == [ReconciliationKind.AMOUNT_MISMATCH.value]


@pytest.mark.asyncio
async def test_currency_mismatch_goes_to_reconciliation(db: AsyncSession, client_user: User, studio: Provider):
    booking = await make_booking(db, client_user, studio)
    payment = await _payment(db, booking.id)

    with pytest.raises(ManualReconciliationRequired):
        await SettlementCoordinator(RATE).settle(db, payment, _notification(booking, currency="USD"))

    assert await _count(db, SettlementRun.id) == 0


@pytest.mark.asyncio
async def test_slot_taken_by_earlier_payment(
    db: AsyncSession, client_user: User, other_client: User, studio: Provider
):
    first = await make_booking(db, client_user, studio)
    second = await make_booking(db, other_client, studio)
    second_id = second.id
    coordinator = SettlementCoordinator(RATE)
    await coordinator.settle(db, await _payment(db, first.id), _notification(first))

    second_payment = await _payment(db, second_id)
    with pytest.raises(ManualReconciliationRequired):
        await coordinator.settle(db, second_payment, _notification(second))

    assert second.status == BookingStatus.CANCELLED
    assert second.cancelled_by == CancelledBy.GATEWAY
    assert second_payment.status == PaymentStatus.COMPLETED
    run = (await db.execute(select(SettlementRun).where(SettlementRun.booking_id == second_id))).scalar_one()
    assert run.status == SettlementRunStatus.ABANDONED
    item = (
        await db.execute(select(ReconciliationItem).where(ReconciliationItem.booking_id == second_id))
    ).scalar_one()
    assert item.kind == ReconciliationKind.SLOT_CONFLICT
    assert await _count(db, RevenueRecord.id) == 1

    # An abandoned run is never retried automatically.
    with pytest.raises(ManualReconciliationRequired):
        await coordinator.settle(db, second_payment, _notification(second))


@pytest.mark.asyncio
async def test_payment_for_cancelled_booking_is_not_confirmed(
    db: AsyncSession, client_user: User, studio: Provider
):
    booking = await make_booking(db, client_user, studio, status=BookingStatus.CANCELLED)
    payment = await _payment(db, booking.id)

    with pytest.raises(ManualReconciliationRequired):
        await SettlementCoordinator(RATE).settle(db, payment, _notification(booking))

    assert booking.status == BookingStatus.CANCELLED
    kinds = (await db.execute(select(ReconciliationItem.kind))).scalars().all()
    assert kinds == [ReconciliationKind.BOOKING_NOT_PAYABLE.value]


@pytest.mark.asyncio
async def test_payment_for_expired_reservation(db: AsyncSession, client_user: User, studio: Provider):
    booking = await make_booking(db, client_user, studio)
    notification = _notification(booking)
    payment = await _payment(db, booking.id)
    payment.booking_id = None
    await db.execute(delete(Booking).where(Booking.id == booking.id))

    with pytest.raises(ManualReconciliationRequired):
        await SettlementCoordinator(RATE).settle(db, payment, notification)

    kinds = (await db.execute(select(ReconciliationItem.kind))).scalars().all()
    assert kinds == [ReconciliationKind.BOOKING_NOT_FOUND.value]


class _CancelledBeforeConfirm(SettlementCoordinator):
    """Commits a client cancellation after the run is started, before the booking is confirmed."""

    async def _confirm(self, db, run, booking, payment, notification):
        await db.execute(
            update(Booking)
            .where(Booking.id == booking.id)
            .values(status=BookingStatus.CANCELLED, cancelled_by=CancelledBy.CLIENT)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        await super()._confirm(db, run, booking, payment, notification)


@pytest.mark.asyncio
async def test_cancel_committed_during_settlement_is_not_overwritten(
    db: AsyncSession, client_user: User, studio: Provider
):
    booking = await make_booking(db, client_user, studio)
    booking_id = booking.id
    payment = await _payment(db, booking_id)

    with pytest.raises(ManualReconciliationRequired):
        await _CancelledBeforeConfirm(RATE).settle(db, payment, _notification(booking))

    booking = await db.get(Booking, booking_id, populate_existing=True)
    assert booking.status == BookingStatus.CANCELLED
    assert booking.cancelled_by == CancelledBy.CLIENT
    assert booking.confirmed_at is None
    assert await _count(db, RevenueRecord.id) == 0
    kinds = (await db.execute(select(ReconciliationItem.kind))).scalars().all()
    assert kinds == [ReconciliationKind.BOOKING_NOT_PAYABLE.value]


@pytest.mark.asyncio
async def test_second_captured_checkout_goes_to_reconciliation(
    db: AsyncSession, client_user: User, studio: Provider, studio_user: User
):
    booking = await make_booking(db, client_user, studio, status=BookingStatus.PAYMENT_FAILED)
    booking_id, first_order = booking.id, booking.payhere_order_id
    await reissue_checkout(db, client_user, booking_id, now=utcnow() + timedelta(seconds=1))
    second_order = booking.payhere_order_id
    assert second_order != first_order

    coordinator = SettlementCoordinator(RATE)
    first_payment = (
        await db.execute(select(Payment).where(Payment.payhere_order_id == first_order))
    ).scalar_one()
    await coordinator.settle(db, first_payment, payhere.parse_notification(notification_form(first_order)))

    second_payment = (
        await db.execute(select(Payment).where(Payment.payhere_order_id == second_order))
    ).scalar_one()
    second_notification = payhere.parse_notification(
        notification_form(second_order, payment_id="320025079999")
    )
    with pytest.raises(ManualReconciliationRequired):
        await coordinator.settle(db, second_payment, second_notification)

    assert second_payment.status == PaymentStatus.COMPLETED
    assert second_payment.payhere_payment_id == "320025079999"
    item = (
        await db.execute(
            select(ReconciliationItem).where(ReconciliationItem.kind == ReconciliationKind.DUPLICATE_PAYMENT)
        )
    ).scalar_one()
    assert item.order_id == second_order
    assert item.booking_id == booking_id
    assert item.amount == Decimal("5000.00")

    run = (await db.execute(select(SettlementRun).where(SettlementRun.booking_id == booking_id))).scalar_one()
    assert run.order_id == first_order
    assert run.status == SettlementRunStatus.COMPLETED
    assert await _count(db, RevenueRecord.id) == 1
    wallet = (await db.execute(select(Wallet).where(Wallet.user_id == studio_user.id))).scalar_one()
    assert wallet.available_balance == Decimal("4645.00")
