import asyncio
from contextlib import asynccontextmanager, contextmanager
from datetime import timedelta
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.models.booking import Booking
from app.models.enums import SettlementRunStatus, TransactionStatus, TransactionType
from app.models.payment import Payment
from app.models.provider import Provider
from app.models.settlement_run import SettlementRun
from app.models.user import User
from app.models.wallet import WalletTransaction
from app.models.webhook_event import ProcessedWebhookEvent
from app.services import payhere
from app.services import scheduler as scheduler_module
from app.services.coordinator import SettlementCoordinator
from app.services.wallet import TransactionData, add_transaction, get_or_create_wallet, update_bank_details
from app.utils.dates import utcnow
from tests.conftest import FakeRedis, make_booking, notification_form


def _use_session(db: AsyncSession):
    """Make scheduler jobs run on the test session instead of opening their own."""

    @asynccontextmanager
    async def factory():
        yield db

    return patch("app.services.scheduler.async_session", factory)


@contextmanager
def _lock(acquired: bool = True):
    with patch(
        "app.services.scheduler._acquire_scheduler_lock", new_callable=AsyncMock, return_value=acquired
    ), patch("app.services.scheduler._release_scheduler_lock", new_callable=AsyncMock) as release:
        yield release


@pytest.mark.asyncio
async def test_expire_reservations_job(db: AsyncSession, client_user: User, studio: Provider):
    stale = await make_booking(db, client_user, studio, created_at=utcnow() - timedelta(minutes=30))
    fresh = await make_booking(db, client_user, studio)
    stale_id, fresh_id = stale.id, fresh.id

    with _use_session(db), _lock():
        await scheduler_module.expire_reservations_job()

    remaining = (await db.execute(select(Booking.id))).scalars().all()
    assert stale_id not in remaining
    assert fresh_id in remaining


@pytest.mark.asyncio
async def test_job_skipped_when_another_worker_holds_the_lock(
    db: AsyncSession, client_user: User, studio: Provider
):
    stale = await make_booking(db, client_user, studio, created_at=utcnow() - timedelta(minutes=30))
    stale_id = stale.id

    with _use_session(db), _lock(acquired=False) as release:
        await scheduler_module.expire_reservations_job()

    assert (await db.execute(select(Booking.id).where(Booking.id == stale_id))).scalar_one() == stale_id
    release.assert_not_awaited()


@pytest.mark.asyncio
async def test_sweep_lock_does_not_block_the_next_run(db: AsyncSession, fake_redis: FakeRedis):
    ttls = []
    original_set = fake_redis.set

    async def recording_set(key, value, nx=False, ex=None):
        ttls.append(ex)
        return await original_set(key, value, nx=nx, ex=ex)

    fake_redis.set = recording_set
    with _use_session(db), patch("redis.asyncio.from_url", return_value=fake_redis):
        await scheduler_module.expire_reservations_job()
        assert "scheduler_lock:expire_reservations" not in fake_redis.store

        assert await scheduler_module._acquire_scheduler_lock("expire_reservations", ttl=60) is True

    assert ttls[0] < settings.RESERVATION_SWEEP_INTERVAL_MINUTES * 60


@pytest.mark.asyncio
async def test_sweep_lock_released_when_the_sweep_fails(db: AsyncSession):
    with (
        _use_session(db),
        _lock() as release,
        patch(
            "app.services.scheduler.expire_reservations",
            new_callable=AsyncMock,
            side_effect=RuntimeError("database gone"),
        ),
    ):
        await scheduler_module.expire_reservations_job()

    release.assert_awaited_once_with("expire_reservations")


@pytest.mark.asyncio
async def test_cleanup_old_webhook_events(db: AsyncSession):
    db.add(ProcessedWebhookEvent(event_id="booking_a_1:2:1", outcome="settled", processed_at=utcnow() - timedelta(days=8)))
    db.add(ProcessedWebhookEvent(event_id="booking_b_1:2:2", outcome="settled", processed_at=utcnow()))
    await db.flush()

    with _use_session(db), _lock():
        await scheduler_module.cleanup_old_webhook_events()

    kept = (await db.execute(select(ProcessedWebhookEvent.event_id))).scalars().all()
    assert kept == ["booking_b_1:2:2"]


@pytest.mark.asyncio
async def test_process_auto_withdrawals(db: AsyncSession, studio_user: User, client_user: User):
    eligible = await get_or_create_wallet(db, studio_user.id)
    await update_bank_details(
        db,
        eligible,
        {"bank_name": "Sampath Bank", "account_number": "1029384756", "account_holder_name": "Harbour Sound"},
    )
    eligible.bank_details_verified = True
    eligible.auto_withdrawal_enabled = True
    await add_transaction(
        db, eligible, TransactionData(type=TransactionType.CREDIT, amount=Decimal("12000.00"), description="x")
    )
    unverified = await get_or_create_wallet(db, client_user.id)
    unverified.auto_withdrawal_enabled = True
    await add_transaction(
        db, unverified, TransactionData(type=TransactionType.CREDIT, amount=Decimal("50000.00"), description="x")
    )
    eligible_id = eligible.id

    with _use_session(db), _lock():
        await scheduler_module.process_auto_withdrawals()

    withdrawals = (
        await db.execute(select(WalletTransaction).where(WalletTransaction.type == TransactionType.WITHDRAWAL))
    ).scalars().all()
    assert len(withdrawals) == 1
    assert withdrawals[0].wallet_id == eligible_id
    assert withdrawals[0].amount == Decimal("12000.00")
    assert withdrawals[0].status == TransactionStatus.PENDING


@pytest.mark.asyncio
async def test_resume_settlements_job(db: AsyncSession, client_user: User, studio: Provider):
    booking = await make_booking(db, client_user, studio)
    booking_id = booking.id
    payment = (await db.execute(select(Payment).where(Payment.booking_id == booking_id))).scalar_one()
    notification = payhere.parse_notification(notification_form(booking.payhere_order_id))

    with patch(
        "app.services.coordinator.credit_from_revenue",
        new_callable=AsyncMock,
        side_effect=RuntimeError("ledger unavailable"),
    ):
        with pytest.raises(RuntimeError):
            await SettlementCoordinator(Decimal("0.071")).settle(db, payment, notification)

    with _use_session(db), _lock():
        await scheduler_module.resume_settlements()

    run = (await db.execute(select(SettlementRun).where(SettlementRun.booking_id == booking_id))).scalar_one()
    assert run.status == SettlementRunStatus.COMPLETED
    assert run.wallet_transaction_id is not None


@pytest.mark.asyncio
async def test_start_and_stop_scheduler():
    mock_scheduler = MagicMock()
    mock_scheduler.running = True
    swept = asyncio.Event()

    async def fake_sweep():
        swept.set()

    with (
        patch("app.services.scheduler.scheduler", mock_scheduler),
        patch("app.services.scheduler.expire_reservations_job", fake_sweep),
    ):
        scheduler_module.start_scheduler()
        await asyncio.wait_for(swept.wait(), timeout=1)
        await scheduler_module.stop_scheduler()

    job_ids = {c.kwargs["id"] for c in mock_scheduler.add_job.call_args_list}
    assert job_ids == {"resume_settlements", "cleanup_webhook_events", "process_auto_withdrawals"}
    mock_scheduler.start.assert_called_once()
    mock_scheduler.shutdown.assert_called_once_with(wait=True)
    assert scheduler_module.reservation_sweep.stopped
    assert scheduler_module.reservation_sweep.runs == 1
