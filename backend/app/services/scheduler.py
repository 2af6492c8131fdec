# APScheduler job store configuration.
# When REDIS_URL is reachable the jobs are persisted in Redis and survive
# restarts; without Redis the default MemoryJobStore is used (dev/test).
# Every job takes a short Redis lock first so only one worker runs it.
# The reservation expiry sweep runs as a RecurringTask next to the scheduler.

import asyncio
from datetime import datetime, timedelta, timezone

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from sqlalchemy import delete, select

from app.config import settings
from app.database import async_session
from app.metrics import SCHEDULER_JOB_RUNS
from app.models.wallet import Wallet
from app.models.webhook_event import ProcessedWebhookEvent
from app.services.coordinator import SettlementCoordinator, resume_pending_settlements
from app.services.reservations import RecurringTask, expire_reservations
from app.services.wallet import auto_withdraw

logger = structlog.get_logger()

_jobstores: dict = {}
if settings.REDIS_URL:
    try:
        from urllib.parse import urlparse
        from apscheduler.jobstores.redis import RedisJobStore
        _parsed = urlparse(settings.REDIS_URL)
        # Pass ssl=True when using rediss:// (TLS) to preserve encryption
        _redis_kwargs: dict = {
            "host": _parsed.hostname or "localhost",
            "port": _parsed.port or 6379,
            "db": int(_parsed.path.lstrip("/") or 0),
            "password": _parsed.password,
        }
        if _parsed.scheme == "rediss":
            _redis_kwargs["ssl"] = True
        _jobstores["default"] = RedisJobStore(**_redis_kwargs)
        logger.info("scheduler_using_redis_jobstore", redis_url="[redacted]")
    except Exception as exc:
        # Connection refused, missing package, etc. -- fall back to MemoryJobStore.
        logger.warning(
            "scheduler_redis_jobstore_failed",
            error=str(exc),
            fallback="MemoryJobStore",
        )

scheduler = AsyncIOScheduler(jobstores=_jobstores if _jobstores else {})

SCHEDULER_BATCH_SIZE = 20

reservation_sweep: RecurringTask | None = None
_sweep_task: asyncio.Task | None = None


async def _acquire_scheduler_lock(job_name: str, ttl: int = 300) -> bool:
    """Try to acquire a distributed Redis lock for a scheduler job.

    Returns True if the lock was acquired (this worker should run the job).
    Returns False if another worker already holds the lock.
    Falls back to True (allow execution) if Redis is unavailable.
    """
    if not settings.REDIS_URL:
        return True
    try:
        import redis.asyncio as aioredis
        r = aioredis.from_url(settings.REDIS_URL, socket_connect_timeout=2)
        key = f"scheduler_lock:{job_name}"
        acquired = await r.set(key, "1", nx=True, ex=ttl)
        await r.aclose()
        return bool(acquired)
    except Exception:
        # Redis unavailable -- fall back to running the job (dev / single-worker mode)
        return True


async def _release_scheduler_lock(job_name: str) -> None:
    """Drop a scheduler job lock once the job is done, so the next run is not skipped."""
    if not settings.REDIS_URL:
        return
    try:
        import redis.asyncio as aioredis
        r = aioredis.from_url(settings.REDIS_URL, socket_connect_timeout=2)
        await r.delete(f"scheduler_lock:{job_name}")
        await r.aclose()
    except Exception as exc:
        # The TTL expires the lock anyway
        logger.warning("scheduler_lock_release_failed", job_name=job_name, error=str(exc))


async def expire_reservations_job() -> None:
    """Delete reservations left unpaid past RESERVATION_TIMEOUT_MINUTES."""
    # Shorter than the interval so a lock left by a crashed worker never
    # outlives the next tick.
    ttl = max(settings.RESERVATION_SWEEP_INTERVAL_MINUTES * 60 // 2, 1)
    if not await _acquire_scheduler_lock("expire_reservations", ttl=ttl):
        return
    try:
        async with async_session() as db:
            try:
                deleted = await expire_reservations(db)
            except Exception as e:
                await db.rollback()
                SCHEDULER_JOB_RUNS.labels(job_name="expire_reservations", status="error").inc()
                logger.exception("reservation_expiry_failed", error_type=type(e).__name__)
                return
    finally:
        await _release_scheduler_lock("expire_reservations")
    SCHEDULER_JOB_RUNS.labels(job_name="expire_reservations", status="success").inc()
    if deleted:
        logger.info("reservation_expiry_finished", deleted_count=deleted)


async def resume_settlements() -> None:
    """Replay settlements that failed or stalled part-way through.

    Processes at most SCHEDULER_BATCH_SIZE runs; the rest are picked up on
    the next interval.
    """
    if not await _acquire_scheduler_lock("resume_settlements", ttl=600):
        return
    async with async_session() as db:
        counts = await resume_pending_settlements(
            db, SettlementCoordinator(settings.PLATFORM_COMMISSION_RATE), limit=SCHEDULER_BATCH_SIZE
        )
    status = "error" if counts["failed"] else "success"
    SCHEDULER_JOB_RUNS.labels(job_name="resume_settlements", status=status).inc()


async def cleanup_old_webhook_events() -> None:
    """Delete processed webhook events older than 7 days."""
    if not await _acquire_scheduler_lock("cleanup_old_webhook_events"):
        return
    async with async_session() as db:
        cutoff = datetime.now(timezone.utc) - timedelta(days=7)
        result = await db.execute(
            delete(ProcessedWebhookEvent).where(
                ProcessedWebhookEvent.processed_at < cutoff
            )
        )
        count = result.rowcount
        await db.commit()
        SCHEDULER_JOB_RUNS.labels(job_name="cleanup_old_webhook_events", status="success").inc()
        if count:
            logger.info("webhook_events_cleaned_up", deleted_count=count)


async def process_auto_withdrawals() -> None:
    """Request withdrawals for wallets with auto-withdrawal on and a balance above threshold."""
    if not await _acquire_scheduler_lock("process_auto_withdrawals", ttl=3600):
        return
    async with async_session() as db:
        result = await db.execute(
            select(Wallet.id)
            .where(
                Wallet.auto_withdrawal_enabled.is_(True),
                Wallet.bank_details_verified.is_(True),
                Wallet.available_balance >= Wallet.auto_withdrawal_threshold,
            )
            .limit(SCHEDULER_BATCH_SIZE)
        )
        wallet_ids = list(result.scalars().all())

        for wallet_id in wallet_ids:
            try:
                # Per-wallet commit + rollback so one failure does not block the rest.
                wallet = await db.get(Wallet, wallet_id)
                tx = await auto_withdraw(db, wallet)
                await db.commit()
                SCHEDULER_JOB_RUNS.labels(job_name="process_auto_withdrawals", status="success").inc()
                if tx is not None:
                    logger.info(
                        "auto_withdrawal_requested",
                        wallet_id=str(wallet_id),
                        transaction_id=str(tx.id),
                        amount=str(tx.amount),
                    )
            except Exception as e:
                await db.rollback()
                SCHEDULER_JOB_RUNS.labels(job_name="process_auto_withdrawals", status="error").inc()
                logger.exception(
                    "auto_withdrawal_failed",
                    wallet_id=str(wallet_id),
                    error_type=type(e).__name__,
                )


def start_scheduler() -> None:
    """Start the APScheduler with recurring jobs and the reservation sweep.

    Must be called from inside the running event loop.
    """
    global reservation_sweep, _sweep_task
    reservation_sweep = RecurringTask(
        "expire_reservations",
        expire_reservations_job,
        interval=settings.RESERVATION_SWEEP_INTERVAL_MINUTES * 60,
    )
    _sweep_task = asyncio.get_running_loop().create_task(reservation_sweep.run())

    scheduler.add_job(
        resume_settlements,
        "interval",
        minutes=settings.SETTLEMENT_RETRY_AFTER_MINUTES,
        id="resume_settlements",
        replace_existing=True,
        misfire_grace_time=300,
    )
    scheduler.add_job(
        cleanup_old_webhook_events,
        "cron",
        hour=3,
        minute=0,
        id="cleanup_webhook_events",
        replace_existing=True,
        misfire_grace_time=3600,
    )
    scheduler.add_job(
        process_auto_withdrawals,
        "cron",
        hour=2,
        minute=0,
        id="process_auto_withdrawals",
        replace_existing=True,
        misfire_grace_time=3600,
    )

    def _job_error_listener(event):
        if event.exception:
            logger.exception(
                "scheduler_job_failed",
                job_id=event.job_id,
                error=str(event.exception),
            )

    from apscheduler.events import EVENT_JOB_ERROR
    scheduler.add_listener(_job_error_listener, EVENT_JOB_ERROR)

    scheduler.start()
    logger.info("scheduler_started")


async def stop_scheduler() -> None:
    global _sweep_task
    if scheduler.running:
        scheduler.shutdown(wait=True)
    if reservation_sweep is not None:
        reservation_sweep.stop()
    if _sweep_task is not None:
        await _sweep_task
        _sweep_task = None
    logger.info("scheduler_stopped")
