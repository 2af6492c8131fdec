"""Expiry of unpaid reservations.

A booking created but never paid holds no slot (``reservation_pending`` is
not a blocking status) but it still clutters the client's list and keeps a
stale order id alive. The sweep deletes those older than the reservation
timeout.
"""
import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta

import structlog
from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.metrics import RESERVATIONS_EXPIRED
from app.models.booking import Booking
from app.models.enums import BookingStatus
from app.utils.dates import as_utc, utcnow

logger = structlog.get_logger()


def reservation_expires_at(booking: Booking) -> datetime:
    return as_utc(booking.created_at) + timedelta(minutes=settings.RESERVATION_TIMEOUT_MINUTES)


def time_remaining(booking: Booking, now: datetime | None = None) -> timedelta:
    """Time left to pay; zero once expired or when the booking is no longer a reservation."""
    if booking.status != BookingStatus.RESERVATION_PENDING:
        return timedelta(0)
    left = reservation_expires_at(booking) - as_utc(now or utcnow())
    return max(left, timedelta(0))


async def expire_reservations(db: AsyncSession, now: datetime | None = None) -> int:
    """Delete reservations left unpaid past the timeout. Returns the number deleted.

    The status predicate is part of the DELETE itself, so a booking confirmed
    between scheduling and execution of the sweep is never removed.
    """
    cutoff = as_utc(now or utcnow()) - timedelta(minutes=settings.RESERVATION_TIMEOUT_MINUTES)
    result = await db.execute(
        delete(Booking)
        .where(
            Booking.status == BookingStatus.RESERVATION_PENDING,
            Booking.created_at < cutoff,
        )
        .execution_options(synchronize_session=False)
    )
    deleted = result.rowcount or 0
    await db.commit()
    if deleted:
        RESERVATIONS_EXPIRED.inc(deleted)
        logger.info("reservations_expired", count=deleted, cutoff=cutoff.isoformat())
    return deleted


class RecurringTask:
    """Run a coroutine every ``interval`` seconds until stopped.

    ``clock`` and ``sleep`` are injectable so tests can drive it with a fake
    clock. A failing run is logged and the loop carries on.
    """

    def __init__(
        self,
        name: str,
        func: Callable[[], Awaitable[object]],
        interval: float,
        clock: Callable[[], float] | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ):
        self.name = name
        self.func = func
        self.interval = interval
        self._clock = clock
        self._sleep = sleep
        self._stop = asyncio.Event()
        self.runs = 0

    def stop(self) -> None:
        self._stop.set()

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def _now(self) -> float:
        if self._clock is not None:
            return self._clock()
        return asyncio.get_running_loop().time()

    async def _wait(self, seconds: float) -> None:
        if self._sleep is not None:
            await self._sleep(seconds)
            return
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def run(self) -> None:
        next_run = self._now()
        while not self._stop.is_set():
            delay = next_run - self._now()
            if delay > 0:
                await self._wait(delay)
                continue
            try:
                await self.func()
            except Exception:
                logger.exception("recurring_task_failed", task=self.name)
            self.runs += 1
            next_run += self.interval
