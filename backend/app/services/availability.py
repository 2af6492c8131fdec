"""Decide whether a provider's time window is free.

``is_available`` is advisory: the booking service re-runs ``find_conflicts``
inside the transaction that inserts the booking, with the provider row
locked, and only that second check is authoritative.
"""
import uuid
from datetime import date, datetime, time, timedelta, timezone

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.models.availability import ProviderAvailability
from app.models.booking import Booking
from app.models.enums import BLOCKING_BOOKING_STATUSES
from app.models.provider import Provider
from app.utils.dates import as_utc

logger = structlog.get_logger()

SLOT_STEP_MINUTES = 30


def _window_fits_recurring(window: ProviderAvailability, start: datetime, end: datetime) -> bool:
    # A recurring window only covers requests that stay inside one day.
    if start.date() != end.date():
        return False
    if start.weekday() not in (window.days_of_week or []):
        return False
    return window.start_time <= start.time() and end.time() <= window.end_time


def _window_overlaps_recurring(window: ProviderAvailability, start: datetime, end: datetime) -> bool:
    day = start.date()
    while day <= end.date():
        if day.weekday() in (window.days_of_week or []):
            w_start = datetime.combine(day, window.start_time, tzinfo=timezone.utc)
            w_end = datetime.combine(day, window.end_time, tzinfo=timezone.utc)
            if w_start < end and w_end > start:
                return True
        day += timedelta(days=1)
    return False


def _window_fits_one_off(window: ProviderAvailability, start: datetime, end: datetime) -> bool:
    return as_utc(window.starts_at) <= start and end <= as_utc(window.ends_at)


def _window_overlaps_one_off(window: ProviderAvailability, start: datetime, end: datetime) -> bool:
    return as_utc(window.starts_at) < end and as_utc(window.ends_at) > start


def fits_declared_availability(
    windows: list[ProviderAvailability], start: datetime, end: datetime
) -> bool:
    """Check a UTC window against declared availability.

    With nothing declared the default business hours apply every day.
    Declared unavailable windows block any overlap.
    """
    start, end = as_utc(start), as_utc(end)
    open_windows = [w for w in windows if w.is_available]
    closed_windows = [w for w in windows if not w.is_available]

    for window in closed_windows:
        overlaps = (
            _window_overlaps_recurring(window, start, end)
            if window.is_recurring
            else _window_overlaps_one_off(window, start, end)
        )
        if overlaps:
            return False

    if not open_windows:
        if start.date() != end.date():
            return False
        return (
            settings.DEFAULT_BUSINESS_HOURS_START <= start.time()
            and end.time() <= settings.DEFAULT_BUSINESS_HOURS_END
        )

    for window in open_windows:
        fits = (
            _window_fits_recurring(window, start, end)
            if window.is_recurring
            else _window_fits_one_off(window, start, end)
        )
        if fits:
            return True
    return False


async def find_conflicts(
    db: AsyncSession,
    provider_id: uuid.UUID,
    start: datetime,
    end: datetime,
    exclude_booking_id: uuid.UUID | None = None,
) -> list[Booking]:
    """Blocking bookings overlapping the half-open window [start, end)."""
    query = select(Booking).where(
        Booking.provider_id == provider_id,
        Booking.status.in_([s.value for s in BLOCKING_BOOKING_STATUSES]),
        Booking.start_time < end,
        Booking.end_time > start,
    )
    if exclude_booking_id is not None:
        query = query.where(Booking.id != exclude_booking_id)
    result = await db.execute(query)
    return list(result.scalars().all())


async def load_windows(db: AsyncSession, provider_id: uuid.UUID) -> list[ProviderAvailability]:
    result = await db.execute(
        select(ProviderAvailability).where(ProviderAvailability.provider_id == provider_id)
    )
    return list(result.scalars().all())


async def is_available(db: AsyncSession, provider: Provider, start: datetime, end: datetime) -> bool:
    """Advisory check: declared availability plus no blocking booking. Never mutates."""
    if not provider.is_active:
        return False
    windows = await load_windows(db, provider.id)
    if not fits_declared_availability(windows, start, end):
        logger.info(
            "availability_outside_declared_hours",
            provider_id=str(provider.id),
            start=as_utc(start).isoformat(),
            end=as_utc(end).isoformat(),
        )
        return False
    conflicts = await find_conflicts(db, provider.id, as_utc(start), as_utc(end))
    return not conflicts


async def available_slots(
    db: AsyncSession,
    provider: Provider,
    day: date,
    duration_minutes: int,
    now: datetime | None = None,
) -> list[dict]:
    """Free start times on ``day`` (UTC) in 30-minute steps."""
    windows = await load_windows(db, provider.id)
    day_start = datetime.combine(day, time(0, 0), tzinfo=timezone.utc)
    day_end = day_start + timedelta(days=1)
    booked = await find_conflicts(db, provider.id, day_start, day_end)
    busy = [(as_utc(b.start_time), as_utc(b.end_time)) for b in booked]

    slots = []
    length = timedelta(minutes=duration_minutes)
    cursor = day_start
    while cursor + length <= day_end:
        slot_end = cursor + length
        in_future = now is None or cursor > as_utc(now)
        if (
            in_future
            and fits_declared_availability(windows, cursor, slot_end)
            and not any(b_start < slot_end and b_end > cursor for b_start, b_end in busy)
        ):
            slots.append({"start": cursor, "end": slot_end})
        cursor += timedelta(minutes=SLOT_STEP_MINUTES)
    return slots
