import uuid
from datetime import date, datetime

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.database import get_db
from app.dependencies import get_current_client, get_current_user
from app.errors import NotFound, ValidationError
from app.models.enums import BookingStatus
from app.models.provider import Provider
from app.models.user import User
from app.schemas.booking import (
    BookedSlotsResponse,
    BookingCreatedResponse,
    BookingCreateRequest,
    BookingListResponse,
    BookingResponse,
    CancelRequest,
    CheckoutResponse,
    CompleteRequest,
    HoldRequest,
    HoldResult,
    SlotResponse,
)
from app.services import bookings as booking_service
from app.services import slot_hold
from app.services.availability import available_slots
from app.services.reservations import reservation_expires_at
from app.utils.dates import utcnow
from app.utils.rate_limit import BOOKING_RATE_LIMIT, LIST_RATE_LIMIT, limiter

router = APIRouter()


@router.post("", response_model=BookingCreatedResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit(BOOKING_RATE_LIMIT)
async def create_booking(
    request: Request,
    body: BookingCreateRequest,
    client: User = Depends(get_current_client),
    db: AsyncSession = Depends(get_db),
):
    """Reserve a window and return the PayHere checkout for it.

    The reservation is dropped by the expiry sweep unless payment succeeds
    within RESERVATION_TIMEOUT_MINUTES.
    """
    booking, checkout = await booking_service.create_booking(
        db,
        client,
        body.provider_id,
        body.start_time,
        body.end_time,
        service_name=body.service_name,
        extra_services=body.extra_services,
        equipment=body.equipment,
        notes=body.notes,
    )
    return BookingCreatedResponse(
        booking=BookingResponse.model_validate(booking),
        checkout=CheckoutResponse(**checkout),
        expires_at=reservation_expires_at(booking),
    )


@router.post("/{booking_id}/checkout", response_model=CheckoutResponse)
@limiter.limit(BOOKING_RATE_LIMIT)
async def reissue_checkout(
    request: Request,
    booking_id: uuid.UUID,
    client: User = Depends(get_current_client),
    db: AsyncSession = Depends(get_db),
):
    """Start a fresh checkout for an unpaid or failed booking."""
    _, checkout = await booking_service.reissue_checkout(db, client, booking_id)
    return CheckoutResponse(**checkout)


@router.get("/me", response_model=BookingListResponse)
@limiter.limit(LIST_RATE_LIMIT)
async def list_my_bookings(
    request: Request,
    status_filter: BookingStatus | None = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    result = await booking_service.list_bookings_for(db, user, status_filter, page, limit)
    return BookingListResponse(
        items=[BookingResponse.model_validate(b) for b in result["items"]],
        total=result["total"],
        page=result["page"],
        limit=result["limit"],
    )


@router.post("/holds", response_model=HoldResult)
@limiter.limit(BOOKING_RATE_LIMIT)
async def place_hold(
    request: Request,
    body: HoldRequest,
    client: User = Depends(get_current_client),
):
    held = await slot_hold.place_hold(body.provider_id, body.start_time, body.end_time, client.id)
    return HoldResult(held=held, expires_in=settings.SLOT_HOLD_TTL_SECONDS if held else None)


@router.delete("/holds", response_model=HoldResult)
async def release_hold(
    provider_id: uuid.UUID,
    start_time: datetime,
    end_time: datetime,
    client: User = Depends(get_current_client),
):
    await slot_hold.release_hold(provider_id, start_time, end_time, client.id)
    return HoldResult(held=False)


@router.get("/providers/{provider_id}/booked-slots", response_model=BookedSlotsResponse)
@limiter.limit(LIST_RATE_LIMIT)
async def booked_slots(
    request: Request,
    provider_id: uuid.UUID,
    day: date = Query(alias="date"),
    db: AsyncSession = Depends(get_db),
):
    return await booking_service.booked_slots(db, provider_id, day)


@router.get("/providers/{provider_id}/available-slots", response_model=list[SlotResponse])
@limiter.limit(LIST_RATE_LIMIT)
async def list_available_slots(
    request: Request,
    provider_id: uuid.UUID,
    day: date = Query(alias="date"),
    duration: int = Query(60, ge=1, le=24 * 60),
    db: AsyncSession = Depends(get_db),
):
    if duration < settings.MINIMUM_BOOKING_MINUTES:
        raise ValidationError(
            f"Bookings must last at least {settings.MINIMUM_BOOKING_MINUTES} minutes"
        )
    provider = await db.get(Provider, provider_id)
    if provider is None or not provider.is_active:
        raise NotFound("Provider not found", details={"provider_id": str(provider_id)})
    return await available_slots(db, provider, day, duration, now=utcnow())


@router.get("/{booking_id}", response_model=BookingResponse)
async def get_booking(
    booking_id: uuid.UUID,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await booking_service.get_booking_for(db, user, booking_id)


@router.patch("/{booking_id}/cancel", response_model=BookingResponse)
@limiter.limit(BOOKING_RATE_LIMIT)
async def cancel_booking(
    request: Request,
    booking_id: uuid.UUID,
    body: CancelRequest | None = None,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Cancel a booking. Paid bookings are refunded according to how far away the start is."""
    return await booking_service.cancel_booking(db, user, booking_id, body.reason if body else None)


@router.patch("/{booking_id}/complete", response_model=BookingResponse)
async def complete_booking(
    booking_id: uuid.UUID,
    body: CompleteRequest | None = None,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await booking_service.complete_booking(db, user, booking_id, body.notes if body else None)
