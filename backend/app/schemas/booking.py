import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field, model_validator

from app.models.enums import BookingStatus, CancelledBy, ProviderKind


class BookingCreateRequest(BaseModel):
    provider_id: uuid.UUID
    start_time: datetime
    end_time: datetime
    service_name: str | None = Field(None, max_length=200)
    extra_services: list[str] = Field(default_factory=list, max_length=20)
    equipment: list[str] = Field(default_factory=list, max_length=20)
    notes: str | None = Field(None, max_length=2000)

    @model_validator(mode="after")
    def check_window(self) -> "BookingCreateRequest":
        if self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        return self


class CheckoutResponse(BaseModel):
    checkout_url: str
    fields: dict[str, str]


class BookingResponse(BaseModel):
    id: uuid.UUID
    client_id: uuid.UUID
    provider_id: uuid.UUID
    provider_kind: ProviderKind
    start_time: datetime
    end_time: datetime
    status: BookingStatus
    service: dict | None = None
    services: list | None = None
    equipment: list | None = None
    base_price: Decimal
    total_price: Decimal
    currency: str
    payhere_order_id: str | None = None
    payment_method: str | None = None
    client_notes: str | None = None
    provider_notes: str | None = None
    cancellation_reason: str | None = None
    cancelled_by: CancelledBy | None = None
    refund_amount: Decimal | None = None
    created_at: datetime | None = None
    confirmed_at: datetime | None = None
    cancelled_at: datetime | None = None
    refunded_at: datetime | None = None
    completed_at: datetime | None = None

    model_config = {"from_attributes": True}


class BookingCreatedResponse(BaseModel):
    booking: BookingResponse
    checkout: CheckoutResponse
    expires_at: datetime


class BookingListResponse(BaseModel):
    items: list[BookingResponse]
    total: int
    page: int
    limit: int


class CancelRequest(BaseModel):
    reason: str | None = Field(None, max_length=1000)


class CompleteRequest(BaseModel):
    notes: str | None = Field(None, max_length=2000)


class SlotResponse(BaseModel):
    start: datetime
    end: datetime
    status: BookingStatus | None = None


class HoldResponse(BaseModel):
    start: datetime
    end: datetime
    expires_in: int


class BookedSlotsResponse(BaseModel):
    booked: list[SlotResponse]
    held: list[HoldResponse]


class HoldRequest(BaseModel):
    provider_id: uuid.UUID
    start_time: datetime
    end_time: datetime

    @model_validator(mode="after")
    def check_window(self) -> "HoldRequest":
        if self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        return self


class HoldResult(BaseModel):
    held: bool
    expires_in: int | None = None
