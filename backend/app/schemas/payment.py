import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel

from app.models.enums import PaymentStatus


class PaymentResponse(BaseModel):
    id: uuid.UUID
    payhere_order_id: str
    booking_id: uuid.UUID | None
    client_id: uuid.UUID
    provider_id: uuid.UUID
    status: PaymentStatus
    amount: Decimal
    currency: str
    booking_snapshot: dict
    status_history: list
    payhere_payment_id: str | None = None
    payment_method: str | None = None
    refund_amount: Decimal | None = None
    refund_reason: str | None = None
    refund_reference: str | None = None
    refunded_at: datetime | None = None
    webhook_received_at: datetime | None = None
    created_at: datetime | None = None

    model_config = {"from_attributes": True}


class WebhookAck(BaseModel):
    status: str
