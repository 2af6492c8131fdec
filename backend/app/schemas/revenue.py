import uuid
from datetime import datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, Field

from app.models.enums import AdjustmentType, PayoutStatus, ReconciliationKind, RefundStatus, RevenueStatus
from app.schemas.wallet import BankDetailsRequest


class RefundResponse(BaseModel):
    id: uuid.UUID
    amount: Decimal
    reason: str | None = None
    refund_reference: str
    status: RefundStatus
    external_reference: str | None = None
    created_at: datetime | None = None
    confirmed_at: datetime | None = None

    model_config = {"from_attributes": True}


class AdjustmentResponse(BaseModel):
    id: uuid.UUID
    amount: Decimal
    reason: str
    type: AdjustmentType
    created_at: datetime | None = None

    model_config = {"from_attributes": True}


class PayoutResponse(BaseModel):
    id: uuid.UUID
    revenue_id: uuid.UUID
    amount: Decimal
    status: PayoutStatus
    payout_reference: str | None = None
    bank_details: dict | None = None
    processed_at: datetime | None = None
    notes: str | None = None
    created_at: datetime | None = None

    model_config = {"from_attributes": True}


class RevenueResponse(BaseModel):
    id: uuid.UUID
    booking_id: uuid.UUID
    provider_id: uuid.UUID
    client_id: uuid.UUID
    breakdown: dict
    subtotal: Decimal
    commission_rate: Decimal
    commission_amount: Decimal
    provider_earnings: Decimal
    total_amount: Decimal
    currency: str
    payment_id: str | None = None
    payment_method: str | None = None
    payment_date: datetime | None = None
    status: RevenueStatus
    net_earnings: Decimal
    pending_payout_amount: Decimal
    refunds: list[RefundResponse] = []
    adjustments: list[AdjustmentResponse] = []
    payouts: list[PayoutResponse] = []
    created_at: datetime | None = None

    model_config = {"from_attributes": True}


class RevenueSummaryResponse(BaseModel):
    records: int
    total_revenue: Decimal
    total_commission: Decimal
    total_earnings: Decimal
    total_refunded: Decimal
    net_earnings: Decimal
    pending_payout: Decimal
    paid_out: Decimal
    recent: list[RevenueResponse]


class RefundRequest(BaseModel):
    amount: Decimal = Field(gt=0, max_digits=12, decimal_places=2)
    reason: str = Field(min_length=1, max_length=1000)
    reference: str | None = Field(None, max_length=100)


class ConfirmRefundRequest(BaseModel):
    external_reference: str = Field(min_length=1, max_length=100)


class AdjustmentRequest(BaseModel):
    amount: Decimal = Field(max_digits=12, decimal_places=2)
    reason: str = Field(min_length=1, max_length=1000)
    type: AdjustmentType


class PayoutRequest(BaseModel):
    amount: Decimal = Field(gt=0, max_digits=12, decimal_places=2)
    bank_details: BankDetailsRequest | None = None


class ProcessPayoutRequest(BaseModel):
    status: Literal["approved", "processing", "completed", "failed"]
    reference: str | None = Field(None, max_length=100)
    notes: str | None = Field(None, max_length=1000)


class ReconciliationItemResponse(BaseModel):
    id: uuid.UUID
    kind: ReconciliationKind
    order_id: str | None = None
    booking_id: uuid.UUID | None = None
    payhere_payment_id: str | None = None
    amount: Decimal | None = None
    detail: str
    created_at: datetime | None = None
    resolved_at: datetime | None = None
    resolution_note: str | None = None

    model_config = {"from_attributes": True}


class ResolveItemRequest(BaseModel):
    note: str = Field(min_length=1, max_length=2000)
