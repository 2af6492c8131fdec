import uuid

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.dependencies import get_current_admin, get_current_provider, get_current_user
from app.errors import Forbidden
from app.models.enums import NotificationType, PayoutStatus, UserRole
from app.models.provider import Provider
from app.models.user import User
from app.schemas.revenue import (
    AdjustmentRequest,
    AdjustmentResponse,
    ConfirmRefundRequest,
    PayoutRequest,
    PayoutResponse,
    ProcessPayoutRequest,
    ReconciliationItemResponse,
    RefundRequest,
    RefundResponse,
    ResolveItemRequest,
    RevenueResponse,
    RevenueSummaryResponse,
)
from app.services import reconciliation
from app.services import settlement as settlement_service
from app.services.notifications import notify
from app.services.wallet import debit_for_refund
from app.utils.dates import epoch_millis, utcnow

router = APIRouter()


@router.get("/me", response_model=RevenueSummaryResponse)
async def my_revenue(
    provider: tuple[User, Provider] = Depends(get_current_provider),
    db: AsyncSession = Depends(get_db),
):
    _, profile = provider
    return await settlement_service.provider_revenue_summary(db, profile.id)


@router.post("/payouts", response_model=list[PayoutResponse], status_code=status.HTTP_201_CREATED)
async def request_payout(
    body: PayoutRequest,
    provider: tuple[User, Provider] = Depends(get_current_provider),
    db: AsyncSession = Depends(get_db),
):
    user, profile = provider
    return await settlement_service.request_payout(
        db,
        profile.id,
        body.amount,
        body.bank_details.model_dump(mode="json") if body.bank_details else None,
        user.id,
    )


@router.patch("/payouts/{payout_id}", response_model=PayoutResponse)
async def process_payout(
    payout_id: uuid.UUID,
    body: ProcessPayoutRequest,
    admin: User = Depends(get_current_admin),
    db: AsyncSession = Depends(get_db),
):
    payout = await settlement_service.process_payout(
        db, payout_id, PayoutStatus(body.status), admin.id, body.reference, body.notes
    )
    if payout.status in (PayoutStatus.COMPLETED, PayoutStatus.FAILED):
        revenue = await settlement_service.get_revenue(db, payout.revenue_id)
        owner = await db.get(Provider, revenue.provider_id)
        if owner is not None:
            await notify(
                db,
                owner.user_id,
                NotificationType.PAYOUT_PROCESSED,
                "Payout processed",
                f"Your payout of {revenue.currency} {payout.amount} is {PayoutStatus(payout.status).value}.",
                {"payout_id": str(payout.id), "status": PayoutStatus(payout.status).value},
            )
    return payout


@router.get("/reconciliation", response_model=list[ReconciliationItemResponse])
async def list_reconciliation_items(
    include_resolved: bool = False,
    limit: int = Query(100, ge=1, le=500),
    admin: User = Depends(get_current_admin),
    db: AsyncSession = Depends(get_db),
):
    return await reconciliation.list_items(db, include_resolved, limit)


@router.patch("/reconciliation/{item_id}", response_model=ReconciliationItemResponse)
async def resolve_reconciliation_item(
    item_id: uuid.UUID,
    body: ResolveItemRequest,
    admin: User = Depends(get_current_admin),
    db: AsyncSession = Depends(get_db),
):
    return await reconciliation.resolve_item(db, item_id, admin.id, body.note)


@router.get("/{revenue_id}", response_model=RevenueResponse)
async def get_revenue(
    revenue_id: uuid.UUID,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    revenue = await settlement_service.get_revenue(db, revenue_id)
    if user.role != UserRole.ADMIN:
        owner = await db.get(Provider, revenue.provider_id)
        if owner is None or owner.user_id != user.id:
            raise Forbidden("Access denied")
    return revenue


@router.post("/{revenue_id}/refunds", response_model=RefundResponse, status_code=status.HTTP_201_CREATED)
async def record_refund(
    revenue_id: uuid.UUID,
    body: RefundRequest,
    admin: User = Depends(get_current_admin),
    db: AsyncSession = Depends(get_db),
):
    """Record a refund issued outside the booking cancellation flow."""
    revenue = await settlement_service.get_revenue(db, revenue_id)
    reference = body.reference or f"manual_{epoch_millis(utcnow())}"
    return await settlement_service.record_refund(db, revenue, body.amount, body.reason, admin.id, reference)


@router.post("/{revenue_id}/refunds/{refund_id}/confirm", response_model=RefundResponse)
async def confirm_refund(
    revenue_id: uuid.UUID,
    refund_id: uuid.UUID,
    body: ConfirmRefundRequest,
    admin: User = Depends(get_current_admin),
    db: AsyncSession = Depends(get_db),
):
    """Confirm a provisional refund and take the provider's share back from their wallet."""
    revenue = await settlement_service.get_revenue(db, revenue_id)
    refund = await settlement_service.confirm_refund(db, revenue, refund_id, body.external_reference, admin.id)
    owner = await db.get(Provider, revenue.provider_id)
    if owner is not None:
        await debit_for_refund(db, revenue, refund, owner.user_id)
    return refund


@router.post("/{revenue_id}/adjustments", response_model=AdjustmentResponse, status_code=status.HTTP_201_CREATED)
async def add_adjustment(
    revenue_id: uuid.UUID,
    body: AdjustmentRequest,
    admin: User = Depends(get_current_admin),
    db: AsyncSession = Depends(get_db),
):
    revenue = await settlement_service.get_revenue(db, revenue_id)
    return await settlement_service.add_adjustment(db, revenue, body.amount, body.reason, body.type, admin.id)
