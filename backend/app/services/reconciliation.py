import uuid
from decimal import Decimal

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.errors import InvalidTransition, NotFound
from app.models.enums import ReconciliationKind
from app.models.settlement_run import ReconciliationItem
from app.utils.dates import utcnow

logger = structlog.get_logger()


async def open_item(
    db: AsyncSession,
    kind: ReconciliationKind,
    detail: str,
    order_id: str | None = None,
    booking_id: uuid.UUID | None = None,
    payhere_payment_id: str | None = None,
    amount: Decimal | None = None,
) -> ReconciliationItem:
    """Queue work for an operator. An identical open item is reused, not duplicated."""
    query = select(ReconciliationItem).where(
        ReconciliationItem.kind == kind,
        ReconciliationItem.resolved_at.is_(None),
    )
    if order_id is not None:
        query = query.where(ReconciliationItem.order_id == order_id)
    if booking_id is not None:
        query = query.where(ReconciliationItem.booking_id == booking_id)
    existing = (await db.execute(query.limit(1))).scalar_one_or_none()
    if existing is not None:
        existing.detail = detail
        await db.flush()
        return existing

    item = ReconciliationItem(
        kind=kind,
        detail=detail,
        order_id=order_id,
        booking_id=booking_id,
        payhere_payment_id=payhere_payment_id,
        amount=amount,
    )
    db.add(item)
    await db.flush()
    logger.warning(
        "reconciliation_item_opened",
        kind=ReconciliationKind(kind).value,
        order_id=order_id,
        booking_id=str(booking_id) if booking_id else None,
        amount=str(amount) if amount is not None else None,
    )
    return item


async def list_items(db: AsyncSession, include_resolved: bool = False, limit: int = 100) -> list[ReconciliationItem]:
    query = select(ReconciliationItem).order_by(ReconciliationItem.created_at.desc()).limit(limit)
    if not include_resolved:
        query = query.where(ReconciliationItem.resolved_at.is_(None))
    return list((await db.execute(query)).scalars().all())


async def resolve_item(db: AsyncSession, item_id: uuid.UUID, admin_id: uuid.UUID, note: str) -> ReconciliationItem:
    item = (
        await db.execute(select(ReconciliationItem).where(ReconciliationItem.id == item_id).with_for_update())
    ).scalar_one_or_none()
    if item is None:
        raise NotFound("Reconciliation item not found", details={"item_id": str(item_id)})
    if item.resolved_at is not None:
        raise InvalidTransition("Reconciliation item is already resolved", details={"item_id": str(item_id)})
    item.resolved_at = utcnow()
    item.resolved_by = admin_id
    item.resolution_note = note
    await db.flush()
    logger.info("reconciliation_item_resolved", item_id=str(item.id), admin_id=str(admin_id))
    return item
