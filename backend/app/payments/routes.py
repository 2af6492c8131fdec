import uuid

import structlog
from fastapi import APIRouter, Depends, HTTPException, Path, Request, status
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.dependencies import get_current_user
from app.errors import Forbidden, ManualReconciliationRequired, NotFound, SignatureMismatch, ValidationError
from app.metrics import WEBHOOK_EVENTS
from app.models.enums import GatewayEvent, ReconciliationKind, UserRole
from app.models.payment import Payment
from app.models.provider import Provider
from app.models.user import User
from app.models.webhook_event import ProcessedWebhookEvent
from app.schemas.payment import PaymentResponse, WebhookAck
from app.services import payhere, reconciliation
from app.services.bookings import apply_gateway_event
from app.services.coordinator import SettlementCoordinator
from app.utils.rate_limit import WEBHOOK_RATE_LIMIT, limiter

logger = structlog.get_logger()
router = APIRouter()

MAX_WEBHOOK_PAYLOAD_BYTES = 16_384


def _parse_uuid(value: str | None) -> uuid.UUID | None:
    try:
        return uuid.UUID(value) if value else None
    except ValueError:
        return None


def get_coordinator() -> SettlementCoordinator:
    return SettlementCoordinator()


async def _mark_processed(db: AsyncSession, event_id: str, outcome: str) -> None:
    try:
        async with db.begin_nested():
            db.add(ProcessedWebhookEvent(event_id=event_id, outcome=outcome))
            await db.flush()
    except IntegrityError:
        # A concurrent delivery of the same notification got there first.
        logger.info("payhere_webhook_duplicate_race", event_id=event_id)
    await db.commit()


@router.post("/webhooks/payhere", response_model=WebhookAck)
@limiter.limit(WEBHOOK_RATE_LIMIT)
async def payhere_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    coordinator: SettlementCoordinator = Depends(get_coordinator),
):
    """PayHere server-to-server notification (form encoded).

    200 means accepted or a harmless no-op, 400 a forged or malformed
    notification, 500 a settlement failure PayHere should retry.
    """
    content_length = request.headers.get("content-length")
    if content_length and content_length.isdigit() and int(content_length) > MAX_WEBHOOK_PAYLOAD_BYTES:
        raise HTTPException(status_code=413, detail="Payload too large")

    form = await request.form()
    try:
        notification = payhere.parse_notification(dict(form))
    except ValidationError as exc:
        WEBHOOK_EVENTS.labels(event="unknown", outcome="malformed").inc()
        logger.warning("payhere_webhook_malformed", error=exc.message)
        raise

    try:
        payhere.verify_notification(notification)
    except SignatureMismatch:
        WEBHOOK_EVENTS.labels(event="unknown", outcome="signature_mismatch").inc()
        logger.warning(
            "payhere_signature_mismatch",
            order_id=notification.order_id,
            merchant_id=notification.merchant_id,
        )
        raise

    event = payhere.map_status(notification.status_code)
    event_label = event.value if event is not None else "unmapped"
    log = logger.bind(order_id=notification.order_id, gateway_event=event_label)
    if event is None:
        WEBHOOK_EVENTS.labels(event=event_label, outcome="ignored").inc()
        return {"status": "ignored"}

    event_id = notification.event_id
    existing = await db.execute(
        select(ProcessedWebhookEvent).where(ProcessedWebhookEvent.event_id == event_id)
    )
    if existing.scalar_one_or_none() is not None:
        WEBHOOK_EVENTS.labels(event=event_label, outcome="duplicate").inc()
        log.info("payhere_webhook_duplicate_skipped", event_id=event_id)
        return {"status": "already_settled" if event == GatewayEvent.SUCCESS else "already_processed"}

    log.info("payhere_webhook_received", status_code=notification.status_code)

    result = await db.execute(select(Payment).where(Payment.payhere_order_id == notification.order_id))
    payment = result.scalar_one_or_none()
    if payment is None:
        await reconciliation.open_item(
            db,
            ReconciliationKind.BOOKING_NOT_FOUND,
            "Notification for an unknown order",
            order_id=notification.order_id,
            booking_id=_parse_uuid(notification.booking_id),
            payhere_payment_id=notification.payment_id,
            amount=notification.amount_decimal,
        )
        log.error("payhere_webhook_booking_not_found", booking_id=notification.booking_id)
        await _mark_processed(db, event_id, "reconciliation_required")
        WEBHOOK_EVENTS.labels(event=event_label, outcome="reconciliation_required").inc()
        return {"status": "reconciliation_required"}

    if event != GatewayEvent.SUCCESS:
        outcome = await apply_gateway_event(db, payment, event, notification)
        await _mark_processed(db, event_id, outcome)
        WEBHOOK_EVENTS.labels(event=event_label, outcome=outcome).inc()
        return {"status": outcome}

    try:
        settled = await coordinator.settle(db, payment, notification)
    except ManualReconciliationRequired as exc:
        await _mark_processed(db, event_id, "reconciliation_required")
        WEBHOOK_EVENTS.labels(event=event_label, outcome="reconciliation_required").inc()
        log.warning("payhere_webhook_reconciliation_required", reason=exc.message)
        return {"status": "reconciliation_required"}
    except Exception:
        # Run already marked failed by the coordinator; PayHere retries on 5xx.
        WEBHOOK_EVENTS.labels(event=event_label, outcome="failed").inc()
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Settlement failed, retry later",
        )

    outcome = "already_settled" if settled.replayed else "settled"
    await _mark_processed(db, event_id, outcome)
    WEBHOOK_EVENTS.labels(event=event_label, outcome=outcome).inc()
    return {"status": outcome}


@router.get("/{order_id}", response_model=PaymentResponse)
async def get_payment(
    order_id: str = Path(max_length=100),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(select(Payment).where(Payment.payhere_order_id == order_id))
    payment = result.scalar_one_or_none()
    if payment is None:
        raise NotFound("Payment not found", details={"order_id": order_id})
    if user.role != UserRole.ADMIN and payment.client_id != user.id:
        provider = await db.get(Provider, payment.provider_id)
        if provider is None or provider.user_id != user.id:
            raise Forbidden("Access denied")
    return payment
