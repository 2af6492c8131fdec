"""PayHere gateway adapter.

Builds checkout payloads, verifies notification signatures and maps numeric
status codes to gateway events. PayHere has no programmatic refund
confirmation, so ``request_refund`` only produces a provisional receipt that
an operator confirms later.
"""
import hashlib
import hmac
import time as _time
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation

import structlog

from app.config import settings
from app.errors import PaymentGatewayError, SignatureMismatch, ValidationError
from app.metrics import GATEWAY_CALL_DURATION
from app.models.booking import Booking
from app.models.enums import GatewayEvent
from app.models.provider import Provider
from app.models.user import User
from app.services.pricing import to_money
from app.utils.dates import epoch_millis, utcnow

logger = structlog.get_logger()

STATUS_CODE_EVENTS: dict[int, GatewayEvent] = {
    2: GatewayEvent.SUCCESS,
    0: GatewayEvent.PENDING,
    -1: GatewayEvent.CANCELLED,
    -2: GatewayEvent.FAILED,
    -3: GatewayEvent.CHARGEBACK,
}

REFUND_PENDING_MANUAL = "pending_manual_processing"

_REQUIRED_FIELDS = (
    "merchant_id",
    "order_id",
    "status_code",
    "payhere_amount",
    "payhere_currency",
    "md5sig",
)


@dataclass(frozen=True)
class PayHereNotification:
    merchant_id: str
    order_id: str
    payment_id: str | None
    status_code: int
    amount: str  # kept verbatim, it is part of the signed string
    currency: str
    signature: str
    booking_id: str | None = None
    method: str | None = None
    status_message: str | None = None

    @property
    def event(self) -> GatewayEvent | None:
        return STATUS_CODE_EVENTS.get(self.status_code)

    @property
    def amount_decimal(self) -> Decimal:
        return to_money(self.amount)

    @property
    def event_id(self) -> str:
        return f"{self.order_id}:{self.status_code}:{self.payment_id or '-'}"

    def safe_payload(self) -> dict:
        """Notification fields without the signature, for storage on the payment."""
        return {
            "merchant_id": self.merchant_id,
            "order_id": self.order_id,
            "payment_id": self.payment_id,
            "status_code": self.status_code,
            "payhere_amount": self.amount,
            "payhere_currency": self.currency,
            "custom_1": self.booking_id,
            "method": self.method,
            "status_message": self.status_message,
        }


@dataclass(frozen=True)
class RefundReceipt:
    reference: str
    amount: Decimal
    status: str = REFUND_PENDING_MANUAL


def _md5_upper(value: str) -> str:
    return hashlib.md5(value.encode("utf-8")).hexdigest().upper()


def secret_digest(secret: str | None = None) -> str:
    return _md5_upper(settings.PAYHERE_MERCHANT_SECRET if secret is None else secret)


def format_amount(amount: Decimal) -> str:
    return f"{to_money(amount):.2f}"


def checkout_hash(
    merchant_id: str, order_id: str, amount: str, currency: str, secret: str | None = None
) -> str:
    """MD5(merchant_id + order_id + amount + currency + MD5(secret).upper()).upper()."""
    return _md5_upper(f"{merchant_id}{order_id}{amount}{currency}{secret_digest(secret)}")


def generate_order_id(booking_id: uuid.UUID, now: datetime | None = None) -> str:
    return f"booking_{booking_id}_{epoch_millis(now or utcnow())}"


def build_checkout(booking: Booking, client: User, provider: Provider, order_id: str) -> dict:
    """Checkout instructions the client posts to PayHere."""
    start = _time.monotonic()
    amount = format_amount(booking.total_price)
    currency = (booking.currency or settings.DEFAULT_CURRENCY).upper()
    merchant_id = settings.PAYHERE_MERCHANT_ID
    items = (booking.service or {}).get("name") or "Studio Booking"

    fields = {
        "merchant_id": merchant_id,
        "return_url": settings.PAYHERE_RETURN_URL,
        "cancel_url": settings.PAYHERE_CANCEL_URL,
        "notify_url": settings.PAYHERE_NOTIFY_URL,
        "order_id": order_id,
        "items": items,
        "currency": currency,
        "amount": amount,
        "first_name": client.first_name or "",
        "last_name": client.last_name or "",
        "email": client.email,
        "phone": client.phone or "",
        "address": client.address or "",
        "city": client.city or "",
        "country": "Sri Lanka",
        "custom_1": str(booking.id),
        "custom_2": str(provider.id),
        "hash": checkout_hash(merchant_id, order_id, amount, currency),
    }
    GATEWAY_CALL_DURATION.labels(operation="build_checkout").observe(_time.monotonic() - start)
    logger.info("payhere_checkout_built", booking_id=str(booking.id), order_id=order_id, amount=amount)
    return {"checkout_url": settings.payhere_checkout_url, "fields": fields}


def parse_notification(form: dict) -> PayHereNotification:
    missing = [name for name in _REQUIRED_FIELDS if not form.get(name)]
    if missing:
        raise ValidationError("Malformed PayHere notification", details={"missing": missing})
    try:
        status_code = int(form["status_code"])
        Decimal(str(form["payhere_amount"]))
    except (ValueError, InvalidOperation):
        raise ValidationError("Malformed PayHere notification", details={"field": "status_code/payhere_amount"})

    return PayHereNotification(
        merchant_id=str(form["merchant_id"]),
        order_id=str(form["order_id"]),
        payment_id=form.get("payment_id") or None,
        status_code=status_code,
        amount=str(form["payhere_amount"]),
        currency=str(form["payhere_currency"]),
        signature=str(form["md5sig"]),
        booking_id=form.get("custom_1") or None,
        method=form.get("method") or None,
        status_message=form.get("status_message") or None,
    )


def verify_notification(notification: PayHereNotification, secret: str | None = None) -> None:
    """Recompute the signature over the notification's own fields.

    Raises SignatureMismatch; callers must not mutate anything in that case.
    """
    expected = checkout_hash(
        notification.merchant_id,
        notification.order_id,
        notification.amount,
        notification.currency,
        secret,
    )
    if not hmac.compare_digest(expected, notification.signature.upper()):
        raise SignatureMismatch(
            "PayHere signature mismatch",
            details={"order_id": notification.order_id},
        )


def map_status(status_code: int) -> GatewayEvent | None:
    event = STATUS_CODE_EVENTS.get(status_code)
    if event is None:
        logger.warning("payhere_unknown_status_code", status_code=status_code)
    return event


async def request_refund(payment_id: str | None, amount: Decimal, reason: str | None = None) -> RefundReceipt:
    """Ask the gateway for a refund.

    PayHere offers no refund API to this merchant type: the receipt is
    provisional until an operator confirms the refund out of band.
    """
    start = _time.monotonic()
    if not payment_id:
        raise PaymentGatewayError("Cannot refund a payment without a gateway payment id")
    if amount <= 0:
        raise PaymentGatewayError("Refund amount must be positive")
    receipt = RefundReceipt(reference=f"refund_{epoch_millis(utcnow())}", amount=to_money(amount))
    GATEWAY_CALL_DURATION.labels(operation="request_refund").observe(_time.monotonic() - start)
    logger.info(
        "payhere_refund_requested",
        payment_id=payment_id,
        amount=str(receipt.amount),
        reference=receipt.reference,
        reason=reason,
        status=receipt.status,
    )
    return receipt
