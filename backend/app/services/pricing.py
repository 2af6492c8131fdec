from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal

from app.config import settings
from app.errors import ValidationError
from app.models.provider import Provider
from app.utils.dates import as_utc

CENT = Decimal("0.01")


def to_money(value: Decimal | int | str) -> Decimal:
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def duration_hours(start: datetime, end: datetime) -> Decimal:
    seconds = Decimal(int((as_utc(end) - as_utc(start)).total_seconds()))
    return (seconds / Decimal(3600)).quantize(Decimal("0.0001"), rounding=ROUND_HALF_UP)


def calculate_booking_pricing(
    provider: Provider,
    start: datetime,
    end: datetime,
    service_name: str | None = None,
    extra_services: list[str] | None = None,
    equipment_names: list[str] | None = None,
) -> dict:
    """Price a booking from the provider's published catalogue.

    The slot itself costs the named service's price, or the hourly rate times
    the window length when no service is named. Extra services and rented
    equipment are added on top as line items. JSON snapshots carry amounts as
    strings.
    """
    service_snapshot = None
    if service_name:
        published = provider.find_service(service_name)
        if published is None:
            raise ValidationError(
                f"Service '{service_name}' is not offered by this provider",
                details={"service": service_name},
            )
        base_price = to_money(published["price"])
        service_snapshot = {
            "name": published["name"],
            "price": str(base_price),
            "description": published.get("description"),
            "duration_mins": published.get("duration_mins"),
        }
    else:
        base_price = to_money(provider.hourly_rate * duration_hours(start, end))

    services = []
    for name in extra_services or []:
        published = provider.find_service(name)
        if published is None:
            raise ValidationError(
                f"Service '{name}' is not offered by this provider", details={"service": name}
            )
        services.append({
            "name": published["name"],
            "price": str(to_money(published["price"])),
            "category": published.get("category") or "general",
        })

    equipment = []
    for name in equipment_names or []:
        item = provider.find_equipment(name)
        if item is None:
            raise ValidationError(
                f"Equipment '{name}' is not available from this provider", details={"equipment": name}
            )
        equipment.append({"name": item["name"], "rental_price": str(to_money(item["rental_price"]))})

    total_price = base_price
    total_price += sum((Decimal(s["price"]) for s in services), Decimal("0.00"))
    total_price += sum((Decimal(e["rental_price"]) for e in equipment), Decimal("0.00"))

    return {
        "service": service_snapshot,
        "services": services,
        "equipment": equipment,
        "base_price": base_price,
        "total_price": to_money(total_price),
        "currency": provider.currency or settings.DEFAULT_CURRENCY,
    }


def refund_rate(hours_until_start: float) -> Decimal:
    """Share of the paid amount returned on cancellation."""
    if hours_until_start > settings.CANCELLATION_FULL_REFUND_HOURS:
        return Decimal("1")
    if hours_until_start > settings.CANCELLATION_PARTIAL_REFUND_HOURS:
        return settings.CANCELLATION_PARTIAL_REFUND_RATE
    return Decimal("0")


def calculate_refund(amount: Decimal, start: datetime, now: datetime) -> tuple[Decimal, Decimal]:
    """Return ``(refund_amount, rate)`` for cancelling at ``now``."""
    hours_until = (as_utc(start) - as_utc(now)).total_seconds() / 3600
    rate = refund_rate(hours_until)
    return to_money(amount * rate), rate
