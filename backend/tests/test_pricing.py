import uuid
from decimal import Decimal

import pytest

from app.errors import ValidationError
from app.models.enums import ProviderKind
from app.models.provider import Provider
from app.services.pricing import (
    calculate_booking_pricing,
    calculate_refund,
    duration_hours,
    refund_rate,
    to_money,
)
from tests.conftest import at


def _provider(**overrides) -> Provider:
    fields = dict(
        id=uuid.uuid4(),
        kind=ProviderKind.STUDIO,
        user_id=uuid.uuid4(),
        name="Test Studio",
        hourly_rate=Decimal("2500.00"),
        currency="LKR",
        services=[
            {"name": "Mixing", "price": "5000.00", "category": "production", "duration_mins": 120},
            {"name": "Vocal Tuning", "price": "1250.50"},
        ],
        equipment=[{"name": "Neumann U87", "rental_price": "1500.00"}],
        is_active=True,
    )
    fields.update(overrides)
    return Provider(**fields)


def test_to_money_rounds_half_up():
    assert to_money("1.005") == Decimal("1.01")
    assert to_money(Decimal("2.344")) == Decimal("2.34")
    assert to_money(7) == Decimal("7.00")


def test_duration_hours():
    assert duration_hours(at(10), at(11, 30)) == Decimal("1.5000")


def test_hourly_pricing_without_service():
    pricing = calculate_booking_pricing(_provider(), at(10), at(12))
    assert pricing["service"] is None
    assert pricing["base_price"] == Decimal("5000.00")
    assert pricing["total_price"] == Decimal("5000.00")
    assert pricing["currency"] == "LKR"


def test_named_service_sets_base_price():
    pricing = calculate_booking_pricing(_provider(), at(10), at(11), service_name="Mixing")
    assert pricing["base_price"] == Decimal("5000.00")
    assert pricing["service"]["name"] == "Mixing"
    assert pricing["service"]["price"] == "5000.00"
    assert pricing["service"]["duration_mins"] == 120


def test_extras_and_equipment_add_up():
    pricing = calculate_booking_pricing(
        _provider(),
        at(10),
        at(12),
        extra_services=["Vocal Tuning"],
        equipment_names=["Neumann U87"],
    )
    assert pricing["services"] == [{"name": "Vocal Tuning", "price": "1250.50", "category": "general"}]
    assert pricing["equipment"] == [{"name": "Neumann U87", "rental_price": "1500.00"}]
    assert pricing["total_price"] == Decimal("7750.50")


def test_unknown_service_rejected():
    with pytest.raises(ValidationError) as exc_info:
        calculate_booking_pricing(_provider(), at(10), at(11), service_name="Podcast")
    assert exc_info.value.details == {"service": "Podcast"}


def test_unknown_equipment_rejected():
    with pytest.raises(ValidationError):
        calculate_booking_pricing(_provider(), at(10), at(11), equipment_names=["Theremin"])


def test_refund_rate_tiers():
    assert refund_rate(200) == Decimal("1")
    assert refund_rate(168) == Decimal("0.5")
    assert refund_rate(48) == Decimal("0.5")
    assert refund_rate(24) == Decimal("0")
    assert refund_rate(2) == Decimal("0")


def test_calculate_refund_full_more_than_a_week_out():
    refund, rate = calculate_refund(Decimal("5000.00"), at(10, days=10), at(10))
    assert rate == Decimal("1")
    assert refund == Decimal("5000.00")


def test_calculate_refund_half_between_one_day_and_a_week():
    refund, rate = calculate_refund(Decimal("5000.00"), at(10, days=3), at(10))
    assert rate == Decimal("0.5")
    assert refund == Decimal("2500.00")


def test_calculate_refund_none_inside_a_day():
    refund, rate = calculate_refund(Decimal("5000.00"), at(20), at(10))
    assert rate == Decimal("0")
    assert refund == Decimal("0.00")
