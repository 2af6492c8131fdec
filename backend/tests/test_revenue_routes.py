from decimal import Decimal

import pytest
from httpx import AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.enums import ReconciliationKind
from app.models.payment import Payment
from app.models.provider import Provider
from app.models.revenue import RevenueRecord
from app.models.user import User
from app.models.wallet import Wallet
from app.services import payhere, reconciliation
from app.services.coordinator import SettlementCoordinator
from tests.conftest import admin_token, auth_header, client_token, make_booking, notification_form, provider_token


async def _settle(db: AsyncSession, client_user: User, studio: Provider, **kwargs) -> RevenueRecord:
    booking = await make_booking(db, client_user, studio, **kwargs)
    payment = (await db.execute(select(Payment).where(Payment.booking_id == booking.id))).scalar_one()
    notification = payhere.parse_notification(
        notification_form(booking.payhere_order_id, amount=payhere.format_amount(booking.total_price))
    )
    result = await SettlementCoordinator(Decimal("0.071")).settle(db, payment, notification)
    return await db.get(RevenueRecord, result.run.revenue_record_id)


@pytest.mark.asyncio
async def test_provider_revenue_summary(
    client: AsyncClient, db: AsyncSession, client_user: User, studio_user: User, studio: Provider
):
    await _settle(db, client_user, studio)

    response = await client.get("/revenue/me", headers=auth_header(provider_token(studio_user)))

    assert response.status_code == 200
    data = response.json()
    assert data["records"] == 1
    assert Decimal(data["total_commission"]) == Decimal("355.00")
    assert Decimal(data["pending_payout"]) == Decimal("4645.00")
    recent = data["recent"][0]
    assert recent["breakdown"]["slots"]["amount"] == "5000.00"
    assert recent["status"] == "confirmed"


@pytest.mark.asyncio
async def test_get_revenue_access(
    client: AsyncClient,
    db: AsyncSession,
    client_user: User,
    studio_user: User,
    admin_user: User,
    studio: Provider,
):
    revenue = await _settle(db, client_user, studio)
    url = f"/revenue/{revenue.id}"

    owner = await client.get(url, headers=auth_header(provider_token(studio_user)))
    admin = await client.get(url, headers=auth_header(admin_token(admin_user)))
    stranger = await client.get(url, headers=auth_header(client_token(client_user)))

    assert owner.status_code == 200
    assert Decimal(owner.json()["net_earnings"]) == Decimal("4645.00")
    assert admin.status_code == 200
    assert stranger.status_code == 403


@pytest.mark.asyncio
async def test_payout_lifecycle(
    client: AsyncClient,
    db: AsyncSession,
    client_user: User,
    studio_user: User,
    admin_user: User,
    studio: Provider,
):
    revenue = await _settle(db, client_user, studio)

    response = await client.post(
        "/revenue/payouts",
        json={"amount": "4645.00"},
        headers=auth_header(provider_token(studio_user)),
    )
    assert response.status_code == 201
    [payout] = response.json()
    assert payout["status"] == "requested"

    too_much = await client.post(
        "/revenue/payouts",
        json={"amount": "1.00"},
        headers=auth_header(provider_token(studio_user)),
    )
    assert too_much.status_code == 400

    response = await client.patch(
        f"/revenue/payouts/{payout['id']}",
        json={"status": "completed", "reference": "TRX-881"},
        headers=auth_header(admin_token(admin_user)),
    )
    assert response.status_code == 200
    assert response.json()["payout_reference"] == "TRX-881"
    assert revenue.status == "paid_out"


@pytest.mark.asyncio
async def test_only_admins_process_payouts(
    client: AsyncClient, db: AsyncSession, client_user: User, studio_user: User, studio: Provider
):
    await _settle(db, client_user, studio)
    created = await client.post(
        "/revenue/payouts", json={"amount": "1000.00"}, headers=auth_header(provider_token(studio_user))
    )

    response = await client.patch(
        f"/revenue/payouts/{created.json()[0]['id']}",
        json={"status": "completed"},
        headers=auth_header(provider_token(studio_user)),
    )

    assert response.status_code == 403


@pytest.mark.asyncio
async def test_refund_confirmation_debits_wallet_once(
    client: AsyncClient,
    db: AsyncSession,
    client_user: User,
    studio_user: User,
    admin_user: User,
    studio: Provider,
):
    revenue = await _settle(db, client_user, studio)
    headers = auth_header(admin_token(admin_user))

    response = await client.post(
        f"/revenue/{revenue.id}/refunds",
        json={"amount": "1000.00", "reason": "Studio power outage"},
        headers=headers,
    )
    assert response.status_code == 201
    refund = response.json()
    assert refund["status"] == "pending_manual_processing"
    assert refund["refund_reference"].startswith("manual_")

    response = await client.post(
        f"/revenue/{revenue.id}/refunds/{refund['id']}/confirm",
        json={"external_reference": "PH-RF-2210"},
        headers=headers,
    )
    assert response.status_code == 200
    assert response.json()["status"] == "confirmed"

    wallet = (await db.execute(select(Wallet).where(Wallet.user_id == studio_user.id))).scalar_one()
    # 1000 * 4645 / 5000
    assert wallet.available_balance == Decimal("3716.00")

    again = await client.post(
        f"/revenue/{revenue.id}/refunds/{refund['id']}/confirm",
        json={"external_reference": "PH-RF-2210"},
        headers=headers,
    )
    assert again.status_code == 409
    assert wallet.available_balance == Decimal("3716.00")


@pytest.mark.asyncio
async def test_refund_requires_admin(
    client: AsyncClient, db: AsyncSession, client_user: User, studio_user: User, studio: Provider
):
    revenue = await _settle(db, client_user, studio)

    response = await client.post(
        f"/revenue/{revenue.id}/refunds",
        json={"amount": "1000.00", "reason": "x"},
        headers=auth_header(provider_token(studio_user)),
    )

    assert response.status_code == 403


@pytest.mark.asyncio
async def test_adjustment(
    client: AsyncClient, db: AsyncSession, client_user: User, admin_user: User, studio: Provider
):
    revenue = await _settle(db, client_user, studio)

    response = await client.post(
        f"/revenue/{revenue.id}/adjustments",
        json={"amount": "-150.00", "reason": "Late start", "type": "discount"},
        headers=auth_header(admin_token(admin_user)),
    )

    assert response.status_code == 201
    assert response.json()["type"] == "discount"
    assert revenue.net_earnings == Decimal("4495.00")


@pytest.mark.asyncio
async def test_reconciliation_queue(client: AsyncClient, db: AsyncSession, admin_user: User):
    item = await reconciliation.open_item(
        db, ReconciliationKind.AMOUNT_MISMATCH, "Paid 50.00, expected 5000.00", order_id="booking_a_1"
    )
    duplicate = await reconciliation.open_item(
        db, ReconciliationKind.AMOUNT_MISMATCH, "Paid 50.00, expected 5000.00 (again)", order_id="booking_a_1"
    )
    assert duplicate.id == item.id
    headers = auth_header(admin_token(admin_user))

    listing = await client.get("/revenue/reconciliation", headers=headers)
    assert [row["id"] for row in listing.json()] == [str(item.id)]
    assert listing.json()[0]["detail"].endswith("(again)")

    resolved = await client.patch(
        f"/revenue/reconciliation/{item.id}", json={"note": "Client paid the rest by transfer"}, headers=headers
    )
    assert resolved.status_code == 200
    assert resolved.json()["resolved_at"] is not None

    again = await client.patch(f"/revenue/reconciliation/{item.id}", json={"note": "twice"}, headers=headers)
    assert again.status_code == 409

    assert (await client.get("/revenue/reconciliation", headers=headers)).json() == []
    everything = await client.get("/revenue/reconciliation", params={"include_resolved": True}, headers=headers)
    assert len(everything.json()) == 1
