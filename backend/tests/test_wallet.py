import uuid
from decimal import Decimal

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.errors import InsufficientBalance, InvalidTransition, NotFound, ValidationError
from app.models.enums import TransactionStatus, TransactionType
from app.models.user import User
from app.models.wallet import Wallet, WalletTransaction
from app.services.wallet import (
    TransactionData,
    add_transaction,
    auto_withdraw,
    get_or_create_wallet,
    list_transactions,
    process_withdrawal,
    request_withdrawal,
    update_bank_details,
    update_withdrawal_settings,
    wallet_stats,
)

BANK = {
    "bank_name": "Bank of Ceylon",
    "account_number": "001234567890",
    "account_holder_name": "Harbour Sound (Pvt) Ltd",
    "account_type": "current",
}


async def _ledger_balance(db: AsyncSession, wallet: Wallet) -> Decimal:
    """available_balance recomputed from the ledger alone."""
    rows = (
        await db.execute(select(WalletTransaction).where(WalletTransaction.wallet_id == wallet.id))
    ).scalars().all()
    total = Decimal("0.00")
    for tx in rows:
        if tx.type == TransactionType.CREDIT and tx.status == TransactionStatus.COMPLETED:
            total += tx.net_amount
        elif tx.type == TransactionType.WITHDRAWAL:
            total -= tx.amount
        elif tx.status == TransactionStatus.COMPLETED:
            total -= tx.amount
    return total


async def _credit(db: AsyncSession, wallet: Wallet, amount: str, net: str | None = None, key: str | None = None):
    amount_dec = Decimal(amount)
    net_dec = Decimal(net) if net else amount_dec
    return await add_transaction(
        db,
        wallet,
        TransactionData(
            type=TransactionType.CREDIT,
            amount=amount_dec,
            net_amount=net_dec,
            commission_amount=amount_dec - net_dec,
            commission_rate=Decimal("0.071") if net else Decimal("0"),
            description="Booking payment received",
            idempotency_key=key,
        ),
    )


@pytest.mark.asyncio
async def test_wallet_created_once(db: AsyncSession, studio_user: User):
    first = await get_or_create_wallet(db, studio_user.id)
    second = await get_or_create_wallet(db, studio_user.id)

    assert first.id == second.id
    assert first.available_balance == Decimal("0.00")
    assert first.minimum_withdrawal == Decimal("1000.00")
    count = (await db.execute(select(func.count(Wallet.id)))).scalar_one()
    assert count == 1


@pytest.mark.asyncio
async def test_credit_updates_balances(db: AsyncSession, studio_user: User):
    wallet = await get_or_create_wallet(db, studio_user.id)

    tx = await _credit(db, wallet, "5000.00", "4645.00")

    assert tx.status == TransactionStatus.COMPLETED
    assert wallet.available_balance == Decimal("4645.00")
    assert wallet.total_balance == Decimal("4645.00")
    assert wallet.total_earnings == Decimal("5000.00")
    assert wallet.total_commissions == Decimal("355.00")
    assert wallet.last_transaction_at is not None


@pytest.mark.asyncio
async def test_idempotency_key_applies_once(db: AsyncSession, studio_user: User):
    wallet = await get_or_create_wallet(db, studio_user.id)

    first = await _credit(db, wallet, "5000.00", "4645.00", key="booking:abc:credit")
    second = await _credit(db, wallet, "5000.00", "4645.00", key="booking:abc:credit")

    assert first.id == second.id
    assert wallet.available_balance == Decimal("4645.00")
    count = (await db.execute(select(func.count(WalletTransaction.id)))).scalar_one()
    assert count == 1


@pytest.mark.asyncio
async def test_debit_above_balance_rejected(db: AsyncSession, studio_user: User):
    wallet = await get_or_create_wallet(db, studio_user.id)
    await _credit(db, wallet, "100.00")

    with pytest.raises(InsufficientBalance):
        await add_transaction(
            db, wallet, TransactionData(type=TransactionType.DEBIT, amount=Decimal("100.01"), description="x")
        )
    assert wallet.available_balance == Decimal("100.00")


@pytest.mark.asyncio
async def test_non_positive_amount_rejected(db: AsyncSession, studio_user: User):
    wallet = await get_or_create_wallet(db, studio_user.id)
    with pytest.raises(ValidationError):
        await add_transaction(
            db, wallet, TransactionData(type=TransactionType.CREDIT, amount=Decimal("0"), description="x")
        )


@pytest.mark.asyncio
async def test_withdrawal_reserves_then_completes(db: AsyncSession, studio_user: User, admin_user: User):
    wallet = await get_or_create_wallet(db, studio_user.id)
    await _credit(db, wallet, "5000.00")

    tx = await request_withdrawal(db, studio_user.id, Decimal("2000"), bank_details=BANK)

    assert tx.status == TransactionStatus.PENDING
    assert tx.bank_account["account_number"] == "****7890"
    assert wallet.available_balance == Decimal("3000.00")
    assert wallet.pending_balance == Decimal("2000.00")
    assert wallet.total_balance == Decimal("5000.00")

    await process_withdrawal(db, tx.id, TransactionStatus.COMPLETED, admin_user.id, "paid")

    assert tx.status == TransactionStatus.COMPLETED
    assert wallet.available_balance == Decimal("3000.00")
    assert wallet.pending_balance == Decimal("0.00")
    assert wallet.total_balance == Decimal("3000.00")
    assert wallet.total_withdrawals == Decimal("2000.00")
    assert await _ledger_balance(db, wallet) == wallet.available_balance


@pytest.mark.asyncio
async def test_failed_withdrawal_is_compensated(db: AsyncSession, studio_user: User, admin_user: User):
    wallet = await get_or_create_wallet(db, studio_user.id)
    await _credit(db, wallet, "5000.00")
    tx = await request_withdrawal(db, studio_user.id, Decimal("2000"), bank_details=BANK)

    await process_withdrawal(db, tx.id, TransactionStatus.FAILED, admin_user.id, "account closed")

    assert wallet.available_balance == Decimal("5000.00")
    assert wallet.pending_balance == Decimal("0.00")
    assert wallet.total_balance == Decimal("5000.00")
    assert wallet.total_earnings == Decimal("5000.00")
    reversal = (
        await db.execute(
            select(WalletTransaction).where(WalletTransaction.reference_transaction_id == tx.id)
        )
    ).scalar_one()
    assert reversal.type == TransactionType.CREDIT
    assert reversal.amount == Decimal("2000.00")
    assert await _ledger_balance(db, wallet) == wallet.available_balance


@pytest.mark.asyncio
async def test_withdrawal_processed_only_once(db: AsyncSession, studio_user: User, admin_user: User):
    wallet = await get_or_create_wallet(db, studio_user.id)
    await _credit(db, wallet, "5000.00")
    tx = await request_withdrawal(db, studio_user.id, Decimal("2000"), bank_details=BANK)
    await process_withdrawal(db, tx.id, TransactionStatus.COMPLETED, admin_user.id)

    with pytest.raises(InvalidTransition):
        await process_withdrawal(db, tx.id, TransactionStatus.FAILED, admin_user.id)


@pytest.mark.asyncio
async def test_process_unknown_withdrawal(db: AsyncSession, admin_user: User):
    with pytest.raises(NotFound):
        await process_withdrawal(db, uuid.uuid4(), TransactionStatus.COMPLETED, admin_user.id)


@pytest.mark.asyncio
async def test_withdrawal_rules(db: AsyncSession, studio_user: User):
    wallet = await get_or_create_wallet(db, studio_user.id)
    await _credit(db, wallet, "5000.00")

    with pytest.raises(InsufficientBalance):
        await request_withdrawal(db, studio_user.id, Decimal("5000.01"), bank_details=BANK)
    with pytest.raises(ValidationError, match="below minimum"):
        await request_withdrawal(db, studio_user.id, Decimal("999.99"), bank_details=BANK)
    with pytest.raises(ValidationError, match="Bank details"):
        await request_withdrawal(db, studio_user.id, Decimal("1000"))
    assert wallet.available_balance == Decimal("5000.00")


@pytest.mark.asyncio
async def test_withdrawal_uses_saved_bank_details(db: AsyncSession, studio_user: User):
    wallet = await get_or_create_wallet(db, studio_user.id)
    await update_bank_details(db, wallet, BANK)
    await _credit(db, wallet, "5000.00")

    tx = await request_withdrawal(db, studio_user.id, Decimal("1500"))

    assert tx.bank_account["bank_name"] == "Bank of Ceylon"
    assert tx.bank_account["account_number"] == "****7890"


@pytest.mark.asyncio
async def test_bank_details_change_resets_verification(db: AsyncSession, studio_user: User):
    wallet = await get_or_create_wallet(db, studio_user.id)
    wallet.bank_details_verified = True

    await update_bank_details(db, wallet, BANK)

    assert wallet.account_number == "001234567890"
    assert wallet.bank_details_verified is False


@pytest.mark.asyncio
async def test_withdrawal_settings(db: AsyncSession, studio_user: User):
    wallet = await get_or_create_wallet(db, studio_user.id)

    with pytest.raises(ValidationError, match="platform minimum"):
        await update_withdrawal_settings(db, wallet, minimum_amount=Decimal("10"))
    with pytest.raises(ValidationError, match="Bank details"):
        await update_withdrawal_settings(db, wallet, auto_withdrawal_enabled=True)

    await update_bank_details(db, wallet, BANK)
    await update_withdrawal_settings(
        db, wallet, minimum_amount=Decimal("2000"), auto_withdrawal_enabled=True,
        auto_withdrawal_threshold=Decimal("20000"),
    )
    assert wallet.minimum_withdrawal == Decimal("2000.00")
    assert wallet.auto_withdrawal_enabled is True


@pytest.mark.asyncio
async def test_auto_withdraw_requires_verified_details(db: AsyncSession, studio_user: User):
    wallet = await get_or_create_wallet(db, studio_user.id)
    await update_bank_details(db, wallet, BANK)
    await update_withdrawal_settings(db, wallet, auto_withdrawal_enabled=True)
    await _credit(db, wallet, "12000.00")

    assert await auto_withdraw(db, wallet) is None

    wallet.bank_details_verified = True
    tx = await auto_withdraw(db, wallet)

    assert tx.amount == Decimal("12000.00")
    assert wallet.available_balance == Decimal("0.00")
    assert wallet.pending_balance == Decimal("12000.00")


@pytest.mark.asyncio
async def test_list_transactions_filters_and_pages(db: AsyncSession, studio_user: User):
    wallet = await get_or_create_wallet(db, studio_user.id)
    for _ in range(3):
        await _credit(db, wallet, "1000.00")
    await request_withdrawal(db, studio_user.id, Decimal("1000"), bank_details=BANK)

    page = await list_transactions(db, wallet, page=1, limit=2)
    assert page["total"] == 4
    assert page["pages"] == 2
    assert len(page["items"]) == 2

    withdrawals = await list_transactions(db, wallet, tx_type=TransactionType.WITHDRAWAL)
    assert withdrawals["total"] == 1
    pending = await list_transactions(db, wallet, status=TransactionStatus.PENDING)
    assert pending["total"] == 1


@pytest.mark.asyncio
async def test_wallet_stats(db: AsyncSession, studio_user: User):
    wallet = await get_or_create_wallet(db, studio_user.id)
    await _credit(db, wallet, "5000.00", "4645.00")
    await request_withdrawal(db, studio_user.id, Decimal("1000"), bank_details=BANK)

    stats = await wallet_stats(db, wallet)

    assert stats["available_balance"] == Decimal("3645.00")
    assert stats["pending_withdrawals"] == 1
    assert len(stats["monthly_earnings"]) == 1
    assert stats["monthly_earnings"][0]["amount"] == Decimal("4645.00")
