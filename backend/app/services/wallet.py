"""Provider wallet ledger.

Every balance change goes through ``add_transaction`` with the wallet row
locked. For any wallet the following holds::

    available_balance == sum(completed credit.net_amount)
                         - sum(completed debit.amount)
                         - sum(withdrawal.amount, pending/completed/failed)

A failed withdrawal or revenue payout is matched by a compensating credit
that references it. Revenue payouts draw on the same balance as withdrawals.
"""
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal

import structlog
from sqlalchemy import and_, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.errors import InsufficientBalance, InvalidTransition, NotFound, ValidationError
from app.metrics import WALLET_TRANSACTIONS, WITHDRAWALS_PROCESSED
from app.models.audit_log import AuditLog
from app.models.enums import TransactionStatus, TransactionType, WithdrawalMethod
from app.models.revenue import RevenuePayout, RevenueRecord, RevenueRefund
from app.models.wallet import Wallet, WalletTransaction
from app.services.pricing import to_money
from app.utils.dates import utcnow
from app.utils.log_mask import mask_account_number

logger = structlog.get_logger()

ZERO = Decimal("0.00")


@dataclass
class TransactionData:
    type: TransactionType
    amount: Decimal
    description: str
    status: TransactionStatus = TransactionStatus.COMPLETED
    net_amount: Decimal | None = None
    commission_rate: Decimal = Decimal("0")
    commission_amount: Decimal = ZERO
    booking_id: uuid.UUID | None = None
    payment_id: str | None = None
    order_id: str | None = None
    idempotency_key: str | None = None
    reference_transaction_id: uuid.UUID | None = None
    withdrawal_method: WithdrawalMethod | None = None
    bank_account: dict | None = None
    metadata: dict | None = None


def credit_idempotency_key(booking_id: uuid.UUID) -> str:
    return f"booking:{booking_id}:credit"


async def get_or_create_wallet(db: AsyncSession, user_id: uuid.UUID) -> Wallet:
    result = await db.execute(select(Wallet).where(Wallet.user_id == user_id))
    wallet = result.scalar_one_or_none()
    if wallet is not None:
        return wallet

    wallet = Wallet(
        user_id=user_id,
        currency=settings.DEFAULT_CURRENCY,
        available_balance=ZERO,
        pending_balance=ZERO,
        total_balance=ZERO,
        total_earnings=ZERO,
        total_withdrawals=ZERO,
        total_commissions=ZERO,
        minimum_withdrawal=settings.WITHDRAWAL_MINIMUM_AMOUNT,
        auto_withdrawal_enabled=False,
        auto_withdrawal_threshold=settings.AUTO_WITHDRAWAL_THRESHOLD,
    )
    try:
        async with db.begin_nested():
            db.add(wallet)
            await db.flush()
    except IntegrityError:
        # Created concurrently by another request
        result = await db.execute(select(Wallet).where(Wallet.user_id == user_id))
        return result.scalar_one()
    logger.info("wallet_created", wallet_id=str(wallet.id), user_id=str(user_id))
    return wallet


async def _lock_wallet(db: AsyncSession, wallet_id: uuid.UUID) -> Wallet:
    result = await db.execute(
        select(Wallet).where(Wallet.id == wallet_id).with_for_update().execution_options(populate_existing=True)
    )
    wallet = result.scalar_one_or_none()
    if wallet is None:
        raise NotFound("Wallet not found", details={"wallet_id": str(wallet_id)})
    return wallet


async def _find_by_idempotency_key(db: AsyncSession, key: str) -> WalletTransaction | None:
    result = await db.execute(select(WalletTransaction).where(WalletTransaction.idempotency_key == key))
    return result.scalar_one_or_none()


def _apply(wallet: Wallet, tx: WalletTransaction) -> None:
    """Apply a freshly inserted transaction to the wallet's balances."""
    tx_type = TransactionType(tx.type)
    tx_status = TransactionStatus(tx.status)

    if tx_type == TransactionType.CREDIT:
        if tx_status != TransactionStatus.COMPLETED:
            return
        wallet.available_balance += tx.net_amount
        wallet.total_balance += tx.net_amount
        # Compensating credits return money already counted as earned.
        if tx.reference_transaction_id is None:
            wallet.total_earnings += tx.amount
            wallet.total_commissions += tx.commission_amount
        return

    if tx.amount > wallet.available_balance:
        raise InsufficientBalance(
            "Amount exceeds available balance",
            details={"requested": str(tx.amount), "available": str(wallet.available_balance)},
        )

    if tx_type == TransactionType.WITHDRAWAL:
        # Reserved until an administrator processes it.
        wallet.available_balance -= tx.amount
        wallet.pending_balance += tx.amount
        return

    if tx_status == TransactionStatus.COMPLETED:
        wallet.available_balance -= tx.amount
        wallet.total_balance -= tx.amount
        if tx_type == TransactionType.COMMISSION_DEDUCTION:
            wallet.total_commissions += tx.amount


async def add_transaction(db: AsyncSession, wallet: Wallet, data: TransactionData) -> WalletTransaction:
    """Insert a ledger entry and apply it, atomically with the wallet row locked.

    A transaction whose idempotency key was already used is not applied
    again; the existing entry is returned instead.
    """
    amount = to_money(data.amount)
    if amount <= 0:
        raise ValidationError("Transaction amount must be positive", details={"amount": str(amount)})

    wallet = await _lock_wallet(db, wallet.id)

    if data.idempotency_key:
        existing = await _find_by_idempotency_key(db, data.idempotency_key)
        if existing is not None:
            logger.info(
                "wallet_transaction_replayed",
                wallet_id=str(wallet.id),
                transaction_id=str(existing.id),
                idempotency_key=data.idempotency_key,
            )
            return existing

    tx = WalletTransaction(
        id=uuid.uuid4(),
        wallet_id=wallet.id,
        type=data.type,
        amount=amount,
        net_amount=to_money(data.net_amount if data.net_amount is not None else amount),
        commission_rate=data.commission_rate,
        commission_amount=to_money(data.commission_amount),
        currency=wallet.currency,
        description=data.description,
        status=data.status,
        booking_id=data.booking_id,
        payment_id=data.payment_id,
        order_id=data.order_id,
        idempotency_key=data.idempotency_key,
        reference_transaction_id=data.reference_transaction_id,
        withdrawal_method=data.withdrawal_method,
        bank_account=data.bank_account,
        metadata_json=data.metadata,
    )
    _apply(wallet, tx)
    wallet.last_transaction_at = utcnow()

    try:
        async with db.begin_nested():
            db.add(tx)
            await db.flush()
    except IntegrityError:
        if data.idempotency_key:
            existing = await _find_by_idempotency_key(db, data.idempotency_key)
            if existing is not None:
                # Lost the race to a concurrent writer; its balances stand.
                await db.refresh(wallet)
                return existing
        raise

    WALLET_TRANSACTIONS.labels(type=TransactionType(tx.type).value, status=TransactionStatus(tx.status).value).inc()
    logger.info(
        "wallet_transaction_added",
        wallet_id=str(wallet.id),
        transaction_id=str(tx.id),
        type=TransactionType(tx.type).value,
        amount=str(tx.amount),
        net_amount=str(tx.net_amount),
        available_balance=str(wallet.available_balance),
    )
    return tx


async def credit_from_revenue(db: AsyncSession, revenue: RevenueRecord, owner_user_id: uuid.UUID, order_id: str | None = None) -> WalletTransaction:
    """Credit the provider's net earnings for a settled booking, at most once."""
    wallet = await get_or_create_wallet(db, owner_user_id)
    return await add_transaction(
        db,
        wallet,
        TransactionData(
            type=TransactionType.CREDIT,
            amount=revenue.total_amount,
            net_amount=revenue.provider_earnings,
            commission_rate=revenue.commission_rate,
            commission_amount=revenue.commission_amount,
            description="Booking payment received",
            booking_id=revenue.booking_id,
            payment_id=revenue.payment_id,
            order_id=order_id,
            idempotency_key=credit_idempotency_key(revenue.booking_id),
            metadata={"revenue_id": str(revenue.id)},
        ),
    )


async def debit_for_refund(
    db: AsyncSession, revenue: RevenueRecord, refund: RevenueRefund, owner_user_id: uuid.UUID
) -> WalletTransaction | None:
    """Take back the provider's share of a confirmed refund, at most once per refund."""
    if revenue.total_amount <= 0:
        return None
    share = to_money(refund.amount * revenue.provider_earnings / revenue.total_amount)
    if share <= 0:
        return None
    wallet = await get_or_create_wallet(db, owner_user_id)
    return await add_transaction(
        db,
        wallet,
        TransactionData(
            type=TransactionType.DEBIT,
            amount=share,
            description="Booking refund",
            booking_id=revenue.booking_id,
            idempotency_key=f"refund:{refund.id}:debit",
            metadata={"revenue_id": str(revenue.id), "refund_reference": refund.refund_reference},
        ),
    )


def payout_debit_key(payout_id: uuid.UUID) -> str:
    return f"payout:{payout_id}:debit"


async def debit_for_payout(db: AsyncSession, payout: RevenuePayout, owner_user_id: uuid.UUID) -> WalletTransaction:
    """Take a revenue payout out of the wallet so the same earnings cannot also be withdrawn."""
    wallet = await get_or_create_wallet(db, owner_user_id)
    return await add_transaction(
        db,
        wallet,
        TransactionData(
            type=TransactionType.DEBIT,
            amount=payout.amount,
            description="Revenue payout",
            idempotency_key=payout_debit_key(payout.id),
            metadata={"payout_id": str(payout.id), "revenue_id": str(payout.revenue_id)},
        ),
    )


async def release_payout(db: AsyncSession, payout: RevenuePayout, owner_user_id: uuid.UUID) -> WalletTransaction | None:
    """Return a failed payout's debit to the wallet."""
    debit = await _find_by_idempotency_key(db, payout_debit_key(payout.id))
    if debit is None:
        return None
    wallet = await get_or_create_wallet(db, owner_user_id)
    return await add_transaction(
        db,
        wallet,
        TransactionData(
            type=TransactionType.CREDIT,
            amount=debit.amount,
            description="Revenue payout reversal",
            reference_transaction_id=debit.id,
            idempotency_key=f"payout:{payout.id}:release",
            metadata={"payout_id": str(payout.id)},
        ),
    )


def _bank_snapshot(wallet: Wallet) -> dict:
    return {
        "bank_name": wallet.bank_name,
        "account_number": mask_account_number(wallet.account_number),
        "account_holder_name": wallet.account_holder_name,
        "account_type": wallet.account_type,
        "branch_code": wallet.branch_code,
        "swift_code": wallet.swift_code,
    }


async def request_withdrawal(
    db: AsyncSession,
    user_id: uuid.UUID,
    amount: Decimal,
    method: WithdrawalMethod = WithdrawalMethod.BANK_TRANSFER,
    bank_details: dict | None = None,
) -> WalletTransaction:
    amount = to_money(amount)
    if amount <= 0:
        raise ValidationError("Withdrawal amount must be positive", details={"amount": str(amount)})

    wallet = await get_or_create_wallet(db, user_id)
    wallet = await _lock_wallet(db, wallet.id)
    if amount > wallet.available_balance:
        raise InsufficientBalance(
            "Withdrawal amount exceeds available balance",
            details={"requested": str(amount), "available": str(wallet.available_balance)},
        )
    if amount < wallet.minimum_withdrawal:
        raise ValidationError(
            "Withdrawal amount is below minimum withdrawal amount",
            details={"requested": str(amount), "minimum": str(wallet.minimum_withdrawal)},
        )

    if bank_details:
        snapshot = dict(bank_details)
        snapshot["account_number"] = mask_account_number(snapshot.get("account_number"))
    elif wallet.has_bank_details:
        snapshot = _bank_snapshot(wallet)
    else:
        raise ValidationError("Bank details are required for a withdrawal")

    return await add_transaction(
        db,
        wallet,
        TransactionData(
            type=TransactionType.WITHDRAWAL,
            amount=amount,
            status=TransactionStatus.PENDING,
            description="Withdrawal request",
            withdrawal_method=method,
            bank_account=snapshot,
        ),
    )


async def process_withdrawal(
    db: AsyncSession,
    transaction_id: uuid.UUID,
    new_status: TransactionStatus,
    admin_id: uuid.UUID,
    remarks: str | None = None,
) -> WalletTransaction:
    """Settle a pending withdrawal.

    ``completed`` releases the reserved amount from the wallet. ``failed``
    returns it to ``available_balance`` through a compensating credit.
    """
    new_status = TransactionStatus(new_status)
    if new_status not in (TransactionStatus.COMPLETED, TransactionStatus.FAILED):
        raise ValidationError("Withdrawals can only be completed or failed", details={"status": new_status.value})

    result = await db.execute(
        select(WalletTransaction).where(WalletTransaction.id == transaction_id).with_for_update()
    )
    tx = result.scalar_one_or_none()
    if tx is None or tx.type != TransactionType.WITHDRAWAL:
        raise NotFound("Withdrawal not found", details={"transaction_id": str(transaction_id)})
    if tx.status != TransactionStatus.PENDING:
        raise InvalidTransition(
            "Withdrawal has already been processed",
            details={"transaction_id": str(transaction_id), "status": TransactionStatus(tx.status).value},
        )

    wallet = await _lock_wallet(db, tx.wallet_id)
    tx.status = new_status
    tx.processed_by = admin_id
    tx.processed_at = utcnow()
    tx.remarks = remarks

    # The reserved amount leaves pending in both outcomes.
    wallet.pending_balance -= tx.amount
    if new_status == TransactionStatus.COMPLETED:
        wallet.total_balance -= tx.amount
        wallet.total_withdrawals += tx.amount
        await db.flush()
    else:
        # The compensating credit adds the amount back to total.
        wallet.total_balance -= tx.amount
        await db.flush()
        await add_transaction(
            db,
            wallet,
            TransactionData(
                type=TransactionType.CREDIT,
                amount=tx.amount,
                description="Withdrawal reversal",
                reference_transaction_id=tx.id,
                idempotency_key=f"withdrawal:{tx.id}:reversal",
                metadata={"reason": remarks},
            ),
        )

    db.add(AuditLog(
        action=f"withdrawal_{new_status.value}",
        entity_type="wallet_transaction",
        entity_id=tx.id,
        actor_user_id=admin_id,
        detail=remarks,
        metadata_json={"amount": str(tx.amount), "wallet_id": str(wallet.id)},
    ))
    await db.flush()
    WITHDRAWALS_PROCESSED.labels(status=new_status.value).inc()
    logger.info(
        "withdrawal_processed",
        transaction_id=str(tx.id),
        wallet_id=str(wallet.id),
        status=new_status.value,
        amount=str(tx.amount),
    )
    return tx


async def list_transactions(
    db: AsyncSession,
    wallet: Wallet,
    tx_type: TransactionType | None = None,
    status: TransactionStatus | None = None,
    date_from: datetime | None = None,
    date_to: datetime | None = None,
    page: int = 1,
    limit: int = 20,
) -> dict:
    filters = [WalletTransaction.wallet_id == wallet.id]
    if tx_type is not None:
        filters.append(WalletTransaction.type == tx_type)
    if status is not None:
        filters.append(WalletTransaction.status == status)
    if date_from is not None:
        filters.append(WalletTransaction.created_at >= date_from)
    if date_to is not None:
        filters.append(WalletTransaction.created_at <= date_to)

    total = (await db.execute(select(func.count(WalletTransaction.id)).where(and_(*filters)))).scalar_one()
    result = await db.execute(
        select(WalletTransaction)
        .where(and_(*filters))
        .order_by(WalletTransaction.created_at.desc(), WalletTransaction.id)
        .offset((page - 1) * limit)
        .limit(limit)
    )
    return {
        "items": list(result.scalars().all()),
        "total": total,
        "page": page,
        "limit": limit,
        "pages": (total + limit - 1) // limit if total else 0,
    }


async def update_bank_details(db: AsyncSession, wallet: Wallet, details: dict) -> Wallet:
    for field_name in ("bank_name", "account_number", "account_holder_name", "account_type", "branch_code", "swift_code"):
        if field_name in details:
            setattr(wallet, field_name, details[field_name])
    # Changed details have to be verified again before auto-withdrawals use them.
    wallet.bank_details_verified = False
    await db.flush()
    logger.info(
        "wallet_bank_details_updated",
        wallet_id=str(wallet.id),
        account=mask_account_number(wallet.account_number),
    )
    return wallet


async def update_withdrawal_settings(
    db: AsyncSession,
    wallet: Wallet,
    minimum_amount: Decimal | None = None,
    auto_withdrawal_enabled: bool | None = None,
    auto_withdrawal_threshold: Decimal | None = None,
) -> Wallet:
    if minimum_amount is not None:
        minimum_amount = to_money(minimum_amount)
        if minimum_amount < settings.WITHDRAWAL_MINIMUM_AMOUNT:
            raise ValidationError(
                "Minimum withdrawal cannot be below the platform minimum",
                details={"platform_minimum": str(settings.WITHDRAWAL_MINIMUM_AMOUNT)},
            )
        wallet.minimum_withdrawal = minimum_amount
    if auto_withdrawal_threshold is not None:
        wallet.auto_withdrawal_threshold = to_money(auto_withdrawal_threshold)
    if auto_withdrawal_enabled is not None:
        if auto_withdrawal_enabled and not wallet.has_bank_details:
            raise ValidationError("Bank details are required to enable auto-withdrawal")
        wallet.auto_withdrawal_enabled = auto_withdrawal_enabled
    if wallet.auto_withdrawal_threshold < wallet.minimum_withdrawal:
        raise ValidationError("Auto-withdrawal threshold must not be below the minimum withdrawal")
    await db.flush()
    return wallet


async def wallet_stats(db: AsyncSession, wallet: Wallet, now: datetime | None = None) -> dict:
    """Monthly completed earnings for the last 12 months plus lifetime totals."""
    now = now or utcnow()
    since = now - timedelta(days=365)
    result = await db.execute(
        select(WalletTransaction.created_at, WalletTransaction.net_amount)
        .where(
            WalletTransaction.wallet_id == wallet.id,
            WalletTransaction.type == TransactionType.CREDIT,
            WalletTransaction.status == TransactionStatus.COMPLETED,
            WalletTransaction.reference_transaction_id.is_(None),
            WalletTransaction.created_at >= since,
        )
    )
    monthly: dict[str, Decimal] = {}
    for created_at, net_amount in result.all():
        month = created_at.strftime("%Y-%m")
        monthly[month] = monthly.get(month, ZERO) + net_amount

    pending_withdrawals = (
        await db.execute(
            select(func.count(WalletTransaction.id)).where(
                WalletTransaction.wallet_id == wallet.id,
                WalletTransaction.type == TransactionType.WITHDRAWAL,
                WalletTransaction.status == TransactionStatus.PENDING,
            )
        )
    ).scalar_one()

    return {
        "available_balance": wallet.available_balance,
        "pending_balance": wallet.pending_balance,
        "total_earnings": wallet.total_earnings,
        "total_withdrawals": wallet.total_withdrawals,
        "total_commissions": wallet.total_commissions,
        "pending_withdrawals": pending_withdrawals,
        "monthly_earnings": [{"month": m, "amount": monthly[m]} for m in sorted(monthly)],
    }


async def auto_withdraw(db: AsyncSession, wallet: Wallet) -> WalletTransaction | None:
    """Request a withdrawal of the full available balance when it crosses the threshold."""
    if not (wallet.auto_withdrawal_enabled and wallet.bank_details_verified and wallet.has_bank_details):
        return None
    if wallet.available_balance < wallet.auto_withdrawal_threshold:
        return None
    return await request_withdrawal(db, wallet.user_id, wallet.available_balance)
