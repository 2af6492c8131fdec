import uuid
from datetime import datetime

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.dependencies import get_current_admin, get_current_provider
from app.models.enums import NotificationType, TransactionStatus, TransactionType
from app.models.provider import Provider
from app.models.user import User
from app.models.wallet import Wallet
from app.schemas.wallet import (
    BankDetailsRequest,
    ProcessWithdrawalRequest,
    TransactionListResponse,
    TransactionResponse,
    WalletResponse,
    WalletStatsResponse,
    WithdrawalRequest,
    WithdrawalSettingsRequest,
)
from app.services import wallet as wallet_service
from app.services.notifications import notify
from app.utils.rate_limit import LIST_RATE_LIMIT, WITHDRAWAL_RATE_LIMIT, limiter

router = APIRouter()


@router.get("", response_model=WalletResponse)
async def get_wallet(
    provider: tuple[User, Provider] = Depends(get_current_provider),
    db: AsyncSession = Depends(get_db),
):
    user, _ = provider
    return await wallet_service.get_or_create_wallet(db, user.id)


@router.get("/transactions", response_model=TransactionListResponse)
@limiter.limit(LIST_RATE_LIMIT)
async def list_transactions(
    request: Request,
    tx_type: TransactionType | None = Query(None, alias="type"),
    tx_status: TransactionStatus | None = Query(None, alias="status"),
    date_from: datetime | None = None,
    date_to: datetime | None = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    provider: tuple[User, Provider] = Depends(get_current_provider),
    db: AsyncSession = Depends(get_db),
):
    user, _ = provider
    wallet = await wallet_service.get_or_create_wallet(db, user.id)
    return await wallet_service.list_transactions(
        db, wallet, tx_type, tx_status, date_from, date_to, page, limit
    )


@router.get("/stats", response_model=WalletStatsResponse)
async def get_wallet_stats(
    provider: tuple[User, Provider] = Depends(get_current_provider),
    db: AsyncSession = Depends(get_db),
):
    user, _ = provider
    wallet = await wallet_service.get_or_create_wallet(db, user.id)
    return await wallet_service.wallet_stats(db, wallet)


@router.put("/bank-details", response_model=WalletResponse)
async def update_bank_details(
    body: BankDetailsRequest,
    provider: tuple[User, Provider] = Depends(get_current_provider),
    db: AsyncSession = Depends(get_db),
):
    user, _ = provider
    wallet = await wallet_service.get_or_create_wallet(db, user.id)
    return await wallet_service.update_bank_details(db, wallet, body.model_dump(mode="json"))


@router.put("/withdrawal-settings", response_model=WalletResponse)
async def update_withdrawal_settings(
    body: WithdrawalSettingsRequest,
    provider: tuple[User, Provider] = Depends(get_current_provider),
    db: AsyncSession = Depends(get_db),
):
    user, _ = provider
    wallet = await wallet_service.get_or_create_wallet(db, user.id)
    return await wallet_service.update_withdrawal_settings(
        db,
        wallet,
        minimum_amount=body.minimum_amount,
        auto_withdrawal_enabled=body.auto_withdrawal_enabled,
        auto_withdrawal_threshold=body.auto_withdrawal_threshold,
    )


@router.post("/withdrawals", response_model=TransactionResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit(WITHDRAWAL_RATE_LIMIT)
async def request_withdrawal(
    request: Request,
    body: WithdrawalRequest,
    provider: tuple[User, Provider] = Depends(get_current_provider),
    db: AsyncSession = Depends(get_db),
):
    """Reserve part of the available balance for a payout to the provider's bank."""
    user, _ = provider
    return await wallet_service.request_withdrawal(
        db,
        user.id,
        body.amount,
        method=body.method,
        bank_details=body.bank_details.model_dump(mode="json") if body.bank_details else None,
    )


@router.patch("/withdrawals/{transaction_id}", response_model=TransactionResponse)
async def process_withdrawal(
    transaction_id: uuid.UUID,
    body: ProcessWithdrawalRequest,
    admin: User = Depends(get_current_admin),
    db: AsyncSession = Depends(get_db),
):
    tx = await wallet_service.process_withdrawal(
        db, transaction_id, TransactionStatus(body.status), admin.id, body.remarks
    )
    owner_id = (await db.execute(select(Wallet.user_id).where(Wallet.id == tx.wallet_id))).scalar_one()
    if tx.status == TransactionStatus.COMPLETED:
        message = f"Your withdrawal of {tx.currency} {tx.amount} has been paid out."
    else:
        message = f"Your withdrawal of {tx.currency} {tx.amount} failed and was returned to your balance."
    await notify(
        db,
        owner_id,
        NotificationType.WITHDRAWAL_PROCESSED,
        "Withdrawal processed",
        message,
        {"transaction_id": str(tx.id), "status": TransactionStatus(tx.status).value},
    )
    return tx
