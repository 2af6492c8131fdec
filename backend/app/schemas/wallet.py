import uuid
from datetime import datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, Field, field_validator

from app.models.enums import BankAccountType, TransactionStatus, TransactionType, WithdrawalMethod
from app.utils.log_mask import mask_account_number


class WalletResponse(BaseModel):
    id: uuid.UUID
    user_id: uuid.UUID
    available_balance: Decimal
    pending_balance: Decimal
    total_balance: Decimal
    total_earnings: Decimal
    total_withdrawals: Decimal
    total_commissions: Decimal
    currency: str
    bank_name: str | None = None
    account_number: str | None = None
    account_holder_name: str | None = None
    account_type: str | None = None
    branch_code: str | None = None
    swift_code: str | None = None
    bank_details_verified: bool
    minimum_withdrawal: Decimal
    auto_withdrawal_enabled: bool
    auto_withdrawal_threshold: Decimal
    last_transaction_at: datetime | None = None

    model_config = {"from_attributes": True}

    @field_validator("account_number")
    @classmethod
    def mask_account(cls, v: str | None) -> str | None:
        return mask_account_number(v) if v else v


class TransactionResponse(BaseModel):
    id: uuid.UUID
    type: TransactionType
    amount: Decimal
    net_amount: Decimal
    commission_rate: Decimal
    commission_amount: Decimal
    currency: str
    description: str
    status: TransactionStatus
    booking_id: uuid.UUID | None = None
    payment_id: str | None = None
    order_id: str | None = None
    reference_transaction_id: uuid.UUID | None = None
    withdrawal_method: WithdrawalMethod | None = None
    bank_account: dict | None = None
    processed_at: datetime | None = None
    remarks: str | None = None
    created_at: datetime | None = None

    model_config = {"from_attributes": True}


class TransactionListResponse(BaseModel):
    items: list[TransactionResponse]
    total: int
    page: int
    limit: int
    pages: int


class BankDetailsRequest(BaseModel):
    bank_name: str = Field(min_length=2, max_length=100)
    account_number: str = Field(pattern=r"^[0-9]{6,20}$")
    account_holder_name: str = Field(min_length=2, max_length=150)
    account_type: BankAccountType = BankAccountType.SAVINGS
    branch_code: str | None = Field(None, max_length=20)
    swift_code: str | None = Field(None, pattern=r"^[A-Z0-9]{8,11}$")


class WithdrawalSettingsRequest(BaseModel):
    minimum_amount: Decimal | None = Field(None, gt=0, max_digits=12, decimal_places=2)
    auto_withdrawal_enabled: bool | None = None
    auto_withdrawal_threshold: Decimal | None = Field(None, gt=0, max_digits=12, decimal_places=2)


class WithdrawalRequest(BaseModel):
    amount: Decimal = Field(max_digits=12, decimal_places=2)
    method: WithdrawalMethod = WithdrawalMethod.BANK_TRANSFER
    bank_details: BankDetailsRequest | None = None


class ProcessWithdrawalRequest(BaseModel):
    status: Literal["completed", "failed"]
    remarks: str | None = Field(None, max_length=1000)


class MonthlyEarnings(BaseModel):
    month: str
    amount: Decimal


class WalletStatsResponse(BaseModel):
    available_balance: Decimal
    pending_balance: Decimal
    total_earnings: Decimal
    total_withdrawals: Decimal
    total_commissions: Decimal
    pending_withdrawals: int
    monthly_earnings: list[MonthlyEarnings]
