"""Models for the balance ledger and deposit crediting."""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field


class BalancePool(str, Enum):
    """The four independent balance buckets of a user"""
    MAIN = "main"
    STAKING = "staking"
    MINING = "mining"
    REFERRAL = "referral"


class DepositSource(str, Enum):
    LINKED_WALLET = "linked_wallet"
    DEPOSIT_ADDRESS = "deposit_address"
    EXCHANGE_VERIFIED = "exchange_verified"
    MANUAL_REPORT = "manual_report"


class DepositStatus(str, Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    APPROVED = "approved"
    REJECTED = "rejected"


class ActivityType(str, Enum):
    DEPOSIT_APPROVED = "deposit_approved"
    REFERRAL_COMMISSION = "referral_commission"
    COMPANY_COMMISSION = "company_commission"
    STAKE_CREATED = "stake_created"
    STAKING_REWARD = "staking_reward"
    STAKE_WITHDRAWN = "stake_withdrawn"
    WITHDRAWAL_REQUESTED = "withdrawal_requested"
    WITHDRAWAL_REFUNDED = "withdrawal_refunded"


class ReportOutcome(str, Enum):
    """Outcome of a user-submitted deposit report"""
    CREDITED = "credited"
    PENDING_ADMIN_REVIEW = "pending_admin_review"
    SUBMITTED = "submitted"


class Balance(BaseModel):
    user_id: UUID
    main_balance: Decimal
    staking_balance: Decimal
    mining_balance: Decimal
    referral_balance: Decimal
    total_earned: Decimal

    class Config:
        from_attributes = True

    def pool(self, pool: BalancePool) -> Decimal:
        return getattr(self, f"{BalancePool(pool).value}_balance")


class Deposit(BaseModel):
    id: UUID
    user_id: UUID
    source: DepositSource
    amount: Decimal
    converted_amount: Decimal
    transaction_hash: Optional[str] = None
    log_index: Optional[int] = None
    block_number: Optional[int] = None
    from_address: Optional[str] = None
    to_address: Optional[str] = None
    confirmations: int = 0
    verified: bool = False
    status: DepositStatus
    proof_image_url: Optional[str] = None
    description: Optional[str] = None
    admin_notes: Optional[str] = None
    created_at: datetime
    processed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class UnmatchedDeposit(BaseModel):
    id: UUID
    from_address: str
    to_address: str
    amount: Decimal
    tx_hash: str
    log_index: Optional[int] = None
    block_number: Optional[int] = None
    confirmations: int = 0
    reason: Optional[str] = None
    resolved: bool = False
    resolved_user_id: Optional[UUID] = None
    created_at: datetime

    class Config:
        from_attributes = True


class DepositInput(BaseModel):
    """Everything the ledger needs to turn a deposit into balance"""
    user_id: UUID
    usdt_amount: Decimal
    source: DepositSource
    transaction_hash: Optional[str] = None
    log_index: Optional[int] = None
    confirmations: int = 0
    block_number: Optional[int] = None
    from_address: Optional[str] = None
    to_address: Optional[str] = None
    verified: bool = False
    deposit_id: Optional[UUID] = None
    admin_notes: Optional[str] = None
    force: bool = False


class CommissionShare(BaseModel):
    level: int
    recipient_id: UUID
    amount: Decimal
    house: bool = False


class DepositResult(BaseModel):
    deposit: Deposit
    credited: bool = Field(..., description="True only when this call mutated balances")
    already_processed: bool = False
    commissions: List[CommissionShare] = Field(default_factory=list)


class DepositReportResult(BaseModel):
    outcome: ReportOutcome
    message: str
    deposit_id: Optional[UUID] = None
    amount: Optional[Decimal] = None
    reason: Optional[str] = None


class BulkItemResult(BaseModel):
    id: UUID
    success: bool
    error: Optional[str] = None


class BulkResult(BaseModel):
    success_count: int = 0
    failure_count: int = 0
    results: List[BulkItemResult] = Field(default_factory=list)

    def record(self, item_id: UUID, error: Optional[str] = None) -> None:
        self.results.append(BulkItemResult(id=item_id, success=error is None, error=error))
        if error is None:
            self.success_count += 1
        else:
            self.failure_count += 1


class ReferralStats(BaseModel):
    referral_code: str
    level_counts: Dict[int, int]
    level_commissions: Dict[int, Decimal]
    total_commission: Decimal
