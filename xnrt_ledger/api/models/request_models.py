"""
Request DTOs for API endpoints.
"""

from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, Field, validator

from xnrt_ledger.core.service.ledger.models import BalancePool
from xnrt_ledger.core.service.staking.models import StakingTier


class RegisterRequestDTO(BaseModel):
    """Request model for user registration."""

    referralCode: Optional[str] = Field(None, max_length=32, description="Referral code of the inviting user")


class WalletChallengeRequestDTO(BaseModel):
    """Request model for a wallet-link challenge."""

    address: str = Field(..., min_length=1, max_length=64, description="EVM address to link")

    @validator('address')
    def validate_address(cls, v):
        if not v or not v.strip():
            raise ValueError("Address cannot be empty")
        return v.strip()


class WalletConfirmRequestDTO(BaseModel):
    """Request model for confirming a signed wallet-link challenge."""

    address: str = Field(..., min_length=1, max_length=64)
    signature: str = Field(..., min_length=1, max_length=200, description="0x-prefixed personal_sign signature")
    nonce: str = Field(..., min_length=1, max_length=128)
    issuedAt: str = Field(..., min_length=1, max_length=64, description="issuedAt exactly as returned by the challenge")

    @validator('signature')
    def validate_signature(cls, v):
        if not v or not v.strip():
            raise ValueError("Signature cannot be empty")
        return v.strip()


class ReportDepositRequestDTO(BaseModel):
    """Request model for a user-reported deposit."""

    amount: Decimal = Field(..., gt=0, description="USDT amount sent")
    transactionHash: Optional[str] = Field(None, max_length=80)
    description: Optional[str] = Field(None, max_length=1000)
    proofImageUrl: Optional[str] = Field(None, description="http(s) URL or data:image/ payload")


class WithdrawalRequestDTO(BaseModel):
    """Request model for a withdrawal."""

    source: BalancePool = Field(..., description="Pool to withdraw from")
    amount: Decimal = Field(..., gt=0, description="Gross XNRT amount")
    walletAddress: str = Field(..., min_length=1, max_length=64, description="Destination BSC address")


class CreateStakeRequestDTO(BaseModel):
    """Request model for a new stake."""

    tier: StakingTier
    amount: Decimal = Field(..., gt=0)


class AdminNotesDTO(BaseModel):
    notes: Optional[str] = Field(None, max_length=1000)


class AdminApproveDepositDTO(AdminNotesDTO):
    force: bool = Field(False, description="Approve even without enough confirmations")


class BulkIdsDTO(BaseModel):
    ids: List[UUID] = Field(..., min_length=1, max_length=200)
    notes: Optional[str] = Field(None, max_length=1000)


class BulkApproveDepositsDTO(BulkIdsDTO):
    force: bool = False


class ResolveUnmatchedDTO(BaseModel):
    userId: UUID
    notes: Optional[str] = Field(None, max_length=1000)
