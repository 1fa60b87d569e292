"""
Response DTOs for API endpoints.
"""

from datetime import datetime
from decimal import Decimal
from typing import List

from pydantic import BaseModel, Field

from xnrt_ledger.core.service.auth.models.token import TokenResponse
from xnrt_ledger.core.service.user.models import User


class RegisterResponseDTO(BaseModel):
    user: User
    token: TokenResponse


class WalletChallengeResponseDTO(BaseModel):
    message: str = Field(..., description="Message to sign with the wallet")
    nonce: str
    issuedAt: str
    expiresAt: datetime


class TierResponseDTO(BaseModel):
    tier: str
    name: str
    duration: int
    minAmount: Decimal
    maxAmount: Decimal
    dailyRate: Decimal
    apy: int


class TierListResponseDTO(BaseModel):
    tiers: List[TierResponseDTO]
