"""Models and tier table for staking."""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field


class StakeStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    WITHDRAWN = "withdrawn"


class StakingTier(str, Enum):
    ROYAL_SAPPHIRE = "royal_sapphire"
    LEGENDARY_EMERALD = "legendary_emerald"
    IMPERIAL_PLATINUM = "imperial_platinum"
    MYTHIC_DIAMOND = "mythic_diamond"


class TierConfig(BaseModel):
    """Fixed staking configuration; daily_rate is a percentage of the principal"""
    name: str
    duration: int = Field(..., description="Lock period in days")
    min_amount: Decimal
    max_amount: Decimal
    daily_rate: Decimal
    apy: int

    def max_profit(self, amount: Decimal) -> Decimal:
        return amount * self.daily_rate / Decimal(100) * self.duration


STAKING_TIERS: Dict[StakingTier, TierConfig] = {
    StakingTier.ROYAL_SAPPHIRE: TierConfig(
        name="Royal Sapphire",
        duration=30,
        min_amount=Decimal("10000"),
        max_amount=Decimal("1000000"),
        daily_rate=Decimal("1.1"),
        apy=402,
    ),
    StakingTier.LEGENDARY_EMERALD: TierConfig(
        name="Legendary Emerald",
        duration=30,
        min_amount=Decimal("10000"),
        max_amount=Decimal("10000000"),
        daily_rate=Decimal("1.4"),
        apy=511,
    ),
    StakingTier.IMPERIAL_PLATINUM: TierConfig(
        name="Imperial Platinum",
        duration=45,
        min_amount=Decimal("5000"),
        max_amount=Decimal("10000000"),
        daily_rate=Decimal("1.5"),
        apy=547,
    ),
    StakingTier.MYTHIC_DIAMOND: TierConfig(
        name="Mythic Diamond",
        duration=90,
        min_amount=Decimal("100"),
        max_amount=Decimal("10000000"),
        daily_rate=Decimal("2.0"),
        apy=730,
    ),
}


class Stake(BaseModel):
    id: UUID
    user_id: UUID
    tier: StakingTier
    amount: Decimal
    daily_rate: Decimal
    duration: int
    start_date: datetime
    end_date: datetime
    last_profit_date: Optional[datetime] = None
    accumulated_profit: Decimal
    status: StakeStatus

    class Config:
        from_attributes = True


class RewardSweepResult(BaseModel):
    processed: int = 0
    credited: int = 0
    completed: int = 0
    total_profit: Decimal = Decimal("0")
    skipped_stake_ids: List[UUID] = Field(default_factory=list)


class StakeWithdrawalResult(BaseModel):
    stake: Stake
    principal: Decimal
    profit: Decimal
    total_amount: Decimal
