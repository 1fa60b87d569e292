from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, status

from xnrt_ledger.api.middleware.authentication.jwt_bearer import get_current_user
from xnrt_ledger.api.models.request_models import CreateStakeRequestDTO
from xnrt_ledger.api.models.response_models import TierListResponseDTO, TierResponseDTO
from xnrt_ledger.core.dependencies import get_stake_engine
from xnrt_ledger.core.service.staking.models import STAKING_TIERS, Stake, StakeWithdrawalResult
from xnrt_ledger.core.service.staking.stake_engine import StakeAccrualEngine
from xnrt_ledger.core.service.user.models import User

router = APIRouter(prefix="/stakes", tags=["stakes"])


@router.get("/tiers", response_model=TierListResponseDTO)
async def tiers():
    return TierListResponseDTO(tiers=[
        TierResponseDTO(
            tier=tier.value,
            name=config.name,
            duration=config.duration,
            minAmount=config.min_amount,
            maxAmount=config.max_amount,
            dailyRate=config.daily_rate,
            apy=config.apy
        )
        for tier, config in STAKING_TIERS.items()
    ])


@router.get("", response_model=List[Stake])
async def my_stakes(
    user: User = Depends(get_current_user),
    engine: StakeAccrualEngine = Depends(get_stake_engine)
):
    return await engine.list_for_user(user.id)


@router.post("", response_model=Stake, status_code=status.HTTP_201_CREATED)
async def create_stake(
    request: CreateStakeRequestDTO,
    user: User = Depends(get_current_user),
    engine: StakeAccrualEngine = Depends(get_stake_engine)
):
    return await engine.create_stake(user.id, request.tier, request.amount)


@router.post("/{stake_id}/withdraw", response_model=StakeWithdrawalResult)
async def withdraw_stake(
    stake_id: UUID,
    user: User = Depends(get_current_user),
    engine: StakeAccrualEngine = Depends(get_stake_engine)
):
    return await engine.withdraw(user.id, stake_id)
