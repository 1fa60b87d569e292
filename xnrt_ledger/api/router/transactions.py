from typing import List

from fastapi import APIRouter, Depends, status

from xnrt_ledger.api.middleware.authentication.jwt_bearer import get_current_user
from xnrt_ledger.api.models.request_models import WithdrawalRequestDTO
from xnrt_ledger.core.dependencies import get_deposit_ledger, get_withdrawal_processor
from xnrt_ledger.core.service.ledger.deposit_ledger import DepositLedger
from xnrt_ledger.core.service.ledger.models import Deposit
from xnrt_ledger.core.service.user.models import User
from xnrt_ledger.core.service.withdrawal.models import Withdrawal
from xnrt_ledger.core.service.withdrawal.withdrawal_processor import WithdrawalProcessor

router = APIRouter(prefix="/transactions", tags=["transactions"])


@router.get("/deposits", response_model=List[Deposit])
async def my_deposits(
    user: User = Depends(get_current_user),
    ledger: DepositLedger = Depends(get_deposit_ledger)
):
    return await ledger.list_for_user(user.id)


@router.get("/withdrawals", response_model=List[Withdrawal])
async def my_withdrawals(
    user: User = Depends(get_current_user),
    processor: WithdrawalProcessor = Depends(get_withdrawal_processor)
):
    return await processor.list_for_user(user.id)


@router.post("/withdrawal", response_model=Withdrawal, status_code=status.HTTP_201_CREATED)
async def request_withdrawal(
    request: WithdrawalRequestDTO,
    user: User = Depends(get_current_user),
    processor: WithdrawalProcessor = Depends(get_withdrawal_processor)
):
    """Reserve funds from a pool and queue the withdrawal for admin settlement."""
    return await processor.request(user.id, request.source, request.amount, request.walletAddress)
