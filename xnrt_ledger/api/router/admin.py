from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends

from xnrt_ledger.api.middleware.authentication.jwt_bearer import require_admin
from xnrt_ledger.api.models.request_models import (
    AdminApproveDepositDTO,
    AdminNotesDTO,
    BulkApproveDepositsDTO,
    BulkIdsDTO,
    ResolveUnmatchedDTO,
)
from xnrt_ledger.core.dependencies import (
    get_chain_scanner,
    get_deposit_ledger,
    get_stake_engine,
    get_withdrawal_processor,
)
from xnrt_ledger.core.logger.logger import get_logger
from xnrt_ledger.core.service.chain.models import ScanResult
from xnrt_ledger.core.service.chain.scanner import ChainScanner
from xnrt_ledger.core.service.ledger.deposit_ledger import DepositLedger
from xnrt_ledger.core.service.ledger.models import BulkResult, Deposit, DepositResult, UnmatchedDeposit
from xnrt_ledger.core.service.staking.models import RewardSweepResult
from xnrt_ledger.core.service.staking.stake_engine import StakeAccrualEngine
from xnrt_ledger.core.service.user.models import User
from xnrt_ledger.core.service.withdrawal.models import Withdrawal
from xnrt_ledger.core.service.withdrawal.withdrawal_processor import WithdrawalProcessor

logger = get_logger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


def _notes(body: Optional[AdminNotesDTO]) -> Optional[str]:
    return body.notes if body else None


# Deposits

@router.get("/deposits/pending", response_model=List[Deposit])
async def pending_deposits(
    admin: User = Depends(require_admin),
    ledger: DepositLedger = Depends(get_deposit_ledger)
):
    return await ledger.list_pending()


@router.post("/deposits/{deposit_id}/verify", response_model=Deposit)
async def verify_deposit(
    deposit_id: UUID,
    admin: User = Depends(require_admin),
    ledger: DepositLedger = Depends(get_deposit_ledger)
):
    """Re-check a hash-bearing deposit on chain and store the confirmation count."""
    return await ledger.verify_deposit(deposit_id)


@router.post("/deposits/{deposit_id}/approve", response_model=DepositResult)
async def approve_deposit(
    deposit_id: UUID,
    body: Optional[AdminApproveDepositDTO] = None,
    admin: User = Depends(require_admin),
    ledger: DepositLedger = Depends(get_deposit_ledger)
):
    logger.info("Admin deposit approval", extra={"admin_id": str(admin.id), "deposit_id": str(deposit_id)})
    return await ledger.approve(deposit_id, notes=_notes(body), force=body.force if body else False)


@router.post("/deposits/{deposit_id}/reject", response_model=Deposit)
async def reject_deposit(
    deposit_id: UUID,
    body: Optional[AdminNotesDTO] = None,
    admin: User = Depends(require_admin),
    ledger: DepositLedger = Depends(get_deposit_ledger)
):
    logger.info("Admin deposit rejection", extra={"admin_id": str(admin.id), "deposit_id": str(deposit_id)})
    return await ledger.reject(deposit_id, notes=_notes(body))


@router.post("/deposits/bulk-approve", response_model=BulkResult)
async def bulk_approve_deposits(
    body: BulkApproveDepositsDTO,
    admin: User = Depends(require_admin),
    ledger: DepositLedger = Depends(get_deposit_ledger)
):
    return await ledger.bulk_approve(body.ids, notes=body.notes, force=body.force)


@router.post("/deposits/bulk-reject", response_model=BulkResult)
async def bulk_reject_deposits(
    body: BulkIdsDTO,
    admin: User = Depends(require_admin),
    ledger: DepositLedger = Depends(get_deposit_ledger)
):
    return await ledger.bulk_reject(body.ids, notes=body.notes)


# Unmatched deposits

@router.get("/unmatched-deposits", response_model=List[UnmatchedDeposit])
async def unmatched_deposits(
    admin: User = Depends(require_admin),
    ledger: DepositLedger = Depends(get_deposit_ledger)
):
    return await ledger.list_unmatched()


@router.post("/unmatched-deposits/{unmatched_id}/resolve", response_model=DepositResult)
async def resolve_unmatched(
    unmatched_id: UUID,
    body: ResolveUnmatchedDTO,
    admin: User = Depends(require_admin),
    ledger: DepositLedger = Depends(get_deposit_ledger)
):
    """Attribute an unmatched transfer to a user and credit it."""
    logger.info(
        "Admin resolving unmatched deposit",
        extra={"admin_id": str(admin.id), "unmatched_id": str(unmatched_id), "user_id": str(body.userId)}
    )
    return await ledger.resolve_unmatched(unmatched_id, body.userId, notes=body.notes)


# Withdrawals

@router.get("/withdrawals/pending", response_model=List[Withdrawal])
async def pending_withdrawals(
    admin: User = Depends(require_admin),
    processor: WithdrawalProcessor = Depends(get_withdrawal_processor)
):
    return await processor.list_pending()


@router.post("/withdrawals/{withdrawal_id}/approve", response_model=Withdrawal)
async def approve_withdrawal(
    withdrawal_id: UUID,
    body: Optional[AdminNotesDTO] = None,
    admin: User = Depends(require_admin),
    processor: WithdrawalProcessor = Depends(get_withdrawal_processor)
):
    return await processor.approve(withdrawal_id, notes=_notes(body))


@router.post("/withdrawals/{withdrawal_id}/reject", response_model=Withdrawal)
async def reject_withdrawal(
    withdrawal_id: UUID,
    body: Optional[AdminNotesDTO] = None,
    admin: User = Depends(require_admin),
    processor: WithdrawalProcessor = Depends(get_withdrawal_processor)
):
    return await processor.reject(withdrawal_id, notes=_notes(body))


@router.post("/withdrawals/bulk-approve", response_model=BulkResult)
async def bulk_approve_withdrawals(
    body: BulkIdsDTO,
    admin: User = Depends(require_admin),
    processor: WithdrawalProcessor = Depends(get_withdrawal_processor)
):
    return await processor.bulk_approve(body.ids, notes=body.notes)


@router.post("/withdrawals/bulk-reject", response_model=BulkResult)
async def bulk_reject_withdrawals(
    body: BulkIdsDTO,
    admin: User = Depends(require_admin),
    processor: WithdrawalProcessor = Depends(get_withdrawal_processor)
):
    return await processor.bulk_reject(body.ids, notes=body.notes)


# Jobs

@router.post("/stakes/process-rewards", response_model=RewardSweepResult)
async def process_rewards(
    admin: User = Depends(require_admin),
    engine: StakeAccrualEngine = Depends(get_stake_engine)
):
    return await engine.process_rewards()


@router.post("/scanner/run", response_model=ScanResult)
async def run_scanner(
    admin: User = Depends(require_admin),
    scanner: ChainScanner = Depends(get_chain_scanner)
):
    """Run one scan cycle now; skipped when a cycle is already in flight."""
    return await scanner.run_cycle()
