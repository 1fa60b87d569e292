from typing import List

from fastapi import APIRouter, Depends

from xnrt_ledger.api.middleware.authentication.jwt_bearer import get_current_user
from xnrt_ledger.api.models.request_models import (
    ReportDepositRequestDTO,
    WalletChallengeRequestDTO,
    WalletConfirmRequestDTO,
)
from xnrt_ledger.api.models.response_models import WalletChallengeResponseDTO
from xnrt_ledger.core.dependencies import (
    get_deposit_address_service,
    get_deposit_ledger,
    get_wallet_proof_service,
)
from xnrt_ledger.core.service.ledger.deposit_ledger import DepositLedger
from xnrt_ledger.core.service.ledger.models import DepositReportResult
from xnrt_ledger.core.service.user.models import User
from xnrt_ledger.core.service.wallet.deposit_address_service import DepositAddressService
from xnrt_ledger.core.service.wallet.models import DepositAddress, WalletLink
from xnrt_ledger.core.service.wallet.wallet_proof_service import WalletProofService

router = APIRouter(prefix="/wallet", tags=["wallet"])


@router.get("/me", response_model=List[WalletLink])
async def linked_wallets(
    user: User = Depends(get_current_user),
    wallet_service: WalletProofService = Depends(get_wallet_proof_service)
):
    return await wallet_service.list_linked_wallets(user.id)


@router.post("/link/challenge", response_model=WalletChallengeResponseDTO)
async def link_challenge(
    request: WalletChallengeRequestDTO,
    user: User = Depends(get_current_user),
    wallet_service: WalletProofService = Depends(get_wallet_proof_service)
):
    """Issue a message the wallet must sign to prove ownership."""
    challenge = await wallet_service.issue_challenge(user.id, request.address)
    return WalletChallengeResponseDTO(
        message=challenge.message,
        nonce=challenge.nonce,
        issuedAt=challenge.issued_at,
        expiresAt=challenge.expires_at
    )


@router.post("/link/confirm", response_model=WalletLink)
async def link_confirm(
    request: WalletConfirmRequestDTO,
    user: User = Depends(get_current_user),
    wallet_service: WalletProofService = Depends(get_wallet_proof_service)
):
    return await wallet_service.confirm_challenge(
        user.id,
        request.address,
        request.signature,
        request.nonce,
        request.issuedAt
    )


@router.get("/deposit-address", response_model=DepositAddress)
async def deposit_address(
    user: User = Depends(get_current_user),
    address_service: DepositAddressService = Depends(get_deposit_address_service)
):
    return await address_service.get_or_assign(user.id)


@router.post("/report-deposit", response_model=DepositReportResult)
async def report_deposit(
    request: ReportDepositRequestDTO,
    user: User = Depends(get_current_user),
    ledger: DepositLedger = Depends(get_deposit_ledger)
):
    """Report a deposit the scanner did not pick up."""
    return await ledger.report_deposit(
        user.id,
        request.amount,
        transaction_hash=request.transactionHash,
        description=request.description,
        proof_image_url=request.proofImageUrl
    )
