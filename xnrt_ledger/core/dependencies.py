"""
FastAPI dependency injection functions.
Clean, maintainable dependency resolution using FastAPI's native DI system.
"""

from functools import lru_cache

from fastapi import Depends, Request
from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncSession

from xnrt_ledger.infra.config.redis import get_redis
from xnrt_ledger.infra.config.settings import settings
from xnrt_ledger.infra.database import get_async_session, get_session_factory
from xnrt_ledger.core.service.auth.jwt_service import JWTService
from xnrt_ledger.core.service.chain.chain_client import ChainClient
from xnrt_ledger.core.service.chain.deposit_verifier import DepositVerifier
from xnrt_ledger.core.service.chain.scanner import ChainScanner, ScannerContext
from xnrt_ledger.core.service.ledger.commission_engine import CommissionEngine
from xnrt_ledger.core.service.ledger.deposit_ledger import DepositLedger
from xnrt_ledger.core.service.staking.stake_engine import StakeAccrualEngine
from xnrt_ledger.core.service.user.user_service import UserService
from xnrt_ledger.core.service.wallet.challenge_store import ChallengeStore
from xnrt_ledger.core.service.wallet.deposit_address_service import DepositAddressService
from xnrt_ledger.core.service.wallet.wallet_proof_service import WalletProofService
from xnrt_ledger.core.service.withdrawal.withdrawal_processor import WithdrawalProcessor


async def get_redis_client() -> Redis:
    """Get Redis client dependency."""
    return await get_redis()


@lru_cache()
def get_jwt_service() -> JWTService:
    return JWTService()


@lru_cache()
def get_chain_client() -> ChainClient:
    """One web3 client per process."""
    return ChainClient()


def get_deposit_verifier(chain_client: ChainClient = Depends(get_chain_client)) -> DepositVerifier:
    return DepositVerifier(chain_client)


async def get_user_service(session: AsyncSession = Depends(get_async_session)) -> UserService:
    return UserService(session)


async def get_wallet_proof_service(
    session: AsyncSession = Depends(get_async_session),
    redis_client: Redis = Depends(get_redis_client)
) -> WalletProofService:
    """Get wallet proof service with Redis-backed challenge storage."""
    ttl = settings.WALLET_CHALLENGE_EXPIRY_SECONDS + settings.WALLET_CHALLENGE_RETENTION_SECONDS
    return WalletProofService(session, ChallengeStore(redis_client, ttl))


async def get_deposit_address_service(session: AsyncSession = Depends(get_async_session)) -> DepositAddressService:
    return DepositAddressService(session)


async def get_commission_engine(session: AsyncSession = Depends(get_async_session)) -> CommissionEngine:
    return CommissionEngine(session)


async def get_deposit_ledger(
    session: AsyncSession = Depends(get_async_session),
    verifier: DepositVerifier = Depends(get_deposit_verifier)
) -> DepositLedger:
    return DepositLedger(session, verifier=verifier)


async def get_stake_engine(session: AsyncSession = Depends(get_async_session)) -> StakeAccrualEngine:
    return StakeAccrualEngine(session)


async def get_withdrawal_processor(session: AsyncSession = Depends(get_async_session)) -> WithdrawalProcessor:
    return WithdrawalProcessor(session)


async def build_chain_scanner() -> ChainScanner:
    """Scanner bound to the process-wide session factory, chain client and Redis lock."""
    context = ScannerContext(
        session_factory=await get_session_factory(),
        chain_client=get_chain_client(),
        redis=await get_redis()
    )
    return ChainScanner(context)


async def get_chain_scanner(request: Request) -> ChainScanner:
    """The scanner is shared so its single-flight lock covers API and scheduler runs."""
    scanner = getattr(request.app.state, "scanner", None)
    if scanner is None:
        scanner = await build_chain_scanner()
        request.app.state.scanner = scanner
    return scanner
