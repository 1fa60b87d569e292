from typing import Optional
from uuid import UUID

from eth_account import Account
from eth_account.hdaccount import key_from_seed
from hexbytes import HexBytes
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from xnrt_ledger.core.exceptions.base import NotFoundError
from xnrt_ledger.core.exceptions.handler import ServiceError, ServiceErrorCode
from xnrt_ledger.core.service.wallet.models import DepositAddress
from xnrt_ledger.core.logger.logger import get_logger
from xnrt_ledger.infra.config.settings import settings
from xnrt_ledger.infra.repository.user_repository import UserRepository

logger = get_logger(__name__)

Account.enable_unaudited_hdwallet_features()

# BIP44 coin type 714 (BNB), one external-chain leaf per user
DERIVATION_PATH = "m/44'/714'/0'/0/{index}"


def derive_address(master_seed: str, index: int) -> str:
    """Derive the receive address at `index` from a mnemonic or a 0x-prefixed hex seed"""
    seed = master_seed.strip()
    path = DERIVATION_PATH.format(index=index)
    if seed.startswith("0x"):
        private_key = key_from_seed(bytes(HexBytes(seed)), path)
        return Account.from_key(private_key).address.lower()
    return Account.from_mnemonic(seed, account_path=path).address.lower()


class DepositAddressService:
    """Assigns each user one HD-derived BSC deposit address"""

    MAX_ALLOCATION_ATTEMPTS = 5

    def __init__(self, session: AsyncSession, master_seed: Optional[str] = None):
        self.session = session
        self.master_seed = master_seed if master_seed is not None else settings.MASTER_SEED
        self.users = UserRepository(session)

    async def get_or_assign(self, user_id: UUID) -> DepositAddress:
        user = await self.users.get_by_id(user_id)
        if user is None:
            raise NotFoundError("User not found", details={"user_id": str(user_id)})
        if user.deposit_address:
            return DepositAddress(address=user.deposit_address, derivation_index=user.derivation_index)

        if not self.master_seed:
            raise ServiceError(
                code=ServiceErrorCode.SERVICE_UNAVAILABLE,
                message="Deposit addresses are not configured",
                status_code=503
            )

        for attempt in range(self.MAX_ALLOCATION_ATTEMPTS):
            current_max = await self.users.get_max_derivation_index()
            index = 0 if current_max is None else current_max + 1
            address = derive_address(self.master_seed, index)
            try:
                assigned = await self.users.assign_deposit_address(user_id, index, address)
                await self.session.commit()
            except IntegrityError:
                # another user took this index concurrently
                await self.session.rollback()
                logger.warning(
                    "Derivation index collision, retrying",
                    extra={"derivation_index": index, "attempt": attempt + 1}
                )
                continue

            if assigned:
                logger.info(
                    "Assigned deposit address",
                    extra={"user_id": str(user_id), "derivation_index": index, "address": address}
                )
                return DepositAddress(address=address, derivation_index=index)

            user = await self.users.get_by_id(user_id)
            return DepositAddress(address=user.deposit_address, derivation_index=user.derivation_index)

        raise ServiceError(
            code=ServiceErrorCode.CONFLICT,
            message="Could not allocate a deposit address",
            status_code=409
        )
