import secrets
from datetime import datetime, timedelta, timezone
from typing import List, Optional
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from xnrt_ledger.core.exceptions.base import (
    AlreadyLinkedError,
    ChallengeExpiredError,
    ChallengeNotFoundError,
    ConflictError,
    UnauthorizedError,
)
from xnrt_ledger.core.service.wallet.challenge_store import ChallengeStore
from xnrt_ledger.core.service.wallet.models import WalletChallenge, WalletLink
from xnrt_ledger.core.service.wallet.signature_verification import (
    SignatureVerificationService,
    normalize_address,
)
from xnrt_ledger.core.logger.logger import logger
from xnrt_ledger.infra.config.settings import settings
from xnrt_ledger.infra.repository.wallet_repository import WalletRepository


def build_challenge_message(address: str, nonce: str, issued_at: str) -> str:
    return f"XNRT Wallet Link\n\nAddress: {address}\nNonce: {nonce}\nIssued: {issued_at}"


class WalletProofService:
    """Issues and confirms signed ownership challenges for external wallets"""

    CHALLENGE_EXPIRY_SECONDS = settings.WALLET_CHALLENGE_EXPIRY_SECONDS
    NONCE_BYTES = 16

    def __init__(
        self,
        session: AsyncSession,
        challenge_store: ChallengeStore,
        signature_service: Optional[SignatureVerificationService] = None
    ):
        self.session = session
        self.store = challenge_store
        self.signature_service = signature_service or SignatureVerificationService()
        self.wallets = WalletRepository(session)

    def _generate_nonce(self) -> str:
        return secrets.token_hex(self.NONCE_BYTES)

    async def issue_challenge(self, user_id: Optional[UUID], address: str) -> WalletChallenge:
        """Create a challenge the caller must sign with the wallet being linked"""
        if user_id is None:
            raise UnauthorizedError("Authentication required to link a wallet")

        address = normalize_address(address)
        existing = await self.wallets.get_by_address(address)
        if existing is not None:
            if existing.user_id != user_id:
                raise ConflictError("Wallet is linked to another account", details={"address": address})
            raise AlreadyLinkedError(details={"address": address})

        now = datetime.now(timezone.utc)
        nonce = self._generate_nonce()
        issued_at = now.isoformat(timespec="milliseconds")
        challenge = WalletChallenge(
            user_id=user_id,
            address=address,
            nonce=nonce,
            message=build_challenge_message(address, nonce, issued_at),
            issued_at=issued_at,
            expires_at=now + timedelta(seconds=self.CHALLENGE_EXPIRY_SECONDS)
        )

        await self.store.save_challenge(challenge)
        logger.info("Issued wallet challenge", extra={"user_id": str(user_id), "wallet_address": address})
        return challenge

    async def confirm_challenge(
        self,
        user_id: Optional[UUID],
        address: str,
        signature: str,
        nonce: str,
        issued_at: str
    ) -> WalletLink:
        """
        Verify a signed challenge and link the wallet

        Raises:
            ChallengeNotFoundError: no challenge for (user, address, nonce, issued_at)
            AlreadyLinkedError: the challenge was already consumed
            ChallengeExpiredError: the challenge is past its expiry
            InvalidSignatureError: the signature recovers a different address
        """
        if user_id is None:
            raise UnauthorizedError("Authentication required to link a wallet")

        address = normalize_address(address)
        challenge = await self.store.get_challenge(user_id, address, nonce)
        if challenge is None or challenge.issued_at != issued_at:
            raise ChallengeNotFoundError(details={"address": address})

        if challenge.consumed:
            raise AlreadyLinkedError("Challenge has already been used", details={"address": address})

        if challenge.is_expired():
            raise ChallengeExpiredError(details={"address": address})

        self.signature_service.verify_signature(address, signature, challenge.message)

        if not await self.store.mark_consumed(challenge):
            raise AlreadyLinkedError("Challenge has already been used", details={"address": address})

        try:
            link = await self.wallets.create(user_id, address, signature)
            await self.session.commit()
        except IntegrityError:
            await self.session.rollback()
            owner = await self.wallets.get_by_address(address)
            if owner is not None and owner.user_id != user_id:
                raise ConflictError("Wallet is linked to another account", details={"address": address})
            raise AlreadyLinkedError(details={"address": address})

        logger.info("Wallet linked", extra={"user_id": str(user_id), "wallet_address": address})
        return WalletLink.model_validate(link)

    async def list_linked_wallets(self, user_id: UUID) -> List[WalletLink]:
        links = await self.wallets.list_for_user(user_id)
        return [WalletLink.model_validate(link) for link in links]
