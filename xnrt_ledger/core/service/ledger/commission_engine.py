from decimal import Decimal, ROUND_DOWN
from typing import Dict, List, Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from xnrt_ledger.core.exceptions.base import NotFoundError
from xnrt_ledger.core.exceptions.handler import ServiceError, ServiceErrorCode
from xnrt_ledger.core.service.ledger.models import ActivityType, BalancePool, CommissionShare, ReferralStats
from xnrt_ledger.core.logger.logger import get_logger
from xnrt_ledger.infra.config.settings import settings
from xnrt_ledger.infra.repository.balance_repository import BalanceRepository
from xnrt_ledger.infra.repository.referral_repository import ReferralRepository
from xnrt_ledger.infra.repository.user_repository import UserRepository

logger = get_logger(__name__)

COMMISSION_RATES: Dict[int, Decimal] = {
    1: Decimal("0.06"),
    2: Decimal("0.03"),
    3: Decimal("0.01"),
}
AMOUNT_QUANTUM = Decimal("0.00000001")


def split_commission(amount: Decimal) -> Dict[int, Decimal]:
    """Per-level shares rounded to storage precision; the last level absorbs rounding"""
    total = (amount * sum(COMMISSION_RATES.values())).quantize(AMOUNT_QUANTUM, rounding=ROUND_DOWN)
    levels = sorted(COMMISSION_RATES)
    shares = {
        level: (amount * COMMISSION_RATES[level]).quantize(AMOUNT_QUANTUM, rounding=ROUND_DOWN)
        for level in levels[:-1]
    }
    shares[levels[-1]] = total - sum(shares.values())
    return shares


class CommissionEngine:
    """
    Three-level referral commission with house fallback.

    Works inside the caller's transaction and never commits; a failure here
    rolls back the deposit credit that triggered it.
    """

    def __init__(self, session: AsyncSession, house_referral_code: Optional[str] = None):
        self.session = session
        self.house_referral_code = house_referral_code or settings.HOUSE_ACCOUNT_REFERRAL_CODE
        self.users = UserRepository(session)
        self.balances = BalanceRepository(session)
        self.referrals = ReferralRepository(session)
        self._house_id: Optional[UUID] = None

    async def _house_account_id(self) -> UUID:
        if self._house_id is None:
            house = await self.users.get_by_referral_code(self.house_referral_code)
            if house is None:
                logger.error("House account is missing", extra={"referral_code": self.house_referral_code})
                raise ServiceError(
                    code=ServiceErrorCode.HOUSE_ACCOUNT_MISSING,
                    message="House account is not configured",
                    status_code=500
                )
            self._house_id = house.id
        return self._house_id

    async def distribute(self, paying_user_id: UUID, deposit_amount: Decimal) -> List[CommissionShare]:
        """
        Walk up to three referrers of `paying_user_id` and pay each level's share

        Once the chain ends, or loops back onto a user already visited, that
        level and every later one is paid to the house account.
        """
        shares = split_commission(deposit_amount)
        paid: List[CommissionShare] = []
        visited = {paying_user_id}
        current = paying_user_id
        chain_ended = False

        for level in sorted(shares):
            commission = shares[level]
            referrer_id = None
            if not chain_ended:
                referrer_id = await self.users.get_referrer_id(current)
                if referrer_id in visited:
                    logger.warning(
                        "Referral cycle detected",
                        extra={"user_id": str(paying_user_id), "level": level, "referrer_id": str(referrer_id)}
                    )
                    referrer_id = None
                if referrer_id is None:
                    chain_ended = True

            if commission <= 0:
                if referrer_id is not None:
                    visited.add(referrer_id)
                    current = referrer_id
                continue

            if referrer_id is not None:
                visited.add(referrer_id)
                current = referrer_id
                await self.balances.credit(referrer_id, BalancePool.REFERRAL, commission, earned=True)
                await self.referrals.add_commission(referrer_id, paying_user_id, level, commission)
                await self.balances.record_activity(
                    referrer_id,
                    ActivityType.REFERRAL_COMMISSION.value,
                    f"Level {level} referral commission of {commission} XNRT",
                    amount=commission
                )
                paid.append(CommissionShare(level=level, recipient_id=referrer_id, amount=commission))
            else:
                house_id = await self._house_account_id()
                await self.balances.credit(house_id, BalancePool.REFERRAL, commission, earned=True)
                await self.balances.record_activity(
                    house_id,
                    ActivityType.COMPANY_COMMISSION.value,
                    f"Level {level} company commission of {commission} XNRT from user {paying_user_id}",
                    amount=commission
                )
                paid.append(CommissionShare(level=level, recipient_id=house_id, amount=commission, house=True))

        logger.info(
            "Commission distributed",
            extra={
                "user_id": str(paying_user_id),
                "deposit_amount": str(deposit_amount),
                "levels": [{"level": s.level, "house": s.house, "amount": str(s.amount)} for s in paid]
            }
        )
        return paid

    async def referral_stats(self, user_id: UUID) -> ReferralStats:
        user = await self.users.get_by_id(user_id)
        if user is None:
            raise NotFoundError("User not found", details={"user_id": str(user_id)})

        level_counts = {level: 0 for level in COMMISSION_RATES}
        level_commissions = {level: Decimal(0) for level in COMMISSION_RATES}
        for referral in await self.referrals.list_for_referrer(user_id):
            level_counts[referral.level] = level_counts.get(referral.level, 0) + 1
            level_commissions[referral.level] = (
                level_commissions.get(referral.level, Decimal(0)) + referral.total_commission
            )

        return ReferralStats(
            referral_code=user.referral_code,
            level_counts=level_counts,
            level_commissions=level_commissions,
            total_commission=sum(level_commissions.values(), Decimal(0))
        )
