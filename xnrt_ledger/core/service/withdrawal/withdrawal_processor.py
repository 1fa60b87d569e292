from decimal import Decimal, ROUND_DOWN
from typing import Iterable, List, Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from xnrt_ledger.core.exceptions.base import ConflictError, NotFoundError, ValidationError
from xnrt_ledger.core.exceptions.handler import ServiceError
from xnrt_ledger.core.service.ledger.commission_engine import AMOUNT_QUANTUM
from xnrt_ledger.core.service.ledger.models import ActivityType, BalancePool, BulkResult
from xnrt_ledger.core.service.wallet.signature_verification import normalize_address
from xnrt_ledger.core.service.withdrawal.models import Withdrawal, WithdrawalStatus
from xnrt_ledger.core.logger.logger import get_logger
from xnrt_ledger.infra.config.settings import settings
from xnrt_ledger.infra.models import WithdrawalModel
from xnrt_ledger.infra.repository.balance_repository import BalanceRepository
from xnrt_ledger.infra.repository.stake_repository import StakeRepository
from xnrt_ledger.infra.repository.withdrawal_repository import WithdrawalRepository

logger = get_logger(__name__)


def minimum_for(source: BalancePool) -> Decimal:
    """Reward pools carry a higher floor than main and staking"""
    if source in (BalancePool.REFERRAL, BalancePool.MINING):
        return settings.WITHDRAWAL_MIN_REWARD_POOL
    return settings.WITHDRAWAL_MIN_MAIN


class WithdrawalProcessor:
    """Reserves funds for withdrawals and settles or refunds them on admin review"""

    def __init__(self, session: AsyncSession):
        self.session = session
        self.withdrawals = WithdrawalRepository(session)
        self.balances = BalanceRepository(session)
        self.stakes = StakeRepository(session)

    async def request(self, user_id: UUID, source: BalancePool, amount: Decimal, destination_address: str) -> Withdrawal:
        """Debit the source pool now and open a pending withdrawal"""
        try:
            source = BalancePool(source)
        except ValueError:
            raise ValidationError("Unknown balance pool", details={"source": str(source)})

        if amount is None or amount <= 0:
            raise ValidationError("Withdrawal amount must be positive")
        destination = normalize_address(destination_address)

        minimum = minimum_for(source)
        if amount < minimum:
            raise ValidationError(
                f"Minimum withdrawal from the {source.value} pool is {minimum} XNRT",
                details={"minimum": str(minimum), "source": source.value}
            )

        fee = (amount * settings.WITHDRAWAL_FEE_PERCENT / Decimal(100)).quantize(AMOUNT_QUANTUM, rounding=ROUND_DOWN)
        net_amount = amount - fee
        usdt_amount = (net_amount / settings.XNRT_RATE_USDT).quantize(AMOUNT_QUANTUM, rounding=ROUND_DOWN)

        try:
            # stake principal and profit stay in the staking pool until the stake is withdrawn
            reserve = self.stakes.locked_total(user_id) if source == BalancePool.STAKING else None
            await self.balances.debit(user_id, source, amount, reserve=reserve)
            withdrawal = await self.withdrawals.add(WithdrawalModel(
                user_id=user_id,
                source=source.value,
                amount=amount,
                fee=fee,
                net_amount=net_amount,
                usdt_amount=usdt_amount,
                destination_address=destination,
                status=WithdrawalStatus.PENDING.value
            ))
            await self.balances.record_activity(
                user_id,
                ActivityType.WITHDRAWAL_REQUESTED.value,
                f"Requested withdrawal of {amount} XNRT from {source.value} balance",
                amount=amount
            )
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        logger.info(
            "Withdrawal requested",
            extra={
                "withdrawal_id": str(withdrawal.id),
                "user_id": str(user_id),
                "source": source.value,
                "amount": str(amount),
                "fee": str(fee)
            }
        )
        return Withdrawal.model_validate(withdrawal)

    async def _get(self, withdrawal_id: UUID) -> WithdrawalModel:
        withdrawal = await self.withdrawals.get_by_id(withdrawal_id)
        if withdrawal is None:
            raise NotFoundError("Withdrawal not found", details={"withdrawal_id": str(withdrawal_id)})
        return withdrawal

    async def approve(self, withdrawal_id: UUID, notes: Optional[str] = None) -> Withdrawal:
        """Attest that the payout was sent; balances are untouched"""
        try:
            withdrawal = await self._get(withdrawal_id)
            if not await self.withdrawals.settle(withdrawal_id, WithdrawalStatus.APPROVED, notes):
                raise ConflictError(
                    f"Withdrawal is already {withdrawal.status}",
                    details={"withdrawal_id": str(withdrawal_id)}
                )
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        logger.info("Withdrawal approved", extra={"withdrawal_id": str(withdrawal_id)})
        return Withdrawal.model_validate(await self._get(withdrawal_id))

    async def reject(self, withdrawal_id: UUID, notes: Optional[str] = None) -> Withdrawal:
        """Reject a pending withdrawal and refund the gross amount to its pool"""
        try:
            withdrawal = await self._get(withdrawal_id)
            if not await self.withdrawals.settle(withdrawal_id, WithdrawalStatus.REJECTED, notes):
                raise ConflictError(
                    f"Withdrawal is already {withdrawal.status}",
                    details={"withdrawal_id": str(withdrawal_id)}
                )

            source = BalancePool(withdrawal.source)
            await self.balances.credit(withdrawal.user_id, source, withdrawal.amount)
            await self.balances.record_activity(
                withdrawal.user_id,
                ActivityType.WITHDRAWAL_REFUNDED.value,
                f"Refunded {withdrawal.amount} XNRT to {source.value} balance",
                amount=withdrawal.amount
            )
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        logger.info(
            "Withdrawal rejected and refunded",
            extra={"withdrawal_id": str(withdrawal_id), "amount": str(withdrawal.amount)}
        )
        return Withdrawal.model_validate(await self._get(withdrawal_id))

    async def bulk_approve(self, withdrawal_ids: Iterable[UUID], notes: Optional[str] = None) -> BulkResult:
        result = BulkResult()
        for withdrawal_id in withdrawal_ids:
            try:
                await self.approve(withdrawal_id, notes)
                result.record(withdrawal_id)
            except ServiceError as e:
                result.record(withdrawal_id, e.message)
        return result

    async def bulk_reject(self, withdrawal_ids: Iterable[UUID], notes: Optional[str] = None) -> BulkResult:
        result = BulkResult()
        for withdrawal_id in withdrawal_ids:
            try:
                await self.reject(withdrawal_id, notes)
                result.record(withdrawal_id)
            except ServiceError as e:
                result.record(withdrawal_id, e.message)
        logger.info(
            "Bulk withdrawal rejection finished",
            extra={"success_count": result.success_count, "failure_count": result.failure_count}
        )
        return result

    async def list_pending(self) -> List[Withdrawal]:
        return [Withdrawal.model_validate(w) for w in await self.withdrawals.list_pending()]

    async def list_for_user(self, user_id: UUID) -> List[Withdrawal]:
        return [Withdrawal.model_validate(w) for w in await self.withdrawals.list_for_user(user_id)]
