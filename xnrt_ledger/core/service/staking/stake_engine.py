from datetime import datetime, timedelta, timezone
from decimal import Decimal, ROUND_DOWN
from typing import List, Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from xnrt_ledger.core.exceptions.base import (
    AlreadyWithdrawnError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    NotMaturedError,
    ValidationError,
)
from xnrt_ledger.core.service.ledger.commission_engine import AMOUNT_QUANTUM
from xnrt_ledger.core.service.ledger.models import ActivityType, BalancePool
from xnrt_ledger.core.service.staking.models import (
    STAKING_TIERS,
    RewardSweepResult,
    Stake,
    StakeStatus,
    StakeWithdrawalResult,
    StakingTier,
)
from xnrt_ledger.core.logger.logger import get_logger
from xnrt_ledger.infra.models import StakeModel
from xnrt_ledger.infra.repository.balance_repository import BalanceRepository
from xnrt_ledger.infra.repository.stake_repository import StakeRepository

logger = get_logger(__name__)


def as_utc(value: datetime) -> datetime:
    """Treat naive timestamps from the database as UTC"""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def compute_accrual(stake: StakeModel, now: datetime):
    """
    Whole days of profit owed to `stake` at `now`

    Returns (days, profit, new_checkpoint). Days are capped by the days left
    until the end date, profit by the tier's maximum over the full duration.
    """
    start = as_utc(stake.start_date)
    end = as_utc(stake.end_date)
    checkpoint = as_utc(stake.last_profit_date) if stake.last_profit_date else start

    days_elapsed = (now - checkpoint).days if now > checkpoint else 0
    days_left = (end - checkpoint).days if end > checkpoint else 0
    days = max(0, min(days_elapsed, days_left))
    if days == 0:
        return 0, Decimal(0), checkpoint

    daily_profit = stake.amount * stake.daily_rate / Decimal(100)
    max_profit = daily_profit * stake.duration
    profit = min(daily_profit * days, max_profit - stake.accumulated_profit)
    profit = max(Decimal(0), profit).quantize(AMOUNT_QUANTUM, rounding=ROUND_DOWN)

    new_checkpoint = min(checkpoint + timedelta(days=days), end)
    return days, profit, new_checkpoint


class StakeAccrualEngine:
    """Creates stakes, accrues their daily profit and settles matured ones"""

    def __init__(self, session: AsyncSession):
        self.session = session
        self.stakes = StakeRepository(session)
        self.balances = BalanceRepository(session)

    async def create_stake(self, user_id: UUID, tier: StakingTier, amount: Decimal,
                           now: Optional[datetime] = None) -> Stake:
        try:
            tier = StakingTier(tier)
        except ValueError:
            raise ValidationError("Unknown staking tier", details={"tier": str(tier)})
        config = STAKING_TIERS[tier]

        if amount is None or amount <= 0:
            raise ValidationError("Stake amount must be positive")
        if amount < config.min_amount or amount > config.max_amount:
            raise ValidationError(
                f"{config.name} accepts between {config.min_amount} and {config.max_amount} XNRT",
                details={"min_amount": str(config.min_amount), "max_amount": str(config.max_amount)}
            )

        start = now or datetime.now(timezone.utc)
        try:
            await self.balances.debit(user_id, BalancePool.MAIN, amount)
            await self.balances.credit(user_id, BalancePool.STAKING, amount)
            stake = await self.stakes.add(StakeModel(
                user_id=user_id,
                tier=tier.value,
                amount=amount,
                daily_rate=config.daily_rate,
                duration=config.duration,
                start_date=start,
                end_date=start + timedelta(days=config.duration),
                accumulated_profit=Decimal(0),
                status=StakeStatus.ACTIVE.value
            ))
            await self.balances.record_activity(
                user_id,
                ActivityType.STAKE_CREATED.value,
                f"Staked {amount} XNRT in {config.name}",
                amount=amount
            )
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        logger.info(
            "Stake created",
            extra={"stake_id": str(stake.id), "user_id": str(user_id), "tier": tier.value, "amount": str(amount)}
        )
        return Stake.model_validate(await self.stakes.get_by_id(stake.id))

    async def process_rewards(self, now: Optional[datetime] = None) -> RewardSweepResult:
        """
        Accrue whole elapsed days for every active stake

        Each stake is updated in its own transaction, conditional on the accrual
        checkpoint it was read with, so repeated or concurrent sweeps never pay
        the same day twice.
        """
        now = now or datetime.now(timezone.utc)
        result = RewardSweepResult()

        stake_ids = [stake.id for stake in await self.stakes.list_active()]
        for stake_id in stake_ids:
            try:
                stake = await self.stakes.get_by_id(stake_id)
                if stake is None or stake.status != StakeStatus.ACTIVE.value:
                    continue
                result.processed += 1
                credited, completed, profit = await self._accrue(stake, now)
                await self.session.commit()
            except Exception as e:
                await self.session.rollback()
                logger.error(
                    "Stake accrual failed",
                    extra={"stake_id": str(stake_id), "error": str(e)},
                    exc_info=True
                )
                result.skipped_stake_ids.append(stake_id)
                continue

            if credited:
                result.credited += 1
                result.total_profit += profit
            if completed:
                result.completed += 1

        logger.info(
            "Staking reward sweep finished",
            extra={
                "processed": result.processed,
                "credited": result.credited,
                "completed": result.completed,
                "total_profit": str(result.total_profit)
            }
        )
        return result

    async def _accrue(self, stake: StakeModel, now: datetime):
        days, profit, new_checkpoint = compute_accrual(stake, now)
        credited = False

        if days > 0:
            applied = await self.stakes.apply_accrual(stake.id, stake.last_profit_date, new_checkpoint, profit)
            if not applied:
                logger.info("Stake accrual already applied by another sweep", extra={"stake_id": str(stake.id)})
                return False, False, Decimal(0)

            if profit > 0:
                await self.balances.credit(stake.user_id, BalancePool.STAKING, profit, earned=True)
                await self.balances.record_activity(
                    stake.user_id,
                    ActivityType.STAKING_REWARD.value,
                    f"Staking reward of {profit} XNRT for {days} day(s)",
                    amount=profit
                )
                credited = True

        completed = False
        if now >= as_utc(stake.end_date):
            completed = await self.stakes.transition(stake.id, StakeStatus.ACTIVE, StakeStatus.COMPLETED)
            if completed:
                logger.info("Stake completed", extra={"stake_id": str(stake.id)})

        return credited, completed, profit

    async def withdraw(self, user_id: UUID, stake_id: UUID) -> StakeWithdrawalResult:
        """Move principal and profit of a completed stake to the main balance"""
        try:
            stake = await self.stakes.get_by_id(stake_id)
            if stake is None:
                raise NotFoundError("Stake not found", details={"stake_id": str(stake_id)})
            if stake.user_id != user_id:
                raise ForbiddenError("Stake belongs to another user")
            if stake.status == StakeStatus.ACTIVE.value:
                raise NotMaturedError(details={"end_date": as_utc(stake.end_date).isoformat()})
            if stake.status == StakeStatus.WITHDRAWN.value:
                raise AlreadyWithdrawnError()

            if not await self.stakes.transition(stake_id, StakeStatus.COMPLETED, StakeStatus.WITHDRAWN):
                current = await self.stakes.get_by_id(stake_id)
                if current is not None and current.status == StakeStatus.WITHDRAWN.value:
                    raise AlreadyWithdrawnError()
                raise ConflictError("Stake changed state during withdrawal", details={"stake_id": str(stake_id)})

            principal = stake.amount
            profit = stake.accumulated_profit
            total = principal + profit
            await self.balances.debit(user_id, BalancePool.STAKING, total)
            await self.balances.credit(user_id, BalancePool.MAIN, total)
            await self.balances.record_activity(
                user_id,
                ActivityType.STAKE_WITHDRAWN.value,
                f"Withdrew {principal} XNRT stake with {profit} XNRT profit",
                amount=total
            )
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        logger.info(
            "Stake withdrawn",
            extra={"stake_id": str(stake_id), "user_id": str(user_id), "total": str(total)}
        )
        return StakeWithdrawalResult(
            stake=Stake.model_validate(await self.stakes.get_by_id(stake_id)),
            principal=principal,
            profit=profit,
            total_amount=total
        )

    async def list_for_user(self, user_id: UUID) -> List[Stake]:
        return [Stake.model_validate(s) for s in await self.stakes.list_for_user(user_id)]
