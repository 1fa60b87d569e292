"""
Balance repository using SQLAlchemy ORM

Every pool mutation is a single UPDATE statement on one balances row, so
concurrent credits and debits on the same user never lose an update. Debits
carry a `pool >= amount` guard in the WHERE clause; a zero rowcount means the
pool could not cover the amount.
"""

from decimal import Decimal
from typing import Optional
from uuid import UUID
from sqlalchemy import ColumnElement, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from xnrt_ledger.core.exceptions.base import InsufficientBalanceError, NotFoundError
from xnrt_ledger.core.service.ledger.models import BalancePool
from xnrt_ledger.infra.models import BalanceModel, ActivityModel, ZERO
from xnrt_ledger.core.logger.logger import get_logger

logger = get_logger(__name__)

POOL_COLUMNS = {
    BalancePool.MAIN: BalanceModel.main_balance,
    BalancePool.STAKING: BalanceModel.staking_balance,
    BalancePool.MINING: BalanceModel.mining_balance,
    BalancePool.REFERRAL: BalanceModel.referral_balance,
}


class BalanceRepository:
    """Repository for atomic balance pool mutations"""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, user_id: UUID) -> BalanceModel:
        balance = BalanceModel(
            user_id=user_id,
            main_balance=ZERO,
            staking_balance=ZERO,
            mining_balance=ZERO,
            referral_balance=ZERO,
            total_earned=ZERO
        )
        self.session.add(balance)
        await self.session.flush()
        return balance

    async def get(self, user_id: UUID) -> Optional[BalanceModel]:
        stmt = (
            select(BalanceModel)
            .where(BalanceModel.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def credit(self, user_id: UUID, pool: BalancePool, amount: Decimal, earned: bool = False) -> None:
        """Add `amount` to a pool; `earned` also bumps the monotonic total_earned counter"""
        if amount < 0:
            raise ValueError("Credit amount must not be negative")

        column = POOL_COLUMNS[BalancePool(pool)]
        values = {column.key: column + amount}
        if earned:
            values[BalanceModel.total_earned.key] = BalanceModel.total_earned + amount

        stmt = (
            update(BalanceModel)
            .where(BalanceModel.user_id == user_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        if result.rowcount != 1:
            raise NotFoundError("Balance not found", details={"user_id": str(user_id)})

        logger.debug(
            "Balance credited",
            extra={"user_id": str(user_id), "pool": BalancePool(pool).value, "amount": str(amount)}
        )

    async def debit(self, user_id: UUID, pool: BalancePool, amount: Decimal,
                    reserve: Optional[ColumnElement] = None) -> None:
        """
        Subtract `amount` from a pool only if the pool can cover it

        `reserve` is a SQL expression for the part of the pool that must stay
        behind; it is evaluated inside the same UPDATE.
        """
        if amount < 0:
            raise ValueError("Debit amount must not be negative")

        column = POOL_COLUMNS[BalancePool(pool)]
        conditions = [BalanceModel.user_id == user_id, column >= amount]
        if reserve is not None:
            conditions.append(column - amount >= reserve)
        stmt = (
            update(BalanceModel)
            .where(*conditions)
            .values(**{column.key: column - amount})
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        if result.rowcount != 1:
            if await self.get(user_id) is None:
                raise NotFoundError("Balance not found", details={"user_id": str(user_id)})
            raise InsufficientBalanceError(
                f"Insufficient {'unlocked ' if reserve is not None else ''}{BalancePool(pool).value} balance",
                details={"pool": BalancePool(pool).value, "requested": str(amount)}
            )

        logger.debug(
            "Balance debited",
            extra={"user_id": str(user_id), "pool": BalancePool(pool).value, "amount": str(amount)}
        )

    async def record_activity(self, user_id: UUID, activity_type: str, description: str,
                              amount: Optional[Decimal] = None) -> None:
        """Append an entry to the ledger journal"""
        self.session.add(ActivityModel(
            user_id=user_id,
            type=activity_type,
            amount=amount,
            description=description
        ))
