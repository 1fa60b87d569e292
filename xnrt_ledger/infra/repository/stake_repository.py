"""
Stake repository using SQLAlchemy ORM
"""

from datetime import datetime
from decimal import Decimal
from typing import List, Optional
from uuid import UUID
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from xnrt_ledger.core.service.staking.models import StakeStatus
from xnrt_ledger.infra.models import StakeModel


class StakeRepository:
    """Repository for stakes; status changes are compare-and-set updates"""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def add(self, stake: StakeModel) -> StakeModel:
        self.session.add(stake)
        await self.session.flush()
        return stake

    async def get_by_id(self, stake_id: UUID) -> Optional[StakeModel]:
        stmt = (
            select(StakeModel)
            .where(StakeModel.id == stake_id)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_for_user(self, user_id: UUID) -> List[StakeModel]:
        stmt = (
            select(StakeModel)
            .where(StakeModel.user_id == user_id)
            .order_by(StakeModel.created_at.desc())
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    def locked_total(self, user_id: UUID):
        """Principal plus accrued profit the user's unwithdrawn stakes still hold in the staking pool"""
        return (
            select(func.coalesce(func.sum(StakeModel.amount + StakeModel.accumulated_profit), 0))
            .where(StakeModel.user_id == user_id, StakeModel.status != StakeStatus.WITHDRAWN.value)
            .scalar_subquery()
        )

    async def list_active(self) -> List[StakeModel]:
        stmt = (
            select(StakeModel)
            .where(StakeModel.status == StakeStatus.ACTIVE.value)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def apply_accrual(
        self,
        stake_id: UUID,
        checkpoint: Optional[datetime],
        new_checkpoint: datetime,
        profit: Decimal
    ) -> bool:
        """Add profit only if nobody moved the checkpoint since it was read"""
        checkpoint_clause = (
            StakeModel.last_profit_date.is_(None) if checkpoint is None
            else StakeModel.last_profit_date == checkpoint
        )
        stmt = (
            update(StakeModel)
            .where(
                StakeModel.id == stake_id,
                StakeModel.status == StakeStatus.ACTIVE.value,
                checkpoint_clause
            )
            .values(
                accumulated_profit=StakeModel.accumulated_profit + profit,
                last_profit_date=new_checkpoint
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def transition(self, stake_id: UUID, from_status: StakeStatus, to_status: StakeStatus) -> bool:
        stmt = (
            update(StakeModel)
            .where(StakeModel.id == stake_id, StakeModel.status == StakeStatus(from_status).value)
            .values(status=StakeStatus(to_status).value)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1
