"""
Referral repository using SQLAlchemy ORM
"""

from decimal import Decimal
from typing import List
from uuid import UUID
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from xnrt_ledger.infra.models import ReferralModel


class ReferralRepository:
    """Repository for referrer/referred relationships and their cumulative commission"""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def add_commission(self, referrer_id: UUID, referred_user_id: UUID, level: int, amount: Decimal) -> None:
        """Create the relationship on first commission, otherwise increment it in place"""
        stmt = (
            update(ReferralModel)
            .where(
                ReferralModel.referrer_id == referrer_id,
                ReferralModel.referred_user_id == referred_user_id
            )
            .values(total_commission=ReferralModel.total_commission + amount)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        if result.rowcount == 0:
            self.session.add(ReferralModel(
                referrer_id=referrer_id,
                referred_user_id=referred_user_id,
                level=level,
                total_commission=amount
            ))
            await self.session.flush()

    async def list_for_referrer(self, referrer_id: UUID) -> List[ReferralModel]:
        stmt = (
            select(ReferralModel)
            .where(ReferralModel.referrer_id == referrer_id)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())
