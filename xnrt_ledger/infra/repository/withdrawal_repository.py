"""
Withdrawal repository using SQLAlchemy ORM
"""

from datetime import datetime, timezone
from typing import List, Optional
from uuid import UUID
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from xnrt_ledger.core.service.withdrawal.models import WithdrawalStatus
from xnrt_ledger.infra.models import WithdrawalModel


class WithdrawalRepository:
    """Repository for withdrawal records"""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def add(self, withdrawal: WithdrawalModel) -> WithdrawalModel:
        self.session.add(withdrawal)
        await self.session.flush()
        return withdrawal

    async def get_by_id(self, withdrawal_id: UUID) -> Optional[WithdrawalModel]:
        stmt = (
            select(WithdrawalModel)
            .where(WithdrawalModel.id == withdrawal_id)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_pending(self, limit: int = 200) -> List[WithdrawalModel]:
        stmt = (
            select(WithdrawalModel)
            .where(WithdrawalModel.status == WithdrawalStatus.PENDING.value)
            .order_by(WithdrawalModel.created_at.asc())
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def list_for_user(self, user_id: UUID, limit: int = 100) -> List[WithdrawalModel]:
        stmt = (
            select(WithdrawalModel)
            .where(WithdrawalModel.user_id == user_id)
            .order_by(WithdrawalModel.created_at.desc())
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def settle(self, withdrawal_id: UUID, to_status: WithdrawalStatus, notes: Optional[str]) -> bool:
        """Move a pending withdrawal to its final status; False if it was not pending"""
        stmt = (
            update(WithdrawalModel)
            .where(
                WithdrawalModel.id == withdrawal_id,
                WithdrawalModel.status == WithdrawalStatus.PENDING.value
            )
            .values(
                status=WithdrawalStatus(to_status).value,
                admin_notes=notes,
                processed_at=datetime.now(timezone.utc)
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1
