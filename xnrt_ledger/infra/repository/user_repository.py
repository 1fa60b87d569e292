"""
User repository using SQLAlchemy ORM
"""

from typing import Dict, Optional
from uuid import UUID
from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession

from xnrt_ledger.infra.models import UserModel
from xnrt_ledger.core.logger.logger import get_logger

logger = get_logger(__name__)


class UserRepository:
    """Repository for user database operations using SQLAlchemy ORM"""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create_user(
        self,
        referral_code: str,
        referred_by: Optional[UUID] = None,
        is_admin: bool = False
    ) -> UserModel:
        """Insert a user row; the caller owns the transaction"""
        user = UserModel(
            referral_code=referral_code,
            referred_by=referred_by,
            is_admin=is_admin
        )
        self.session.add(user)
        await self.session.flush()

        logger.info(
            "New user created in database",
            extra={
                "user_id": str(user.id),
                "referred_by": str(referred_by) if referred_by else None
            }
        )
        return user

    async def get_by_id(self, user_id: UUID) -> Optional[UserModel]:
        stmt = (
            select(UserModel)
            .where(UserModel.id == user_id)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_referral_code(self, referral_code: str) -> Optional[UserModel]:
        stmt = select(UserModel).where(UserModel.referral_code == referral_code)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_referrer_id(self, user_id: UUID) -> Optional[UUID]:
        """Follow one hop of the weak referred_by back-reference"""
        stmt = select(UserModel.referred_by).where(UserModel.id == user_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_deposit_address_map(self) -> Dict[str, UUID]:
        """Map of lower-case personal deposit address to user id"""
        stmt = select(UserModel.deposit_address, UserModel.id).where(UserModel.deposit_address.is_not(None))
        result = await self.session.execute(stmt)
        return {address.lower(): user_id for address, user_id in result.all()}

    async def get_max_derivation_index(self) -> Optional[int]:
        stmt = select(func.max(UserModel.derivation_index))
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def assign_deposit_address(self, user_id: UUID, derivation_index: int, address: str) -> bool:
        """Set the deposit address once; returns False if the user already has one"""
        stmt = (
            update(UserModel)
            .where(UserModel.id == user_id, UserModel.deposit_address.is_(None))
            .values(deposit_address=address.lower(), derivation_index=derivation_index)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1
