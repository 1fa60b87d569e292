"""
Linked wallet repository using SQLAlchemy ORM
"""

from typing import Dict, List, Optional
from uuid import UUID
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from xnrt_ledger.infra.models import WalletLinkModel


class WalletRepository:
    """Repository for wallet links; address uniqueness is enforced by the table"""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_address(self, address: str) -> Optional[WalletLinkModel]:
        stmt = select(WalletLinkModel).where(WalletLinkModel.address == address.lower())
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_for_user(self, user_id: UUID) -> List[WalletLinkModel]:
        stmt = (
            select(WalletLinkModel)
            .where(WalletLinkModel.user_id == user_id)
            .order_by(WalletLinkModel.linked_at.desc())
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def get_address_map(self) -> Dict[str, UUID]:
        """Map of lower-case linked address to owning user id"""
        stmt = select(WalletLinkModel.address, WalletLinkModel.user_id)
        result = await self.session.execute(stmt)
        return {address.lower(): user_id for address, user_id in result.all()}

    async def create(self, user_id: UUID, address: str, signature: str) -> WalletLinkModel:
        link = WalletLinkModel(user_id=user_id, address=address.lower(), signature=signature)
        self.session.add(link)
        await self.session.flush()
        return link
