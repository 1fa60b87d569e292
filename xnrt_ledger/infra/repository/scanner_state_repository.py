"""
Scanner state repository using SQLAlchemy ORM
"""

from typing import Optional
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from xnrt_ledger.infra.models import ScannerStateModel


class ScannerStateRepository:
    """Persists the last fully processed block per scanner id"""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_last_processed_block(self, scanner_id: str) -> Optional[int]:
        stmt = select(ScannerStateModel.last_processed_block).where(ScannerStateModel.scanner_id == scanner_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def create(self, scanner_id: str, last_processed_block: int) -> None:
        self.session.add(ScannerStateModel(scanner_id=scanner_id, last_processed_block=last_processed_block))
        await self.session.flush()

    async def advance(self, scanner_id: str, from_block: int, to_block: int) -> bool:
        """Move the cursor forward only from the value this cycle started with"""
        stmt = (
            update(ScannerStateModel)
            .where(
                ScannerStateModel.scanner_id == scanner_id,
                ScannerStateModel.last_processed_block == from_block
            )
            .values(last_processed_block=to_block)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1
