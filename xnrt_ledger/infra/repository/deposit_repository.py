"""
Deposit and unmatched deposit repository using SQLAlchemy ORM
"""

from datetime import datetime, timezone
from typing import Any, Iterable, List, Optional
from uuid import UUID
from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from xnrt_ledger.core.service.ledger.models import DepositStatus, DepositSource
from xnrt_ledger.infra.models import DepositModel, UnmatchedDepositModel
from xnrt_ledger.core.logger.logger import get_logger

logger = get_logger(__name__)

CHAIN_SOURCES = (DepositSource.DEPOSIT_ADDRESS.value, DepositSource.LINKED_WALLET.value)


class DepositRepository:
    """Repository for deposit records"""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_id(self, deposit_id: UUID) -> Optional[DepositModel]:
        stmt = (
            select(DepositModel)
            .where(DepositModel.id == deposit_id)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_hash(self, transaction_hash: str) -> Optional[DepositModel]:
        """Any deposit recorded for the transaction, report or chain transfer"""
        stmt = (
            select(DepositModel)
            .where(DepositModel.transaction_hash == transaction_hash.lower())
            .order_by(DepositModel.created_at.asc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalars().first()

    async def get_for_transfer(self, transaction_hash: str, log_index: Optional[int]) -> Optional[DepositModel]:
        """The deposit keyed on (hash, log index); a NULL index addresses the whole-transaction report"""
        index_clause = (
            DepositModel.log_index.is_(None) if log_index is None
            else DepositModel.log_index == log_index
        )
        stmt = (
            select(DepositModel)
            .where(DepositModel.transaction_hash == transaction_hash.lower(), index_clause)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def find_report_for_transfer(self, transaction_hash: str, user_id: UUID,
                                       to_address: Optional[str]) -> Optional[DepositModel]:
        """The user's own whole-transaction report that a chain transfer to `to_address` falls under"""
        stmt = (
            select(DepositModel)
            .where(
                DepositModel.transaction_hash == transaction_hash.lower(),
                DepositModel.log_index.is_(None),
                DepositModel.user_id == user_id,
                DepositModel.to_address == (to_address or "").lower(),
                DepositModel.status != DepositStatus.REJECTED.value
            )
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_approved_report(self, transaction_hash: str) -> Optional[DepositModel]:
        """The credited whole-transaction report for a hash, if any"""
        stmt = (
            select(DepositModel)
            .where(
                DepositModel.transaction_hash == transaction_hash.lower(),
                DepositModel.log_index.is_(None),
                DepositModel.status == DepositStatus.APPROVED.value
            )
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def has_other_approved(self, transaction_hash: str, deposit_id: UUID) -> bool:
        stmt = (
            select(DepositModel.id)
            .where(
                DepositModel.transaction_hash == transaction_hash.lower(),
                DepositModel.id != deposit_id,
                DepositModel.status == DepositStatus.APPROVED.value
            )
            .limit(1)
        )
        result = await self.session.execute(stmt)
        return result.first() is not None

    async def claim_report(self, deposit_id: UUID, log_index: int, **values: Any) -> bool:
        """Bind an open report to the chain transfer it describes; False if it was settled or claimed meanwhile"""
        open_statuses = [DepositStatus.PENDING.value, DepositStatus.VERIFIED.value]
        stmt = (
            update(DepositModel)
            .where(
                DepositModel.id == deposit_id,
                DepositModel.log_index.is_(None),
                DepositModel.status.in_(open_statuses)
            )
            .values(log_index=log_index, **values)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def add(self, deposit: DepositModel) -> DepositModel:
        """Insert a deposit; raises IntegrityError when the transfer or report is already recorded"""
        self.session.add(deposit)
        await self.session.flush()
        return deposit

    async def transition(
        self,
        deposit_id: UUID,
        from_statuses: Iterable[DepositStatus],
        to_status: DepositStatus,
        **values: Any
    ) -> bool:
        """Compare-and-set the status; returns False if another writer got there first"""
        allowed = [DepositStatus(s).value for s in from_statuses]
        stmt = (
            update(DepositModel)
            .where(DepositModel.id == deposit_id, DepositModel.status.in_(allowed))
            .values(status=DepositStatus(to_status).value, **values)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def update_fields(self, deposit_id: UUID, **values: Any) -> None:
        stmt = (
            update(DepositModel)
            .where(DepositModel.id == deposit_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await self.session.execute(stmt)

    async def list_by_status(self, statuses: Iterable[DepositStatus], limit: int = 200) -> List[DepositModel]:
        stmt = (
            select(DepositModel)
            .where(DepositModel.status.in_([DepositStatus(s).value for s in statuses]))
            .order_by(DepositModel.created_at.asc())
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def list_for_user(self, user_id: UUID, limit: int = 100) -> List[DepositModel]:
        stmt = (
            select(DepositModel)
            .where(DepositModel.user_id == user_id)
            .order_by(DepositModel.created_at.desc())
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def list_awaiting_confirmations(self) -> List[DepositModel]:
        """Chain-detected deposits still waiting for enough confirmations"""
        stmt = (
            select(DepositModel)
            .where(
                DepositModel.status == DepositStatus.PENDING.value,
                DepositModel.source.in_(CHAIN_SOURCES),
                DepositModel.block_number.is_not(None),
                DepositModel.transaction_hash.is_not(None)
            )
            .order_by(DepositModel.block_number.asc())
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())


class UnmatchedDepositRepository:
    """Repository for chain transfers that map to no known user"""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_id(self, unmatched_id: UUID) -> Optional[UnmatchedDepositModel]:
        stmt = (
            select(UnmatchedDepositModel)
            .where(UnmatchedDepositModel.id == unmatched_id)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_hash(self, tx_hash: str) -> Optional[UnmatchedDepositModel]:
        stmt = (
            select(UnmatchedDepositModel)
            .where(UnmatchedDepositModel.tx_hash == tx_hash.lower())
            .order_by(UnmatchedDepositModel.created_at.asc())
            .limit(1)
        )
        result = await self.session.execute(stmt)
        return result.scalars().first()

    async def get_for_transfer(self, tx_hash: str, log_index: Optional[int]) -> Optional[UnmatchedDepositModel]:
        index_clause = (
            UnmatchedDepositModel.log_index.is_(None) if log_index is None
            else UnmatchedDepositModel.log_index == log_index
        )
        stmt = (
            select(UnmatchedDepositModel)
            .where(UnmatchedDepositModel.tx_hash == tx_hash.lower(), index_clause)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def upsert(self, **values: Any) -> UnmatchedDepositModel:
        """
        Insert by (tx hash, log index) or refresh the existing row

        A chain transfer already covered by a reported, still unmatched
        transaction to the same address refreshes that report row instead.
        """
        log_index = values.get("log_index")
        existing = await self.get_for_transfer(values["tx_hash"], log_index)
        if existing is None and log_index is not None:
            report = await self.get_for_transfer(values["tx_hash"], None)
            if report is not None and report.to_address == values.get("to_address"):
                existing = report
        if existing:
            existing.confirmations = values.get("confirmations", existing.confirmations)
            if existing.log_index == log_index and values.get("reason"):
                existing.reason = values["reason"]
            await self.session.flush()
            return existing

        unmatched = UnmatchedDepositModel(**values)
        self.session.add(unmatched)
        await self.session.flush()
        logger.info(
            "Recorded unmatched deposit",
            extra={
                "tx_hash": values["tx_hash"],
                "log_index": log_index,
                "from_address": values.get("from_address"),
                "reason": values.get("reason")
            }
        )
        return unmatched

    async def list_unresolved(self, limit: int = 200) -> List[UnmatchedDepositModel]:
        stmt = (
            select(UnmatchedDepositModel)
            .where(UnmatchedDepositModel.resolved.is_(False))
            .order_by(UnmatchedDepositModel.created_at.asc())
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def mark_resolved(self, unmatched_id: UUID, user_id: UUID) -> bool:
        stmt = (
            update(UnmatchedDepositModel)
            .where(UnmatchedDepositModel.id == unmatched_id, UnmatchedDepositModel.resolved.is_(False))
            .values(resolved=True, resolved_user_id=user_id, resolved_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def resolve_by_hash(self, tx_hash: str, user_id: UUID, log_index: Optional[int] = None,
                              to_address: Optional[str] = None) -> int:
        """
        Close the unmatched rows a credited deposit accounts for

        A whole-transaction credit closes the reported row. A chain transfer
        closes its own row and the reported row of its transaction when that
        report names the same receiving address.
        """
        index_clause = UnmatchedDepositModel.log_index.is_(None)
        if log_index is not None:
            index_clause = or_(
                UnmatchedDepositModel.log_index == log_index,
                and_(index_clause, UnmatchedDepositModel.to_address == (to_address or "").lower())
            )
        stmt = (
            update(UnmatchedDepositModel)
            .where(
                UnmatchedDepositModel.tx_hash == tx_hash.lower(),
                index_clause,
                UnmatchedDepositModel.resolved.is_(False)
            )
            .values(resolved=True, resolved_user_id=user_id, resolved_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount
