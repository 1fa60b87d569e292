"""
Chain scanner: polls USDT Transfer logs and feeds matched deposits to the ledger.

A cycle moves Idle -> Fetching -> Matching -> Crediting -> Idle. The cursor
(`last_processed_block`) only advances after every transfer in the range has
been handed to the ledger, so an aborted cycle is simply retried on the next
tick. Only RPC and database failures abort a cycle; a transfer the ledger
refuses is parked as unmatched. Re-processing a range is safe because
crediting is idempotent on (transaction hash, log index).
"""

import asyncio
import secrets
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple
from uuid import UUID

from redis.asyncio import Redis
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from xnrt_ledger.core.exceptions.base import ConflictError, ExternalUnavailableError, ValidationError
from xnrt_ledger.core.exceptions.handler import ServiceError
from xnrt_ledger.core.service.chain.chain_client import ChainClient, parse_transfer_log
from xnrt_ledger.core.service.chain.models import ScanPhase, ScanResult, TransferEvent
from xnrt_ledger.core.service.ledger.deposit_ledger import DepositLedger
from xnrt_ledger.core.service.ledger.models import DepositInput, DepositSource
from xnrt_ledger.core.logger.logger import get_logger
from xnrt_ledger.infra.config.settings import settings
from xnrt_ledger.infra.repository.deposit_repository import DepositRepository, UnmatchedDepositRepository
from xnrt_ledger.infra.repository.scanner_state_repository import ScannerStateRepository
from xnrt_ledger.infra.repository.user_repository import UserRepository
from xnrt_ledger.infra.repository.wallet_repository import WalletRepository

logger = get_logger(__name__)


@dataclass
class ScannerContext:
    """Everything one scanner instance owns, passed in explicitly"""
    session_factory: async_sessionmaker
    chain_client: ChainClient
    scanner_id: str = field(default_factory=lambda: settings.SCANNER_ID)
    token_address: str = field(default_factory=lambda: settings.USDT_BSC_ADDRESS)
    treasury_address: str = field(default_factory=lambda: settings.XNRT_WALLET)
    required_confirmations: int = field(default_factory=lambda: settings.BSC_CONFIRMATIONS)
    batch_size: int = field(default_factory=lambda: settings.SCANNER_BATCH_SIZE)
    safety_lag: int = field(default_factory=lambda: settings.SCANNER_SAFETY_LAG)
    start_block: Optional[int] = field(default_factory=lambda: settings.SCANNER_START_BLOCK)
    initial_lookback: int = field(default_factory=lambda: settings.SCANNER_INITIAL_LOOKBACK)
    decimals: int = field(default_factory=lambda: settings.USDT_DECIMALS)
    redis: Optional[Redis] = None
    lock_ttl_seconds: int = field(default_factory=lambda: settings.SCANNER_LOCK_TTL_SECONDS)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class LedgerFailure(Exception):
    """The ledger or database failed as a whole; the cycle must not advance"""


class ChainScanner:
    """Single-flight scan cycles over a ScannerContext"""

    def __init__(self, context: ScannerContext):
        self.context = context

    @property
    def _lock_key(self) -> str:
        return f"scanner:lock:{self.context.scanner_id}"

    async def _acquire_distributed_lock(self) -> Optional[str]:
        if self.context.redis is None:
            return "local"
        token = secrets.token_hex(8)
        acquired = await self.context.redis.set(self._lock_key, token, nx=True, ex=self.context.lock_ttl_seconds)
        return token if acquired else None

    async def _release_distributed_lock(self, token: str) -> None:
        if self.context.redis is None:
            return
        current = await self.context.redis.get(self._lock_key)
        if isinstance(current, bytes):
            current = current.decode()
        if current == token:
            await self.context.redis.delete(self._lock_key)

    async def run_cycle(self) -> ScanResult:
        """Run one cycle, or skip it if another cycle holds the lock"""
        if self.context.lock.locked():
            logger.info("Scan cycle already running, skipping tick", extra={"scanner_id": self.context.scanner_id})
            return ScanResult(skipped=True)

        async with self.context.lock:
            token = await self._acquire_distributed_lock()
            if token is None:
                logger.info("Scan lock held by another process", extra={"scanner_id": self.context.scanner_id})
                return ScanResult(skipped=True)
            try:
                async with self.context.session_factory() as session:
                    return await self._run(session)
            finally:
                await self._release_distributed_lock(token)

    async def _run(self, session: AsyncSession) -> ScanResult:
        result = ScanResult(phase=ScanPhase.FETCHING)
        state = ScannerStateRepository(session)
        ledger = DepositLedger(session, required_confirmations=self.context.required_confirmations)

        try:
            head = await self.context.chain_client.get_block_number()
            result.head_block = head

            last = await state.get_last_processed_block(self.context.scanner_id)
            if last is None:
                last = await self._initialize_cursor(session, state, head)

            from_block = last + 1
            to_block = min(head - self.context.safety_lag, from_block + self.context.batch_size - 1)
            result.from_block, result.to_block = from_block, to_block

            if from_block <= to_block:
                deposit_addresses, linked_wallets = await self._load_watch_lists(session)
                watched = list(deposit_addresses)
                treasury = (self.context.treasury_address or "").lower()
                if treasury:
                    watched.append(treasury)

                logs = await self.context.chain_client.get_transfer_logs(
                    self.context.token_address, from_block, to_block, watched
                )

                result.phase = ScanPhase.MATCHING
                events = self._decode(logs, result)
                result.transfers_found = len(events)

                result.phase = ScanPhase.CREDITING
                for event in events:
                    await self._handle_event(session, ledger, event, head, deposit_addresses, linked_wallets,
                                             treasury, result)

                if await state.advance(self.context.scanner_id, last, to_block):
                    await session.commit()
                    logger.info(
                        "Scanner advanced",
                        extra={"scanner_id": self.context.scanner_id, "from_block": from_block, "to_block": to_block}
                    )
                else:
                    await session.rollback()
                    logger.warning(
                        "Scanner cursor moved concurrently, not advancing",
                        extra={"scanner_id": self.context.scanner_id, "expected_block": last}
                    )

            await self._recheck_pending(session, ledger, head, result)

        except ExternalUnavailableError as e:
            await session.rollback()
            result.success = False
            result.error = e.message
            logger.warning(
                "Scan cycle aborted on RPC failure",
                extra={"scanner_id": self.context.scanner_id, "phase": result.phase.value, "error": e.message}
            )
            return result
        except LedgerFailure as e:
            await session.rollback()
            result.success = False
            result.error = str(e)
            logger.error(
                "Scan cycle aborted on ledger failure",
                extra={"scanner_id": self.context.scanner_id, "phase": result.phase.value, "error": str(e)}
            )
            return result

        result.phase = ScanPhase.IDLE
        return result

    async def _initialize_cursor(self, session: AsyncSession, state: ScannerStateRepository, head: int) -> int:
        if self.context.start_block is not None:
            last = max(0, self.context.start_block - 1)
        else:
            last = max(0, head - self.context.initial_lookback)
        await state.create(self.context.scanner_id, last)
        await session.commit()
        logger.info(
            "Scanner cursor initialized",
            extra={"scanner_id": self.context.scanner_id, "last_processed_block": last}
        )
        return last

    @staticmethod
    async def _load_watch_lists(session: AsyncSession) -> Tuple[Dict[str, UUID], Dict[str, UUID]]:
        deposit_addresses = await UserRepository(session).get_deposit_address_map()
        linked_wallets = await WalletRepository(session).get_address_map()
        return deposit_addresses, linked_wallets

    def _decode(self, logs: List[dict], result: ScanResult) -> List[TransferEvent]:
        events = []
        for log in logs:
            try:
                events.append(parse_transfer_log(log, self.context.decimals))
            except (ValueError, KeyError, TypeError, IndexError) as e:
                result.malformed += 1
                logger.warning(
                    "Skipping malformed transfer log",
                    extra={"scanner_id": self.context.scanner_id, "error": str(e)}
                )
        return events

    async def _handle_event(
        self,
        session: AsyncSession,
        ledger: DepositLedger,
        event: TransferEvent,
        head: int,
        deposit_addresses: Dict[str, UUID],
        linked_wallets: Dict[str, UUID],
        treasury: str,
        result: ScanResult
    ) -> None:
        user_id = None
        source = None
        if event.to_address in deposit_addresses:
            user_id = deposit_addresses[event.to_address]
            source = DepositSource.DEPOSIT_ADDRESS
        elif treasury and event.to_address == treasury and event.from_address in linked_wallets:
            user_id = linked_wallets[event.from_address]
            source = DepositSource.LINKED_WALLET

        confirmations = max(0, head - event.block_number)

        if user_id is None:
            await self._record_unmatched(session, event, confirmations, "Sender is not a linked wallet")
            result.unmatched += 1
            return

        if event.amount <= 0:
            logger.warning("Ignoring zero-value transfer", extra={"tx_hash": event.tx_hash})
            return

        try:
            credit = await ledger.credit(DepositInput(
                user_id=user_id,
                usdt_amount=event.amount,
                source=source,
                transaction_hash=event.tx_hash,
                log_index=event.log_index,
                confirmations=confirmations,
                block_number=event.block_number,
                from_address=event.from_address,
                to_address=event.to_address,
                verified=confirmations >= self.context.required_confirmations
            ))
        except (ConflictError, ValidationError) as e:
            # the ledger refused this one transfer; park it for an admin and keep scanning
            logger.warning(
                "Transfer refused by ledger, recorded as unmatched",
                extra={
                    "scanner_id": self.context.scanner_id,
                    "tx_hash": event.tx_hash,
                    "log_index": event.log_index,
                    "user_id": str(user_id),
                    "error": e.message
                }
            )
            await self._record_unmatched(session, event, confirmations, e.message)
            result.unmatched += 1
            return
        except (ServiceError, SQLAlchemyError) as e:
            await session.rollback()
            raise LedgerFailure(f"{event.tx_hash}: {e}") from e

        if credit.credited:
            result.credited += 1
        elif not credit.already_processed:
            result.pending += 1

    @staticmethod
    async def _record_unmatched(session: AsyncSession, event: TransferEvent, confirmations: int, reason: str) -> None:
        try:
            await UnmatchedDepositRepository(session).upsert(
                from_address=event.from_address,
                to_address=event.to_address,
                amount=event.amount,
                tx_hash=event.tx_hash,
                log_index=event.log_index,
                block_number=event.block_number,
                confirmations=confirmations,
                reason=reason
            )
            await session.commit()
        except SQLAlchemyError as e:
            await session.rollback()
            raise LedgerFailure(f"{event.tx_hash}: {e}") from e

    async def _recheck_pending(self, session: AsyncSession, ledger: DepositLedger, head: int,
                               result: ScanResult) -> None:
        """Recompute confirmations of waiting chain deposits and credit those that became final"""
        deposits = DepositRepository(session)
        waiting = [(d.id, d.user_id, d.amount, d.block_number) for d in await deposits.list_awaiting_confirmations()]

        for deposit_id, user_id, amount, block_number in waiting:
            confirmations = max(0, head - block_number)
            try:
                credit = await ledger.credit(DepositInput(
                    user_id=user_id,
                    usdt_amount=amount,
                    source=DepositSource.DEPOSIT_ADDRESS,
                    deposit_id=deposit_id,
                    confirmations=confirmations,
                    verified=confirmations >= self.context.required_confirmations
                ))
            except (ConflictError, ValidationError) as e:
                # settled or rejected by an admin since it was listed
                logger.warning(
                    "Skipping pending deposit on recheck",
                    extra={"scanner_id": self.context.scanner_id, "deposit_id": str(deposit_id), "error": e.message}
                )
                continue
            except (ServiceError, SQLAlchemyError) as e:
                await session.rollback()
                raise LedgerFailure(f"{deposit_id}: {e}") from e

            if credit.credited:
                result.credited += 1
