"""
Deposit ledger: the single path from a deposit to a balance credit.

Chain deposits are keyed on (transaction hash, log index), so every Transfer
log of a batch transaction is its own deposit. User reports cover a whole
transaction and carry no log index. Crediting is idempotent on that key: the
application-level check finds an already approved record and the unique
indexes on deposits are the final guard when two writers race.
"""

import re
from datetime import datetime, timezone
from decimal import Decimal, ROUND_DOWN
from typing import Iterable, List, Optional
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from xnrt_ledger.core.exceptions.base import ConflictError, ExternalUnavailableError, NotFoundError, ValidationError
from xnrt_ledger.core.exceptions.handler import ServiceError
from xnrt_ledger.core.service.chain.deposit_verifier import DepositVerifier
from xnrt_ledger.core.service.ledger.commission_engine import AMOUNT_QUANTUM, CommissionEngine
from xnrt_ledger.core.service.ledger.models import (
    ActivityType,
    BalancePool,
    BulkResult,
    Deposit,
    DepositInput,
    DepositReportResult,
    DepositResult,
    DepositSource,
    DepositStatus,
    ReportOutcome,
    UnmatchedDeposit,
)
from xnrt_ledger.core.logger.logger import get_logger
from xnrt_ledger.infra.config.settings import settings
from xnrt_ledger.infra.models import DepositModel
from xnrt_ledger.infra.repository.balance_repository import BalanceRepository
from xnrt_ledger.infra.repository.deposit_repository import DepositRepository, UnmatchedDepositRepository
from xnrt_ledger.infra.repository.user_repository import UserRepository
from xnrt_ledger.infra.repository.wallet_repository import WalletRepository

logger = get_logger(__name__)

TX_HASH_PATTERN = re.compile(r"^0x[0-9a-f]{64}$")
OPEN_STATUSES = (DepositStatus.PENDING, DepositStatus.VERIFIED)


def convert_to_xnrt(usdt_amount: Decimal) -> Decimal:
    """USDT -> XNRT after the platform fee, at the fixed rate"""
    net = usdt_amount * (Decimal(1) - Decimal(settings.PLATFORM_FEE_BPS) / Decimal(10_000))
    return (net * settings.XNRT_RATE_USDT).quantize(AMOUNT_QUANTUM, rounding=ROUND_DOWN)


def normalize_tx_hash(tx_hash: str) -> str:
    normalized = (tx_hash or "").strip().lower()
    if not TX_HASH_PATTERN.match(normalized):
        raise ValidationError("Invalid transaction hash format", details={"transaction_hash": tx_hash})
    return normalized


def validate_proof_url(url: Optional[str]) -> Optional[str]:
    if url is None or url == "":
        return None
    if not (url.startswith("http://") or url.startswith("https://") or url.startswith("data:image/")):
        raise ValidationError("Proof must be an http(s) URL or an inline image")
    return url


class DepositLedger:
    """Credits deposits, runs the commission cascade and handles admin review"""

    def __init__(
        self,
        session: AsyncSession,
        verifier: Optional[DepositVerifier] = None,
        commission_engine: Optional[CommissionEngine] = None,
        required_confirmations: Optional[int] = None
    ):
        self.session = session
        self.verifier = verifier
        self.commissions = commission_engine or CommissionEngine(session)
        self.required_confirmations = (
            required_confirmations if required_confirmations is not None else settings.BSC_CONFIRMATIONS
        )
        self.deposits = DepositRepository(session)
        self.unmatched = UnmatchedDepositRepository(session)
        self.balances = BalanceRepository(session)
        self.users = UserRepository(session)
        self.wallets = WalletRepository(session)

    async def credit(self, deposit_input: DepositInput) -> DepositResult:
        """
        Turn a deposit into balance exactly once

        Below the confirmation threshold (and without `force`) the record is only
        stored or refreshed as pending. Otherwise the record moves to approved and
        the main balance, total earned and commissions change in one transaction.
        """
        for attempt in range(2):
            try:
                result = await self._credit(deposit_input)
                await self.session.commit()
                return result
            except IntegrityError:
                # a concurrent writer inserted the same transfer; re-read and follow its record
                await self.session.rollback()
                logger.warning(
                    "Concurrent insert for deposit hash, re-reading",
                    extra={"transaction_hash": deposit_input.transaction_hash, "attempt": attempt + 1}
                )
            except Exception:
                await self.session.rollback()
                raise

        raise ConflictError(
            "Deposit could not be recorded",
            details={"transaction_hash": deposit_input.transaction_hash}
        )

    async def _credit(self, deposit_input: DepositInput) -> DepositResult:
        if deposit_input.usdt_amount <= 0:
            raise ValidationError("Deposit amount must be positive", details={"amount": str(deposit_input.usdt_amount)})

        tx_hash = normalize_tx_hash(deposit_input.transaction_hash) if deposit_input.transaction_hash else None

        existing = None
        if deposit_input.deposit_id is not None:
            existing = await self.deposits.get_by_id(deposit_input.deposit_id)
            if existing is None:
                raise NotFoundError("Deposit not found", details={"deposit_id": str(deposit_input.deposit_id)})
        elif tx_hash:
            existing = await self.deposits.get_for_transfer(tx_hash, deposit_input.log_index)
            if existing is None and deposit_input.log_index is not None:
                existing = await self._adopt_report(tx_hash, deposit_input)
                if existing is None and await self.deposits.get_approved_report(tx_hash) is not None:
                    raise ConflictError(
                        "Transaction was already credited through a report",
                        details={"transaction_hash": tx_hash, "log_index": deposit_input.log_index}
                    )

        if existing is not None:
            if existing.user_id != deposit_input.user_id:
                raise ConflictError(
                    "Transaction belongs to another user's deposit",
                    details={"deposit_id": str(existing.id)}
                )
            if existing.status == DepositStatus.APPROVED.value:
                logger.info(
                    "Deposit already credited",
                    extra={"deposit_id": str(existing.id), "transaction_hash": existing.transaction_hash}
                )
                return DepositResult(deposit=Deposit.model_validate(existing), credited=False, already_processed=True)
            if existing.status == DepositStatus.REJECTED.value:
                raise ConflictError("Deposit was rejected", details={"deposit_id": str(existing.id)})
            deposit = existing
        else:
            deposit = await self.deposits.add(DepositModel(
                user_id=deposit_input.user_id,
                source=DepositSource(deposit_input.source).value,
                amount=deposit_input.usdt_amount,
                converted_amount=convert_to_xnrt(deposit_input.usdt_amount),
                transaction_hash=tx_hash,
                log_index=deposit_input.log_index if tx_hash else None,
                block_number=deposit_input.block_number,
                from_address=deposit_input.from_address.lower() if deposit_input.from_address else None,
                to_address=deposit_input.to_address.lower() if deposit_input.to_address else None,
                confirmations=deposit_input.confirmations,
                verified=deposit_input.verified,
                status=DepositStatus.PENDING.value
            ))

        confirmations = max(deposit_input.confirmations, deposit.confirmations or 0)
        if not deposit_input.force and confirmations < self.required_confirmations:
            await self.deposits.update_fields(deposit.id, confirmations=confirmations)
            deposit = await self.deposits.get_by_id(deposit.id)
            logger.info(
                "Deposit awaiting confirmations",
                extra={
                    "deposit_id": str(deposit.id),
                    "confirmations": confirmations,
                    "required": self.required_confirmations
                }
            )
            return DepositResult(deposit=Deposit.model_validate(deposit), credited=False)

        values = {
            "confirmations": confirmations,
            "processed_at": datetime.now(timezone.utc),
        }
        if deposit_input.admin_notes is not None:
            values["admin_notes"] = deposit_input.admin_notes
        if deposit_input.verified:
            values["verified"] = True

        if not await self.deposits.transition(deposit.id, OPEN_STATUSES, DepositStatus.APPROVED, **values):
            current = await self.deposits.get_by_id(deposit.id)
            if current is not None and current.status == DepositStatus.APPROVED.value:
                return DepositResult(deposit=Deposit.model_validate(current), credited=False, already_processed=True)
            raise ConflictError("Deposit is no longer open", details={"deposit_id": str(deposit.id)})

        amount = deposit.converted_amount
        await self.balances.credit(deposit.user_id, BalancePool.MAIN, amount, earned=True)
        await self.balances.record_activity(
            deposit.user_id,
            ActivityType.DEPOSIT_APPROVED.value,
            f"Deposit of {amount} XNRT approved",
            amount=amount
        )
        commissions = await self.commissions.distribute(deposit.user_id, amount)
        if deposit.transaction_hash:
            await self.unmatched.resolve_by_hash(
                deposit.transaction_hash, deposit.user_id, log_index=deposit.log_index, to_address=deposit.to_address
            )

        deposit = await self.deposits.get_by_id(deposit.id)
        logger.info(
            "Deposit credited",
            extra={
                "deposit_id": str(deposit.id),
                "user_id": str(deposit.user_id),
                "amount": str(amount),
                "transaction_hash": deposit.transaction_hash,
                "forced": deposit_input.force
            }
        )
        return DepositResult(deposit=Deposit.model_validate(deposit), credited=True, commissions=commissions)

    async def _adopt_report(self, tx_hash: str, deposit_input: DepositInput) -> Optional[DepositModel]:
        """
        Fold a chain transfer into the user's own report of the same transaction

        An approved report already paid for the transfers it covered. An open
        report takes over the transfer's key and on-chain amount so it settles
        with the scanner's confirmations instead of waiting for an admin.
        """
        report = await self.deposits.find_report_for_transfer(tx_hash, deposit_input.user_id, deposit_input.to_address)
        if report is None or report.status == DepositStatus.APPROVED.value:
            return report

        claimed = await self.deposits.claim_report(
            report.id,
            deposit_input.log_index,
            source=DepositSource(deposit_input.source).value,
            amount=deposit_input.usdt_amount,
            converted_amount=convert_to_xnrt(deposit_input.usdt_amount),
            block_number=deposit_input.block_number,
            from_address=deposit_input.from_address.lower() if deposit_input.from_address else report.from_address
        )
        report = await self.deposits.get_by_id(report.id)
        if not claimed and report.log_index is not None and report.log_index != deposit_input.log_index:
            return None
        if claimed:
            logger.info(
                "Chain transfer matched to reported deposit",
                extra={"deposit_id": str(report.id), "transaction_hash": tx_hash, "log_index": deposit_input.log_index}
            )
        return report

    async def approve(self, deposit_id: UUID, notes: Optional[str] = None, force: bool = False) -> DepositResult:
        """Admin approval; `force` skips the confirmation threshold but never the hash check"""
        deposit = await self.deposits.get_by_id(deposit_id)
        if deposit is None:
            raise NotFoundError("Deposit not found", details={"deposit_id": str(deposit_id)})

        if (deposit.transaction_hash
                and deposit.log_index is None
                and deposit.status in (DepositStatus.PENDING.value, DepositStatus.VERIFIED.value)
                and await self.deposits.has_other_approved(deposit.transaction_hash, deposit.id)):
            raise ConflictError(
                "Transaction was already credited through another deposit",
                details={"deposit_id": str(deposit_id), "transaction_hash": deposit.transaction_hash}
            )

        if (not force
                and deposit.status in (DepositStatus.PENDING.value, DepositStatus.VERIFIED.value)
                and deposit.transaction_hash
                and not deposit.verified
                and deposit.confirmations < self.required_confirmations):
            raise ValidationError(
                "Deposit is not verified and has too few confirmations; approve with force to override",
                details={"confirmations": deposit.confirmations, "required": self.required_confirmations}
            )

        return await self.credit(DepositInput(
            user_id=deposit.user_id,
            usdt_amount=deposit.amount,
            source=DepositSource(deposit.source),
            transaction_hash=deposit.transaction_hash,
            deposit_id=deposit.id,
            confirmations=deposit.confirmations,
            admin_notes=notes,
            force=True
        ))

    async def reject(self, deposit_id: UUID, notes: Optional[str] = None) -> Deposit:
        """Close an open deposit without touching balances"""
        try:
            deposit = await self.deposits.get_by_id(deposit_id)
            if deposit is None:
                raise NotFoundError("Deposit not found", details={"deposit_id": str(deposit_id)})

            rejected = await self.deposits.transition(
                deposit_id,
                OPEN_STATUSES,
                DepositStatus.REJECTED,
                admin_notes=notes,
                processed_at=datetime.now(timezone.utc)
            )
            if not rejected:
                raise ConflictError(
                    f"Deposit is already {deposit.status}",
                    details={"deposit_id": str(deposit_id), "status": deposit.status}
                )
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        deposit = await self.deposits.get_by_id(deposit_id)
        logger.info("Deposit rejected", extra={"deposit_id": str(deposit_id)})
        return Deposit.model_validate(deposit)

    async def bulk_approve(self, deposit_ids: Iterable[UUID], notes: Optional[str] = None,
                           force: bool = False) -> BulkResult:
        result = BulkResult()
        for deposit_id in deposit_ids:
            try:
                await self.approve(deposit_id, notes=notes, force=force)
                result.record(deposit_id)
            except ServiceError as e:
                result.record(deposit_id, e.message)
        logger.info(
            "Bulk deposit approval finished",
            extra={"success_count": result.success_count, "failure_count": result.failure_count}
        )
        return result

    async def bulk_reject(self, deposit_ids: Iterable[UUID], notes: Optional[str] = None) -> BulkResult:
        result = BulkResult()
        for deposit_id in deposit_ids:
            try:
                await self.reject(deposit_id, notes=notes)
                result.record(deposit_id)
            except ServiceError as e:
                result.record(deposit_id, e.message)
        logger.info(
            "Bulk deposit rejection finished",
            extra={"success_count": result.success_count, "failure_count": result.failure_count}
        )
        return result

    async def report_deposit(
        self,
        user_id: UUID,
        amount: Decimal,
        transaction_hash: Optional[str] = None,
        description: Optional[str] = None,
        proof_image_url: Optional[str] = None
    ) -> DepositReportResult:
        """
        User-reported deposit

        Outcomes: credited when the transfer is verified and sent from one of the
        user's linked wallets; pending_admin_review when verified but from an
        unknown sender; submitted when it cannot be verified on chain.
        """
        if amount is None or amount <= 0:
            raise ValidationError("Deposit amount must be positive")
        proof_image_url = validate_proof_url(proof_image_url)
        tx_hash = normalize_tx_hash(transaction_hash) if transaction_hash else None
        treasury = (settings.XNRT_WALLET or "").lower()

        if tx_hash:
            if await self.deposits.get_by_hash(tx_hash) or await self.unmatched.get_by_hash(tx_hash):
                raise ConflictError("This deposit has already been reported", details={"transaction_hash": tx_hash})

        reason = "No transaction hash provided"
        verification = None
        if tx_hash:
            if self.verifier is None:
                reason = "On-chain verification unavailable"
            else:
                try:
                    verification = await self.verifier.verify(tx_hash, treasury, min_amount=amount)
                    reason = verification.reason
                except ExternalUnavailableError as e:
                    reason = e.message

        if verification is not None and verification.verified:
            usdt_amount = verification.amount or amount
            sender = verification.from_address
            link = await self.wallets.get_by_address(sender) if sender else None

            if link is not None and link.user_id == user_id:
                result = await self.credit(DepositInput(
                    user_id=user_id,
                    usdt_amount=usdt_amount,
                    source=DepositSource.LINKED_WALLET,
                    transaction_hash=tx_hash,
                    confirmations=verification.confirmations,
                    block_number=verification.block_number,
                    from_address=sender,
                    to_address=treasury,
                    verified=True
                ))
                return DepositReportResult(
                    outcome=ReportOutcome.CREDITED,
                    message="Deposit verified and credited automatically",
                    deposit_id=result.deposit.id,
                    amount=result.deposit.converted_amount
                )

            deposit = await self._record_report(
                user_id, usdt_amount, tx_hash, DepositSource.EXCHANGE_VERIFIED, DepositStatus.VERIFIED,
                description, proof_image_url,
                confirmations=verification.confirmations,
                block_number=verification.block_number,
                from_address=sender,
                to_address=treasury,
                verified=True,
                unmatched_reason=(description or "").strip() or f"Verified on-chain but wallet not linked (from: {sender or 'unknown'})"
            )
            return DepositReportResult(
                outcome=ReportOutcome.PENDING_ADMIN_REVIEW,
                message="Deposit verified on chain; an admin will credit your account shortly",
                deposit_id=deposit.id,
                amount=deposit.converted_amount
            )

        deposit = await self._record_report(
            user_id, amount, tx_hash, DepositSource.MANUAL_REPORT, DepositStatus.PENDING,
            description or (f"Verification: {reason}" if tx_hash else None), proof_image_url,
            confirmations=verification.confirmations if verification else 0,
            block_number=verification.block_number if verification else None,
            to_address=treasury or None
        )
        return DepositReportResult(
            outcome=ReportOutcome.SUBMITTED,
            message="Report submitted for admin review",
            deposit_id=deposit.id,
            amount=deposit.converted_amount,
            reason=reason
        )

    async def _record_report(
        self,
        user_id: UUID,
        usdt_amount: Decimal,
        tx_hash: Optional[str],
        source: DepositSource,
        status: DepositStatus,
        description: Optional[str],
        proof_image_url: Optional[str],
        confirmations: int = 0,
        block_number: Optional[int] = None,
        from_address: Optional[str] = None,
        to_address: Optional[str] = None,
        verified: bool = False,
        unmatched_reason: Optional[str] = None
    ) -> Deposit:
        try:
            deposit = await self.deposits.add(DepositModel(
                user_id=user_id,
                source=source.value,
                amount=usdt_amount,
                converted_amount=convert_to_xnrt(usdt_amount),
                transaction_hash=tx_hash,
                block_number=block_number,
                from_address=from_address,
                to_address=to_address,
                confirmations=confirmations,
                verified=verified,
                status=status.value,
                description=description,
                proof_image_url=proof_image_url
            ))
            if unmatched_reason is not None and tx_hash:
                await self.unmatched.upsert(
                    from_address=from_address or "",
                    to_address=to_address or "",
                    amount=usdt_amount,
                    tx_hash=tx_hash,
                    block_number=block_number,
                    confirmations=confirmations,
                    reason=unmatched_reason
                )
            await self.session.commit()
        except IntegrityError:
            await self.session.rollback()
            raise ConflictError("This deposit has already been reported", details={"transaction_hash": tx_hash})
        except Exception:
            await self.session.rollback()
            raise

        logger.info(
            "Deposit report recorded",
            extra={"deposit_id": str(deposit.id), "user_id": str(user_id), "status": status.value}
        )
        return Deposit.model_validate(deposit)

    async def verify_deposit(self, deposit_id: UUID) -> Deposit:
        """Re-check a reported deposit on chain and store the verification outcome"""
        deposit = await self.deposits.get_by_id(deposit_id)
        if deposit is None:
            raise NotFoundError("Deposit not found", details={"deposit_id": str(deposit_id)})
        if not deposit.transaction_hash:
            raise ValidationError("Deposit has no transaction hash to verify")
        if deposit.status not in (DepositStatus.PENDING.value, DepositStatus.VERIFIED.value):
            raise ConflictError(f"Deposit is already {deposit.status}", details={"deposit_id": str(deposit_id)})
        if self.verifier is None:
            raise ExternalUnavailableError("On-chain verification unavailable")

        expected_to = deposit.to_address or settings.XNRT_WALLET
        verification = await self.verifier.verify(deposit.transaction_hash, expected_to, min_amount=deposit.amount)

        try:
            values = {"confirmations": verification.confirmations, "verified": verification.verified}
            if verification.block_number:
                values["block_number"] = verification.block_number
            if verification.from_address:
                values["from_address"] = verification.from_address
            if verification.verified:
                await self.deposits.transition(deposit_id, [DepositStatus.PENDING], DepositStatus.VERIFIED, **values)
            else:
                await self.deposits.update_fields(deposit_id, **values)
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        logger.info(
            "Deposit re-verified",
            extra={"deposit_id": str(deposit_id), "verified": verification.verified, "reason": verification.reason}
        )
        return Deposit.model_validate(await self.deposits.get_by_id(deposit_id))

    async def resolve_unmatched(self, unmatched_id: UUID, user_id: UUID, notes: Optional[str] = None) -> DepositResult:
        """Assign an unmatched transfer to a user and credit it"""
        try:
            unmatched = await self.unmatched.get_by_id(unmatched_id)
            if unmatched is None:
                raise NotFoundError("Unmatched deposit not found", details={"unmatched_id": str(unmatched_id)})
            if await self.users.get_by_id(user_id) is None:
                raise NotFoundError("User not found", details={"user_id": str(user_id)})
            if not await self.unmatched.mark_resolved(unmatched_id, user_id):
                raise ConflictError("Unmatched deposit already resolved", details={"unmatched_id": str(unmatched_id)})

            result = await self._credit(DepositInput(
                user_id=user_id,
                usdt_amount=unmatched.amount,
                source=DepositSource.EXCHANGE_VERIFIED,
                transaction_hash=unmatched.tx_hash,
                log_index=unmatched.log_index,
                confirmations=unmatched.confirmations,
                block_number=unmatched.block_number,
                from_address=unmatched.from_address,
                to_address=unmatched.to_address,
                verified=True,
                admin_notes=notes,
                force=True
            ))
            await self.session.commit()
        except IntegrityError:
            await self.session.rollback()
            raise ConflictError("Transaction already recorded", details={"unmatched_id": str(unmatched_id)})
        except Exception:
            await self.session.rollback()
            raise

        logger.info(
            "Unmatched deposit resolved",
            extra={"unmatched_id": str(unmatched_id), "user_id": str(user_id), "credited": result.credited}
        )
        return result

    async def list_pending(self) -> List[Deposit]:
        deposits = await self.deposits.list_by_status(OPEN_STATUSES)
        return [Deposit.model_validate(d) for d in deposits]

    async def list_for_user(self, user_id: UUID) -> List[Deposit]:
        return [Deposit.model_validate(d) for d in await self.deposits.list_for_user(user_id)]

    async def list_unmatched(self) -> List[UnmatchedDeposit]:
        return [UnmatchedDeposit.model_validate(u) for u in await self.unmatched.list_unresolved()]
