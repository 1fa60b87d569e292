import uuid
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from xnrt_ledger.core.exceptions.base import ConflictError, NotFoundError, ValidationError
from xnrt_ledger.core.exceptions.handler import ServiceError
from xnrt_ledger.core.service.chain.models import VerifyResult
from xnrt_ledger.core.service.ledger.deposit_ledger import DepositLedger, convert_to_xnrt, normalize_tx_hash
from xnrt_ledger.core.service.ledger.models import (
    DepositInput,
    DepositSource,
    DepositStatus,
    ReportOutcome,
)
from xnrt_ledger.core.service.user.user_service import UserService
from xnrt_ledger.infra.config.settings import settings
from xnrt_ledger.infra.repository.deposit_repository import UnmatchedDepositRepository
from xnrt_ledger.infra.repository.wallet_repository import WalletRepository

TREASURY = "0x1111111111111111111111111111111111111111"
SENDER = "0x2222222222222222222222222222222222222222"


def tx_hash() -> str:
    return "0x" + uuid.uuid4().hex + uuid.uuid4().hex


def chain_deposit(user_id, amount="1000", confirmations=12, hash_=None, log_index=None) -> DepositInput:
    return DepositInput(
        user_id=user_id,
        usdt_amount=Decimal(amount),
        source=DepositSource.DEPOSIT_ADDRESS,
        transaction_hash=hash_ or tx_hash(),
        log_index=log_index,
        confirmations=confirmations,
        block_number=100,
        from_address=SENDER,
        to_address=TREASURY,
        verified=confirmations >= 12
    )


@pytest.fixture
def verifier():
    mock = AsyncMock()
    mock.verify.return_value = VerifyResult(verified=False, reason="Transaction not found")
    return mock


@pytest.fixture
def ledger(session, verifier, monkeypatch):
    monkeypatch.setattr(settings, "XNRT_WALLET", TREASURY)
    return DepositLedger(session, verifier=verifier, required_confirmations=12)


def test_convert_to_xnrt(monkeypatch):
    assert convert_to_xnrt(Decimal("1000")) == Decimal("100000")

    monkeypatch.setattr(settings, "PLATFORM_FEE_BPS", 250)
    assert convert_to_xnrt(Decimal("1000")) == Decimal("97500")


def test_normalize_tx_hash():
    value = "0x" + "AB" * 32

    assert normalize_tx_hash(value) == value.lower()
    with pytest.raises(ValidationError):
        normalize_tx_hash("0x1234")


@pytest.mark.asyncio
async def test_credit_with_commission_cascade(ledger, make_user, house, balance_of):
    """1000 USDT pays 100,000 XNRT to the depositor and 10% up the referral chain"""
    level2 = await make_user()
    level1 = await make_user(referrer=level2)
    depositor = await make_user(referrer=level1)

    result = await ledger.credit(chain_deposit(depositor.id))

    assert result.credited
    assert result.deposit.status == DepositStatus.APPROVED
    assert result.deposit.converted_amount == Decimal("100000")
    assert (await balance_of(depositor.id)).main_balance == Decimal("100000")
    assert (await balance_of(depositor.id)).total_earned == Decimal("100000")
    assert (await balance_of(level1.id)).referral_balance == Decimal("6000")
    assert (await balance_of(level2.id)).referral_balance == Decimal("3000")
    assert (await balance_of(house.id)).referral_balance == Decimal("1000")
    assert sum(share.amount for share in result.commissions) == Decimal("10000")


@pytest.mark.asyncio
async def test_credit_is_idempotent_on_hash(ledger, make_user, balance_of):
    depositor = await make_user()
    deposit = chain_deposit(depositor.id)

    first = await ledger.credit(deposit)
    second = await ledger.credit(deposit)

    assert first.credited
    assert not second.credited and second.already_processed
    assert second.deposit.id == first.deposit.id
    assert (await balance_of(depositor.id)).main_balance == Decimal("100000")


@pytest.mark.asyncio
async def test_hash_is_case_insensitive(ledger, make_user, balance_of):
    depositor = await make_user()
    value = "0x" + "cd" * 32

    await ledger.credit(chain_deposit(depositor.id, hash_=value))
    again = await ledger.credit(chain_deposit(depositor.id, hash_=value.upper().replace("0X", "0x")))

    assert again.already_processed
    assert (await balance_of(depositor.id)).main_balance == Decimal("100000")


@pytest.mark.asyncio
async def test_below_threshold_waits_then_credits(ledger, make_user, balance_of):
    """Deposits below the confirmation threshold stay pending without touching balances"""
    depositor = await make_user()
    value = tx_hash()

    pending = await ledger.credit(chain_deposit(depositor.id, confirmations=3, hash_=value))

    assert not pending.credited and not pending.already_processed
    assert pending.deposit.status == DepositStatus.PENDING
    assert pending.deposit.confirmations == 3
    assert (await balance_of(depositor.id)).main_balance == Decimal("0")

    final = await ledger.credit(chain_deposit(depositor.id, confirmations=12, hash_=value))

    assert final.credited
    assert final.deposit.id == pending.deposit.id
    assert (await balance_of(depositor.id)).main_balance == Decimal("100000")


@pytest.mark.asyncio
async def test_same_hash_for_another_user_conflicts(ledger, make_user):
    owner = await make_user()
    other = await make_user()
    value = tx_hash()
    await ledger.credit(chain_deposit(owner.id, confirmations=3, hash_=value))

    with pytest.raises(ConflictError):
        await ledger.credit(chain_deposit(other.id, hash_=value))


@pytest.mark.asyncio
async def test_transfers_in_one_transaction_are_separate_deposits(ledger, make_user, balance_of):
    first = await make_user()
    second = await make_user()
    value = tx_hash()

    a = await ledger.credit(chain_deposit(first.id, hash_=value, log_index=0))
    b = await ledger.credit(chain_deposit(second.id, hash_=value, log_index=1))
    c = await ledger.credit(chain_deposit(first.id, amount="500", hash_=value, log_index=2))

    assert a.credited and b.credited and c.credited
    assert len({a.deposit.id, b.deposit.id, c.deposit.id}) == 3
    assert (await balance_of(first.id)).main_balance == Decimal("150000")
    assert (await balance_of(second.id)).main_balance == Decimal("100000")


@pytest.mark.asyncio
async def test_credited_transfer_for_another_user_conflicts(ledger, make_user, balance_of):
    """The owner check runs before the already-credited shortcut"""
    owner = await make_user()
    other = await make_user()
    value = tx_hash()
    await ledger.credit(chain_deposit(owner.id, hash_=value, log_index=0))

    with pytest.raises(ConflictError):
        await ledger.credit(chain_deposit(other.id, hash_=value, log_index=0))

    assert (await balance_of(other.id)).main_balance == Decimal("0")


@pytest.mark.asyncio
async def test_concurrent_insert_is_credited_once(ledger, make_user, balance_of, monkeypatch):
    """A writer that loses the insert race follows the winner's record instead of crediting again"""
    depositor = await make_user()
    deposit = chain_deposit(depositor.id, log_index=0)
    first = await ledger.credit(deposit)

    lookup = ledger.deposits.get_for_transfer
    calls = []

    async def stale_lookup(transaction_hash, log_index):
        calls.append(log_index)
        if len(calls) == 1:
            return None
        return await lookup(transaction_hash, log_index)

    monkeypatch.setattr(ledger.deposits, "get_for_transfer", stale_lookup)

    second = await ledger.credit(deposit)

    assert calls == [0, 0]
    assert second.already_processed and not second.credited
    assert second.deposit.id == first.deposit.id
    assert (await balance_of(depositor.id)).main_balance == Decimal("100000")


@pytest.mark.asyncio
async def test_report_and_chain_transfer_never_both_credit(ledger, make_user, balance_of):
    """A transaction paid through one path is refused on the other"""
    owner = await make_user()
    claimant = await make_user()
    first_hash, second_hash = tx_hash(), tx_hash()

    early_report = await ledger.report_deposit(claimant.id, Decimal("1000"), transaction_hash=first_hash)
    await ledger.credit(chain_deposit(owner.id, hash_=first_hash, log_index=0))

    with pytest.raises(ConflictError):
        await ledger.approve(early_report.deposit_id, force=True)

    forced_report = await ledger.report_deposit(claimant.id, Decimal("1000"), transaction_hash=second_hash)
    await ledger.approve(forced_report.deposit_id, force=True)

    with pytest.raises(ConflictError):
        await ledger.credit(chain_deposit(owner.id, hash_=second_hash, log_index=0))

    assert (await balance_of(owner.id)).main_balance == Decimal("100000")
    assert (await balance_of(claimant.id)).main_balance == Decimal("100000")


@pytest.mark.asyncio
async def test_non_positive_amount(ledger, make_user):
    depositor = await make_user()

    with pytest.raises(ValidationError):
        await ledger.credit(chain_deposit(depositor.id, amount="0"))


@pytest.mark.asyncio
async def test_missing_house_rolls_back_credit(session, balance_of):
    """The credit and its commissions commit together or not at all"""
    depositor = await UserService(session).register()
    ledger = DepositLedger(session, required_confirmations=12)
    deposit = chain_deposit(depositor.id)

    with pytest.raises(ServiceError):
        await ledger.credit(deposit)

    assert (await balance_of(depositor.id)).main_balance == Decimal("0")
    assert await ledger.deposits.get_by_hash(deposit.transaction_hash) is None


@pytest.mark.asyncio
async def test_approve_refuses_unconfirmed_hash_without_force(ledger, make_user, balance_of):
    depositor = await make_user()
    pending = await ledger.credit(chain_deposit(depositor.id, confirmations=3))

    with pytest.raises(ValidationError):
        await ledger.approve(pending.deposit.id)

    forced = await ledger.approve(pending.deposit.id, notes="checked on explorer", force=True)

    assert forced.credited
    assert forced.deposit.admin_notes == "checked on explorer"
    assert (await balance_of(depositor.id)).main_balance == Decimal("100000")


@pytest.mark.asyncio
async def test_approve_twice_credits_once(ledger, make_user, balance_of):
    depositor = await make_user()
    report = await ledger.report_deposit(depositor.id, Decimal("10"), description="bank transfer")

    first = await ledger.approve(report.deposit_id)
    second = await ledger.approve(report.deposit_id)

    assert first.credited
    assert second.already_processed
    assert (await balance_of(depositor.id)).main_balance == Decimal("1000")


@pytest.mark.asyncio
async def test_reject_then_approve_conflicts(ledger, make_user, balance_of):
    depositor = await make_user()
    report = await ledger.report_deposit(depositor.id, Decimal("10"))

    rejected = await ledger.reject(report.deposit_id, notes="no proof")

    assert rejected.status == DepositStatus.REJECTED
    assert rejected.admin_notes == "no proof"
    with pytest.raises(ConflictError):
        await ledger.approve(report.deposit_id)
    with pytest.raises(ConflictError):
        await ledger.reject(report.deposit_id)
    assert (await balance_of(depositor.id)).main_balance == Decimal("0")


@pytest.mark.asyncio
async def test_approve_unknown_deposit(ledger):
    with pytest.raises(NotFoundError):
        await ledger.approve(uuid.uuid4())


@pytest.mark.asyncio
async def test_bulk_approve_and_reject(ledger, make_user):
    depositor = await make_user()
    first = await ledger.report_deposit(depositor.id, Decimal("10"))
    second = await ledger.report_deposit(depositor.id, Decimal("20"))
    third = await ledger.report_deposit(depositor.id, Decimal("30"))
    missing = uuid.uuid4()

    approved = await ledger.bulk_approve([first.deposit_id, second.deposit_id, missing])

    assert approved.success_count == 2
    assert approved.failure_count == 1
    assert [item.success for item in approved.results] == [True, True, False]

    rejected = await ledger.bulk_reject([first.deposit_id, third.deposit_id])

    assert rejected.success_count == 1
    assert rejected.results[0].error is not None
    assert rejected.results[1].success


@pytest.mark.asyncio
async def test_report_from_linked_wallet_is_credited(ledger, verifier, session, make_user, balance_of):
    depositor = await make_user()
    await WalletRepository(session).create(depositor.id, SENDER, "0xsig")
    await session.commit()
    verifier.verify.return_value = VerifyResult(
        verified=True, confirmations=20, amount=Decimal("50"), from_address=SENDER, block_number=90
    )
    value = tx_hash()

    report = await ledger.report_deposit(depositor.id, Decimal("50"), transaction_hash=value)

    assert report.outcome == ReportOutcome.CREDITED
    assert report.amount == Decimal("5000")
    verifier.verify.assert_awaited_once_with(value, TREASURY, min_amount=Decimal("50"))
    assert (await balance_of(depositor.id)).main_balance == Decimal("5000")


@pytest.mark.asyncio
async def test_report_from_unknown_sender_waits_for_admin(ledger, verifier, make_user, balance_of):
    """Verified on chain but sent from an unlinked wallet: recorded and queued, not credited"""
    depositor = await make_user()
    verifier.verify.return_value = VerifyResult(
        verified=True, confirmations=20, amount=Decimal("50"), from_address=SENDER, block_number=90
    )
    value = tx_hash()

    report = await ledger.report_deposit(depositor.id, Decimal("50"), transaction_hash=value)

    assert report.outcome == ReportOutcome.PENDING_ADMIN_REVIEW
    assert (await balance_of(depositor.id)).main_balance == Decimal("0")
    unmatched = await ledger.list_unmatched()
    assert [u.tx_hash for u in unmatched] == [value]

    approved = await ledger.approve(report.deposit_id)

    assert approved.credited
    assert approved.deposit.source == DepositSource.EXCHANGE_VERIFIED
    assert (await balance_of(depositor.id)).main_balance == Decimal("5000")
    assert await ledger.list_unmatched() == []


@pytest.mark.asyncio
async def test_unverifiable_report_is_submitted(ledger, verifier, make_user, balance_of):
    depositor = await make_user()
    verifier.verify.return_value = VerifyResult(verified=False, confirmations=2, reason="Only 2/12 confirmations")

    report = await ledger.report_deposit(depositor.id, Decimal("50"), transaction_hash=tx_hash())

    assert report.outcome == ReportOutcome.SUBMITTED
    assert report.reason == "Only 2/12 confirmations"
    pending = await ledger.list_pending()
    assert [d.id for d in pending] == [report.deposit_id]
    assert pending[0].source == DepositSource.MANUAL_REPORT
    assert (await balance_of(depositor.id)).main_balance == Decimal("0")


@pytest.mark.asyncio
async def test_duplicate_report_conflicts(ledger, make_user):
    depositor = await make_user()
    value = tx_hash()
    await ledger.report_deposit(depositor.id, Decimal("50"), transaction_hash=value)

    with pytest.raises(ConflictError):
        await ledger.report_deposit(depositor.id, Decimal("50"), transaction_hash=value)


@pytest.mark.asyncio
async def test_report_rejects_bad_proof_url(ledger, make_user):
    depositor = await make_user()

    with pytest.raises(ValidationError):
        await ledger.report_deposit(depositor.id, Decimal("50"), proof_image_url="ftp://example.com/proof.png")


@pytest.mark.asyncio
async def test_verify_deposit_updates_status(ledger, verifier, make_user):
    depositor = await make_user()
    report = await ledger.report_deposit(depositor.id, Decimal("50"), transaction_hash=tx_hash())
    verifier.verify.return_value = VerifyResult(
        verified=True, confirmations=30, amount=Decimal("50"), from_address=SENDER, block_number=90
    )

    deposit = await ledger.verify_deposit(report.deposit_id)

    assert deposit.status == DepositStatus.VERIFIED
    assert deposit.verified
    assert deposit.confirmations == 30
    assert deposit.from_address == SENDER


@pytest.mark.asyncio
async def test_resolve_unmatched_credits_user(ledger, session, make_user, balance_of):
    depositor = await make_user()
    unmatched = await UnmatchedDepositRepository(session).upsert(
        from_address=SENDER,
        to_address=TREASURY,
        amount=Decimal("25"),
        tx_hash=tx_hash(),
        block_number=80,
        confirmations=40,
        reason="Sender is not a linked wallet"
    )
    await session.commit()

    result = await ledger.resolve_unmatched(unmatched.id, depositor.id, notes="matched by support ticket")

    assert result.credited
    assert result.deposit.transaction_hash == unmatched.tx_hash
    assert (await balance_of(depositor.id)).main_balance == Decimal("2500")
    with pytest.raises(ConflictError):
        await ledger.resolve_unmatched(unmatched.id, depositor.id)
