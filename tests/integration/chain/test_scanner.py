from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from xnrt_ledger.core.exceptions.base import ExternalUnavailableError
from xnrt_ledger.core.service.chain.chain_client import TRANSFER_TOPIC, ChainClient, address_to_topic
from xnrt_ledger.core.service.chain.deposit_verifier import DepositVerifier
from xnrt_ledger.core.service.chain.models import VerifyResult
from xnrt_ledger.core.service.chain.scanner import ChainScanner, ScannerContext
from xnrt_ledger.core.service.ledger.deposit_ledger import DepositLedger
from xnrt_ledger.core.service.ledger.models import DepositInput, DepositSource, DepositStatus
from xnrt_ledger.infra.config.settings import settings
from xnrt_ledger.infra.repository.deposit_repository import DepositRepository, UnmatchedDepositRepository
from xnrt_ledger.infra.repository.scanner_state_repository import ScannerStateRepository
from xnrt_ledger.infra.repository.user_repository import UserRepository
from xnrt_ledger.infra.repository.wallet_repository import WalletRepository

SCANNER_ID = "test-scanner"
TOKEN = "0x55d398326f99059ff775485246999027b3197955"
TREASURY = "0x1111111111111111111111111111111111111111"
SENDER = "0x2222222222222222222222222222222222222222"
DEPOSIT_ADDRESS = "0x4444444444444444444444444444444444444444"
SECOND_ADDRESS = "0x5555555555555555555555555555555555555555"
TX_HASH = "0x" + "cd" * 32
OTHER_HASH = "0x" + "ef" * 32


def transfer_log(to, sender=SENDER, amount=Decimal("1000"), block=190, tx_hash=TX_HASH, log_index=0):
    raw = int(amount * (Decimal(10) ** 18))
    return {
        "address": TOKEN,
        "topics": [TRANSFER_TOPIC, address_to_topic(sender), address_to_topic(to)],
        "data": "0x" + raw.to_bytes(32, "big").hex(),
        "blockNumber": block,
        "transactionHash": tx_hash,
        "logIndex": log_index,
    }


@pytest.fixture
def chain():
    client = AsyncMock(spec=ChainClient)
    client.get_block_number.return_value = 200
    client.get_transfer_logs.return_value = []
    return client


@pytest.fixture
def scanner(session_factory, chain, redis_client):
    return ChainScanner(ScannerContext(
        session_factory=session_factory,
        chain_client=chain,
        scanner_id=SCANNER_ID,
        token_address=TOKEN,
        treasury_address=TREASURY,
        required_confirmations=12,
        batch_size=50,
        safety_lag=3,
        start_block=180,
        redis=redis_client
    ))


@pytest.fixture
def cursor(session_factory):
    async def _cursor():
        async with session_factory() as session:
            return await ScannerStateRepository(session).get_last_processed_block(SCANNER_ID)

    return _cursor


@pytest.mark.asyncio
async def test_cycle_advances_cursor(scanner, chain, redis_client, cursor):
    first = await scanner.run_cycle()

    assert first.success
    assert (first.from_block, first.to_block, first.head_block) == (180, 197, 200)
    assert await cursor() == 197
    assert redis_client.data == {}

    chain.get_block_number.return_value = 260
    second = await scanner.run_cycle()

    assert (second.from_block, second.to_block) == (198, 247)
    assert await cursor() == 247
    chain.get_transfer_logs.assert_awaited_with(TOKEN, 198, 247, [TREASURY])


@pytest.mark.asyncio
async def test_head_inside_safety_lag_scans_nothing(scanner, chain, cursor):
    await scanner.run_cycle()

    result = await scanner.run_cycle()

    assert result.success
    assert result.from_block == 198 and result.to_block == 197
    assert await cursor() == 197
    assert chain.get_transfer_logs.await_count == 1


@pytest.mark.asyncio
async def test_rpc_failure_keeps_cursor(scanner, chain, cursor):
    chain.get_transfer_logs.side_effect = ExternalUnavailableError("Blockchain RPC call failed: eth_getLogs")

    failed = await scanner.run_cycle()

    assert not failed.success
    assert failed.error == "Blockchain RPC call failed: eth_getLogs"
    assert await cursor() == 179

    chain.get_transfer_logs.side_effect = None
    retried = await scanner.run_cycle()

    assert retried.success and retried.from_block == 180


@pytest.mark.asyncio
async def test_malformed_log_is_skipped(scanner, chain, cursor):
    chain.get_transfer_logs.return_value = [{"topics": [], "data": "0x"}]

    result = await scanner.run_cycle()

    assert result.success
    assert result.malformed == 1
    assert result.transfers_found == 0
    assert await cursor() == 197


@pytest.mark.asyncio
async def test_deposit_address_transfer_waits_for_confirmations(session, make_user, scanner, chain, balance_of):
    """Ten confirmations stay pending; the recheck on a later head credits the deposit"""
    user = await make_user()
    await UserRepository(session).assign_deposit_address(user.id, 0, DEPOSIT_ADDRESS)
    await session.commit()
    chain.get_transfer_logs.return_value = [transfer_log(DEPOSIT_ADDRESS)]

    first = await scanner.run_cycle()

    assert first.pending == 1 and first.credited == 0
    assert (await balance_of(user.id)).main_balance == Decimal("0")
    chain.get_transfer_logs.assert_awaited_with(TOKEN, 180, 197, [DEPOSIT_ADDRESS, TREASURY])

    chain.get_block_number.return_value = 205
    chain.get_transfer_logs.return_value = []
    second = await scanner.run_cycle()

    assert second.credited == 1
    assert (await balance_of(user.id)).main_balance == Decimal("100000")


@pytest.mark.asyncio
async def test_linked_wallet_transfer_is_credited_once(session, make_user, scanner, chain, balance_of):
    user = await make_user()
    await WalletRepository(session).create(user.id, SENDER, "0xsig")
    await session.commit()
    chain.get_transfer_logs.return_value = [transfer_log(TREASURY, block=185)]

    first = await scanner.run_cycle()
    chain.get_block_number.return_value = 230
    second = await scanner.run_cycle()

    assert first.credited == 1
    assert second.success and second.credited == 0 and second.pending == 0
    assert (await balance_of(user.id)).main_balance == Decimal("100000")


@pytest.mark.asyncio
async def test_unknown_sender_to_treasury_is_unmatched(session, house, scanner, chain):
    chain.get_transfer_logs.return_value = [transfer_log(TREASURY, amount=Decimal("25"))]

    result = await scanner.run_cycle()

    assert result.unmatched == 1 and result.credited == 0
    [row] = await UnmatchedDepositRepository(session).list_unresolved()
    assert row.from_address == SENDER
    assert row.amount == Decimal("25")
    assert row.tx_hash == TX_HASH
    assert not row.resolved


@pytest.mark.asyncio
async def test_lock_held_elsewhere_skips(scanner, chain, redis_client):
    redis_client.data[f"scanner:lock:{SCANNER_ID}"] = "another-process"

    result = await scanner.run_cycle()

    assert result.skipped
    chain.get_block_number.assert_not_awaited()
    assert redis_client.data[f"scanner:lock:{SCANNER_ID}"] == "another-process"


@pytest.mark.asyncio
async def test_overlapping_cycle_is_skipped(scanner, chain, redis_client):
    async with scanner.context.lock:
        result = await scanner.run_cycle()

    assert result.skipped
    chain.get_block_number.assert_not_awaited()
    assert redis_client.data == {}


@pytest.mark.asyncio
async def test_report_by_another_user_does_not_block_owner(session, make_user, scanner, chain, cursor, balance_of):
    """Someone else reporting the hash first changes nothing for the deposit-address owner"""
    owner = await make_user()
    claimant = await make_user()
    await UserRepository(session).assign_deposit_address(owner.id, 0, DEPOSIT_ADDRESS)
    await session.commit()
    await DepositLedger(session, required_confirmations=12).report_deposit(
        claimant.id, Decimal("1000"), transaction_hash=TX_HASH
    )
    chain.get_transfer_logs.return_value = [
        transfer_log(DEPOSIT_ADDRESS, block=185),
        transfer_log(DEPOSIT_ADDRESS, block=186, tx_hash=OTHER_HASH),
    ]

    result = await scanner.run_cycle()

    assert result.success
    assert result.credited == 2
    assert await cursor() == 197
    assert (await balance_of(owner.id)).main_balance == Decimal("200000")
    assert (await balance_of(claimant.id)).main_balance == Decimal("0")


@pytest.mark.asyncio
async def test_refused_transfer_is_parked_and_scanning_continues(session, make_user, scanner, chain, cursor,
                                                                 balance_of):
    owner = await make_user()
    claimant = await make_user()
    await DepositLedger(session, required_confirmations=12).credit(DepositInput(
        user_id=owner.id,
        usdt_amount=Decimal("1000"),
        source=DepositSource.DEPOSIT_ADDRESS,
        transaction_hash=TX_HASH,
        log_index=0,
        confirmations=3,
        block_number=190
    ))
    await UserRepository(session).assign_deposit_address(claimant.id, 0, DEPOSIT_ADDRESS)
    await session.commit()
    chain.get_transfer_logs.return_value = [
        transfer_log(DEPOSIT_ADDRESS, block=185, tx_hash=OTHER_HASH),
        transfer_log(DEPOSIT_ADDRESS),
    ]

    result = await scanner.run_cycle()

    assert result.success
    assert result.credited == 1 and result.unmatched == 1
    assert await cursor() == 197
    assert (await balance_of(claimant.id)).main_balance == Decimal("100000")
    [parked] = await UnmatchedDepositRepository(session).list_unresolved()
    assert parked.tx_hash == TX_HASH and parked.log_index == 0
    assert parked.reason == "Transaction belongs to another user's deposit"

    chain.get_block_number.return_value = 260
    chain.get_transfer_logs.return_value = []
    later = await scanner.run_cycle()

    assert later.success
    assert await cursor() == 247


@pytest.mark.asyncio
async def test_batch_transaction_credits_every_transfer(session, make_user, scanner, chain, balance_of):
    """Each Transfer log of one transaction is a deposit of its own"""
    first = await make_user()
    second = await make_user()
    users = UserRepository(session)
    await users.assign_deposit_address(first.id, 0, DEPOSIT_ADDRESS)
    await users.assign_deposit_address(second.id, 1, SECOND_ADDRESS)
    await session.commit()
    chain.get_transfer_logs.return_value = [
        transfer_log(DEPOSIT_ADDRESS, block=185, log_index=0),
        transfer_log(SECOND_ADDRESS, block=185, log_index=1),
        transfer_log(DEPOSIT_ADDRESS, amount=Decimal("500"), block=185, log_index=2),
    ]

    result = await scanner.run_cycle()

    assert result.credited == 3 and result.unmatched == 0
    assert (await balance_of(first.id)).main_balance == Decimal("150000")
    assert (await balance_of(second.id)).main_balance == Decimal("100000")

    chain.get_block_number.return_value = 260
    again = await scanner.run_cycle()

    assert again.credited == 0
    assert (await balance_of(first.id)).main_balance == Decimal("150000")
    assert (await balance_of(second.id)).main_balance == Decimal("100000")


@pytest.mark.asyncio
async def test_early_report_is_settled_by_scanner(session, make_user, scanner, chain, balance_of, monkeypatch):
    """A report filed before enough confirmations is credited once the scanner sees the transfer"""
    monkeypatch.setattr(settings, "XNRT_WALLET", TREASURY)
    user = await make_user()
    await WalletRepository(session).create(user.id, SENDER, "0xsig")
    await session.commit()
    verifier = AsyncMock(spec=DepositVerifier)
    verifier.verify.return_value = VerifyResult(verified=False, confirmations=5, reason="Only 5/12 confirmations")
    report = await DepositLedger(session, verifier=verifier, required_confirmations=12).report_deposit(
        user.id, Decimal("900"), transaction_hash=TX_HASH
    )
    chain.get_transfer_logs.return_value = [transfer_log(TREASURY, block=185)]

    result = await scanner.run_cycle()

    assert result.credited == 1
    assert (await balance_of(user.id)).main_balance == Decimal("100000")
    deposit = await DepositRepository(session).get_by_id(report.deposit_id)
    assert deposit.status == DepositStatus.APPROVED.value
    assert deposit.source == DepositSource.LINKED_WALLET.value
    assert deposit.log_index == 0
    assert deposit.amount == Decimal("1000")
