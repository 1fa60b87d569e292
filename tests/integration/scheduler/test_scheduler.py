from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from xnrt_ledger.core.scheduler import LedgerScheduler
from xnrt_ledger.core.service.chain.models import ScanResult
from xnrt_ledger.core.service.chain.scanner import ChainScanner
from xnrt_ledger.core.service.staking.models import StakingTier
from xnrt_ledger.core.service.staking.stake_engine import StakeAccrualEngine


def test_jobs_without_scanner(session_factory):
    scheduler = LedgerScheduler(session_factory)

    scheduler.setup_jobs()

    assert [job.id for job in scheduler.scheduler.get_jobs()] == ["staking_rewards"]


def test_jobs_with_scanner(session_factory):
    scheduler = LedgerScheduler(session_factory, scanner=AsyncMock(spec=ChainScanner))

    scheduler.setup_jobs()

    assert {job.id for job in scheduler.scheduler.get_jobs()} == {"deposit_scanner", "staking_rewards"}


@pytest.mark.asyncio
async def test_scan_job_survives_scanner_errors(session_factory):
    scanner = AsyncMock(spec=ChainScanner)
    scanner.run_cycle.side_effect = RuntimeError("boom")
    scheduler = LedgerScheduler(session_factory, scanner=scanner)

    await scheduler.run_scan_cycle()

    scanner.run_cycle.side_effect = None
    scanner.run_cycle.return_value = ScanResult(success=False, error="RPC down")
    await scheduler.run_scan_cycle()

    assert scanner.run_cycle.await_count == 2


@pytest.mark.asyncio
async def test_reward_sweep_job(session_factory, session, make_user, balance_of):
    user = await make_user(main_balance=Decimal("10000"))
    started = datetime.now(timezone.utc) - timedelta(days=2, hours=1)
    await StakeAccrualEngine(session).create_stake(
        user.id, StakingTier.ROYAL_SAPPHIRE, Decimal("10000"), now=started
    )

    await LedgerScheduler(session_factory).run_reward_sweep()

    assert (await balance_of(user.id)).staking_balance == Decimal("10220")
