"""Background jobs: the deposit scan cycle and the staking reward sweep"""

from typing import Optional

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.ext.asyncio import async_sessionmaker

from xnrt_ledger.core.service.chain.scanner import ChainScanner
from xnrt_ledger.core.service.staking.stake_engine import StakeAccrualEngine
from xnrt_ledger.core.logger.logger import get_logger
from xnrt_ledger.infra.config.settings import settings

logger = get_logger(__name__)


class LedgerScheduler:
    """APScheduler wrapper; every job runs single-instance and coalesces missed runs"""

    def __init__(self, session_factory: async_sessionmaker, scanner: Optional[ChainScanner] = None):
        self.session_factory = session_factory
        self.scanner = scanner
        self.scheduler = AsyncIOScheduler(
            jobstores={"default": MemoryJobStore()},
            executors={"default": AsyncIOExecutor()},
            job_defaults={"coalesce": True, "max_instances": 1, "misfire_grace_time": 60},
            timezone="UTC"
        )

    def setup_jobs(self) -> None:
        if self.scanner is not None:
            self.scheduler.add_job(
                self.run_scan_cycle,
                trigger=IntervalTrigger(seconds=settings.SCANNER_INTERVAL_SECONDS),
                id="deposit_scanner",
                name="Scan BSC USDT Deposits",
                max_instances=1,
                coalesce=True,
                replace_existing=True
            )

        self.scheduler.add_job(
            self.run_reward_sweep,
            trigger=IntervalTrigger(minutes=settings.STAKE_REWARD_INTERVAL_MINUTES),
            id="staking_rewards",
            name="Accrue Staking Rewards",
            max_instances=1,
            coalesce=True,
            replace_existing=True
        )

    async def run_scan_cycle(self) -> None:
        try:
            result = await self.scanner.run_cycle()
            if not result.success:
                logger.warning("Scheduled scan cycle failed", extra={"error": result.error})
        except Exception as e:
            logger.error("Scheduled scan cycle crashed", extra={"error": str(e)}, exc_info=True)

    async def run_reward_sweep(self) -> None:
        try:
            async with self.session_factory() as session:
                await StakeAccrualEngine(session).process_rewards()
        except Exception as e:
            logger.error("Scheduled reward sweep crashed", extra={"error": str(e)}, exc_info=True)

    def start(self) -> None:
        self.setup_jobs()
        self.scheduler.start()
        logger.info(
            "Scheduler started",
            extra={"jobs": [job.id for job in self.scheduler.get_jobs()]}
        )

    def shutdown(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
