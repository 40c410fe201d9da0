"""Background job scheduler for the card order engine"""

import logging
from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config import Config
from jobs.operation_lock_cleanup import release_stale_operation_locks
from services.operation_lock_manager import OperationLockManager

logger = logging.getLogger(__name__)


class CardOrderScheduler:
    """Background maintenance jobs for operation locks"""

    def __init__(self, lock_manager: OperationLockManager):
        self.lock_manager = lock_manager

        jobstores = {
            'default': MemoryJobStore()
        }
        executors = {
            'default': AsyncIOExecutor()
        }
        job_defaults = {
            'coalesce': True,  # Global coalescing to prevent job pileup
            'max_instances': 1,  # Global single instance enforcement
            'misfire_grace_time': 120
        }

        self.scheduler = AsyncIOScheduler(
            jobstores=jobstores,
            executors=executors,
            job_defaults=job_defaults,
            timezone='UTC'
        )

    def setup_jobs(self):
        """Register scheduled jobs; safe to call more than once"""
        if self.scheduler.get_job("operation_lock_cleanup"):
            self.scheduler.remove_job("operation_lock_cleanup")
            logger.info("🧹 Hot-reload safety: Removed existing operation_lock_cleanup job")

        self.scheduler.add_job(
            release_stale_operation_locks,
            trigger=IntervalTrigger(minutes=Config.OPERATION_LOCK_SWEEP_MINUTES),
            args=[self.lock_manager],
            id="operation_lock_cleanup",
            name="Release Stale Operation Locks",
            max_instances=1,
            coalesce=True,
        )
        logger.info(f"⏰ Scheduled operation lock cleanup every {Config.OPERATION_LOCK_SWEEP_MINUTES} minutes")

    def start(self):
        self.setup_jobs()
        self.scheduler.start()
        logger.info("✅ Card order scheduler started")

    def shutdown(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("🛑 Card order scheduler stopped")
