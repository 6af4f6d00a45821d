"""
Background Job Scheduler

Two jobs keep releases moving without a human:
1. Auto-Release - releases transactions whose review window elapsed
2. Release Reconciliation - settles release attempts stuck mid-flight
"""

import logging
from typing import Any, Dict, List

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config import Config
from jobs.release_reconciliation import run_release_reconciliation
from services.auto_release_service import auto_release_service

logger = logging.getLogger(__name__)


async def run_auto_release() -> Dict[str, Any]:
    return await auto_release_service.process_auto_release()


class ReleaseScheduler:
    """APScheduler wrapper for the release background jobs"""

    def __init__(self):
        jobstores = {
            'default': MemoryJobStore()
        }
        executors = {
            'default': AsyncIOExecutor()
        }
        job_defaults = {
            'coalesce': True,  # Prevent job pileup
            'max_instances': 1,  # Single instance enforcement
            'misfire_grace_time': 120
        }

        self.scheduler = AsyncIOScheduler(
            jobstores=jobstores,
            executors=executors,
            job_defaults=job_defaults,
            timezone='UTC'
        )

    def setup_jobs(self):
        """Register the release jobs"""
        self.scheduler.add_job(
            run_auto_release,
            trigger=IntervalTrigger(seconds=Config.AUTO_RELEASE_CHECK_INTERVAL_SECONDS),
            id="auto_release",
            name="⏰ Auto-Release - review window elapsed",
            replace_existing=True
        )
        logger.info(f"✅ Auto-Release scheduled every {Config.AUTO_RELEASE_CHECK_INTERVAL_SECONDS} seconds")

        self.scheduler.add_job(
            run_release_reconciliation,
            trigger=IntervalTrigger(seconds=Config.RELEASE_RECONCILIATION_INTERVAL_SECONDS),
            id="release_reconciliation",
            name="🧾 Release Reconciliation - stuck release locks",
            replace_existing=True
        )
        logger.info(
            f"✅ Release Reconciliation scheduled every {Config.RELEASE_RECONCILIATION_INTERVAL_SECONDS} seconds"
        )

    def get_job_ids(self) -> List[str]:
        return [job.id for job in self.scheduler.get_jobs()]

    def start(self):
        """Start the scheduler (requires a running event loop)"""
        self.setup_jobs()
        self.scheduler.start()
        logger.info(f"📋 Active jobs: {self.get_job_ids()}")

    def stop(self):
        """Stop the scheduler"""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("📴 Release job scheduler stopped")


_global_scheduler = None


def get_scheduler_instance() -> ReleaseScheduler:
    """Get the global scheduler instance"""
    global _global_scheduler
    if _global_scheduler is None:
        _global_scheduler = ReleaseScheduler()
    return _global_scheduler
