"""
Background Job Scheduler.

WHAT: Configures and manages APScheduler for the reconciliation jobs.

WHY: Failed provisioning, pending DNS and overdue invoices are resolved
without a user request:
1. Domain reconciliation (provisioning retry + DNS re-verification)
2. Overdue invoice marking

HOW: AsyncIOScheduler with an in-memory job store. Jobs coalesce missed
runs and never overlap themselves.

Example:
    # In main.py startup:
    from quota_ledger.services.scheduler import start_scheduler, shutdown_scheduler

    @app.on_event("startup")
    async def startup():
        await start_scheduler()
"""

import logging
from typing import Optional

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from quota_ledger.core.config import settings
from quota_ledger.services.reconciliation_service import (
    ReconciliationService,
    get_reconciliation_service,
)

logger = logging.getLogger(__name__)


RECONCILIATION_JOB_ID = "domain_reconciliation"
OVERDUE_JOB_ID = "overdue_invoices"

# Global scheduler instance
_scheduler: Optional[AsyncIOScheduler] = None


def get_scheduler() -> Optional[AsyncIOScheduler]:
    """Get the global scheduler instance."""
    return _scheduler


async def start_scheduler(service: Optional[ReconciliationService] = None) -> None:
    """
    Start the background job scheduler.

    Args:
        service: Reconciliation service to run (defaults to the shared instance)

    Note: Call this from FastAPI startup event.
    """
    global _scheduler

    if _scheduler is not None and _scheduler.running:
        logger.warning("Scheduler already running")
        return

    job_defaults = {
        "coalesce": True,  # Combine multiple missed runs into one
        "max_instances": 1,
        "misfire_grace_time": 60,
    }

    _scheduler = AsyncIOScheduler(
        jobstores={"default": MemoryJobStore()},
        executors={"default": AsyncIOExecutor()},
        job_defaults=job_defaults,
        timezone="UTC",
    )

    _register_jobs(service or get_reconciliation_service())

    _scheduler.start()
    logger.info(
        f"Scheduler started with reconciliation every "
        f"{settings.RECONCILIATION_INTERVAL_SECONDS} seconds"
    )


def _register_jobs(service: ReconciliationService) -> None:
    """
    Register the reconciliation and overdue-invoice jobs.
    """
    if _scheduler is None:
        logger.error("Cannot register jobs: scheduler not initialized")
        return

    _scheduler.add_job(
        func=service.run_once,
        trigger=IntervalTrigger(seconds=settings.RECONCILIATION_INTERVAL_SECONDS),
        id=RECONCILIATION_JOB_ID,
        name="Domain Reconciliation",
        replace_existing=True,
    )
    _scheduler.add_job(
        func=service.mark_overdue_invoices,
        trigger=IntervalTrigger(seconds=settings.OVERDUE_CHECK_INTERVAL_SECONDS),
        id=OVERDUE_JOB_ID,
        name="Overdue Invoice Check",
        replace_existing=True,
    )

    logger.info(
        f"Registered reconciliation jobs (intervals: "
        f"{settings.RECONCILIATION_INTERVAL_SECONDS}s, {settings.OVERDUE_CHECK_INTERVAL_SECONDS}s)"
    )


async def shutdown_scheduler() -> None:
    """
    Shut down the background job scheduler.

    Note: Call this from FastAPI shutdown event.
    """
    global _scheduler

    if _scheduler is None:
        logger.info("Scheduler not running")
        return

    if _scheduler.running:
        logger.info("Shutting down scheduler...")
        _scheduler.shutdown(wait=True)
    _scheduler = None
    logger.info("Scheduler shut down successfully")


def get_scheduler_status() -> dict:
    """
    Scheduler state and job info for the health endpoint.
    """
    if _scheduler is None:
        return {
            "running": False,
            "jobs": [],
            "message": "Scheduler not initialized",
        }

    jobs = [
        {
            "id": job.id,
            "name": job.name,
            "next_run_time": str(job.next_run_time) if job.next_run_time else None,
            "trigger": str(job.trigger),
        }
        for job in _scheduler.get_jobs()
    ]

    return {
        "running": _scheduler.running,
        "jobs": jobs,
        "message": "Scheduler is running" if _scheduler.running else "Scheduler is paused",
    }
