"""
Background Job Scheduler.

WHAT: Configures and manages APScheduler for the retention sweeps.

WHY: Expired audit logs, webhook event records and verification tokens
are removed periodically without any request triggering it.

HOW: Uses APScheduler with AsyncIOScheduler and an in-memory job store.
Jobs coalesce missed runs and never overlap; cross-replica exclusion is
the job lock's concern (see job_lock.py).

Example:
    # In main.py lifespan:
    from billing_core.services.scheduler import start_scheduler, shutdown_scheduler

    await start_scheduler()
    ...
    await shutdown_scheduler()
"""

import logging
from typing import Optional

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from billing_core.core.config import settings
from billing_core.services.maintenance_jobs import (
    audit_retention_job,
    verification_token_job,
    webhook_record_job,
)

logger = logging.getLogger(__name__)


# Global scheduler instance
_scheduler: Optional[AsyncIOScheduler] = None


def build_scheduler() -> AsyncIOScheduler:
    """
    Create a scheduler with the three sweeps registered (not started).

    Job defaults:
    - coalesce: combine missed runs into one
    - max_instances: one run of each job at a time
    - misfire_grace_time: tolerate late runs for 5 minutes, skip after
    """
    scheduler = AsyncIOScheduler(
        jobstores={"default": MemoryJobStore()},
        executors={"default": AsyncIOExecutor()},
        job_defaults={
            "coalesce": True,
            "max_instances": 1,
            "misfire_grace_time": 300,
        },
        timezone="UTC",
    )

    scheduler.add_job(
        func=audit_retention_job,
        trigger=IntervalTrigger(hours=settings.AUDIT_SWEEP_INTERVAL_HOURS),
        id="audit_retention_sweep",
        name="Audit Retention Sweep",
        replace_existing=True,
    )
    scheduler.add_job(
        func=webhook_record_job,
        trigger=IntervalTrigger(hours=settings.WEBHOOK_SWEEP_INTERVAL_HOURS),
        id="webhook_record_sweep",
        name="Webhook Record Sweep",
        replace_existing=True,
    )
    scheduler.add_job(
        func=verification_token_job,
        trigger=IntervalTrigger(hours=settings.TOKEN_SWEEP_INTERVAL_HOURS),
        id="verification_token_sweep",
        name="Verification Token Sweep",
        replace_existing=True,
    )
    return scheduler


async def start_scheduler() -> None:
    """
    Start the background job scheduler.

    Note: Call this from the FastAPI lifespan.
    """
    global _scheduler

    if _scheduler is not None and _scheduler.running:
        logger.warning("Scheduler already running")
        return

    _scheduler = build_scheduler()
    _scheduler.start()
    logger.info(
        f"Scheduler started with {len(_scheduler.get_jobs())} jobs "
        f"(audit every {settings.AUDIT_SWEEP_INTERVAL_HOURS}h, "
        f"webhook records every {settings.WEBHOOK_SWEEP_INTERVAL_HOURS}h, "
        f"tokens every {settings.TOKEN_SWEEP_INTERVAL_HOURS}h)"
    )


async def shutdown_scheduler() -> None:
    """Gracefully stop the scheduler."""
    global _scheduler

    if _scheduler is None:
        logger.info("Scheduler not running")
        return

    if not _scheduler.running:
        logger.info("Scheduler already stopped")
        return

    logger.info("Shutting down scheduler...")
    _scheduler.shutdown(wait=True)
    _scheduler = None
    logger.info("Scheduler shut down successfully")


def get_scheduler_status() -> dict:
    """
    Get scheduler status information.

    WHY: Reported by the health endpoint.
    """
    if _scheduler is None:
        return {
            "running": False,
            "jobs": [],
            "message": "Scheduler not initialized",
        }

    jobs = []
    for job in _scheduler.get_jobs():
        jobs.append({
            "id": job.id,
            "name": job.name,
            "next_run_time": str(job.next_run_time) if job.next_run_time else None,
            "trigger": str(job.trigger),
        })

    return {
        "running": _scheduler.running,
        "jobs": jobs,
        "message": "Scheduler is running" if _scheduler.running else "Scheduler is paused",
    }
