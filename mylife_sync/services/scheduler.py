"""Background job scheduler.

APScheduler hosts the mylife polling loop as a single long-running job.
The loop paces itself (interval on success, backoff after failures), so
the job is started once and stopped through the orchestrator.
"""

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger

from mylife_sync.logging_config import get_logger
from mylife_sync.services.sync_orchestrator import SyncOrchestrator

logger = get_logger(__name__)

SYNC_JOB_ID = "mylife_sync_loop"

# Global scheduler instance
scheduler: AsyncIOScheduler | None = None
_orchestrator: SyncOrchestrator | None = None


def start_scheduler(orchestrator: SyncOrchestrator) -> AsyncIOScheduler:
    """Start the scheduler with the mylife sync loop.

    Returns:
        The started scheduler instance
    """
    global scheduler, _orchestrator

    if scheduler is not None:
        logger.warning("Scheduler already running")
        return scheduler

    scheduler = AsyncIOScheduler()
    _orchestrator = orchestrator

    scheduler.add_job(
        orchestrator.run_forever,
        trigger=DateTrigger(),
        id=SYNC_JOB_ID,
        name="mylife Event Archive Sync",
        replace_existing=True,
        max_instances=1,
    )
    scheduler.start()
    logger.info("Background scheduler started", job_id=SYNC_JOB_ID)

    return scheduler


def stop_scheduler() -> None:
    """Stop the sync loop and the scheduler."""
    global scheduler, _orchestrator

    if _orchestrator is not None:
        _orchestrator.stop()
        _orchestrator = None

    if scheduler is not None:
        scheduler.shutdown(wait=False)
        scheduler = None
        logger.info("Background scheduler stopped")


def get_scheduler() -> AsyncIOScheduler | None:
    """Get the current scheduler instance, or None if not started."""
    return scheduler
