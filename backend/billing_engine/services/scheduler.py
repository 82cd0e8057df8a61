"""
Background Job Scheduler.

WHAT: Configures and manages APScheduler for the billing batch jobs.

WHY: Recurring billing needs periodic work without user requests:
1. Charge billing schedules that have come due
2. Advance dunning chains whose next step is due
3. Move sent invoices past their due date to overdue

HOW: Uses APScheduler's AsyncIOScheduler with an in-memory job store.
Each job opens its own sessions through the session factory. Jobs
coalesce and never overlap, and running several engine instances is safe
because every batch item is claimed with a conditional UPDATE.

Example:
    # In main.py lifespan:
    from billing_engine.services.scheduler import start_scheduler, shutdown_scheduler

    await start_scheduler()
    yield
    await shutdown_scheduler()
"""

import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_engine.core.config import settings
from billing_engine.core.exceptions import ValidationError
from billing_engine.db.session import get_session_factory
from billing_engine.services.billing_schedule_service import BillingScheduleProcessor
from billing_engine.services.dunning_service import DunningManager
from billing_engine.services.invoice_service import InvoiceService
from billing_engine.services.notification_service import NotificationService
from billing_engine.services.payment_gateways import PaymentRouter


logger = logging.getLogger(__name__)

SessionFactory = async_sessionmaker[AsyncSession]


# Global scheduler instance
_scheduler: Optional[AsyncIOScheduler] = None


def get_scheduler() -> Optional[AsyncIOScheduler]:
    """Get the global scheduler instance."""
    return _scheduler


# ============================================================================
# Jobs
# ============================================================================


async def run_billing_job(
    session_factory: Optional[SessionFactory] = None,
    router: Optional[PaymentRouter] = None,
    notification_service: Optional[NotificationService] = None,
) -> Dict[str, Any]:
    """Charge every due billing schedule."""
    processor = BillingScheduleProcessor(
        session_factory or get_session_factory(),
        router=router,
        notification_service=notification_service,
    )
    result = await processor.process_billing_schedules()
    return result.to_dict()


async def run_dunning_job(
    session_factory: Optional[SessionFactory] = None,
    router: Optional[PaymentRouter] = None,
    notification_service: Optional[NotificationService] = None,
) -> Dict[str, Any]:
    """Advance every due dunning event."""
    manager = DunningManager(
        session_factory or get_session_factory(),
        router=router,
        notification_service=notification_service,
    )
    result = await manager.process_dunning_events()
    return result.to_dict()


async def run_overdue_job(
    session_factory: Optional[SessionFactory] = None,
    router: Optional[PaymentRouter] = None,
    notification_service: Optional[NotificationService] = None,
) -> Dict[str, Any]:
    """Mark sent invoices past their due date as overdue."""
    factory = session_factory or get_session_factory()
    async with factory() as session:
        try:
            service = InvoiceService(session, notification_service=notification_service)
            marked = await service.mark_overdue_invoices()
            await session.commit()
        except Exception:
            await session.rollback()
            raise
    return {"marked_overdue": marked}


JOBS: Dict[str, Dict[str, Any]] = {
    "billing": {"func": run_billing_job, "name": "Billing Schedule Processing"},
    "dunning": {"func": run_dunning_job, "name": "Dunning Event Processing"},
    "overdue": {"func": run_overdue_job, "name": "Overdue Invoice Check"},
}


# ============================================================================
# Lifecycle
# ============================================================================


async def start_scheduler() -> None:
    """
    Start the background job scheduler.

    HOW:
    1. Creates AsyncIOScheduler with memory job store
    2. Registers the billing, dunning and overdue jobs
    3. Starts the scheduler
    """
    global _scheduler

    if _scheduler is not None and _scheduler.running:
        logger.warning("Scheduler already running")
        return

    job_defaults = {
        "coalesce": True,  # Combine multiple missed runs into one
        "max_instances": 1,  # Only one instance of each job at a time
        "misfire_grace_time": 60,
    }

    _scheduler = AsyncIOScheduler(
        jobstores={"default": MemoryJobStore()},
        executors={"default": AsyncIOExecutor()},
        job_defaults=job_defaults,
        timezone="UTC",
    )

    _register_jobs(settings.BILLING_JOB_INTERVAL_SECONDS)

    _scheduler.start()
    logger.info(
        f"Scheduler started with billing jobs every {settings.BILLING_JOB_INTERVAL_SECONDS} seconds"
    )


def _register_jobs(interval_seconds: int) -> None:
    """Register every billing job on the same interval."""
    if _scheduler is None:
        logger.error("Cannot register jobs: scheduler not initialized")
        return

    for job_id, job in JOBS.items():
        _scheduler.add_job(
            func=job["func"],
            trigger=IntervalTrigger(seconds=interval_seconds),
            id=job_id,
            name=job["name"],
            replace_existing=True,
        )
        logger.info(f"Registered {job_id} job (interval: {interval_seconds}s)")


async def shutdown_scheduler() -> None:
    """
    Shut down the background job scheduler.

    WHY: Ensures running jobs complete and resources are released.
    """
    global _scheduler

    if _scheduler is None:
        logger.info("Scheduler not running")
        return

    if not _scheduler.running:
        logger.info("Scheduler already stopped")
        _scheduler = None
        return

    logger.info("Shutting down scheduler...")
    _scheduler.shutdown(wait=True)
    _scheduler = None
    logger.info("Scheduler shut down successfully")


async def run_billing_jobs_now(
    job_id: str,
    session_factory: Optional[SessionFactory] = None,
    router: Optional[PaymentRouter] = None,
    notification_service: Optional[NotificationService] = None,
) -> Dict[str, Any]:
    """
    Run one billing job immediately, outside the schedule.

    WHY: Operators trigger runs after an outage or a bulk import, and
    tests drive the jobs without waiting on the interval.

    Raises:
        ValidationError: Unknown job id
    """
    job = JOBS.get(job_id)
    if job is None:
        raise ValidationError(
            message=f"Unknown billing job: {job_id}",
            job=job_id,
            available=", ".join(JOBS),
        )

    func: Callable[..., Awaitable[Dict[str, Any]]] = job["func"]
    logger.info(f"Running {job_id} job on demand")
    return await func(session_factory, router, notification_service)


def get_scheduler_status() -> dict:
    """
    Get scheduler status information.

    Returns:
        Dict with scheduler status and job details
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
