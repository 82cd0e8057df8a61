"""
Unit tests for the billing job scheduler.

WHY: Operators run jobs on demand and the lifespan starts the interval
jobs. Both paths must reach the same batch processors.
"""

import pytest
from datetime import datetime

from billing_engine.core.exceptions import ValidationError
from billing_engine.models.invoice import InvoiceStatus
from billing_engine.services import scheduler
from tests.factories import InvoiceFactory, SubscriptionFactory

LONG_AGO = datetime(2020, 1, 2)


class TestRunBillingJobsNow:
    """Tests for on-demand job runs."""

    @pytest.mark.asyncio
    async def test_unknown_job(self):
        with pytest.raises(ValidationError):
            await scheduler.run_billing_jobs_now("reconcile")

    @pytest.mark.asyncio
    async def test_overdue_job(self, db_session, session_factory, notification_service):
        """Overdue marking uses the real clock, so the invoice is long past due."""
        subscription = await SubscriptionFactory.create(db_session)
        await InvoiceFactory.create(
            db_session,
            subscription,
            status=InvoiceStatus.SENT,
            due_date=LONG_AGO,
        )

        result = await scheduler.run_billing_jobs_now(
            "overdue", session_factory, notification_service=notification_service
        )

        assert result == {"marked_overdue": 1}

    @pytest.mark.asyncio
    async def test_empty_billing_and_dunning_runs(self, session_factory, payment_router, notification_service):
        for job_id in ("billing", "dunning"):
            result = await scheduler.run_billing_jobs_now(
                job_id, session_factory, payment_router, notification_service
            )
            assert result == {"processed": 0, "succeeded": 0, "failed": 0, "skipped": 0}


class TestSchedulerLifecycle:
    """Tests for starting and stopping the interval jobs."""

    @pytest.mark.asyncio
    async def test_start_registers_every_job(self):
        await scheduler.start_scheduler()
        try:
            status = scheduler.get_scheduler_status()
            assert status["running"] is True
            assert sorted(job["id"] for job in status["jobs"]) == sorted(scheduler.JOBS)
        finally:
            await scheduler.shutdown_scheduler()

        assert scheduler.get_scheduler() is None
        assert scheduler.get_scheduler_status()["running"] is False
