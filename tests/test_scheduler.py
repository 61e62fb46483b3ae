"""
Tests for the billing scheduler.

Tests cover:
1. Scheduler type and daily job registration
2. Daily billing job execution and error capture
"""

from datetime import date
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from adspend.core.scheduler import job_daily_billing, scheduler, start_scheduler
from adspend.services.daily_billing import DailyBillingSummary
from adspend.services.wiring import BillingCollaborators, register_collaborators


@pytest.fixture(autouse=True)
def no_collaborators():
    register_collaborators(None)
    yield
    register_collaborators(None)


class TestSchedulerInitialization:
    def test_scheduler_is_asyncio_scheduler(self):
        assert isinstance(scheduler, AsyncIOScheduler)

    def test_start_scheduler_registers_daily_billing(self):
        """start_scheduler adds one cron job that never overlaps itself."""
        test_scheduler = MagicMock()
        test_scheduler.get_jobs.return_value = []

        with patch("adspend.core.scheduler.scheduler", test_scheduler):
            start_scheduler()

        test_scheduler.add_job.assert_called_once()
        args, kwargs = test_scheduler.add_job.call_args
        assert args[0] is job_daily_billing
        assert isinstance(args[1], CronTrigger)
        assert kwargs["id"] == "job_daily_billing"
        assert kwargs["max_instances"] == 1
        assert kwargs["coalesce"] is True
        test_scheduler.start.assert_called_once()


class TestJobDailyBilling:
    @pytest.mark.asyncio
    async def test_without_collaborators_is_captured(self):
        with patch("adspend.core.scheduler.capture_exception") as capture:
            result = await job_daily_billing()

        assert result is None
        capture.assert_called_once()

    @pytest.mark.asyncio
    async def test_runs_job(self, gateway, campaigns, notifier):
        register_collaborators(BillingCollaborators(gateway, campaigns, notifier))
        summary = DailyBillingSummary(billing_date=date(2024, 3, 14), processed=2, successful=2, total_spend=Decimal("90"))
        job = MagicMock()
        job.run = AsyncMock(return_value=summary)

        with patch("adspend.core.scheduler.build_daily_billing_job", return_value=job):
            result = await job_daily_billing(date(2024, 3, 14))

        assert result is summary
        job.run.assert_awaited_once_with(billing_date=date(2024, 3, 14))
