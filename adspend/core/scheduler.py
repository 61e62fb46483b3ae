from datetime import date
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from adspend.core.config import settings
from adspend.core.errors import capture_exception
from adspend.core.logging_config import get_logger
from adspend.services.wiring import build_daily_billing_job, get_collaborators

logger = get_logger(__name__)

scheduler = AsyncIOScheduler(timezone="UTC")


async def job_daily_billing(billing_date: Optional[date] = None):
    """Bill every customer for yesterday's ad spend."""
    try:
        get_collaborators()
        job = build_daily_billing_job()
        summary = await job.run(billing_date=billing_date)
    except Exception as e:
        capture_exception(e, context={"job": "daily_billing"}, fingerprint=["job_daily_billing"])
        return None

    if summary.failed or summary.timed_out:
        logger.warning("job_daily_billing_finished_with_failures", **summary.to_dict())
    return summary


def start_scheduler():
    # Job configuration for durability:
    # - max_instances=1: Prevent overlapping runs
    # - misfire_grace_time: Allow late execution if within grace period (then skip)
    # - coalesce=True: If multiple runs were missed, only run once when catching up

    # Daily billing after ad networks finalize yesterday's spend.
    # A late run is still safe to start: BillingRun keys stop double billing.
    scheduler.add_job(
        job_daily_billing,
        CronTrigger(hour=settings.BILLING_CRON_HOUR, minute=0, timezone="UTC"),
        id="job_daily_billing",
        max_instances=1,
        misfire_grace_time=6 * 3600,  # 6 hours
        coalesce=True,
        replace_existing=True,
    )

    scheduler.start()
    logger.info("scheduler_started", jobs=[job.id for job in scheduler.get_jobs()])


def stop_scheduler():
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("scheduler_stopped")
