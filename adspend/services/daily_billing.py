"""
Daily Billing Job

Runs the billing state machine for every customer with a credit account,
several customers at a time.

Each customer is protected twice against double billing:
1. A per-customer lock (advisory lock on PostgreSQL) so two concurrent runs
   never process the same customer at once.
2. A BillingRun row keyed by "{customer_id}:{billing_date}" (unique) so a
   second run on the same day, concurrent or not, skips customers already
   billed.

A run that fails before anything is booked or charged is marked FAILED and
reclaimed by the next run. One left IN_PROGRESS (worker crashed, cancelled,
or failed after a ledger write or a captured charge) is not picked up again
automatically, since part of the day is already booked. It is logged for
manual review instead.
"""

import asyncio
import time
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Optional

from sqlalchemy import func, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from adspend.core.config import settings
from adspend.core.context import clear_context, generate_correlation_id, set_correlation_id, set_customer_id
from adspend.core.errors import capture_exception
from adspend.core.exceptions import LockUnavailableError, SpendUnavailableError
from adspend.core.locks import LockProvider, billing_lock_key, get_lock_provider
from adspend.core.logging_config import get_logger
from adspend.core.typing import col, utc_now
from adspend.models.ad_spend import AdSpendCredit, AdSpendTransaction, CreditStatus
from adspend.models.billing_run import BillingRun, BillingRunStatus
from adspend.services.billing import BillingResult, BillingStateMachine
from adspend.services.ledger import ZERO

logger = get_logger(__name__)

StateMachineFactory = Callable[[Session], BillingStateMachine]


@dataclass
class DailyBillingSummary:
    billing_date: date
    processed: int = 0
    successful: int = 0
    failed: int = 0
    skipped: int = 0
    total_spend: Decimal = ZERO
    timed_out: bool = False
    results: List[BillingResult] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "billing_date": self.billing_date.isoformat(),
            "processed": self.processed,
            "successful": self.successful,
            "failed": self.failed,
            "skipped": self.skipped,
            "total_spend": str(self.total_spend),
            "timed_out": self.timed_out,
        }


class DailyBillingJob:
    def __init__(
        self,
        engine: Engine,
        state_machine_factory: StateMachineFactory,
        lock_provider: Optional[LockProvider] = None,
        concurrency: Optional[int] = None,
        timeout_seconds: Optional[float] = None,
        clock: Callable[[], datetime] = utc_now,
        grace_seconds: Optional[float] = None,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.engine = engine
        self.state_machine_factory = state_machine_factory
        self.lock_provider = lock_provider or get_lock_provider()
        self.concurrency = max(1, concurrency or settings.BILLING_WORKER_CONCURRENCY)
        if timeout_seconds is None:
            timeout_seconds = settings.BILLING_JOB_TIMEOUT_SECONDS
        self.timeout_seconds = timeout_seconds if timeout_seconds and timeout_seconds > 0 else None
        self.grace_seconds = settings.BILLING_JOB_GRACE_SECONDS if grace_seconds is None else max(0.0, grace_seconds)
        self.clock = clock
        self._monotonic = monotonic

    def billable_customer_ids(self) -> List[int]:
        """Every customer with a credit account that is not suspended."""
        with Session(self.engine) as session:
            rows = session.exec(
                select(AdSpendCredit.customer_id)
                .where(col(AdSpendCredit.status) != CreditStatus.SUSPENDED)
                .order_by(col(AdSpendCredit.customer_id))
            ).all()
        return list(rows)

    async def run(
        self,
        billing_date: Optional[date] = None,
        customer_ids: Optional[Iterable[int]] = None,
    ) -> DailyBillingSummary:
        """
        Bill every customer (or `customer_ids`) for `billing_date`.

        With a timeout, every external call gets the job's deadline: calls
        still failing at the deadline end with OperationTimeoutError and
        customers not yet started are deferred. Work still running
        `grace_seconds` later is cancelled.
        """
        billing_date = billing_date or (self.clock() - timedelta(days=1)).date()
        set_correlation_id(generate_correlation_id("billing"))

        ids = list(customer_ids) if customer_ids is not None else self.billable_customer_ids()
        summary = DailyBillingSummary(billing_date=billing_date)
        semaphore = asyncio.Semaphore(self.concurrency)
        deadline = self._monotonic() + self.timeout_seconds if self.timeout_seconds is not None else None

        logger.info(
            "daily_billing_started",
            billing_date=billing_date.isoformat(),
            customers=len(ids),
            concurrency=self.concurrency,
        )

        async def worker(customer_id: int) -> None:
            async with semaphore:
                if deadline is not None and self._monotonic() >= deadline:
                    summary.timed_out = True
                    summary.skipped += 1
                    logger.warning("daily_billing_customer_deferred", customer_id=customer_id)
                    return
                await self._bill_customer(customer_id, billing_date, summary, deadline)

        work = asyncio.gather(*(worker(customer_id) for customer_id in ids))
        try:
            if self.timeout_seconds is not None:
                await asyncio.wait_for(work, timeout=self.timeout_seconds + self.grace_seconds)
            else:
                await work
        except asyncio.TimeoutError:
            summary.timed_out = True
            logger.error(
                "daily_billing_timed_out",
                billing_date=billing_date.isoformat(),
                timeout_seconds=self.timeout_seconds,
                processed=summary.processed,
                remaining=len(ids) - summary.processed - summary.skipped,
            )

        logger.info("daily_billing_completed", **summary.to_dict())
        return summary

    async def _bill_customer(
        self,
        customer_id: int,
        billing_date: date,
        summary: DailyBillingSummary,
        deadline: Optional[float] = None,
    ) -> None:
        set_customer_id(customer_id)
        log = logger.bind(customer_id=customer_id, billing_date=billing_date.isoformat())

        try:
            async with self.lock_provider.acquire(billing_lock_key(customer_id)):
                with Session(self.engine) as session:
                    run = self._claim(session, customer_id, billing_date)
                    if run is None:
                        summary.skipped += 1
                        return
                    await self._process(session, run, summary, deadline)
        except LockUnavailableError:
            log.info("daily_billing_customer_locked")
            summary.skipped += 1
        finally:
            clear_context()

    def _claim(self, session: Session, customer_id: int, billing_date: date) -> Optional[BillingRun]:
        """Create or reclaim the day's BillingRun; None if it must be skipped."""
        key = BillingRun.make_key(customer_id, billing_date)
        run = session.exec(select(BillingRun).where(col(BillingRun.idempotency_key) == key)).first()

        if run is None:
            run = BillingRun(customer_id=customer_id, billing_date=billing_date, idempotency_key=key)
            session.add(run)
            try:
                session.commit()
            except IntegrityError:
                # Claimed by a worker that does not share our lock provider
                session.rollback()
                logger.info("billing_run_claimed_elsewhere", customer_id=customer_id, key=key)
                return None
            session.refresh(run)
            return run

        if run.status == BillingRunStatus.COMPLETED:
            logger.info("billing_run_already_completed", customer_id=customer_id, key=key)
            return None

        if run.status == BillingRunStatus.IN_PROGRESS:
            logger.error("billing_run_interrupted", customer_id=customer_id, key=key, error=run.error)
            return None

        # Conditional update so only one worker reclaims a failed run
        reclaimed = session.connection().execute(
            update(BillingRun)
            .where(
                col(BillingRun.idempotency_key) == key,
                col(BillingRun.status) == BillingRunStatus.FAILED,
            )
            .values(
                status=BillingRunStatus.IN_PROGRESS,
                attempts=col(BillingRun.attempts) + 1,
                error=None,
                started_at=utc_now(),
            )
        ).rowcount
        session.commit()
        if reclaimed != 1:
            logger.info("billing_run_claimed_elsewhere", customer_id=customer_id, key=key)
            return None
        session.refresh(run)
        logger.info("billing_run_reclaimed", customer_id=customer_id, key=key, attempts=run.attempts)
        return run

    async def _process(
        self,
        session: Session,
        run: BillingRun,
        summary: DailyBillingSummary,
        deadline: Optional[float] = None,
    ) -> None:
        customer_id = run.customer_id
        watermark = self._last_transaction_id(session, customer_id)
        state_machine: Optional[BillingStateMachine] = None
        try:
            state_machine = self.state_machine_factory(session)
            result = await state_machine.process_daily_billing(customer_id, run.billing_date, deadline=deadline)
        except asyncio.CancelledError:
            session.rollback()
            run.error = "interrupted"
            session.add(run)
            session.commit()
            raise
        except Exception as e:
            session.rollback()
            capture_exception(e, context={"customer_id": customer_id, "billing_date": run.billing_date.isoformat()})
            summary.processed += 1
            summary.failed += 1

            charged = state_machine is not None and customer_id in state_machine.charged_customers
            if charged or self._last_transaction_id(session, customer_id) != watermark:
                # Part of the day is booked or captured; reclaiming it would bill twice
                logger.error(
                    "billing_run_interrupted_after_booking",
                    customer_id=customer_id,
                    key=run.idempotency_key,
                    error=str(e),
                )
                run.error = f"interrupted after booking: {e}"
                session.add(run)
                session.commit()
                return

            self._finish(session, run, BillingRunStatus.FAILED, error=str(e))
            return

        summary.processed += 1
        summary.results.append(result)
        if result.success:
            summary.successful += 1
            summary.total_spend += result.actual_spend
        else:
            summary.failed += 1

        # Nothing was booked when spend could not be read, so the day may be retried
        status = BillingRunStatus.FAILED if isinstance(result.error, SpendUnavailableError) else BillingRunStatus.COMPLETED
        self._finish(
            session,
            run,
            status,
            actual_spend=result.actual_spend,
            action_taken=result.action_taken,
            error=str(result.error) if result.error else None,
        )

    @staticmethod
    def _last_transaction_id(session: Session, customer_id: int) -> Optional[int]:
        return session.exec(
            select(func.max(AdSpendTransaction.id))
            .join(AdSpendCredit, col(AdSpendCredit.id) == col(AdSpendTransaction.credit_id))
            .where(col(AdSpendCredit.customer_id) == customer_id)
        ).one()

    def _finish(
        self,
        session: Session,
        run: BillingRun,
        status: BillingRunStatus,
        actual_spend: Decimal = ZERO,
        action_taken: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        run.status = status
        run.actual_spend = actual_spend
        run.action_taken = action_taken
        run.error = error
        run.completed_at = utc_now()
        session.add(run)
        session.commit()


__all__ = ["DailyBillingJob", "DailyBillingSummary"]
