"""
Ad spend billing state machine.

Payment states and how the daily run moves between them:

    CURRENT ──charge fails──> GRACE_PERIOD ──fails──> FAILED ──fails──> PAUSED
       ^                          │                      │                 │
       └────────── any successful charge ────────────────┘                 │
       └────────── recovery charge succeeds (campaigns resumed) ───────────┘

BILLING FLOW (once per customer per day, driven by DailyBillingJob):
1. Paused accounts only attempt a recovery charge.
2. Yesterday's actual spend is read from every ad platform.
3. Enough credit: deduct it, auto-replenish when under 3 days remain.
4. Not enough: deduct what is there, charge shortfall + 7 days in one go.
   A failed charge still books the spend (the balance goes negative) and
   escalates: grace period, then 50% budgets, then paused campaigns.

Notification and campaign-control failures are logged and captured; they never
abort a billing run.
"""

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Sequence, Set

from sqlmodel import Session

from adspend.core.config import settings
from adspend.core.errors import ErrorHandler, capture_exception, capture_message
from adspend.core.exceptions import (
    AdSpendError,
    CreditAccountNotFoundError,
    InsufficientCreditError,
    OperationTimeoutError,
    PaymentFailureError,
    SpendUnavailableError,
)
from adspend.core.locks import LockProvider, billing_lock_key, get_lock_provider
from adspend.core.logging_config import get_logger
from adspend.core.retry import RetryableOperationExecutor
from adspend.core.typing import utc_now
from adspend.models.ad_spend import AdSpendCredit, PaymentStatus
from adspend.services.collaborators import (
    CampaignControl,
    ChargeResult,
    NotificationKind,
    Notifier,
    PaymentGateway,
    SpendSource,
)
from adspend.services.ledger import ZERO, AdSpendCreditLedger, to_money

logger = get_logger(__name__)

PAUSE_REASON = "Payment failure"


@dataclass
class BillingResult:
    customer_id: int
    billing_date: date
    success: bool = False
    actual_spend: Decimal = ZERO
    action_taken: Optional[str] = None
    error: Optional[AdSpendError] = None
    payment_status: Optional[PaymentStatus] = None
    charged_amount: Optional[Decimal] = None
    notifications: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "customer_id": self.customer_id,
            "billing_date": self.billing_date.isoformat(),
            "success": self.success,
            "actual_spend": str(self.actual_spend),
            "action_taken": self.action_taken,
            "error": str(self.error) if self.error else None,
            "error_type": type(self.error).__name__ if self.error else None,
            "payment_status": self.payment_status.value if self.payment_status else None,
            "charged_amount": str(self.charged_amount) if self.charged_amount is not None else None,
        }


@dataclass
class TopUpResult:
    success: bool
    new_balance: Optional[Decimal] = None
    charge_id: Optional[str] = None
    error: Optional[str] = None


class BillingStateMachine:
    """
    Per-customer billing driven once a day.

    Collaborators are injected; when an executor is given, payment charges and
    spend reads are routed through it (retry + circuit breaker). Every charge
    carries an idempotency key that stays the same across retries.
    """

    def __init__(
        self,
        session: Session,
        payment_gateway: PaymentGateway,
        spend_sources: Sequence[SpendSource],
        campaign_control: CampaignControl,
        notifier: Notifier,
        executor: Optional[RetryableOperationExecutor] = None,
        clock: Callable[[], datetime] = utc_now,
        lock_provider: Optional[LockProvider] = None,
    ):
        self.session = session
        self.payment_gateway = payment_gateway
        self.spend_sources = list(spend_sources)
        self.campaign_control = campaign_control
        self.notifier = notifier
        self.executor = executor
        self.clock = clock
        self._lock_provider = lock_provider
        # Customers with a captured charge in this instance's lifetime
        self.charged_customers: Set[int] = set()

    @property
    def lock_provider(self) -> LockProvider:
        if self._lock_provider is None:
            self._lock_provider = get_lock_provider()
        return self._lock_provider

    def _ledger(self, customer_id: int) -> AdSpendCreditLedger:
        return AdSpendCreditLedger.for_customer(self.session, customer_id, clock=self.clock)

    # ------------------------------------------------------------------
    # Daily run
    # ------------------------------------------------------------------

    async def process_daily_billing(
        self,
        customer_id: int,
        billing_date: Optional[date] = None,
        deadline: Optional[float] = None,
    ) -> BillingResult:
        """
        Bill one customer for one day (yesterday, UTC, by default).

        Expected failures (no account, spend unavailable, declined card) are
        recorded on the result. Anything else propagates to the caller.

        `deadline` is a time.monotonic() value handed to the executor for every
        external call. A spend read that runs out of time defers the day; a
        shortfall or recovery charge that runs out of time raises
        OperationTimeoutError.
        """
        billing_date = billing_date or (self.clock() - timedelta(days=1)).date()
        result = BillingResult(customer_id=customer_id, billing_date=billing_date)
        log = logger.bind(customer_id=customer_id, billing_date=billing_date.isoformat())

        try:
            ledger = self._ledger(customer_id)
        except CreditAccountNotFoundError as e:
            log.warning("daily_billing_no_account")
            result.error = e
            result.action_taken = "No credit account found"
            return result

        if ledger.credit.payment_status == PaymentStatus.PAUSED:
            return await self.attempt_payment_recovery(ledger, result, deadline=deadline)

        try:
            actual_spend = await self._actual_spend(customer_id, billing_date, deadline)
        except SpendUnavailableError as e:
            # No partial billing: the whole day is retried on the next run
            log.error("daily_billing_spend_unavailable", platform=e.platform, error=str(e.cause))
            result.error = e
            result.action_taken = "Spend unavailable, billing deferred"
            result.payment_status = ledger.credit.payment_status
            return result

        result.actual_spend = actual_spend
        day = billing_date.isoformat()

        if actual_spend <= ZERO:
            result.success = True
            result.action_taken = "No spend to bill"
        elif ledger.balance >= actual_spend:
            ledger.deduct(actual_spend, f"Daily ad spend - {day}")
            result.success = True
            result.action_taken = "Deducted from credit balance"
            await self._check_and_replenish(ledger, result, deadline)
        else:
            await self._cover_shortfall(ledger, actual_spend, day, result, deadline)

        result.payment_status = ledger.credit.payment_status
        log.info(
            "daily_billing_processed",
            success=result.success,
            actual_spend=str(actual_spend),
            action=result.action_taken,
            balance=str(ledger.balance),
            payment_status=ledger.credit.payment_status.value,
        )
        return result

    async def _actual_spend(self, customer_id: int, billing_date: date, deadline: Optional[float] = None) -> Decimal:
        total = ZERO
        for source in self.spend_sources:
            try:
                spend = await self._call(
                    lambda source=source: source.get_actual_spend(customer_id, billing_date, billing_date),
                    f"{source.platform}_fetch_spend",
                    {"customer_id": customer_id, "platform": source.platform},
                    deadline=deadline,
                )
            except Exception as e:
                raise SpendUnavailableError(customer_id, source.platform, e) from e
            total += to_money(spend)
        return total

    async def _check_and_replenish(
        self,
        ledger: AdSpendCreditLedger,
        result: BillingResult,
        deadline: Optional[float] = None,
    ) -> None:
        average = ledger.average_daily_spend()
        days_remaining = ledger.days_remaining()
        if not (0 < days_remaining < settings.LOW_BALANCE_DAYS):
            return

        amount = AdSpendCreditLedger.calculate_initial_credit(average, settings.PREPAID_DAYS)
        try:
            charge = await self._charge(
                ledger.customer_id,
                amount,
                "Auto-replenishment",
                idempotency_key=self._charge_key(ledger.customer_id, result.billing_date, "replenish"),
                deadline=deadline,
            )
        except OperationTimeoutError:
            # The day is already paid for; the next run replenishes
            logger.warning("credit_auto_replenish_deferred", customer_id=ledger.customer_id)
            return

        if charge.success:
            ledger.add_credit(amount, "Auto-replenishment", charge.charge_id)
            ledger.set_payment_method(charge.payment_method_id)
            result.charged_amount = amount
            result.action_taken = "Deducted from credit balance and auto-replenished"
            logger.info("credit_auto_replenished", customer_id=ledger.customer_id, amount=str(amount))
        else:
            # Payment status is left alone; the next short day escalates
            logger.warning(
                "credit_auto_replenish_failed",
                customer_id=ledger.customer_id,
                days_remaining=round(days_remaining, 2),
                error=charge.error,
            )
            await self._notify(
                NotificationKind.LOW_BALANCE,
                ledger,
                {"days_remaining": round(days_remaining, 1), "error": charge.error},
                result,
            )

    async def _cover_shortfall(
        self,
        ledger: AdSpendCreditLedger,
        actual_spend: Decimal,
        day: str,
        result: BillingResult,
        deadline: Optional[float] = None,
    ) -> None:
        customer_id = ledger.customer_id
        balance = ledger.balance
        available = max(balance, ZERO)
        debt = max(-balance, ZERO)
        shortfall = actual_spend - available
        previous_status = ledger.credit.payment_status

        if available > ZERO:
            ledger.deduct(available, f"Daily ad spend (partial) - {day}")

        replenish = AdSpendCreditLedger.calculate_initial_credit(
            await self._average_daily_budget(customer_id), settings.PREPAID_DAYS
        )
        total = shortfall + debt + replenish
        charge = await self._charge(
            customer_id,
            total,
            "Ad spend replenishment",
            idempotency_key=self._charge_key(customer_id, result.billing_date, "shortfall"),
            deadline=deadline,
        )

        if charge.success:
            ledger.add_credit(total, "Credit replenishment", charge.charge_id)
            ledger.deduct(shortfall, f"Daily ad spend (remaining) - {day}")
            ledger.restore_account()
            ledger.set_payment_method(charge.payment_method_id)
            if previous_status == PaymentStatus.FAILED:
                await self._apply_budget_multiplier(customer_id, 1.0)
            result.success = True
            result.charged_amount = total
            result.action_taken = "Charged card and replenished credit"
            return

        # Spend already happened on the ad platforms; book it as debt
        ledger.deduct(shortfall, f"Daily ad spend (unpaid) - {day}")
        result.error = InsufficientCreditError(customer_id, required=actual_spend, available=available)
        await self._handle_payment_failure(ledger, charge.error or "Payment failed", result)

    async def _handle_payment_failure(self, ledger: AdSpendCreditLedger, error: str, result: BillingResult) -> None:
        customer_id = ledger.customer_id
        failed_count = ledger.credit.failed_charge_count
        context = {"error": error, "failed_charge_count": failed_count + 1}

        logger.warning("ad_spend_payment_failed", customer_id=customer_id, failed_count=failed_count + 1, error=error)

        if failed_count == 0:
            ledger.enter_grace_period(settings.GRACE_PERIOD_HOURS)
            result.action_taken = "Payment failed, grace period started"
            await self._notify(NotificationKind.PAYMENT_WARNING, ledger, context, result)
        elif failed_count == 1:
            ledger.mark_payment_failed()
            result.action_taken = "Payment failed, campaign budgets reduced"
            await self._apply_budget_multiplier(customer_id, settings.FAILED_BUDGET_MULTIPLIER)
            await self._notify(NotificationKind.PAYMENT_FAILED, ledger, context, result)
        else:
            ledger.mark_paused()
            result.action_taken = "Payment failed, campaigns paused"
            with ErrorHandler("pause_campaigns", context={"customer_id": customer_id}):
                await self.campaign_control.pause_campaigns(customer_id, PAUSE_REASON)
            await self._notify(NotificationKind.CAMPAIGNS_PAUSED, ledger, context, result)
            capture_message(
                "ad_spend_campaigns_paused",
                level="warning",
                context={"customer_id": customer_id, "balance": str(ledger.balance)},
            )

        result.success = False

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    async def attempt_payment_recovery(
        self,
        ledger: AdSpendCreditLedger,
        result: BillingResult,
        deadline: Optional[float] = None,
    ) -> BillingResult:
        """
        Charge a fresh week of budget plus any debt; resume campaigns on success.
        """
        customer_id = ledger.customer_id
        debt = max(-ledger.balance, ZERO)
        replenish = AdSpendCreditLedger.calculate_initial_credit(
            await self._average_daily_budget(customer_id), settings.PREPAID_DAYS
        )
        total = replenish + debt

        charge = await self._charge(
            customer_id,
            total,
            "Ad spend recovery",
            idempotency_key=self._charge_key(customer_id, result.billing_date, "recovery"),
            deadline=deadline,
        )
        if not charge.success:
            result.error = PaymentFailureError(
                f"Recovery payment failed: {charge.error}",
                customer_id=customer_id,
                amount=total,
            )
            result.action_taken = "Recovery attempt failed"
            result.payment_status = ledger.credit.payment_status
            logger.warning("ad_spend_recovery_failed", customer_id=customer_id, error=charge.error)
            return result

        ledger.add_credit(total, "Credit recovery", charge.charge_id)
        ledger.restore_account()
        ledger.set_payment_method(charge.payment_method_id)
        await self._resume(customer_id)
        await self._notify(NotificationKind.CAMPAIGNS_RESUMED, ledger, {"amount": str(total)}, result)

        result.success = True
        result.charged_amount = total
        result.action_taken = "Payment recovered, campaigns resumed"
        result.payment_status = ledger.credit.payment_status
        logger.info("ad_spend_payment_recovered", customer_id=customer_id, amount=str(total))
        return result

    async def _resume(self, customer_id: int) -> None:
        with ErrorHandler("resume_campaigns", context={"customer_id": customer_id}):
            await self.campaign_control.resume_campaigns(customer_id)
        await self._apply_budget_multiplier(customer_id, 1.0)

    # ------------------------------------------------------------------
    # Account operations outside the daily run
    # ------------------------------------------------------------------

    async def initialize_credit_account(self, customer_id: int, daily_budget: Decimal) -> AdSpendCredit:
        """
        Charge a week of estimated spend up front and open the account.

        Returns the existing account unchanged if the customer already has one.
        """
        try:
            return self._ledger(customer_id).credit
        except CreditAccountNotFoundError:
            pass

        amount = AdSpendCreditLedger.calculate_initial_credit(daily_budget, settings.PREPAID_DAYS)
        charge = await self._charge(
            customer_id,
            amount,
            f"Initial ad spend credit ({settings.PREPAID_DAYS} days)",
            idempotency_key=f"adspend:{customer_id}:initial",
        )
        if not charge.success:
            raise PaymentFailureError(
                f"Failed to charge initial ad spend credit: {charge.error}",
                customer_id=customer_id,
                amount=amount,
            )

        ledger = AdSpendCreditLedger.open_account(
            self.session,
            customer_id,
            amount,
            description=f"Initial ad spend credit ({settings.PREPAID_DAYS} days prepaid)",
            charge_reference=charge.charge_id,
            payment_method_id=charge.payment_method_id,
            clock=self.clock,
        )
        return ledger.credit

    async def top_up(self, customer_id: int, amount: Decimal, description: Optional[str] = None) -> TopUpResult:
        """
        Manual top-up charged to the customer's card.

        Holds the customer's billing lock, so it never interleaves with the
        daily run; raises LockUnavailableError while that run is billing them.
        """
        amount = to_money(amount)
        if amount < to_money(settings.MIN_TOP_UP) or amount > to_money(settings.MAX_TOP_UP):
            raise ValueError(f"Top-up amount must be between {settings.MIN_TOP_UP} and {settings.MAX_TOP_UP}")

        async with self.lock_provider.acquire(billing_lock_key(customer_id)):
            return await self._top_up(customer_id, amount, description)

    async def _top_up(self, customer_id: int, amount: Decimal, description: Optional[str]) -> TopUpResult:
        ledger = self._ledger(customer_id)
        description = description or "Manual credit top-up"
        charge = await self._charge(customer_id, amount, description)
        if not charge.success:
            return TopUpResult(success=False, error=charge.error)

        ledger.add_credit(amount, description, charge.charge_id)
        ledger.set_payment_method(charge.payment_method_id)
        logger.info("ad_spend_top_up", customer_id=customer_id, amount=str(amount))
        return TopUpResult(success=True, new_balance=ledger.balance, charge_id=charge.charge_id)

    async def retry_payment(self, customer_id: int) -> TopUpResult:
        """
        User-initiated recovery for an account in the failure flow.

        Charges a week of average spend (at least the minimum top-up) plus any
        outstanding debt, restores the account and resumes campaigns if they
        had been paused. Takes the billing lock like top_up.
        """
        async with self.lock_provider.acquire(billing_lock_key(customer_id)):
            return await self._retry_payment(customer_id)

    async def _retry_payment(self, customer_id: int) -> TopUpResult:
        ledger = self._ledger(customer_id)
        previous_status = ledger.credit.payment_status
        if previous_status == PaymentStatus.CURRENT:
            return TopUpResult(success=False, error="No payment issues to resolve")

        week = AdSpendCreditLedger.calculate_initial_credit(ledger.average_daily_spend(), settings.PREPAID_DAYS)
        amount = max(to_money(settings.MIN_TOP_UP), week) + max(-ledger.balance, ZERO)

        charge = await self._charge(customer_id, amount, "Payment retry - ad spend credit")
        if not charge.success:
            return TopUpResult(success=False, error=charge.error)

        ledger.add_credit(amount, "Payment retry - credit restored", charge.charge_id)
        ledger.restore_account()
        ledger.set_payment_method(charge.payment_method_id)

        if previous_status == PaymentStatus.PAUSED:
            await self._resume(customer_id)
            result = BillingResult(customer_id=customer_id, billing_date=self.clock().date())
            await self._notify(NotificationKind.CAMPAIGNS_RESUMED, ledger, {"amount": str(amount)}, result)
        elif previous_status == PaymentStatus.FAILED:
            await self._apply_budget_multiplier(customer_id, 1.0)

        logger.info("ad_spend_payment_retried", customer_id=customer_id, amount=str(amount))
        return TopUpResult(success=True, new_balance=ledger.balance, charge_id=charge.charge_id)

    # ------------------------------------------------------------------
    # Collaborator plumbing
    # ------------------------------------------------------------------

    async def _call(
        self,
        operation: Callable[[], Any],
        operation_name: str,
        context: Dict[str, Any],
        deadline: Optional[float] = None,
    ) -> Any:
        if self.executor is not None:
            return await self.executor.execute(operation, operation_name, context=context, deadline=deadline)
        return await operation()

    @staticmethod
    def _charge_key(customer_id: int, billing_date: date, purpose: str) -> str:
        """Same key for the same day's charge, so a rerun cannot capture twice."""
        return f"adspend:{customer_id}:{billing_date.isoformat()}:{purpose}"

    async def _charge(
        self,
        customer_id: int,
        amount: Decimal,
        description: str,
        idempotency_key: Optional[str] = None,
        deadline: Optional[float] = None,
    ) -> ChargeResult:
        """
        One pass/fail charge. Exceptions become a failed ChargeResult.

        The idempotency key is fixed before the first attempt and reused by
        every retry, so a timeout that hid a successful capture is deduplicated
        by the provider. OperationTimeoutError (caller's deadline) propagates.
        """
        key = idempotency_key or f"adspend:{customer_id}:{uuid.uuid4().hex}"
        try:
            charge = await self._call(
                lambda: self.payment_gateway.charge(customer_id, amount, description, idempotency_key=key),
                "payment_charge",
                {"customer_id": customer_id, "amount": str(amount), "idempotency_key": key},
                deadline=deadline,
            )
        except OperationTimeoutError:
            raise
        except Exception as e:
            capture_exception(
                e,
                context={"customer_id": customer_id, "amount": str(amount), "description": description},
                level="warning",
                fingerprint=["payment_charge", type(e).__name__],
            )
            return ChargeResult(success=False, error=str(e))

        if charge.success:
            self.charged_customers.add(customer_id)
        logger.info(
            "ad_spend_charge_attempted",
            customer_id=customer_id,
            amount=str(amount),
            success=charge.success,
            charge_id=charge.charge_id,
            idempotency_key=key,
        )
        return charge

    async def _average_daily_budget(self, customer_id: int) -> Decimal:
        with ErrorHandler("average_daily_budget", context={"customer_id": customer_id}):
            budget = await self.campaign_control.average_daily_budget(customer_id)
            if budget is not None and to_money(budget) > ZERO:
                return to_money(budget)
        return to_money(settings.DEFAULT_DAILY_BUDGET)

    async def _apply_budget_multiplier(self, customer_id: int, multiplier: float) -> None:
        campaigns = []
        with ErrorHandler("list_active_campaigns", context={"customer_id": customer_id}):
            campaigns = await self.campaign_control.list_active_campaigns(customer_id)

        for campaign in campaigns:
            with ErrorHandler(
                "apply_budget_multiplier",
                context={"customer_id": customer_id, "campaign_id": campaign.campaign_id, "multiplier": multiplier},
            ):
                await self.campaign_control.apply_budget_multiplier(customer_id, campaign.campaign_id, multiplier)

    async def _notify(
        self,
        kind: NotificationKind,
        ledger: AdSpendCreditLedger,
        context: Dict[str, Any],
        result: BillingResult,
    ) -> None:
        with ErrorHandler("notify", context={"customer_id": ledger.customer_id, "kind": kind.value}):
            await self.notifier.notify(kind, ledger.customer_id, ledger.credit, context)
            result.notifications.append(kind.value)


__all__ = ["BillingStateMachine", "BillingResult", "TopUpResult", "PAUSE_REASON"]
