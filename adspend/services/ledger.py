"""
Ad Spend Credit Ledger

Bookkeeping for one customer's prepaid ad spend account. Every balance change
appends exactly one AdSpendTransaction whose balance_after equals the account's
new current_balance, and commits both together, so the balance can always be
rebuilt from the transaction history alone (see replay_balance / verify).

Amounts are Decimal, quantised to cents with ROUND_HALF_UP.

Usage:
    ledger = AdSpendCreditLedger.for_customer(session, customer_id=42)
    ledger.deduct(Decimal("50.00"), "Daily ad spend - 2024-01-01")
    if ledger.days_remaining() < 3:
        ...
"""

from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, List, Optional, Union

from sqlalchemy import func
from sqlmodel import Session, select

from adspend.core.config import settings
from adspend.core.exceptions import BillingError, CreditAccountNotFoundError, InsufficientCreditError
from adspend.core.logging_config import get_logger
from adspend.core.typing import col, ensure_aware, utc_now
from adspend.models.ad_spend import (
    AdSpendCredit,
    AdSpendTransaction,
    CreditStatus,
    PaymentStatus,
    TransactionType,
)

logger = get_logger(__name__)

CENT = Decimal("0.01")
ZERO = Decimal("0.00")
AVERAGE_WINDOW_DAYS = 7

# Reported when there is no recent spend to project from
NO_SPEND_DAYS_REMAINING = 999.0

Amount = Union[Decimal, int, float, str]


def to_money(value: Amount) -> Decimal:
    """Quantise to cents. Floats go through str() to avoid binary artefacts."""
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


class AdSpendCreditLedger:
    def __init__(
        self,
        session: Session,
        credit: AdSpendCredit,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.session = session
        self.credit = credit
        self.clock = clock

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def for_customer(
        cls,
        session: Session,
        customer_id: int,
        clock: Callable[[], datetime] = utc_now,
    ) -> "AdSpendCreditLedger":
        credit = session.exec(select(AdSpendCredit).where(col(AdSpendCredit.customer_id) == customer_id)).first()
        if credit is None:
            raise CreditAccountNotFoundError(customer_id)
        return cls(session, credit, clock=clock)

    @classmethod
    def open_account(
        cls,
        session: Session,
        customer_id: int,
        initial_amount: Amount,
        description: str = "Initial ad spend credit",
        charge_reference: Optional[str] = None,
        payment_method_id: Optional[str] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> "AdSpendCreditLedger":
        """Create the account and record the opening CREDIT in one commit."""
        amount = to_money(initial_amount)
        now = clock()
        credit = AdSpendCredit(
            customer_id=customer_id,
            initial_credit_amount=amount,
            current_balance=ZERO,
            status=CreditStatus.ACTIVE,
            payment_status=PaymentStatus.CURRENT,
            last_successful_charge_at=now if charge_reference else None,
            payment_method_id=payment_method_id,
            created_at=now,
            updated_at=now,
        )
        session.add(credit)
        session.flush()

        ledger = cls(session, credit, clock=clock)
        ledger._append(TransactionType.CREDIT, amount, description, charge_reference=charge_reference)

        logger.info("credit_account_opened", customer_id=customer_id, initial_credit=str(amount))
        return ledger

    @staticmethod
    def calculate_initial_credit(daily_budget: Amount, days: int = 7) -> Decimal:
        """Prepaid amount for `days` of spend at `daily_budget`."""
        return to_money(to_money(daily_budget) * days)

    # ------------------------------------------------------------------
    # Balance mutations
    # ------------------------------------------------------------------

    @property
    def customer_id(self) -> int:
        return self.credit.customer_id

    @property
    def balance(self) -> Decimal:
        return to_money(self.credit.current_balance)

    def deduct(
        self,
        amount: Amount,
        description: str,
        campaign_id: Optional[str] = None,
        allow_overdraw: bool = True,
    ) -> AdSpendTransaction:
        """
        Record spend against the balance.

        The balance may go negative; callers that must not overdraw pass
        allow_overdraw=False and get InsufficientCreditError instead.
        """
        amount = self._positive(amount)
        if not allow_overdraw and amount > self.balance:
            raise InsufficientCreditError(self.customer_id, required=amount, available=self.balance)
        return self._append(TransactionType.DEDUCTION, -amount, description, campaign_id=campaign_id)

    def add_credit(
        self,
        amount: Amount,
        description: str,
        charge_reference: Optional[str] = None,
    ) -> AdSpendTransaction:
        amount = self._positive(amount)
        return self._append(TransactionType.CREDIT, amount, description, charge_reference=charge_reference)

    def refund(
        self,
        amount: Amount,
        description: str,
        charge_reference: Optional[str] = None,
    ) -> AdSpendTransaction:
        """Money returned to the customer's card; reduces the balance."""
        amount = self._positive(amount)
        return self._append(TransactionType.REFUND, -amount, description, charge_reference=charge_reference)

    def adjust(self, amount: Amount, description: str) -> AdSpendTransaction:
        """Manual correction in either direction."""
        amount = to_money(amount)
        if amount == ZERO:
            raise ValueError("adjustment amount must be non-zero")
        return self._append(TransactionType.ADJUSTMENT, amount, description)

    def _positive(self, amount: Amount) -> Decimal:
        amount = to_money(amount)
        if amount <= ZERO:
            raise ValueError(f"amount must be positive, got {amount}")
        return amount

    def _append(
        self,
        tx_type: TransactionType,
        amount: Decimal,
        description: str,
        charge_reference: Optional[str] = None,
        campaign_id: Optional[str] = None,
    ) -> AdSpendTransaction:
        if self.credit.id is None:
            raise BillingError("Credit account has not been saved", self.customer_id)
        self._lock_credit()
        now = self.clock()
        new_balance = self.balance + amount

        transaction = AdSpendTransaction(
            credit_id=self.credit.id,
            type=tx_type,
            amount=amount,
            balance_after=new_balance,
            description=description,
            charge_reference=charge_reference,
            campaign_id=campaign_id,
            created_at=now,
        )
        self.session.add(transaction)

        self.credit.current_balance = new_balance
        self.credit.updated_at = now
        # Status depends on recent deductions, including this one
        self.session.flush()
        self._refresh_balance_status()

        self.session.add(self.credit)
        self.session.commit()
        self.session.refresh(self.credit)
        self.session.refresh(transaction)

        logger.debug(
            "ledger_transaction_recorded",
            customer_id=self.customer_id,
            type=tx_type.value,
            amount=str(amount),
            balance_after=str(new_balance),
        )
        return transaction

    def _lock_credit(self) -> None:
        """
        Lock the account row and reload it before computing a new balance.

        Another session (a manual top-up during the daily run) may have
        committed since this one loaded the account. FOR UPDATE holds the row
        until the commit in _append; SQLite has no row locks, there the
        reload alone keeps the chain intact.
        """
        stmt = (
            select(AdSpendCredit)
            .where(col(AdSpendCredit.id) == self.credit.id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        self.credit = self.session.exec(stmt).one()

    def _refresh_balance_status(self) -> None:
        if self.credit.status == CreditStatus.SUSPENDED:
            return
        if self.balance <= ZERO:
            self.credit.status = CreditStatus.DEPLETED
        elif self.days_remaining() < settings.LOW_BALANCE_DAYS:
            self.credit.status = CreditStatus.LOW_BALANCE
        else:
            self.credit.status = CreditStatus.ACTIVE

    # ------------------------------------------------------------------
    # Payment status transitions
    # ------------------------------------------------------------------

    def restore_account(self) -> None:
        """Back to CURRENT after a successful charge."""
        now = self.clock()
        self.credit.payment_status = PaymentStatus.CURRENT
        self.credit.failed_charge_count = 0
        self.credit.grace_period_ends_at = None
        self.credit.campaigns_paused_at = None
        self.credit.last_successful_charge_at = now
        self._save(now)

    def enter_grace_period(self, hours: int = 24) -> None:
        now = self.clock()
        self.credit.payment_status = PaymentStatus.GRACE_PERIOD
        self.credit.grace_period_ends_at = now + timedelta(hours=hours)
        self.credit.failed_charge_count += 1
        self._save(now)

    def mark_payment_failed(self) -> None:
        now = self.clock()
        self.credit.payment_status = PaymentStatus.FAILED
        self.credit.failed_charge_count += 1
        self._save(now)

    def mark_paused(self) -> None:
        now = self.clock()
        self.credit.payment_status = PaymentStatus.PAUSED
        self.credit.campaigns_paused_at = now
        self.credit.failed_charge_count += 1
        self._save(now)

    def set_payment_method(self, payment_method_id: Optional[str]) -> None:
        if payment_method_id and payment_method_id != self.credit.payment_method_id:
            self.credit.payment_method_id = payment_method_id
            self._save(self.clock())

    def _save(self, now: datetime) -> None:
        self.credit.updated_at = now
        self.session.add(self.credit)
        self.session.commit()
        self.session.refresh(self.credit)

    # ------------------------------------------------------------------
    # Projections
    # ------------------------------------------------------------------

    def average_daily_spend(self, window_days: int = AVERAGE_WINDOW_DAYS) -> Decimal:
        """Sum of deductions over the trailing window, divided by the window length."""
        since = self.clock() - timedelta(days=window_days)
        total = self.session.exec(
            select(func.coalesce(func.sum(AdSpendTransaction.amount), 0)).where(
                col(AdSpendTransaction.credit_id) == self.credit.id,
                col(AdSpendTransaction.type) == TransactionType.DEDUCTION,
                col(AdSpendTransaction.created_at) >= since,
            )
        ).one()
        return to_money(abs(Decimal(str(total))) / window_days)

    def days_remaining(self) -> float:
        average = self.average_daily_spend()
        if average <= ZERO:
            return NO_SPEND_DAYS_REMAINING
        return float(self.balance / average)

    def is_in_grace_period(self) -> bool:
        ends_at = ensure_aware(self.credit.grace_period_ends_at)
        return (
            self.credit.payment_status == PaymentStatus.GRACE_PERIOD
            and ends_at is not None
            and self.clock() < ends_at
        )

    def is_in_good_standing(self) -> bool:
        return (
            self.credit.payment_status in (PaymentStatus.CURRENT, PaymentStatus.GRACE_PERIOD)
            and self.credit.status != CreditStatus.SUSPENDED
        )

    def can_run_campaigns(self) -> bool:
        return self.is_in_good_standing() and self.balance > ZERO

    def budget_multiplier(self) -> float:
        """
        Recommended fraction of the normal daily budget.

        Paused or suspended accounts get nothing; otherwise the stricter of the
        payment escalation and the balance health wins.
        """
        if self.credit.payment_status == PaymentStatus.PAUSED or self.credit.status == CreditStatus.SUSPENDED:
            return 0.0
        if self.credit.payment_status == PaymentStatus.FAILED:
            return 0.25
        if self.is_in_grace_period():
            return 0.5
        if self.credit.status == CreditStatus.LOW_BALANCE:
            return 0.75
        return 1.0

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def transactions(self, limit: Optional[int] = None) -> List[AdSpendTransaction]:
        """Newest first."""
        statement = (
            select(AdSpendTransaction)
            .where(col(AdSpendTransaction.credit_id) == self.credit.id)
            .order_by(col(AdSpendTransaction.id).desc())
        )
        if limit is not None:
            statement = statement.limit(limit)
        return list(self.session.exec(statement).all())

    def replay_balance(self) -> Decimal:
        """Balance rebuilt by summing every transaction amount in order."""
        total = ZERO
        for transaction in reversed(self.transactions()):
            total += to_money(transaction.amount)
        return total

    def verify(self) -> bool:
        """
        Check the running-total chain and that it ends at current_balance.

        Logs the first broken link.
        """
        running = ZERO
        for transaction in reversed(self.transactions()):
            running += to_money(transaction.amount)
            if running != to_money(transaction.balance_after):
                logger.error(
                    "ledger_chain_broken",
                    customer_id=self.customer_id,
                    transaction_id=transaction.id,
                    expected=str(running),
                    recorded=str(transaction.balance_after),
                )
                return False

        if running != self.balance:
            logger.error(
                "ledger_balance_mismatch",
                customer_id=self.customer_id,
                replayed=str(running),
                current_balance=str(self.balance),
            )
            return False
        return True


__all__ = ["AdSpendCreditLedger", "to_money", "CENT"]
