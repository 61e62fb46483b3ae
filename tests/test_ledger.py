"""
Tests for the ad spend credit ledger.

Tests cover:
- Opening accounts and the initial credit formula
- Every mutation appends one transaction with a consistent running balance
- Overdraw handling
- Balance status and budget multiplier projections
- Trailing-window average spend
"""

from decimal import Decimal

import pytest
from sqlmodel import Session

from adspend.core.exceptions import BillingError, CreditAccountNotFoundError, InsufficientCreditError
from adspend.models.ad_spend import AdSpendCredit, CreditStatus, PaymentStatus, TransactionType
from adspend.services.ledger import NO_SPEND_DAYS_REMAINING, AdSpendCreditLedger, to_money


class TestMoney:
    def test_rounds_half_up_to_cents(self):
        assert to_money("10.005") == Decimal("10.01")
        assert to_money("10.004") == Decimal("10.00")

    def test_floats_use_decimal_representation(self):
        assert to_money(0.1 + 0.2) == Decimal("0.30")

    def test_initial_credit(self):
        assert AdSpendCreditLedger.calculate_initial_credit(Decimal("50"), 7) == Decimal("350.00")
        assert AdSpendCreditLedger.calculate_initial_credit("12.345", 3) == Decimal("37.05")


class TestOpenAccount:
    def test_opening_credit_is_recorded(self, open_account):
        ledger = open_account(customer_id=7, balance="350.00")

        assert ledger.balance == Decimal("350.00")
        assert ledger.credit.initial_credit_amount == Decimal("350.00")
        assert ledger.credit.status == CreditStatus.ACTIVE
        assert ledger.credit.payment_status == PaymentStatus.CURRENT
        assert ledger.credit.last_successful_charge_at is not None

        [opening] = ledger.transactions()
        assert opening.type == TransactionType.CREDIT
        assert opening.balance_after == Decimal("350.00")
        assert opening.charge_reference == "ch_initial"

    def test_for_customer(self, test_session, open_account):
        open_account(customer_id=3)

        ledger = AdSpendCreditLedger.for_customer(test_session, 3)

        assert ledger.balance == Decimal("100.00")

    def test_for_customer_missing(self, test_session):
        with pytest.raises(CreditAccountNotFoundError):
            AdSpendCreditLedger.for_customer(test_session, 999)


class TestMutations:
    """Each mutation appends exactly one transaction."""

    def test_deduct(self, open_account):
        ledger = open_account(balance="100.00")

        tx = ledger.deduct(Decimal("30.50"), "Daily ad spend - 2024-03-14", campaign_id="cmp_1")

        assert tx.type == TransactionType.DEDUCTION
        assert tx.amount == Decimal("-30.50")
        assert tx.balance_after == Decimal("69.50")
        assert tx.campaign_id == "cmp_1"
        assert ledger.balance == Decimal("69.50")

    def test_deduct_may_overdraw(self, open_account):
        ledger = open_account(balance="10.00")

        ledger.deduct(Decimal("25.00"), "Daily ad spend")

        assert ledger.balance == Decimal("-15.00")
        assert ledger.credit.status == CreditStatus.DEPLETED

    def test_deduct_without_overdraw(self, open_account):
        ledger = open_account(balance="10.00")

        with pytest.raises(InsufficientCreditError) as exc_info:
            ledger.deduct(Decimal("25.00"), "Daily ad spend", allow_overdraw=False)

        assert exc_info.value.shortfall == Decimal("15.00")
        assert ledger.balance == Decimal("10.00")
        assert len(ledger.transactions()) == 1

    @pytest.mark.parametrize("amount", ["0", "-5"])
    def test_non_positive_amounts_rejected(self, open_account, amount):
        ledger = open_account()

        with pytest.raises(ValueError):
            ledger.deduct(Decimal(amount), "bad")
        with pytest.raises(ValueError):
            ledger.add_credit(Decimal(amount), "bad")

    def test_refund_and_adjust(self, open_account):
        ledger = open_account(balance="100.00")

        ledger.refund(Decimal("20.00"), "Refund to card", charge_reference="re_1")
        ledger.adjust(Decimal("-5.00"), "Correction")
        ledger.adjust(Decimal("2.50"), "Goodwill")

        assert ledger.balance == Decimal("77.50")
        types = [tx.type for tx in ledger.transactions()]
        assert types == [
            TransactionType.ADJUSTMENT,
            TransactionType.ADJUSTMENT,
            TransactionType.REFUND,
            TransactionType.CREDIT,
        ]

    def test_zero_adjustment_rejected(self, open_account):
        with pytest.raises(ValueError):
            open_account().adjust(Decimal("0"), "noop")

    def test_history_replays_to_balance(self, open_account):
        ledger = open_account(balance="100.00")
        ledger.deduct(Decimal("40.00"), "spend")
        ledger.deduct(Decimal("75.25"), "spend")
        ledger.add_credit(Decimal("390.00"), "replenish", charge_reference="ch_2")
        ledger.refund(Decimal("10.00"), "refund")

        assert ledger.replay_balance() == ledger.balance == Decimal("364.75")
        assert ledger.verify() is True

    def test_verify_detects_tampering(self, test_session, open_account):
        ledger = open_account(balance="100.00")
        ledger.deduct(Decimal("40.00"), "spend")

        ledger.credit.current_balance = Decimal("500.00")
        test_session.add(ledger.credit)
        test_session.commit()

        assert ledger.verify() is False

    def test_transactions_newest_first_with_limit(self, open_account):
        ledger = open_account()
        ledger.deduct(Decimal("1.00"), "first")
        ledger.deduct(Decimal("2.00"), "second")

        latest = ledger.transactions(limit=1)

        assert [tx.description for tx in latest] == ["second"]


class TestProjections:
    def test_average_daily_spend(self, open_account):
        ledger = open_account(balance="500.00")
        ledger.deduct(Decimal("70.00"), "spend")
        ledger.deduct(Decimal("35.00"), "spend")

        assert ledger.average_daily_spend() == Decimal("15.00")
        assert ledger.days_remaining() == pytest.approx(395 / 15)

    def test_old_deductions_fall_out_of_window(self, open_account, clock):
        ledger = open_account(balance="500.00")
        ledger.deduct(Decimal("70.00"), "spend")

        clock.advance(days=8)

        assert ledger.average_daily_spend() == Decimal("0.00")
        assert ledger.days_remaining() == NO_SPEND_DAYS_REMAINING

    def test_low_balance_status(self, open_account):
        ledger = open_account(balance="100.00")

        ledger.deduct(Decimal("90.00"), "spend")

        assert ledger.credit.status == CreditStatus.LOW_BALANCE
        assert ledger.budget_multiplier() == 0.75

    def test_status_recovers_after_credit(self, open_account):
        ledger = open_account(balance="100.00")
        ledger.deduct(Decimal("120.00"), "spend")
        assert ledger.credit.status == CreditStatus.DEPLETED

        ledger.add_credit(Decimal("500.00"), "top-up")

        assert ledger.credit.status == CreditStatus.ACTIVE

    def test_suspended_is_sticky(self, test_session, open_account):
        ledger = open_account(balance="100.00")
        ledger.credit.status = CreditStatus.SUSPENDED
        test_session.add(ledger.credit)
        test_session.commit()

        ledger.add_credit(Decimal("50.00"), "top-up")

        assert ledger.credit.status == CreditStatus.SUSPENDED
        assert ledger.budget_multiplier() == 0.0
        assert ledger.can_run_campaigns() is False


class TestPaymentStatus:
    def test_grace_period(self, open_account, clock):
        ledger = open_account()

        ledger.enter_grace_period(hours=24)

        assert ledger.credit.payment_status == PaymentStatus.GRACE_PERIOD
        assert ledger.credit.failed_charge_count == 1
        assert ledger.is_in_grace_period() is True
        assert ledger.is_in_good_standing() is True
        assert ledger.budget_multiplier() == 0.5

        clock.advance(hours=25)
        assert ledger.is_in_grace_period() is False

    def test_failed_and_paused(self, open_account):
        ledger = open_account()
        ledger.enter_grace_period()

        ledger.mark_payment_failed()
        assert ledger.credit.payment_status == PaymentStatus.FAILED
        assert ledger.budget_multiplier() == 0.25
        assert ledger.is_in_good_standing() is False

        ledger.mark_paused()
        assert ledger.credit.payment_status == PaymentStatus.PAUSED
        assert ledger.credit.failed_charge_count == 3
        assert ledger.credit.campaigns_paused_at is not None
        assert ledger.budget_multiplier() == 0.0

    def test_restore_account(self, open_account):
        ledger = open_account()
        ledger.enter_grace_period()
        ledger.mark_payment_failed()
        ledger.mark_paused()

        ledger.restore_account()

        assert ledger.credit.payment_status == PaymentStatus.CURRENT
        assert ledger.credit.failed_charge_count == 0
        assert ledger.credit.grace_period_ends_at is None
        assert ledger.credit.campaigns_paused_at is None
        assert ledger.can_run_campaigns() is True

    def test_set_payment_method(self, open_account):
        ledger = open_account()

        ledger.set_payment_method("pm_new")
        ledger.set_payment_method(None)

        assert ledger.credit.payment_method_id == "pm_new"


class TestConcurrentSessions:
    def test_writer_sees_balance_committed_by_another_session(self, test_engine, open_account):
        """A manual top-up landing mid daily run must chain onto the deduction."""
        open_account(customer_id=1, balance="500.00")

        with Session(test_engine) as daily_session, Session(test_engine) as api_session:
            daily = AdSpendCreditLedger.for_customer(daily_session, 1)
            manual = AdSpendCreditLedger.for_customer(api_session, 1)

            daily.deduct(Decimal("50.00"), "Daily ad spend - 2024-03-14")
            manual.add_credit(Decimal("100.00"), "Manual credit top-up", charge_reference="ch_2")

            assert manual.balance == Decimal("550.00")
            assert manual.replay_balance() == Decimal("550.00")
            assert manual.verify() is True

            top_up, deduction, _ = manual.transactions()
            assert deduction.balance_after == Decimal("450.00")
            assert top_up.balance_after == Decimal("550.00")

    def test_unsaved_account_rejected(self, test_session):
        ledger = AdSpendCreditLedger(test_session, AdSpendCredit(customer_id=9))

        with pytest.raises(BillingError):
            ledger.add_credit(Decimal("10.00"), "top-up")
