"""
Ad Spend Credit Models

Prepaid ad spend accounts. When a customer creates their first campaign we
capture several days of estimated spend upfront; the daily billing run deducts
actual spend from this credit and charges the card when it runs short.

Usage:
    from adspend.models.ad_spend import AdSpendCredit, AdSpendTransaction, TransactionType

    credit = session.exec(select(AdSpendCredit).where(AdSpendCredit.customer_id == 42)).first()
    if credit.payment_status == PaymentStatus.PAUSED:
        ...
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import Index
from sqlmodel import Field, SQLModel

from adspend.core.typing import utc_now


class CreditStatus(str, Enum):
    """Balance health of the account."""

    ACTIVE = "active"
    LOW_BALANCE = "low_balance"
    DEPLETED = "depleted"
    SUSPENDED = "suspended"


class PaymentStatus(str, Enum):
    """Where the account sits in the payment-failure escalation."""

    CURRENT = "current"
    GRACE_PERIOD = "grace_period"
    FAILED = "failed"  # budgets reduced
    PAUSED = "paused"  # campaigns paused


class TransactionType(str, Enum):
    CREDIT = "credit"  # Money added to account
    DEDUCTION = "deduction"  # Daily ad spend charge
    REFUND = "refund"  # Refund to customer
    ADJUSTMENT = "adjustment"  # Manual adjustment


class AdSpendCredit(SQLModel, table=True):
    """
    One prepaid ad spend account per customer.

    `current_balance` may go negative when a day's spend could not be paid for;
    the debt is recovered by the next successful charge. Accounts are never
    deleted, only suspended.

    Attributes:
        customer_id: Owning customer (unique)
        initial_credit_amount: Amount captured when the account was opened
        current_balance: Running balance, always equal to the last transaction's balance_after
        status: Balance health (active, low_balance, depleted, suspended)
        payment_status: Escalation state (current, grace_period, failed, paused)
        failed_charge_count: Consecutive failed charges, reset on success
        grace_period_ends_at: End of the grace window after the first failure
        campaigns_paused_at: When campaigns were paused for non-payment
        last_successful_charge_at: Last time a charge went through
        payment_method_id: Payment method used for the last successful charge
    """

    id: Optional[int] = Field(default=None, primary_key=True)
    customer_id: int = Field(unique=True, index=True)

    initial_credit_amount: Decimal = Field(default=Decimal("0.00"), max_digits=12, decimal_places=2)
    current_balance: Decimal = Field(default=Decimal("0.00"), max_digits=12, decimal_places=2)
    currency: str = Field(default="USD", max_length=3)

    status: CreditStatus = Field(default=CreditStatus.ACTIVE, index=True)
    payment_status: PaymentStatus = Field(default=PaymentStatus.CURRENT, index=True)
    failed_charge_count: int = Field(default=0)

    grace_period_ends_at: Optional[datetime] = Field(default=None)
    campaigns_paused_at: Optional[datetime] = Field(default=None)
    last_successful_charge_at: Optional[datetime] = Field(default=None)

    payment_method_id: Optional[str] = Field(default=None)
    notes: Optional[str] = Field(default=None)

    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class AdSpendTransaction(SQLModel, table=True):
    """
    Append-only ledger entry.

    `amount` is signed (credits positive, deductions and refunds negative) and
    `balance_after` is the running total after this entry, so the balance can be
    rebuilt by replaying rows in id order.
    """

    id: Optional[int] = Field(default=None, primary_key=True)
    credit_id: int = Field(foreign_key="adspendcredit.id", index=True)
    type: TransactionType = Field(index=True)
    amount: Decimal = Field(max_digits=12, decimal_places=2)
    balance_after: Decimal = Field(max_digits=12, decimal_places=2)
    description: str = Field(default="")
    charge_reference: Optional[str] = Field(default=None)  # Payment provider charge id
    campaign_id: Optional[str] = Field(default=None)
    created_at: datetime = Field(default_factory=utc_now, index=True)

    __table_args__ = (
        # Trailing-window spend queries: credit + type + created_at
        Index("ix_adspendtransaction_window", "credit_id", "type", "created_at"),
    )


__all__ = [
    "AdSpendCredit",
    "AdSpendTransaction",
    "CreditStatus",
    "PaymentStatus",
    "TransactionType",
]
