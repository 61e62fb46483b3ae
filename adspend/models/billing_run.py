"""
Billing Run Model

Idempotency record for the daily billing job. One row per customer per billing
date; the unique idempotency key stops a second trigger of the job (manual
re-run, duplicate scheduler, crashed worker restart) from deducting the same
day's spend twice.
"""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlmodel import Field, SQLModel

from adspend.core.typing import utc_now


class BillingRunStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"  # may be claimed again


class BillingRun(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    customer_id: int = Field(index=True)
    billing_date: date = Field(index=True)
    idempotency_key: str = Field(unique=True, index=True)
    status: BillingRunStatus = Field(default=BillingRunStatus.IN_PROGRESS, index=True)
    attempts: int = Field(default=1)
    actual_spend: Decimal = Field(default=Decimal("0.00"), max_digits=12, decimal_places=2)
    action_taken: Optional[str] = None
    error: Optional[str] = None
    started_at: datetime = Field(default_factory=utc_now)
    completed_at: Optional[datetime] = None

    @staticmethod
    def make_key(customer_id: int, billing_date: date) -> str:
        return f"{customer_id}:{billing_date.isoformat()}"


__all__ = ["BillingRun", "BillingRunStatus"]
