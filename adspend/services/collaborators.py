"""
Interfaces to the systems the billing core drives but does not implement.

Ad platform clients, the payment provider and the mailer live in the
surrounding application; they are handed to BillingStateMachine as objects
satisfying these protocols. All methods are coroutines.

Collaborators signal failures by raising. Errors that should be classified by
the retry executor carry an HTTP-ish status (see ExternalCallError).
"""

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol

from adspend.models.ad_spend import AdSpendCredit


@dataclass
class ChargeResult:
    success: bool
    charge_id: Optional[str] = None
    payment_method_id: Optional[str] = None
    error: Optional[str] = None


@dataclass
class CampaignRef:
    """An active campaign as seen by billing."""

    campaign_id: str
    platform: str
    daily_budget: Decimal = Decimal("0")
    metadata: Dict[str, Any] = field(default_factory=dict)


class NotificationKind(str, Enum):
    PAYMENT_WARNING = "payment_warning"
    PAYMENT_FAILED = "payment_failed"
    CAMPAIGNS_PAUSED = "campaigns_paused"
    CAMPAIGNS_RESUMED = "campaigns_resumed"
    LOW_BALANCE = "low_balance"


class PaymentGateway(Protocol):
    async def charge(
        self,
        customer_id: int,
        amount: Decimal,
        description: str,
        idempotency_key: Optional[str] = None,
    ) -> ChargeResult:
        """
        Charge the customer's default payment method. Declines may raise PaymentFailureError.

        Repeated calls with the same idempotency_key must capture at most once
        (forward it as the provider's idempotency key).
        """
        ...


class SpendSource(Protocol):
    platform: str

    async def get_actual_spend(self, customer_id: int, start: date, end: date) -> Decimal:
        """Actual spend across the customer's campaigns on this platform, inclusive range."""
        ...


class CampaignControl(Protocol):
    async def list_active_campaigns(self, customer_id: int) -> List[CampaignRef]: ...

    async def pause_campaigns(self, customer_id: int, reason: str) -> None: ...

    async def resume_campaigns(self, customer_id: int) -> None: ...

    async def apply_budget_multiplier(self, customer_id: int, campaign_id: str, multiplier: float) -> None: ...

    async def average_daily_budget(self, customer_id: int) -> Optional[Decimal]:
        """Mean daily budget of active campaigns, None when there are none."""
        ...


class Notifier(Protocol):
    async def notify(
        self,
        kind: NotificationKind,
        customer_id: int,
        credit: AdSpendCredit,
        context: Dict[str, Any],
    ) -> None: ...


__all__ = [
    "CampaignControl",
    "CampaignRef",
    "ChargeResult",
    "NotificationKind",
    "Notifier",
    "PaymentGateway",
    "SpendSource",
]
