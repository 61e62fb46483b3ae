"""
Billing notification emails via Resend.

One plain transactional email per escalation step:
- payment_warning    first failed charge, grace period started
- payment_failed     second failed charge, budgets reduced
- campaigns_paused   third failed charge, campaigns paused
- campaigns_resumed  recovery charge went through
- low_balance        auto-replenishment failed while credit is running out

Sending runs in a worker thread (the Resend SDK is synchronous). Delivery
errors propagate to the caller; the billing state machine captures them.
"""

import asyncio
from decimal import Decimal
from typing import Any, Callable, Dict, Optional, Tuple

import resend

from adspend.core.config import settings
from adspend.core.logging_config import get_logger
from adspend.models.ad_spend import AdSpendCredit
from adspend.services.collaborators import NotificationKind

logger = get_logger(__name__)

# Initialize Resend
resend.api_key = settings.RESEND_API_KEY

RecipientLookup = Callable[[int], Optional[str]]


def _money(value: Any) -> str:
    return f"${Decimal(value):,.2f}"


def render_billing_email(
    kind: NotificationKind,
    credit: AdSpendCredit,
    context: Dict[str, Any],
) -> Tuple[str, str]:
    """Subject and plain-text body for a billing notification."""
    balance = _money(credit.current_balance)
    error = context.get("error") or "the charge was declined"

    if kind == NotificationKind.PAYMENT_WARNING:
        ends = credit.grace_period_ends_at.strftime("%Y-%m-%d %H:%M UTC") if credit.grace_period_ends_at else "soon"
        return (
            "Action needed: ad spend payment failed",
            f"We could not charge your card for ad spend ({error}).\n\n"
            f"Your campaigns keep running until {ends}. Please update your payment "
            f"method before then to avoid reduced budgets.\n\nCurrent balance: {balance}",
        )

    if kind == NotificationKind.PAYMENT_FAILED:
        multiplier = int(settings.FAILED_BUDGET_MULTIPLIER * 100)
        return (
            "Ad spend payment failed again: budgets reduced",
            f"Your second ad spend charge failed ({error}).\n\n"
            f"Campaign budgets have been reduced to {multiplier}%. If the next charge "
            f"also fails, all campaigns will be paused.\n\nCurrent balance: {balance}",
        )

    if kind == NotificationKind.CAMPAIGNS_PAUSED:
        return (
            "Your campaigns have been paused",
            "We were unable to collect payment for your ad spend after several attempts, "
            "so your campaigns are paused.\n\n"
            f"Outstanding balance: {balance}. Campaigns resume automatically once a "
            "payment succeeds.",
        )

    if kind == NotificationKind.CAMPAIGNS_RESUMED:
        amount = context.get("amount")
        charged = f"We charged {_money(amount)} and " if amount else ""
        return (
            "Payment received: campaigns resumed",
            f"{charged}your campaigns are running again at full budget.\n\nCurrent balance: {balance}",
        )

    if kind == NotificationKind.LOW_BALANCE:
        days = context.get("days_remaining")
        remaining = f"about {days} days" if days is not None else "a few days"
        return (
            "Your ad spend credit is running low",
            f"Your ad spend credit covers {remaining} of spend and we could not top it up "
            f"automatically ({error}).\n\nCurrent balance: {balance}",
        )

    raise ValueError(f"Unknown notification kind: {kind}")


class EmailNotifier:
    """Notifier that emails the customer's billing contact."""

    def __init__(self, recipient_lookup: RecipientLookup, from_email: Optional[str] = None):
        self.recipient_lookup = recipient_lookup
        self.from_email = from_email or settings.FROM_EMAIL

    async def notify(
        self,
        kind: NotificationKind,
        customer_id: int,
        credit: AdSpendCredit,
        context: Dict[str, Any],
    ) -> None:
        if not settings.RESEND_API_KEY:
            logger.info("billing_email_skipped", kind=kind.value, customer_id=customer_id, reason="no_api_key")
            return

        to_email = self.recipient_lookup(customer_id)
        if not to_email:
            logger.warning("billing_email_skipped", kind=kind.value, customer_id=customer_id, reason="no_recipient")
            return

        subject, body = render_billing_email(kind, credit, context)
        await asyncio.to_thread(
            resend.Emails.send,
            {
                "from": self.from_email,
                "to": [to_email],
                "subject": subject,
                "text": body,
            },
        )
        logger.info("billing_email_sent", kind=kind.value, customer_id=customer_id)


__all__ = ["EmailNotifier", "render_billing_email"]
