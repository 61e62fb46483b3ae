"""
Collaborator registration for the billing service.

The ad platform clients, payment provider and mailer belong to the host
application. It registers them once at startup; the scheduler, scripts and
HTTP endpoints then build state machines from the registration.

Usage:
    register_collaborators(BillingCollaborators(
        payment_gateway=StripeGateway(...),
        spend_sources=[GoogleAdsSpend(...), FacebookAdsSpend(...)],
        campaign_control=CampaignService(...),
        notifier=EmailNotifier(lookup_billing_email),
    ))
"""

import importlib
from dataclasses import dataclass, field
from typing import List, Optional

from sqlalchemy.engine import Engine
from sqlmodel import Session

from adspend.core.config import settings
from adspend.core.logging_config import get_logger
from adspend.core.retry import RetryableOperationExecutor
from adspend.services.billing import BillingStateMachine
from adspend.services.collaborators import CampaignControl, Notifier, PaymentGateway, SpendSource
from adspend.services.daily_billing import DailyBillingJob

logger = get_logger(__name__)


@dataclass
class BillingCollaborators:
    payment_gateway: PaymentGateway
    campaign_control: CampaignControl
    notifier: Notifier
    spend_sources: List[SpendSource] = field(default_factory=list)
    # Route charges and spend reads through retry + circuit breaker
    use_executor: bool = True


_collaborators: Optional[BillingCollaborators] = None


def register_collaborators(collaborators: Optional[BillingCollaborators]) -> None:
    global _collaborators
    _collaborators = collaborators


def get_collaborators() -> BillingCollaborators:
    if _collaborators is None:
        raise RuntimeError("Billing collaborators not registered; call register_collaborators() at startup")
    return _collaborators


def load_collaborators(path: Optional[str] = None) -> Optional[BillingCollaborators]:
    """
    Import and register the host application's collaborators.

    `path` (default BILLING_COLLABORATORS_FACTORY) is "package.module:factory";
    the factory takes no arguments and returns BillingCollaborators.
    """
    path = path or settings.BILLING_COLLABORATORS_FACTORY
    if not path:
        return None

    module_name, _, attr = path.partition(":")
    if not attr:
        raise ValueError(f"Collaborator factory must look like 'module:factory', got {path!r}")

    factory = getattr(importlib.import_module(module_name), attr)
    collaborators = factory()
    register_collaborators(collaborators)
    logger.info("billing_collaborators_loaded", factory=path)
    return collaborators


def build_state_machine(session: Session) -> BillingStateMachine:
    collaborators = get_collaborators()
    return BillingStateMachine(
        session,
        payment_gateway=collaborators.payment_gateway,
        spend_sources=collaborators.spend_sources,
        campaign_control=collaborators.campaign_control,
        notifier=collaborators.notifier,
        executor=RetryableOperationExecutor() if collaborators.use_executor else None,
    )


def build_daily_billing_job(engine: Optional[Engine] = None) -> DailyBillingJob:
    if engine is None:
        from adspend.db import engine
    return DailyBillingJob(engine, build_state_machine)


__all__ = [
    "BillingCollaborators",
    "build_daily_billing_job",
    "build_state_machine",
    "get_collaborators",
    "load_collaborators",
    "register_collaborators",
]
