"""
Error reporting for the billing service.

Everything reported here goes to the structured log and, once init_sentry
has run with a DSN, to Sentry tagged with the customer being billed.

    capture_exception(exc, context={"customer_id": 42})
    capture_message("ad_spend_campaigns_paused", level="warning", context={"customer_id": 42})

    # Campaign control and notification calls must never abort a billing run
    with ErrorHandler("pause_campaigns", context={"customer_id": 42}):
        await campaign_control.pause_campaigns(42, reason)
"""

from typing import Any, Callable, Dict, List, Optional

import sentry_sdk

from adspend.core.context import get_context_dict, get_customer_id
from adspend.core.logging_config import get_logger

logger = get_logger(__name__)

__all__ = ["init_sentry", "capture_exception", "capture_message", "ErrorHandler"]

_sentry_enabled: bool = False


def init_sentry(dsn: str, environment: str = "production", traces_sample_rate: float = 0.1) -> bool:
    """
    Start Sentry for the API and the billing worker.

    Without a DSN reports are only logged. Returns whether Sentry is active.
    """
    global _sentry_enabled

    if not dsn:
        logger.info("sentry_disabled", reason="no DSN provided")
        return False

    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

    try:
        sentry_sdk.init(
            dsn=dsn,
            environment=environment,
            traces_sample_rate=traces_sample_rate,
            integrations=[FastApiIntegration(transaction_style="endpoint"), SqlalchemyIntegration()],
            ignore_errors=[KeyboardInterrupt, SystemExit],
            before_send=_before_send,
        )
    except Exception as e:
        logger.error("sentry_init_failed", error=str(e))
        return False

    _sentry_enabled = True
    logger.info("sentry_initialized", environment=environment)
    return True


def _before_send(event: Dict[str, Any], hint: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    # Health checks are polled constantly
    if "/health" in event.get("request", {}).get("url", ""):
        return None

    customer_id = get_customer_id()
    if customer_id is not None:
        event.setdefault("tags", {})["customer_id"] = str(customer_id)
    return event


def _send(
    send: Callable[[], Optional[str]],
    level: str,
    details: Dict[str, Any],
    fingerprint: Optional[List[str]] = None,
    tags: Optional[Dict[str, str]] = None,
) -> Optional[str]:
    if not _sentry_enabled:
        return None
    try:
        with sentry_sdk.new_scope() as scope:
            for key, value in details.items():
                if value is not None:
                    scope.set_extra(key, value)
            for key, value in (tags or {}).items():
                scope.set_tag(key, value)
            if fingerprint:
                scope.fingerprint = fingerprint
            scope.level = level
            return send()
    except Exception as e:
        logger.warning("sentry_capture_failed", error=str(e))
        return None


def capture_exception(
    exc: BaseException,
    context: Optional[Dict[str, Any]] = None,
    level: str = "error",
    fingerprint: Optional[List[str]] = None,
) -> Optional[str]:
    """
    Log `exc` with the correlation and customer context and report it.

    Args:
        exc: The exception
        context: Extra fields, e.g. {"customer_id": 42, "amount": "390.00"}
        level: Log and Sentry level
        fingerprint: Sentry grouping, e.g. ["payment_charge", "ExternalCallError"]

    Returns:
        Sentry event id, or None when Sentry is off
    """
    details = {**get_context_dict(), "error_type": type(exc).__name__, **(context or {})}
    getattr(logger, level, logger.error)("exception_captured", exc_info=exc, **details)
    return _send(lambda: sentry_sdk.capture_exception(exc), level, details, fingerprint=fingerprint)


def capture_message(
    message: str,
    level: str = "info",
    context: Optional[Dict[str, Any]] = None,
    tags: Optional[Dict[str, str]] = None,
) -> Optional[str]:
    """Report a billing event operators should see that is not an exception (breaker changes, paused campaigns)."""
    details = {**get_context_dict(), **(context or {})}
    getattr(logger, level, logger.info)(message, **details)
    return _send(lambda: sentry_sdk.capture_message(message, level=level), level, details, tags=tags)


class ErrorHandler:
    """
    Report and suppress the failure of a best-effort collaborator call.

    Any Exception raised in the block is captured at warning level, grouped
    under `operation`, and kept on `error`. Cancellation propagates.
    """

    def __init__(self, operation: str, context: Optional[Dict[str, Any]] = None):
        self.operation = operation
        self.context = context or {}
        self.error: Optional[Exception] = None

    def __enter__(self) -> "ErrorHandler":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        if not isinstance(exc_val, Exception):
            return False

        self.error = exc_val
        capture_exception(
            exc_val,
            context={"operation": self.operation, **self.context},
            level="warning",
            fingerprint=["billing_collaborator", self.operation, type(exc_val).__name__],
        )
        return True
