"""
Execution context for log and error correlation.

Billing runs and API requests each carry a correlation id; the customer being
processed is tracked alongside it. Uses contextvars so concurrent asyncio
tasks (one per customer) never see each other's values.

Usage:
    set_correlation_id(generate_correlation_id("billing"))
    set_customer_id(customer_id)

    capture_exception(exc, context=get_context_dict())
"""

from contextvars import ContextVar
from typing import Optional
import uuid

import structlog

__all__ = [
    "generate_correlation_id",
    "set_correlation_id",
    "get_correlation_id",
    "set_customer_id",
    "get_customer_id",
    "clear_context",
    "get_context_dict",
]

_correlation_id: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)
_customer_id: ContextVar[Optional[int]] = ContextVar("customer_id", default=None)


def generate_correlation_id(prefix: str = "req") -> str:
    """
    Generate a new correlation ID.

    Format: {prefix}_{16 hex chars}
    Example: billing_a1b2c3d4e5f6a7b8
    """
    return f"{prefix}_{uuid.uuid4().hex[:16]}"


def set_correlation_id(correlation_id: str) -> None:
    """Set correlation ID for the current context and bind it to structlog."""
    _correlation_id.set(correlation_id)
    structlog.contextvars.bind_contextvars(correlation_id=correlation_id)


def get_correlation_id() -> Optional[str]:
    return _correlation_id.get()


def set_customer_id(customer_id: int) -> None:
    """Set the customer currently being processed."""
    _customer_id.set(customer_id)
    structlog.contextvars.bind_contextvars(customer_id=customer_id)


def get_customer_id() -> Optional[int]:
    return _customer_id.get()


def clear_context() -> None:
    _correlation_id.set(None)
    _customer_id.set(None)
    structlog.contextvars.clear_contextvars()


def get_context_dict() -> dict:
    """Return the non-empty context values, for log/error enrichment."""
    context = {}
    correlation_id = get_correlation_id()
    if correlation_id:
        context["correlation_id"] = correlation_id
    customer_id = get_customer_id()
    if customer_id is not None:
        context["customer_id"] = customer_id
    return context
