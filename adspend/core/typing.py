"""
Type helpers for SQLModel queries and timestamps.

SQLModel fields are declared with Python types (e.g., `customer_id: int`) but at
the class level they're actually InstrumentedAttribute descriptors with
SQLAlchemy column methods like .desc(), .in_(), etc. `col()` bridges that gap
for type checkers.

SQLite drops tzinfo on round-trip, so datetimes read back from the database are
naive. `ensure_aware()` normalises them before comparing against `utc_now()`.
"""

from typing import TYPE_CHECKING, Optional, TypeVar
from datetime import datetime, timezone

if TYPE_CHECKING:
    from sqlalchemy.orm.attributes import InstrumentedAttribute

T = TypeVar("T")


def col(attr: T) -> "InstrumentedAttribute[T]":
    """
    Type helper for SQLAlchemy column operations in queries.

    Usage:
        select(AdSpendTransaction).order_by(col(AdSpendTransaction.id).desc())
    """
    return attr  # type: ignore[return-value]


def utc_now() -> datetime:
    """
    Get current UTC time (timezone-aware).

    Use as default_factory in SQLModel fields.
    """
    return datetime.now(timezone.utc)


def ensure_aware(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (as returned by SQLite)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


__all__ = ["col", "utc_now", "ensure_aware"]
