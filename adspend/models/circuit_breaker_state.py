"""
Circuit breaker state persistence model.

Stores breaker state in the shared database so every worker process sees the
same failure counter and cooldown. Rows are updated only through atomic
UPDATE statements (see DatabaseCircuitStateStore).
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlmodel import Field, SQLModel

from adspend.core.typing import utc_now


class CircuitState(str, Enum):
    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Failing, reject requests
    HALF_OPEN = "half_open"  # One trial call in flight


class CircuitBreakerState(SQLModel, table=True):
    """Persisted circuit breaker state."""

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(unique=True, index=True)  # Service key (e.g., "google_ads_fetch_spend")
    state: CircuitState = Field(default=CircuitState.CLOSED)
    failure_count: int = Field(default=0)
    opened_at: Optional[datetime] = Field(default=None)
    trial_started_at: Optional[datetime] = Field(default=None)
    updated_at: datetime = Field(default_factory=utc_now)


__all__ = ["CircuitBreakerState", "CircuitState"]
