"""
Per-service circuit breaker backed by a shared state store.

Three states:
    CLOSED     calls pass through normally.
    OPEN       calls fast-fail without hitting the service.
    HALF_OPEN  exactly one trial call is allowed to test recovery.

Transitions:
    CLOSED    -> OPEN       when failure_count >= max_failures.
    OPEN      -> HALF_OPEN  implicitly, on the first availability check after
                            retry_timeout elapses (that caller gets the trial).
    HALF_OPEN -> CLOSED     on success.
    HALF_OPEN -> OPEN       on failure (cooldown restarts).

The breaker keeps no state of its own: counters live in a CircuitStateStore,
which guarantees atomic increment and compare-and-swap so several workers (or
several processes, with the database store) can share one breaker safely.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from threading import Lock
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

from sqlalchemy import and_, or_, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from adspend.core.config import settings
from adspend.core.logging_config import get_logger
from adspend.core.typing import col, ensure_aware, utc_now
from adspend.models.circuit_breaker_state import CircuitBreakerState, CircuitState

logger = get_logger(__name__)

# Type alias for notification callback - return value is ignored
StateChangeCallback = Callable[[str, str, str], Any]  # (name, old_state, new_state)

# Global notification callback - set by application on startup
_notification_callback: Optional[StateChangeCallback] = None


def set_notification_callback(callback: Optional[StateChangeCallback]) -> None:
    """Set the global notification callback for circuit breaker state changes."""
    global _notification_callback
    _notification_callback = callback


def _notify_state_change(name: str, old_state: CircuitState, new_state: CircuitState) -> None:
    if _notification_callback:
        try:
            _notification_callback(name, old_state.value, new_state.value)
        except Exception as e:
            logger.error("circuit_breaker_notification_failed", breaker=name, error=str(e))


@dataclass
class CircuitSnapshot:
    name: str
    state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    opened_at: Optional[datetime] = None
    trial_started_at: Optional[datetime] = None


class CircuitStateStore(Protocol):
    """Key-value store for breaker state with atomic update semantics."""

    def get(self, name: str) -> Optional[CircuitSnapshot]: ...

    def increment_failures(self, name: str, now: datetime) -> int:
        """Atomically add one failure and return the new count."""
        ...

    def open(self, name: str, now: datetime) -> Optional[CircuitState]:
        """Move to OPEN stamped at `now`; return the previous state."""
        ...

    def try_begin_trial(self, name: str, now: datetime, cutoff: datetime) -> bool:
        """
        Compare-and-swap into HALF_OPEN.

        Succeeds when the breaker is OPEN with opened_at <= cutoff, or HALF_OPEN
        with an abandoned trial (trial_started_at <= cutoff).
        """
        ...

    def reset(self, name: str) -> Optional[CircuitState]:
        """Move to CLOSED with zero failures; return the previous state."""
        ...

    def all(self) -> List[CircuitSnapshot]: ...


class InMemoryCircuitStateStore:
    """Process-local store. One lock guards the whole map."""

    def __init__(self) -> None:
        self._states: Dict[str, CircuitSnapshot] = {}
        self._lock = Lock()

    def _row(self, name: str) -> CircuitSnapshot:
        # Must be called while holding self._lock
        row = self._states.get(name)
        if row is None:
            row = CircuitSnapshot(name=name)
            self._states[name] = row
        return row

    def get(self, name: str) -> Optional[CircuitSnapshot]:
        with self._lock:
            row = self._states.get(name)
            if row is None:
                return None
            return CircuitSnapshot(**vars(row))

    def increment_failures(self, name: str, now: datetime) -> int:
        with self._lock:
            row = self._row(name)
            row.failure_count += 1
            return row.failure_count

    def open(self, name: str, now: datetime) -> Optional[CircuitState]:
        with self._lock:
            row = self._row(name)
            previous = row.state
            row.state = CircuitState.OPEN
            row.opened_at = now
            row.trial_started_at = None
            return previous

    def try_begin_trial(self, name: str, now: datetime, cutoff: datetime) -> bool:
        with self._lock:
            row = self._states.get(name)
            if row is None:
                return False
            expired_open = row.state == CircuitState.OPEN and row.opened_at is not None and row.opened_at <= cutoff
            abandoned_trial = (
                row.state == CircuitState.HALF_OPEN
                and row.trial_started_at is not None
                and row.trial_started_at <= cutoff
            )
            if not (expired_open or abandoned_trial):
                return False
            row.state = CircuitState.HALF_OPEN
            row.trial_started_at = now
            return True

    def reset(self, name: str) -> Optional[CircuitState]:
        with self._lock:
            row = self._states.get(name)
            if row is None:
                return None
            previous = row.state
            row.state = CircuitState.CLOSED
            row.failure_count = 0
            row.opened_at = None
            row.trial_started_at = None
            return previous

    def all(self) -> List[CircuitSnapshot]:
        with self._lock:
            return [CircuitSnapshot(**vars(row)) for row in self._states.values()]

    def clear(self) -> None:
        with self._lock:
            self._states.clear()


class DatabaseCircuitStateStore:
    """
    Store shared by every worker process through the application database.

    Every mutation is a single UPDATE evaluated by the database, so concurrent
    workers never lose increments or both win the half-open trial.
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def _ensure_row(self, name: str) -> None:
        with Session(self.engine) as session:
            exists = session.exec(select(CircuitBreakerState.id).where(col(CircuitBreakerState.name) == name)).first()
            if exists is not None:
                return
            session.add(CircuitBreakerState(name=name))
            try:
                session.commit()
            except IntegrityError:
                # Another worker created it first
                session.rollback()

    @staticmethod
    def _to_snapshot(row: CircuitBreakerState) -> CircuitSnapshot:
        return CircuitSnapshot(
            name=row.name,
            state=CircuitState(row.state),
            failure_count=row.failure_count,
            opened_at=ensure_aware(row.opened_at),
            trial_started_at=ensure_aware(row.trial_started_at),
        )

    def get(self, name: str) -> Optional[CircuitSnapshot]:
        with Session(self.engine) as session:
            row = session.exec(select(CircuitBreakerState).where(col(CircuitBreakerState.name) == name)).first()
            return self._to_snapshot(row) if row else None

    def increment_failures(self, name: str, now: datetime) -> int:
        self._ensure_row(name)
        stmt = (
            update(CircuitBreakerState)
            .where(col(CircuitBreakerState.name) == name)
            .values(failure_count=col(CircuitBreakerState.failure_count) + 1, updated_at=now)
            .returning(col(CircuitBreakerState.failure_count))
        )
        with self.engine.begin() as conn:
            return int(conn.execute(stmt).scalar_one())

    def open(self, name: str, now: datetime) -> Optional[CircuitState]:
        self._ensure_row(name)
        name_matches = col(CircuitBreakerState.name) == name
        with self.engine.begin() as conn:
            previous = conn.execute(select(CircuitBreakerState.state).where(name_matches)).scalar_one_or_none()
            conn.execute(
                update(CircuitBreakerState)
                .where(name_matches)
                .values(state=CircuitState.OPEN, opened_at=now, trial_started_at=None, updated_at=now)
            )
        return CircuitState(previous) if previous is not None else None

    def try_begin_trial(self, name: str, now: datetime, cutoff: datetime) -> bool:
        stmt = (
            update(CircuitBreakerState)
            .where(
                col(CircuitBreakerState.name) == name,
                or_(
                    and_(
                        col(CircuitBreakerState.state) == CircuitState.OPEN,
                        col(CircuitBreakerState.opened_at) <= cutoff,
                    ),
                    and_(
                        col(CircuitBreakerState.state) == CircuitState.HALF_OPEN,
                        col(CircuitBreakerState.trial_started_at) <= cutoff,
                    ),
                ),
            )
            .values(state=CircuitState.HALF_OPEN, trial_started_at=now, updated_at=now)
        )
        with self.engine.begin() as conn:
            return conn.execute(stmt).rowcount == 1

    def reset(self, name: str) -> Optional[CircuitState]:
        with self.engine.begin() as conn:
            previous = conn.execute(
                select(CircuitBreakerState.state).where(col(CircuitBreakerState.name) == name)
            ).scalar_one_or_none()
            if previous is None:
                return None
            conn.execute(
                update(CircuitBreakerState)
                .where(col(CircuitBreakerState.name) == name)
                .values(
                    state=CircuitState.CLOSED,
                    failure_count=0,
                    opened_at=None,
                    trial_started_at=None,
                    updated_at=utc_now(),
                )
            )
            return CircuitState(previous)

    def all(self) -> List[CircuitSnapshot]:
        with Session(self.engine) as session:
            return [self._to_snapshot(row) for row in session.exec(select(CircuitBreakerState)).all()]


class CircuitBreaker:
    """
    Breaker policy over a state store, keyed by service name.

    Store failures never escape: availability checks fail open and recording
    calls are dropped with a warning, so a database hiccup cannot take down
    the operations the breaker protects.
    """

    def __init__(
        self,
        store: Optional[CircuitStateStore] = None,
        max_failures: int = 5,
        retry_timeout: float = 300.0,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store: CircuitStateStore = store if store is not None else InMemoryCircuitStateStore()
        self.max_failures = max_failures
        self.retry_timeout = retry_timeout
        self.clock = clock

    def is_available(self, service_name: str) -> bool:
        """
        Whether a call to `service_name` may proceed.

        In OPEN state after the cooldown, exactly one caller wins the
        transition to HALF_OPEN and is allowed through; the rest are refused
        until that trial reports back (or is itself abandoned for a full
        cooldown).
        """
        try:
            snapshot = self.store.get(service_name)
            if snapshot is None or snapshot.state == CircuitState.CLOSED:
                return True

            now = self.clock()
            cutoff = now - timedelta(seconds=self.retry_timeout)
            if self.store.try_begin_trial(service_name, now, cutoff):
                logger.info(
                    "circuit_breaker_half_open",
                    breaker=service_name,
                    previous_state=snapshot.state.value,
                )
                if snapshot.state != CircuitState.HALF_OPEN:
                    _notify_state_change(service_name, snapshot.state, CircuitState.HALF_OPEN)
                return True
            return False
        except Exception as e:
            logger.warning("circuit_breaker_store_failed", breaker=service_name, op="is_available", error=str(e))
            return True

    def record_success(self, service_name: str) -> None:
        try:
            previous = self.store.reset(service_name)
        except Exception as e:
            logger.warning("circuit_breaker_store_failed", breaker=service_name, op="record_success", error=str(e))
            return

        if previous is not None and previous != CircuitState.CLOSED:
            logger.info("circuit_breaker_closed", breaker=service_name, previous_state=previous.value)
            _notify_state_change(service_name, previous, CircuitState.CLOSED)

    def record_failure(self, service_name: str) -> None:
        now = self.clock()
        try:
            count = self.store.increment_failures(service_name, now)
            snapshot = self.store.get(service_name)
            trial_failed = snapshot is not None and snapshot.state == CircuitState.HALF_OPEN
            if not trial_failed and count < self.max_failures:
                logger.debug("circuit_breaker_failure", breaker=service_name, failure_count=count)
                return
            previous = self.store.open(service_name, now)
        except Exception as e:
            logger.warning("circuit_breaker_store_failed", breaker=service_name, op="record_failure", error=str(e))
            return

        if previous != CircuitState.OPEN:
            logger.warning(
                "circuit_breaker_opened",
                breaker=service_name,
                failure_count=count,
                previous_state=previous.value if previous else CircuitState.CLOSED.value,
                retry_timeout=self.retry_timeout,
            )
            _notify_state_change(service_name, previous or CircuitState.CLOSED, CircuitState.OPEN)

    def snapshot(self, service_name: str) -> CircuitSnapshot:
        return self.store.get(service_name) or CircuitSnapshot(name=service_name)

    def get_state(self, service_name: str) -> CircuitState:
        return self.snapshot(service_name).state

    def get_stats(self, service_name: str) -> Dict[str, Any]:
        return self._stats(self.snapshot(service_name))

    def _stats(self, snapshot: CircuitSnapshot) -> Dict[str, Any]:
        return {
            "name": snapshot.name,
            "state": snapshot.state.value,
            "failure_count": snapshot.failure_count,
            "max_failures": self.max_failures,
            "opened_at": snapshot.opened_at.isoformat() if snapshot.opened_at else None,
            "trial_started_at": snapshot.trial_started_at.isoformat() if snapshot.trial_started_at else None,
            "retry_timeout": self.retry_timeout,
        }

    def get_all_stats(self) -> Dict[str, Dict[str, Any]]:
        return {snapshot.name: self._stats(snapshot) for snapshot in self.store.all()}


class CircuitBreakerRegistry:
    """
    Process-wide breakers, one per (max_failures, retry_timeout) pair, all
    sharing the configured store.
    """

    _store: Optional[CircuitStateStore] = None
    _breakers: Dict[Tuple[int, float], CircuitBreaker] = {}
    _lock = Lock()

    @classmethod
    def configure(cls, store: Optional[CircuitStateStore]) -> None:
        """Swap the shared store. Existing breakers are discarded."""
        with cls._lock:
            cls._store = store
            cls._breakers.clear()

    @classmethod
    def get_store(cls) -> CircuitStateStore:
        with cls._lock:
            if cls._store is None:
                cls._store = _store_from_settings()
            return cls._store

    @classmethod
    def get(cls, max_failures: Optional[int] = None, retry_timeout: Optional[float] = None) -> CircuitBreaker:
        store = cls.get_store()
        key = (
            max_failures if max_failures is not None else settings.CIRCUIT_BREAKER_MAX_FAILURES,
            retry_timeout if retry_timeout is not None else settings.CIRCUIT_BREAKER_RETRY_TIMEOUT,
        )
        with cls._lock:
            if key not in cls._breakers:
                cls._breakers[key] = CircuitBreaker(store=store, max_failures=key[0], retry_timeout=key[1])
            return cls._breakers[key]

    @classmethod
    def get_all_states(cls) -> Dict[str, Dict[str, Any]]:
        return cls.get().get_all_stats()

    @classmethod
    def reset(cls, service_name: str) -> None:
        cls.get().record_success(service_name)


def _store_from_settings() -> CircuitStateStore:
    if settings.CIRCUIT_BREAKER_BACKEND == "database":
        from adspend.db import engine

        return DatabaseCircuitStateStore(engine)
    return InMemoryCircuitStateStore()


def circuit_key(operation_name: str, platform: Optional[str] = None) -> str:
    """Breaker key for an operation, e.g. "google_ads_fetch_spend"."""
    return f"{platform}_{operation_name}" if platform else operation_name


__all__ = [
    "CircuitBreaker",
    "CircuitBreakerRegistry",
    "CircuitSnapshot",
    "CircuitStateStore",
    "DatabaseCircuitStateStore",
    "InMemoryCircuitStateStore",
    "circuit_key",
    "set_notification_callback",
]
