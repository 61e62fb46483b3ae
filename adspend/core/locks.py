"""
Per-customer locks for the daily billing job.

Acquisition never waits: if another worker holds the key the caller gets
LockUnavailableError and skips that customer, since the holder is already
billing it.

    async with lock_provider.acquire(billing_lock_key(customer_id)):
        await state_machine.process_daily_billing(customer_id)
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncContextManager, AsyncIterator, Dict, Optional, Protocol

from sqlalchemy import text
from sqlalchemy.engine import Engine

from adspend.core.exceptions import LockUnavailableError
from adspend.core.logging_config import get_logger

logger = get_logger(__name__)


def billing_lock_key(customer_id: int) -> str:
    return f"adspend_billing:{customer_id}"


class LockProvider(Protocol):
    def acquire(self, key: str) -> AsyncContextManager[None]: ...


class InProcessLockProvider:
    """asyncio locks keyed by name. Only protects a single process."""

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}

    @asynccontextmanager
    async def acquire(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        if lock.locked():
            raise LockUnavailableError(key)
        await lock.acquire()
        try:
            yield
        finally:
            lock.release()
            if not lock.locked():
                self._locks.pop(key, None)

    def is_locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()


class PostgresAdvisoryLockProvider:
    """
    Session-level advisory locks, shared by every worker on the database.

    Each acquisition holds a dedicated connection for the lifetime of the lock;
    the lock is released explicitly and, failing that, when the connection
    closes.
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    @asynccontextmanager
    async def acquire(self, key: str) -> AsyncIterator[None]:
        conn = self.engine.connect()
        try:
            acquired = conn.execute(text("SELECT pg_try_advisory_lock(hashtext(:key))"), {"key": key}).scalar()
            if not acquired:
                raise LockUnavailableError(key)
            try:
                yield
            finally:
                try:
                    conn.execute(text("SELECT pg_advisory_unlock(hashtext(:key))"), {"key": key})
                except Exception as e:
                    # Closing the connection below releases it anyway
                    logger.warning("advisory_unlock_failed", key=key, error=str(e))
        finally:
            conn.close()


_provider: Optional[LockProvider] = None


def get_lock_provider() -> LockProvider:
    """
    Process-wide provider: advisory locks on PostgreSQL, in-process locks otherwise.

    Shared by the daily job and the HTTP endpoints so both contend for the
    same per-customer keys.
    """
    global _provider
    if _provider is None:
        from adspend.db import IS_SQLITE, engine

        _provider = InProcessLockProvider() if IS_SQLITE else PostgresAdvisoryLockProvider(engine)
    return _provider


__all__ = [
    "LockProvider",
    "InProcessLockProvider",
    "PostgresAdvisoryLockProvider",
    "billing_lock_key",
    "get_lock_provider",
]
