"""
Retry executor for external calls (ad platforms, LLMs, payment provider).

Callers hold a RetryableOperationExecutor and delegate each external call to
it. One call of `execute()`:

    1. Refuses immediately with CircuitOpenError if the service's breaker is open.
    2. Runs the operation up to `policy.max_retries` times, sequentially.
    3. Fatal errors (auth, validation, policy, billing, duplicates) stop at once.
    4. Retryable errors (timeouts, 5xx, 429) back off with jitter and try again.
    5. Reports exactly one success or failure to the breaker per call.

The backoff sleep is the only suspension point; it is an `asyncio.sleep`, so
other customers and operations keep running on the same loop.

Usage:
    executor = RetryableOperationExecutor(platform="google_ads")
    spend = await executor.execute(
        lambda: client.fetch_spend(customer_id, day),
        "fetch_spend",
        context={"customer_id": customer_id},
    )
"""

from __future__ import annotations

import asyncio
import inspect
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Sequence, Union

from adspend.core.backoff import BackoffCalculator
from adspend.core.circuit_breaker import CircuitBreaker, CircuitBreakerRegistry, circuit_key
from adspend.core.config import settings
from adspend.core.exceptions import (
    CircuitOpenError,
    FatalOperationError,
    OperationError,
    OperationTimeoutError,
    RetriesExhaustedError,
)
from adspend.core.logging_config import get_logger

logger = get_logger(__name__)

Operation = Callable[[], Union[Any, Awaitable[Any]]]


class ErrorCategory(str, Enum):
    FATAL = "fatal"
    RETRYABLE = "retryable"


# Matched case-insensitively against the error message. Order is irrelevant.
FATAL_PATTERNS = (
    "invalid credentials",
    "authentication failed",
    "authorization failed",
    "unauthorized",
    "forbidden",
    "not found",
    "invalid parameter",
    "invalid argument",
    "invalid value",
    "policy violation",
    "billing",
    "budget constraint",
    "duplicate",
    "already exists",
    "permission denied",
)

# Client errors that are still worth retrying
RETRYABLE_CLIENT_STATUSES = (408, 429)

RATE_LIMIT_PATTERNS = ("rate limit", "quota exceeded", "too many requests")


def extract_status_code(error: BaseException) -> Optional[int]:
    """
    Best-effort HTTP status of an error.

    Checks `status_code`, then an integer `code`, then `response.status_code`
    (the shape httpx/requests errors use).
    """
    status = getattr(error, "status_code", None)
    if isinstance(status, int):
        return status

    code = getattr(error, "code", None)
    if isinstance(code, int) and not isinstance(code, bool):
        return code

    response = getattr(error, "response", None)
    status = getattr(response, "status_code", None)
    if isinstance(status, int):
        return status
    return None


def categorize_error(error: BaseException) -> ErrorCategory:
    message = str(error).lower()
    if any(pattern in message for pattern in FATAL_PATTERNS):
        return ErrorCategory.FATAL

    status = extract_status_code(error)
    if status is not None and 400 <= status < 500 and status not in RETRYABLE_CLIENT_STATUSES:
        return ErrorCategory.FATAL

    return ErrorCategory.RETRYABLE


def is_rate_limited(response: Any) -> bool:
    """
    Whether an API response (or error) signals rate limiting.

    Accepts a dict response of the form {"error": {"code": 429, "message": ...}}
    or an exception carrying a status code.
    """
    if isinstance(response, BaseException):
        if extract_status_code(response) == 429:
            return True
        message = str(response).lower()
        return any(pattern in message for pattern in RATE_LIMIT_PATTERNS)

    if not isinstance(response, dict):
        return False

    error = response.get("error")
    if not isinstance(error, dict):
        return False
    if error.get("code") == 429:
        return True
    message = str(error.get("message", "")).lower()
    return any(pattern in message for pattern in RATE_LIMIT_PATTERNS)


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    initial_delay_ms: int = 1000
    backoff_multiplier: float = 2.0
    max_delay_ms: int = 30000

    def __post_init__(self) -> None:
        if self.max_retries < 1:
            raise ValueError("max_retries must be >= 1")
        if self.initial_delay_ms < 0 or self.max_delay_ms < 0:
            raise ValueError("delays must be non-negative")
        if self.backoff_multiplier <= 0:
            raise ValueError("backoff_multiplier must be positive")

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            max_retries=settings.RETRY_MAX_RETRIES,
            initial_delay_ms=settings.RETRY_INITIAL_DELAY_MS,
            backoff_multiplier=settings.RETRY_BACKOFF_MULTIPLIER,
            max_delay_ms=settings.RETRY_MAX_DELAY_MS,
        )

    def with_overrides(self, **overrides: Any) -> "RetryPolicy":
        """Copy with per-call overrides; None values keep the current setting."""
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})


@dataclass
class BatchOperation:
    name: str
    operation: Operation
    context: Dict[str, Any] = field(default_factory=dict)
    policy: Optional[RetryPolicy] = None


@dataclass
class BatchResult:
    success: bool = True
    results: Dict[str, Any] = field(default_factory=dict)
    errors: Dict[str, OperationError] = field(default_factory=dict)


class RetryableOperationExecutor:
    def __init__(
        self,
        circuit_breaker: Optional[CircuitBreaker] = None,
        backoff: Optional[BackoffCalculator] = None,
        policy: Optional[RetryPolicy] = None,
        platform: Optional[str] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.circuit_breaker = circuit_breaker or CircuitBreakerRegistry.get()
        self.backoff = backoff or BackoffCalculator()
        self.policy = policy or RetryPolicy.from_settings()
        self.platform = platform
        self._sleep = sleep
        self._monotonic = monotonic

    async def execute(
        self,
        operation: Operation,
        operation_name: str,
        context: Optional[Dict[str, Any]] = None,
        policy: Optional[RetryPolicy] = None,
        deadline: Optional[float] = None,
    ) -> Any:
        """
        Run `operation` with retry and circuit breaking.

        Args:
            operation: Zero-argument callable returning a value or an awaitable
            operation_name: Name used for logs and the breaker key
            context: Extra key-values attached to logs and raised errors
            policy: Overrides the executor's default policy for this call
            deadline: Absolute time.monotonic() value the call must finish by

        Raises:
            CircuitOpenError: breaker open, operation not invoked
            FatalOperationError: non-retryable failure on any attempt
            RetriesExhaustedError: every attempt failed with a retryable error
            OperationTimeoutError: deadline reached before the budget was used
        """
        policy = policy or self.policy
        service = circuit_key(operation_name, self.platform)
        error_context = {"service": service, **(context or {})}
        log = logger.bind(**error_context).bind(operation=operation_name)

        # Checked before the breaker so an expired call never takes the half-open trial
        if deadline is not None and self._monotonic() >= deadline:
            raise self._timeout_error(service, operation_name, 0, None, error_context, log)

        if not self.circuit_breaker.is_available(service):
            log.warning("operation_circuit_open")
            raise CircuitOpenError(service, context=error_context)

        last_error: Optional[BaseException] = None
        attempt = 0
        while attempt < policy.max_retries:
            if attempt > 0 and deadline is not None and self._monotonic() >= deadline:
                raise self._timeout_error(service, operation_name, attempt, last_error, error_context, log) from last_error

            attempt += 1
            log.debug("operation_attempt", attempt=attempt, max_retries=policy.max_retries)
            try:
                result = operation()
                if inspect.isawaitable(result):
                    result = await result
            except Exception as e:
                last_error = e
                category = categorize_error(e)

                if category is ErrorCategory.FATAL:
                    self.circuit_breaker.record_failure(service)
                    log.error("operation_fatal_error", attempt=attempt, error=str(e), error_type=type(e).__name__)
                    raise FatalOperationError(
                        f"Operation {operation_name} failed with non-retryable error: {e}",
                        operation_name=operation_name,
                        attempts=attempt,
                        last_error=e,
                        context=error_context,
                    ) from e

                log.warning("operation_attempt_failed", attempt=attempt, error=str(e), error_type=type(e).__name__)
                if attempt >= policy.max_retries:
                    break

                delay = (
                    self.backoff.delay_for(
                        attempt,
                        policy.initial_delay_ms,
                        policy.backoff_multiplier,
                        policy.max_delay_ms,
                    )
                    / 1000
                )
                if deadline is not None:
                    remaining = deadline - self._monotonic()
                    if delay >= remaining:
                        await self._sleep(max(0.0, remaining))
                        raise self._timeout_error(service, operation_name, attempt, last_error, error_context, log) from last_error

                log.info("operation_retry_scheduled", attempt=attempt, delay_seconds=round(delay, 3))
                await self._sleep(delay)
                continue

            self.circuit_breaker.record_success(service)
            if attempt > 1:
                log.info("operation_succeeded_after_retry", attempts=attempt)
            else:
                log.debug("operation_succeeded", attempts=attempt)
            return result

        self.circuit_breaker.record_failure(service)
        log.error("operation_retries_exhausted", attempts=attempt, last_error=str(last_error))
        raise RetriesExhaustedError(operation_name, attempt, last_error, context=error_context) from last_error

    def _timeout_error(
        self,
        service: str,
        operation_name: str,
        attempts: int,
        last_error: Optional[BaseException],
        context: Dict[str, Any],
        log: Any,
    ) -> OperationTimeoutError:
        # A deadline hit before any attempt says nothing about the service
        if attempts > 0:
            self.circuit_breaker.record_failure(service)
        log.warning("operation_deadline_exceeded", attempts=attempts)
        return OperationTimeoutError(
            f"Operation {operation_name} exceeded its deadline after {attempts} attempts",
            operation_name=operation_name,
            attempts=attempts,
            last_error=last_error,
            context=context,
        )

    async def execute_batch(
        self,
        operations: Sequence[BatchOperation],
        stop_on_first_error: bool = False,
        deadline: Optional[float] = None,
    ) -> BatchResult:
        """
        Run named operations one after another, collecting per-name outcomes.

        With stop_on_first_error the traversal halts at the first failure;
        results gathered so far are kept.
        """
        batch = BatchResult()
        for op in operations:
            try:
                batch.results[op.name] = await self.execute(
                    op.operation,
                    op.name,
                    context=op.context,
                    policy=op.policy,
                    deadline=deadline,
                )
            except OperationError as e:
                batch.errors[op.name] = e
                batch.success = False
                if stop_on_first_error:
                    logger.warning(
                        "batch_stopped_on_error",
                        operation=op.name,
                        completed=len(batch.results),
                        remaining=len(operations) - len(batch.results) - len(batch.errors),
                    )
                    break

        logger.info(
            "batch_completed",
            total=len(operations),
            succeeded=len(batch.results),
            failed=len(batch.errors),
        )
        return batch


__all__ = [
    "BatchOperation",
    "BatchResult",
    "ErrorCategory",
    "FATAL_PATTERNS",
    "RetryPolicy",
    "RetryableOperationExecutor",
    "categorize_error",
    "extract_status_code",
    "is_rate_limited",
]
