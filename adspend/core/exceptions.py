"""
Exception hierarchy for external calls and ad-spend billing.

    AdSpendError
    ├── ExternalCallError            raised by collaborators (message + status code)
    ├── OperationError               raised by RetryableOperationExecutor
    │   ├── CircuitOpenError         breaker open, no attempt made
    │   ├── FatalOperationError      non-retryable, surfaced on first failure
    │   ├── RetryableOperationError  transient
    │   │   └── RetriesExhaustedError
    │   └── OperationTimeoutError    caller deadline reached
    ├── BillingError
    │   ├── CreditAccountNotFoundError
    │   ├── InsufficientCreditError
    │   ├── PaymentFailureError
    │   └── SpendUnavailableError
    └── LockUnavailableError
"""

from decimal import Decimal
from typing import Any, Dict, Optional


class AdSpendError(Exception):
    """Base class for every error raised by this package."""


class ExternalCallError(AdSpendError):
    """
    Typed error for ad-platform, LLM and payment collaborators.

    `status_code` is the upstream HTTP status when there is one; the executor
    uses it together with the message to categorise the failure.
    """

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class OperationError(AdSpendError):
    """Failure of an operation run through the retry executor."""

    def __init__(
        self,
        message: str,
        operation_name: str,
        attempts: int = 0,
        last_error: Optional[BaseException] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.operation_name = operation_name
        self.attempts = attempts
        self.last_error = last_error
        self.context = context or {}

    def to_log_dict(self) -> Dict[str, Any]:
        return {
            "operation": self.operation_name,
            "attempts": self.attempts,
            "last_error": str(self.last_error) if self.last_error else None,
            "error_type": type(self).__name__,
            **self.context,
        }


class CircuitOpenError(OperationError):
    def __init__(self, service_name: str, context: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(
            f"Service {service_name} is temporarily unavailable. Circuit breaker is open.",
            operation_name=service_name,
            attempts=0,
            context=context,
        )
        self.service_name = service_name


class FatalOperationError(OperationError):
    """Auth, validation, policy, billing or duplicate failures. Never retried."""


class RetryableOperationError(OperationError):
    """Timeouts, 5xx and rate limiting."""


class RetriesExhaustedError(RetryableOperationError):
    def __init__(
        self,
        operation_name: str,
        attempts: int,
        last_error: BaseException,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(
            f"Operation {operation_name} failed after {attempts} attempts: {last_error}",
            operation_name=operation_name,
            attempts=attempts,
            last_error=last_error,
            context=context,
        )


class OperationTimeoutError(OperationError):
    """The caller's deadline passed before the retry budget was used up."""


class BillingError(AdSpendError):
    def __init__(self, message: str, customer_id: Optional[int] = None) -> None:
        super().__init__(message)
        self.customer_id = customer_id


class CreditAccountNotFoundError(BillingError):
    def __init__(self, customer_id: int) -> None:
        super().__init__(f"No ad spend credit account found for customer {customer_id}", customer_id)


class InsufficientCreditError(BillingError):
    def __init__(
        self,
        customer_id: Optional[int],
        required: Decimal,
        available: Decimal,
    ) -> None:
        super().__init__(
            f"Insufficient ad spend credit: required {required}, available {available}",
            customer_id,
        )
        self.required = required
        self.available = available

    @property
    def shortfall(self) -> Decimal:
        return self.required - max(self.available, Decimal("0"))


class PaymentFailureError(BillingError):
    def __init__(
        self,
        message: str,
        customer_id: Optional[int] = None,
        amount: Optional[Decimal] = None,
    ) -> None:
        super().__init__(message, customer_id)
        self.amount = amount


class SpendUnavailableError(BillingError):
    """Actual spend could not be read from one of the ad platforms."""

    def __init__(self, customer_id: int, platform: str, cause: BaseException) -> None:
        super().__init__(f"Could not read {platform} spend for customer {customer_id}: {cause}", customer_id)
        self.platform = platform
        self.cause = cause


class LockUnavailableError(AdSpendError):
    def __init__(self, key: str) -> None:
        super().__init__(f"Lock {key} is held by another worker")
        self.key = key
