from .ad_spend import AdSpendCredit, AdSpendTransaction, CreditStatus, PaymentStatus, TransactionType
from .billing_run import BillingRun, BillingRunStatus
from .circuit_breaker_state import CircuitBreakerState, CircuitState

__all__ = [
    "AdSpendCredit",
    "AdSpendTransaction",
    "CreditStatus",
    "PaymentStatus",
    "TransactionType",
    "BillingRun",
    "BillingRunStatus",
    "CircuitBreakerState",
    "CircuitState",
]
