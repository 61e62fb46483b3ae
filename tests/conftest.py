"""
Test fixtures for adspend-billing tests.

Provides database session fixtures, a controllable clock and in-memory fakes
for the billing collaborators (payment gateway, spend sources, campaign
control, notifier).
"""

import pytest
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Generator, List, Optional
from sqlmodel import Session, SQLModel, create_engine
from sqlalchemy.pool import StaticPool

import adspend.models  # noqa: F401  (register tables)
from adspend.core.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerRegistry,
    InMemoryCircuitStateStore,
    set_notification_callback,
)
from adspend.core.locks import InProcessLockProvider
from adspend.services.billing import BillingStateMachine
from adspend.services.collaborators import CampaignRef, ChargeResult
from adspend.services.ledger import AdSpendCreditLedger


# Use in-memory SQLite for unit tests (fast, isolated)
TEST_DATABASE_URL = "sqlite:///:memory:"


@pytest.fixture(scope="function")
def test_engine():
    """Create a test database engine with in-memory SQLite."""
    engine = create_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture(scope="function")
def test_session(test_engine) -> Generator[Session, None, None]:
    """Provide a test database session."""
    with Session(test_engine) as session:
        yield session


@pytest.fixture(autouse=True)
def reset_circuit_breakers():
    """Fresh in-memory breaker store and no alert callback for every test."""
    CircuitBreakerRegistry.configure(InMemoryCircuitStateStore())
    set_notification_callback(None)
    yield
    CircuitBreakerRegistry.configure(None)
    set_notification_callback(None)


# ============================================
# Clock
# ============================================


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: Optional[datetime] = None):
        self.now = now or datetime(2024, 3, 15, 6, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# ============================================
# Collaborator fakes
# ============================================


class FakePaymentGateway:
    def __init__(self, succeed: bool = True, error: str = "Your card was declined", raises: Optional[Exception] = None):
        self.succeed = succeed
        self.error = error
        self.raises = raises
        self.charges: List[tuple] = []
        self.idempotency_keys: List[Optional[str]] = []
        # Raised one per call, in order, before `raises`
        self.errors: List[Exception] = []

    async def charge(
        self, customer_id: int, amount: Decimal, description: str, idempotency_key: Optional[str] = None
    ) -> ChargeResult:
        self.charges.append((customer_id, amount, description))
        self.idempotency_keys.append(idempotency_key)
        if self.errors:
            raise self.errors.pop(0)
        if self.raises is not None:
            raise self.raises
        if self.succeed:
            return ChargeResult(success=True, charge_id=f"ch_{len(self.charges)}", payment_method_id="pm_test")
        return ChargeResult(success=False, error=self.error)

    @property
    def amounts(self) -> List[Decimal]:
        return [amount for _, amount, _ in self.charges]


class FakeSpendSource:
    def __init__(self, platform: str = "google_ads", spend: Decimal = Decimal("0"), error: Optional[Exception] = None):
        self.platform = platform
        self.spend = spend
        self.error = error
        self.calls: List[tuple] = []

    async def get_actual_spend(self, customer_id: int, start: date, end: date) -> Decimal:
        self.calls.append((customer_id, start, end))
        if self.error is not None:
            raise self.error
        return self.spend


class FakeCampaignControl:
    def __init__(self, campaigns: Optional[List[CampaignRef]] = None, average_budget: Optional[Decimal] = None):
        self.campaigns = campaigns if campaigns is not None else [
            CampaignRef(campaign_id="cmp_1", platform="google_ads", daily_budget=Decimal("50"))
        ]
        self.average_budget = average_budget
        self.pause_calls: List[tuple] = []
        self.resume_calls: List[int] = []
        self.multiplier_calls: List[tuple] = []

    async def list_active_campaigns(self, customer_id: int) -> List[CampaignRef]:
        return list(self.campaigns)

    async def pause_campaigns(self, customer_id: int, reason: str) -> None:
        self.pause_calls.append((customer_id, reason))

    async def resume_campaigns(self, customer_id: int) -> None:
        self.resume_calls.append(customer_id)

    async def apply_budget_multiplier(self, customer_id: int, campaign_id: str, multiplier: float) -> None:
        self.multiplier_calls.append((customer_id, campaign_id, multiplier))

    async def average_daily_budget(self, customer_id: int) -> Optional[Decimal]:
        return self.average_budget


class FakeNotifier:
    def __init__(self, error: Optional[Exception] = None):
        self.error = error
        self.sent: List[tuple] = []

    async def notify(self, kind, customer_id, credit, context) -> None:
        if self.error is not None:
            raise self.error
        self.sent.append((kind.value, customer_id, dict(context)))

    @property
    def kinds(self) -> List[str]:
        return [kind for kind, _, _ in self.sent]


@pytest.fixture
def gateway() -> FakePaymentGateway:
    return FakePaymentGateway()


@pytest.fixture
def spend_source() -> FakeSpendSource:
    return FakeSpendSource(spend=Decimal("50.00"))


@pytest.fixture
def make_spend_source():
    """Factory for additional platforms."""
    return FakeSpendSource


@pytest.fixture
def campaigns() -> FakeCampaignControl:
    return FakeCampaignControl()


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture
def locks() -> InProcessLockProvider:
    return InProcessLockProvider()


@pytest.fixture
def state_machine(test_session, gateway, spend_source, campaigns, notifier, clock, locks) -> BillingStateMachine:
    return BillingStateMachine(
        test_session,
        payment_gateway=gateway,
        spend_sources=[spend_source],
        campaign_control=campaigns,
        notifier=notifier,
        clock=clock,
        lock_provider=locks,
    )


@pytest.fixture
def open_account(test_session, clock):
    """Factory: open a credit account with an initial balance."""

    def _open(customer_id: int = 1, balance: str = "100.00") -> AdSpendCreditLedger:
        return AdSpendCreditLedger.open_account(
            test_session,
            customer_id,
            Decimal(balance),
            charge_reference="ch_initial",
            clock=clock,
        )

    return _open


@pytest.fixture
def breaker(clock) -> CircuitBreaker:
    return CircuitBreaker(store=InMemoryCircuitStateStore(), max_failures=5, retry_timeout=300, clock=clock)
