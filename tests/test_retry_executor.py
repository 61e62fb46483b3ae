"""
Tests for the retryable operation executor and error categorisation.

Tests cover:
- Fatal errors stop after one attempt
- Retryable errors use the whole budget with backoff between attempts
- Open circuit refuses without invoking the operation
- Deadline handling
- Batch execution
"""

from unittest.mock import MagicMock

import pytest

from adspend.core.backoff import BackoffCalculator
from adspend.core.circuit_breaker import CircuitBreaker, InMemoryCircuitStateStore
from adspend.core.exceptions import (
    CircuitOpenError,
    ExternalCallError,
    FatalOperationError,
    OperationTimeoutError,
    RetriesExhaustedError,
)
from adspend.core.retry import (
    BatchOperation,
    ErrorCategory,
    RetryableOperationExecutor,
    RetryPolicy,
    categorize_error,
    extract_status_code,
    is_rate_limited,
)
from adspend.models.circuit_breaker_state import CircuitState


class FakeTime:
    """Monotonic clock plus an async sleep that advances it."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps = []

    def monotonic(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FlakyOperation:
    """Fails with the given errors in order, then returns `value`."""

    def __init__(self, *errors, value="ok"):
        self.errors = list(errors)
        self.value = value
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.value


@pytest.fixture
def fake_time():
    return FakeTime()


@pytest.fixture
def cb(clock):
    return CircuitBreaker(store=InMemoryCircuitStateStore(), max_failures=5, retry_timeout=300, clock=clock)


@pytest.fixture
def executor(cb, fake_time):
    rng = MagicMock()
    rng.random.return_value = 0.5  # no jitter
    return RetryableOperationExecutor(
        circuit_breaker=cb,
        backoff=BackoffCalculator(rng=rng),
        policy=RetryPolicy(max_retries=3, initial_delay_ms=1000, backoff_multiplier=2.0, max_delay_ms=30000),
        platform="google_ads",
        sleep=fake_time.sleep,
        monotonic=fake_time.monotonic,
    )


class TestExecute:
    """Tests for a single execute() call."""

    @pytest.mark.asyncio
    async def test_success_first_attempt(self, executor, fake_time):
        op = FlakyOperation(value=42)

        assert await executor.execute(op, "fetch_spend") == 42
        assert op.calls == 1
        assert fake_time.sleeps == []

    @pytest.mark.asyncio
    async def test_sync_operation(self, executor):
        assert await executor.execute(lambda: "sync", "fetch_spend") == "sync"

    @pytest.mark.asyncio
    async def test_fatal_error_single_attempt(self, executor, cb, fake_time):
        op = FlakyOperation(ExternalCallError("unauthorized"))

        with pytest.raises(FatalOperationError) as exc_info:
            await executor.execute(op, "fetch_spend")

        assert op.calls == 1
        assert exc_info.value.attempts == 1
        assert isinstance(exc_info.value.__cause__, ExternalCallError)
        assert fake_time.sleeps == []
        assert cb.snapshot("google_ads_fetch_spend").failure_count == 1

    @pytest.mark.asyncio
    async def test_retryable_error_uses_whole_budget(self, executor, cb, fake_time):
        op = FlakyOperation(*[ExternalCallError("Service unavailable", status_code=503) for _ in range(3)])

        with pytest.raises(RetriesExhaustedError) as exc_info:
            await executor.execute(op, "fetch_spend", context={"customer_id": 7})

        assert op.calls == 3
        assert exc_info.value.attempts == 3
        assert exc_info.value.context["customer_id"] == 7
        assert fake_time.sleeps == [1.0, 2.0]
        # One failure recorded per execute() call, not per attempt
        assert cb.snapshot("google_ads_fetch_spend").failure_count == 1

    @pytest.mark.asyncio
    async def test_recovers_after_retry(self, executor, cb, fake_time):
        cb.record_failure("google_ads_fetch_spend")
        op = FlakyOperation(ExternalCallError("Rate limit exceeded", status_code=429), value="done")

        assert await executor.execute(op, "fetch_spend") == "done"
        assert op.calls == 2
        assert fake_time.sleeps == [1.0]
        assert cb.snapshot("google_ads_fetch_spend").failure_count == 0

    @pytest.mark.asyncio
    async def test_open_circuit_skips_operation(self, executor, cb):
        for _ in range(5):
            cb.record_failure("google_ads_fetch_spend")
        op = FlakyOperation()

        with pytest.raises(CircuitOpenError) as exc_info:
            await executor.execute(op, "fetch_spend")

        assert op.calls == 0
        assert exc_info.value.attempts == 0
        assert exc_info.value.service_name == "google_ads_fetch_spend"

    @pytest.mark.asyncio
    async def test_policy_override(self, executor):
        op = FlakyOperation(*[TimeoutError("read timeout") for _ in range(5)])

        with pytest.raises(RetriesExhaustedError):
            await executor.execute(op, "fetch_spend", policy=RetryPolicy(max_retries=5, initial_delay_ms=0))

        assert op.calls == 5


class TestDeadline:
    @pytest.mark.asyncio
    async def test_deadline_before_backoff_completes(self, executor, cb, fake_time):
        op = FlakyOperation(*[ExternalCallError("bad gateway", status_code=502) for _ in range(3)])
        deadline = fake_time.now + 0.5

        with pytest.raises(OperationTimeoutError) as exc_info:
            await executor.execute(op, "fetch_spend", deadline=deadline)

        assert op.calls == 1
        assert exc_info.value.attempts == 1
        assert fake_time.sleeps == [0.5]
        assert cb.snapshot("google_ads_fetch_spend").failure_count == 1

    @pytest.mark.asyncio
    async def test_deadline_already_passed(self, executor, cb, fake_time):
        op = FlakyOperation()

        with pytest.raises(OperationTimeoutError) as exc_info:
            await executor.execute(op, "fetch_spend", deadline=fake_time.now - 1)

        assert op.calls == 0
        assert exc_info.value.attempts == 0
        assert cb.snapshot("google_ads_fetch_spend").failure_count == 0

    @pytest.mark.asyncio
    async def test_expired_deadline_leaves_half_open_trial(self, executor, cb, fake_time, clock):
        for _ in range(5):
            cb.record_failure("google_ads_fetch_spend")
        clock.advance(seconds=301)

        with pytest.raises(OperationTimeoutError):
            await executor.execute(FlakyOperation(), "fetch_spend", deadline=fake_time.now - 1)

        assert cb.snapshot("google_ads_fetch_spend").state == CircuitState.OPEN

        op = FlakyOperation(value="recovered")
        assert await executor.execute(op, "fetch_spend") == "recovered"
        assert op.calls == 1
        assert cb.snapshot("google_ads_fetch_spend").state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_generous_deadline_allows_retries(self, executor, fake_time):
        op = FlakyOperation(ExternalCallError("internal error", status_code=500), value="ok")

        assert await executor.execute(op, "fetch_spend", deadline=fake_time.now + 60) == "ok"
        assert op.calls == 2


class TestBatch:
    @pytest.mark.asyncio
    async def test_collects_results_and_errors(self, executor):
        batch = await executor.execute_batch(
            [
                BatchOperation("first", FlakyOperation(value=1)),
                BatchOperation("second", FlakyOperation(ExternalCallError("forbidden", status_code=403))),
                BatchOperation("third", FlakyOperation(value=3)),
            ]
        )

        assert batch.success is False
        assert batch.results == {"first": 1, "third": 3}
        assert isinstance(batch.errors["second"], FatalOperationError)

    @pytest.mark.asyncio
    async def test_stop_on_first_error(self, executor):
        third = FlakyOperation(value=3)
        batch = await executor.execute_batch(
            [
                BatchOperation("first", FlakyOperation(value=1)),
                BatchOperation("second", FlakyOperation(ExternalCallError("invalid parameter"))),
                BatchOperation("third", third),
            ],
            stop_on_first_error=True,
        )

        assert batch.success is False
        assert batch.results == {"first": 1}
        assert set(batch.errors) == {"second"}
        assert third.calls == 0


class StatusError(Exception):
    def __init__(self, message, **attrs):
        super().__init__(message)
        for key, value in attrs.items():
            setattr(self, key, value)


class TestCategorizeError:
    @pytest.mark.parametrize(
        "message",
        [
            "Invalid credentials supplied",
            "UNAUTHORIZED",
            "Campaign not found",
            "Policy violation: restricted content",
            "Billing account suspended",
            "Duplicate campaign name",
            "Resource already exists",
            "Permission denied",
        ],
    )
    def test_fatal_messages(self, message):
        assert categorize_error(Exception(message)) is ErrorCategory.FATAL

    @pytest.mark.parametrize("status", [400, 401, 403, 404, 422])
    def test_client_errors_are_fatal(self, status):
        assert categorize_error(ExternalCallError("request rejected", status_code=status)) is ErrorCategory.FATAL

    @pytest.mark.parametrize("status", [408, 429, 500, 502, 503])
    def test_retryable_statuses(self, status):
        assert categorize_error(ExternalCallError("request rejected", status_code=status)) is ErrorCategory.RETRYABLE

    def test_unknown_errors_are_retryable(self):
        assert categorize_error(ConnectionError("connection reset")) is ErrorCategory.RETRYABLE

    def test_status_from_code_and_response(self):
        assert extract_status_code(StatusError("x", code=404)) == 404
        assert extract_status_code(StatusError("x", response=MagicMock(status_code=503))) == 503
        assert extract_status_code(Exception("x")) is None


class TestIsRateLimited:
    def test_dict_with_code(self):
        assert is_rate_limited({"error": {"code": 429, "message": "slow down"}}) is True

    def test_dict_with_message(self):
        assert is_rate_limited({"error": {"code": 400, "message": "Quota exceeded for project"}}) is True

    def test_dict_without_error(self):
        assert is_rate_limited({"data": []}) is False
        assert is_rate_limited({"error": "plain string"}) is False

    def test_exception(self):
        assert is_rate_limited(ExternalCallError("slow down", status_code=429)) is True
        assert is_rate_limited(Exception("Too many requests")) is True
        assert is_rate_limited(Exception("server error")) is False

    def test_other_values(self):
        assert is_rate_limited(None) is False


class TestRetryPolicy:
    def test_max_retries_must_be_positive(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_retries=0)

    def test_with_overrides_ignores_none(self):
        policy = RetryPolicy(max_retries=3).with_overrides(max_retries=None, initial_delay_ms=250)

        assert policy.max_retries == 3
        assert policy.initial_delay_ms == 250
