"""
Tests for exponential backoff with jitter.
"""

import random
from unittest.mock import MagicMock

import pytest

from adspend.core.backoff import JITTER_RATIO, BackoffCalculator


def fixed_rng(value: float) -> MagicMock:
    rng = MagicMock()
    rng.random.return_value = value
    return rng


class TestBackoffFormula:
    """Tests for the base delay and jitter bounds."""

    def test_no_jitter_at_midpoint(self):
        """rng 0.5 maps to zero jitter, exposing the base delay."""
        calc = BackoffCalculator(rng=fixed_rng(0.5))

        assert calc.delay_for(1, 1000, 2.0, 30000) == 1000
        assert calc.delay_for(2, 1000, 2.0, 30000) == 2000
        assert calc.delay_for(3, 1000, 2.0, 30000) == 4000

    def test_jitter_lower_bound(self):
        calc = BackoffCalculator(rng=fixed_rng(0.0))
        assert calc.delay_for(1, 1000, 2.0, 30000) == 750

    def test_jitter_upper_bound(self):
        calc = BackoffCalculator(rng=fixed_rng(0.999999))
        assert calc.delay_for(1, 1000, 2.0, 30000) in (1249, 1250)

    def test_clamped_to_max_delay(self):
        calc = BackoffCalculator(rng=fixed_rng(0.999999))
        assert calc.delay_for(10, 1000, 2.0, 30000) == 30000

    def test_large_attempt_clamps_instead_of_overflowing(self):
        calc = BackoffCalculator(rng=fixed_rng(0.0))
        assert calc.delay_for(1100, 1000, 2.0, 30000) == 30000
        assert calc.delay_for(5000, 1000, 10.0, 30000) == 30000

    def test_never_negative(self):
        calc = BackoffCalculator(rng=fixed_rng(0.0))
        assert calc.delay_for(1, 0, 2.0, 30000) == 0

    def test_attempt_must_be_positive(self):
        calc = BackoffCalculator()
        with pytest.raises(ValueError):
            calc.delay_for(0, 1000, 2.0, 30000)

    def test_jitter_ratio_is_quarter(self):
        assert JITTER_RATIO == 0.25


class TestBackoffProperties:
    """Properties that hold for any random source."""

    @pytest.mark.parametrize("seed", range(20))
    def test_within_jitter_bounds_and_max(self, seed):
        calc = BackoffCalculator(rng=random.Random(seed))
        for attempt in range(1, 8):
            base = 500 * (2.0 ** (attempt - 1))
            delay = calc.delay_for(attempt, 500, 2.0, 20000)
            assert delay <= 20000
            assert delay >= min(int(base * 0.75), 20000) - 1
            assert delay <= base * 1.25

    @pytest.mark.parametrize("value", [0.0, 0.25, 0.5, 0.75, 0.99])
    def test_monotonic_for_same_jitter(self, value):
        """With the jitter draw held constant, each step grows by at least multiplier - 0.25."""
        calc = BackoffCalculator(rng=fixed_rng(value))
        multiplier = 2.0
        previous = calc.delay_for(1, 1000, multiplier, 10_000_000)
        for attempt in range(2, 8):
            current = calc.delay_for(attempt, 1000, multiplier, 10_000_000)
            assert current >= previous * (multiplier - 0.25)
            previous = current

    def test_seeded_rng_is_deterministic(self):
        first = BackoffCalculator(rng=random.Random(42))
        second = BackoffCalculator(rng=random.Random(42))
        assert [first.delay_for(a, 1000, 2.0, 30000) for a in range(1, 6)] == [
            second.delay_for(a, 1000, 2.0, 30000) for a in range(1, 6)
        ]
