"""
Exponential backoff with symmetric jitter, shared by every retrying caller.

    base  = initial_delay_ms * multiplier ** (attempt - 1)
    delay = base ± 25% of base, clamped to [0, max_delay_ms]

The random source is injected so tests can pin the jitter.
"""

from __future__ import annotations

import random
from dataclasses import dataclass, field

JITTER_RATIO = 0.25


@dataclass
class BackoffCalculator:
    jitter_ratio: float = JITTER_RATIO
    rng: random.Random = field(default_factory=random.Random)

    def delay_for(
        self,
        attempt: int,
        initial_delay_ms: int,
        multiplier: float,
        max_delay_ms: int,
    ) -> int:
        """Delay in milliseconds before the attempt after `attempt` (1-indexed)."""
        if attempt < 1:
            raise ValueError("attempt must be >= 1")

        try:
            base = initial_delay_ms * (multiplier ** (attempt - 1))
        except OverflowError:
            return max_delay_ms
        # Even the lowest jitter lands above the cap
        if base * (1 - self.jitter_ratio) >= max_delay_ms:
            return max_delay_ms

        # uniform in [-1, 1)
        jitter = base * self.jitter_ratio * (self.rng.random() * 2 - 1)
        delay = int(base + jitter)
        return max(0, min(delay, max_delay_ms))


_default = BackoffCalculator()


def delay_for(attempt: int, initial_delay_ms: int, multiplier: float, max_delay_ms: int) -> int:
    """Module-level helper using a process-wide calculator."""
    return _default.delay_for(attempt, initial_delay_ms, multiplier, max_delay_ms)


__all__ = ["BackoffCalculator", "delay_for", "JITTER_RATIO"]
