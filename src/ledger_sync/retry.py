# Ledger Sync - Offline-first ledger synchronization for SMBs
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.

"""
Exponential backoff for sync cycles.

A transient failure (network down, timeout, server overloaded) never changes
local state; the next cycle simply tries again. To avoid hammering the remote
store while it is unavailable, automatic triggers are held back for a delay
that grows with each consecutive failure:

    delay = min(base_delay * multiplier ** failures, max_delay) (+/- jitter)

A successful cycle resets the counter. Manual triggers bypass the delay.
"""

from __future__ import annotations

import random
import time
from typing import Callable


class RetryConfig:
    """
    Configuration for backoff delays.

    Attributes:
        base_delay: Delay in seconds after the first failure (default: 2.0)
        multiplier: Exponential backoff multiplier (default: 2.0)
        max_delay: Upper bound for a single delay (default: 300.0)
        jitter: Whether to add jitter to delays (default: True)
        jitter_ratio: Random variance ratio for jitter (default: 0.2 = +/-20%)
    """

    def __init__(
        self,
        base_delay: float = 2.0,
        multiplier: float = 2.0,
        max_delay: float = 300.0,
        jitter: bool = True,
        jitter_ratio: float = 0.2,
    ) -> None:
        if base_delay <= 0:
            raise ValueError("base_delay must be positive")
        if multiplier < 1.0:
            raise ValueError("multiplier must be >= 1.0")
        if max_delay < base_delay:
            raise ValueError("max_delay must be >= base_delay")
        if not 0.0 <= jitter_ratio <= 1.0:
            raise ValueError("jitter_ratio must be between 0.0 and 1.0")

        self.base_delay = base_delay
        self.multiplier = multiplier
        self.max_delay = max_delay
        self.jitter = jitter
        self.jitter_ratio = jitter_ratio

    def calculate_delay(self, attempt: int, rng: random.Random | None = None) -> float:
        """
        Calculate the delay after a given number of previous failures.

        Args:
            attempt: Failure number (0-indexed)
            rng: Optional random generator used for jitter

        Returns:
            Delay in seconds, never negative
        """
        delay = min(self.base_delay * (self.multiplier**attempt), self.max_delay)

        if self.jitter:
            source = rng or random
            jitter_range = delay * self.jitter_ratio
            delay += source.uniform(-jitter_range, jitter_range)

        return max(0.0, delay)


class Backoff:
    """
    Backoff state for one tenant.

    The clock is injectable so tests can move time forward without sleeping.
    """

    def __init__(
        self,
        config: RetryConfig | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        rng: random.Random | None = None,
    ) -> None:
        self.config = config or RetryConfig()
        self._clock = clock
        self._rng = rng
        self.failures = 0
        self._not_before: float | None = None

    def record_failure(self) -> float:
        """Register a transient failure and return the delay now in force."""
        delay = self.config.calculate_delay(self.failures, self._rng)
        self.failures += 1
        self._not_before = self._clock() + delay
        return delay

    def reset(self) -> None:
        self.failures = 0
        self._not_before = None

    def remaining(self) -> float:
        """Seconds left before automatic triggers may run again."""
        if self._not_before is None:
            return 0.0
        return max(0.0, self._not_before - self._clock())

    def is_active(self) -> bool:
        return self.remaining() > 0.0
