"""Retry policy with exponential backoff and jitter.

This module provides:
- RetryPolicy: Pure decision function (attempts, failure kind) -> decision
- Retry, DeadLetter: The two possible decisions

The policy performs no I/O and keeps no state besides its random source,
so it can be unit tested in isolation.
"""

from __future__ import annotations

import random
from dataclasses import dataclass
from typing import TYPE_CHECKING, Union

from filemirror.sync.types import FailureKind

if TYPE_CHECKING:
    from filemirror.core.config import MirrorConfig

# Default retry configuration
DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_BACKOFF_BASE = 1.0  # seconds
DEFAULT_BACKOFF_CAP = 60.0  # seconds
DEFAULT_BACKOFF_MULTIPLIER = 2.0
DEFAULT_JITTER = 0.2  # +/- fraction of the delay


@dataclass(frozen=True)
class Retry:
    """Retry the operation after ``delay`` seconds."""

    delay: float


@dataclass(frozen=True)
class DeadLetter:
    """Stop retrying; move the operation to the dead-letter list."""

    reason: str


RetryDecision = Union[Retry, DeadLetter]


class RetryPolicy:
    """Decides whether a failed operation is retried or dead-lettered.

    Delay for the n-th failed attempt (n starting at 1):

        min(cap, base * multiplier ** (n - 1)) * (1 +/- jitter)

    Permanent failures are never retried.
    """

    def __init__(
        self,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        backoff_base: float = DEFAULT_BACKOFF_BASE,
        backoff_cap: float = DEFAULT_BACKOFF_CAP,
        backoff_multiplier: float = DEFAULT_BACKOFF_MULTIPLIER,
        jitter: float = DEFAULT_JITTER,
        rng: random.Random | None = None,
    ) -> None:
        """Initialize the policy.

        Args:
            max_attempts: Total attempts allowed before dead-lettering.
            backoff_base: Delay after the first failure, in seconds.
            backoff_cap: Upper bound of the un-jittered delay.
            backoff_multiplier: Growth factor per attempt.
            jitter: Random spread as a fraction of the delay, in [0, 1).
            rng: Random source (seed it for reproducible delays).
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if backoff_base <= 0 or backoff_cap < backoff_base:
            raise ValueError("backoff_base must be positive and <= backoff_cap")
        if backoff_multiplier < 1:
            raise ValueError("backoff_multiplier must be >= 1")
        if not 0 <= jitter < 1:
            raise ValueError("jitter must be in [0, 1)")
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.backoff_cap = backoff_cap
        self.backoff_multiplier = backoff_multiplier
        self.jitter = jitter
        self._rng = rng or random.Random()

    @classmethod
    def from_config(cls, config: MirrorConfig) -> RetryPolicy:
        """Build the policy from the mirror configuration."""
        return cls(
            max_attempts=config.max_attempts,
            backoff_base=config.backoff_base,
            backoff_cap=config.backoff_cap,
        )

    def backoff(self, attempts: int) -> float:
        """Un-jittered delay after ``attempts`` failed attempts."""
        exponent = max(attempts - 1, 0)
        # Cap the exponent before multiplying so large counts cannot overflow
        if self.backoff_base * self.backoff_multiplier ** min(exponent, 64) >= self.backoff_cap:
            return self.backoff_cap
        return self.backoff_base * self.backoff_multiplier**exponent

    def decide(self, attempts: int, failure_kind: FailureKind) -> RetryDecision:
        """Decide what to do after a failed attempt.

        Args:
            attempts: Attempts made so far, including the one that failed.
            failure_kind: Classification of the failure.

        Returns:
            Retry(delay) or DeadLetter(reason).
        """
        if failure_kind == FailureKind.PERMANENT:
            return DeadLetter("permanent failure")
        if attempts >= self.max_attempts:
            return DeadLetter(f"gave up after {attempts} attempts")

        delay = self.backoff(attempts)
        if self.jitter:
            delay *= 1 + self._rng.uniform(-self.jitter, self.jitter)
        return Retry(delay)

    def __repr__(self) -> str:
        return (
            f"RetryPolicy(max_attempts={self.max_attempts}, base={self.backoff_base}, "
            f"cap={self.backoff_cap}, jitter={self.jitter})"
        )
