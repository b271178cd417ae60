"""Retry policy for failed control commands."""

from __future__ import annotations

import random
from dataclasses import dataclass

from pserver_lifecycle.exceptions import ControlError, ControlErrorKind


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff with jitter, bounded by a retry count.

    Attributes:
        max_retries: Retries allowed after the first attempt
        base_delay: Delay before the first retry, in seconds
        max_delay: Upper bound for exponential delays
        multiplier: Growth factor between retries
        jitter: Relative jitter (0.1 means +/-10%)
        rate_limit_cooldown: Fixed delay after a rate-limited attempt
    """

    max_retries: int = 5
    base_delay: float = 1.0
    max_delay: float = 300.0
    multiplier: float = 2.0
    jitter: float = 0.1
    rate_limit_cooldown: float = 30.0

    def exhausted(self, failure_count: int) -> bool:
        """Check whether another retry is allowed.

        Args:
            failure_count: Consecutive failed attempts so far

        Returns:
            True once the failures exceed max_retries
        """
        return failure_count > self.max_retries

    def delay_for(
        self, failure_count: int, error: ControlError | None = None, rng: random.Random | None = None
    ) -> float:
        """Compute the delay before the next attempt.

        Args:
            failure_count: Consecutive failed attempts so far (1 for the first failure)
            error: The error that caused the failure
            rng: Random source for jitter

        Returns:
            Delay in seconds
        """
        if error is not None and error.kind is ControlErrorKind.RATE_LIMITED:
            if error.retry_after is not None and error.retry_after > 0:
                return error.retry_after
            return self.rate_limit_cooldown

        exponent = max(failure_count - 1, 0)
        delay = min(self.max_delay, self.base_delay * (self.multiplier ** exponent))
        if self.jitter > 0:
            spread = delay * self.jitter
            delay += (rng or random).uniform(-spread, spread)
        return max(delay, 0.0)
