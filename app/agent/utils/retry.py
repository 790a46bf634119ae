"""
Reconnect backoff for the crawling agent.

Delays grow geometrically from ``base_delay`` and are capped at
``max_delay``; ``max_attempts`` consecutive failures exhaust the policy.
"""

import random
from dataclasses import dataclass


@dataclass(frozen=True)
class RetryConfig:
    """Backoff policy for scheduled reconnects. Delays are in seconds."""

    max_attempts: int = 10
    base_delay: float = 3.0
    max_delay: float = 10.0
    exponential_base: float = 1.5
    jitter_range: float = 0.0

    def calculate_delay(self, attempt: int) -> float:
        """
        Delay before the retry that follows failed attempt ``attempt`` (0-indexed).

        With the defaults this yields 3.0, 4.5, 6.75, 10.0, 10.0, ...
        """
        delay = min(self.base_delay * self.exponential_base ** max(0, attempt), self.max_delay)
        if self.jitter_range > 0:
            spread = delay * self.jitter_range
            delay = max(0.0, delay + random.uniform(-spread, spread))
        return delay

    def exhausted(self, attempts: int) -> bool:
        return attempts >= self.max_attempts
