"""
Retry and backoff policy for resilient outbound calls.
"""

import random
from enum import Enum
from typing import Optional

from shared.errors import GatewayError, RateLimitError, is_retryable


class AttemptState(Enum):
    """States of a single logical call in the retry loop."""
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    SUCCESS = "success"
    RETRYABLE_FAILURE = "retryable_failure"
    BACKOFF = "backoff"
    TERMINAL_FAILURE = "terminal_failure"


class RetryConfig:
    """Configuration for retry behavior.

    ``max_retries`` counts retries, so a call makes at most
    ``max_retries + 1`` attempts. Delays are in seconds.
    """

    def __init__(self,
                 max_retries: int = 3,
                 base_delay: float = 1.0,
                 max_delay: Optional[float] = None,
                 exponential_base: float = 2.0,
                 jitter: bool = False,
                 backoff_strategy: str = "exponential"):
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if base_delay < 0:
            raise ValueError("base_delay must be >= 0")
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.backoff_strategy = backoff_strategy

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1


def calculate_delay(retry_index: int, config: RetryConfig) -> float:
    """Calculate delay before retry number ``retry_index`` (0 for the first retry)."""
    if config.backoff_strategy == "exponential":
        delay = config.base_delay * (config.exponential_base ** retry_index)
    elif config.backoff_strategy == "linear":
        delay = config.base_delay * (retry_index + 1)
    else:
        delay = config.base_delay

    if config.max_delay is not None:
        delay = min(delay, config.max_delay)

    if config.jitter:
        jitter_amount = delay * 0.1  # 10% jitter
        delay += random.uniform(-jitter_amount, jitter_amount)

    return max(0.0, delay)


def next_delay(error: GatewayError, retry_index: int, config: RetryConfig) -> Optional[float]:
    """Return the wait before the next attempt, or None if the error is terminal.

    A provider rate limit with a known ``retry_after`` waits exactly that long
    instead of backing off exponentially.
    """
    if not is_retryable(error):
        return None
    if retry_index >= config.max_retries:
        return None
    if isinstance(error, RateLimitError):
        if error.retry_after is None:
            return None
        return float(error.retry_after)
    return calculate_delay(retry_index, config)
