"""
Token bucket rate limiter for outbound chat-completion calls.
"""

import asyncio
import math
import threading
import time
from dataclasses import replace
from typing import Dict, Any, Optional, Callable, Awaitable

from shared.logging import get_logger
from shared.errors import RateLimitError, ValidationError
from service_llm_gateway.app.domain.models import RateLimiterConfig


Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[Any]]


def _monotonic_ms() -> float:
    return time.monotonic() * 1000.0


class RateLimiterExhaustedError(RateLimitError):
    """Raised when the local bucket cannot hand out tokens in time."""

    def __init__(self, message: str, retry_after: Optional[float] = None,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message, retry_after=retry_after, status_code=None, details=details)


class TokenBucketRateLimiter:
    """In-process token bucket shared by every caller of one gateway client.

    Tokens refill lazily: each access adds ``refill_rate`` tokens per whole
    ``refill_interval_ms`` elapsed and advances the refill clock by those whole
    intervals only, so partial progress toward the next interval is kept.
    """

    def __init__(self,
                 config: RateLimiterConfig,
                 clock: Optional[Clock] = None,
                 sleep: Optional[Sleep] = None,
                 name: str = "default"):
        config.validate()
        self._config = replace(config)
        self._clock = clock or _monotonic_ms
        self._sleep = sleep or asyncio.sleep
        self.name = name
        self.logger = get_logger(f"llm_gateway.rate_limiter.{name}")

        # Guards refill + check + decrement; never held across an await
        self._lock = threading.Lock()
        self._tokens: float = float(self._config.capacity)
        self._last_refill: float = self._clock()

    @property
    def config(self) -> RateLimiterConfig:
        """Copy of the current configuration."""
        return replace(self._config)

    def _refill(self, now: float) -> None:
        elapsed = now - self._last_refill
        if elapsed < self._config.refill_interval_ms:
            return
        intervals = math.floor(elapsed / self._config.refill_interval_ms)
        self._tokens = min(
            float(self._config.capacity),
            self._tokens + intervals * self._config.refill_rate
        )
        self._last_refill += intervals * self._config.refill_interval_ms

    def _wait_for(self, tokens_required: float, now: float) -> float:
        """Milliseconds until ``tokens_required`` tokens will be in the bucket."""
        deficit = tokens_required - self._tokens
        if deficit <= 0:
            return 0.0
        intervals = math.ceil(deficit / self._config.refill_rate)
        elapsed = now - self._last_refill
        return max(0.0, intervals * self._config.refill_interval_ms - elapsed)

    async def acquire(self, tokens_required: int = 1) -> None:
        """Wait until ``tokens_required`` tokens are available and take them."""
        if tokens_required < 1:
            raise ValidationError("tokens_required must be at least 1")

        start = self._clock()

        while True:
            with self._lock:
                capacity = self._config.capacity
                max_wait = self._config.max_wait_time_ms
                if tokens_required > capacity:
                    raise RateLimiterExhaustedError(
                        f"Rate limiter cannot satisfy {tokens_required} tokens: capacity is {capacity}",
                        details={"tokens_required": tokens_required, "capacity": capacity}
                    )

                now = self._clock()
                self._refill(now)
                if self._tokens >= tokens_required:
                    self._tokens -= tokens_required
                    return

                wait_ms = self._wait_for(tokens_required, now)
                tokens_available = self._tokens

            waited_ms = now - start
            if waited_ms + wait_ms > max_wait:
                self.logger.warning(
                    "Rate limiter wait budget exceeded",
                    tokens_required=tokens_required,
                    tokens_available=tokens_available,
                    wait_ms=wait_ms,
                    waited_ms=waited_ms,
                    max_wait_time_ms=max_wait
                )
                raise RateLimiterExhaustedError(
                    f"Rate limiter timeout: Could not acquire {tokens_required} tokens "
                    f"within {max_wait}ms",
                    retry_after=wait_ms / 1000.0,
                    details={"tokens_required": tokens_required, "wait_ms": wait_ms}
                )

            self.logger.debug(
                "Waiting for rate limiter tokens",
                tokens_required=tokens_required,
                tokens_available=tokens_available,
                wait_ms=wait_ms
            )
            await self._sleep(wait_ms / 1000.0)

    def can_acquire(self, tokens_required: int = 1) -> bool:
        """Check if tokens are available without taking them."""
        with self._lock:
            self._refill(self._clock())
            return self._tokens >= tokens_required

    def get_available_tokens(self) -> int:
        """Get current number of whole tokens available."""
        with self._lock:
            self._refill(self._clock())
            return math.floor(self._tokens)

    def get_time_until_next_token(self) -> int:
        """Milliseconds until at least one token is available (0 if one already is)."""
        with self._lock:
            now = self._clock()
            self._refill(now)
            if self._tokens >= 1:
                return 0
            return math.ceil(self._wait_for(1, now))

    def update_config(self, **changes: Any) -> RateLimiterConfig:
        """Replace any subset of capacity, refill_rate, refill_interval_ms, max_wait_time_ms."""
        allowed = {"capacity", "refill_rate", "refill_interval_ms", "max_wait_time_ms"}
        unknown = set(changes) - allowed
        if unknown:
            raise ValidationError(f"Unknown rate limiter settings: {', '.join(sorted(unknown))}")

        with self._lock:
            updated = replace(self._config, **{k: v for k, v in changes.items() if v is not None})
            updated.validate()
            self._refill(self._clock())
            self._config = updated
            self._tokens = min(self._tokens, float(updated.capacity))

        self.logger.info("Rate limiter config updated", **changes)
        return replace(updated)

    def reset(self) -> None:
        """Refill the bucket and restart the refill clock."""
        with self._lock:
            self._tokens = float(self._config.capacity)
            self._last_refill = self._clock()

    def get_state(self) -> Dict[str, Any]:
        """Get current limiter state."""
        with self._lock:
            self._refill(self._clock())
            return {
                "name": self.name,
                "available_tokens": self._tokens,
                "last_refill": self._last_refill,
                "capacity": self._config.capacity,
                "refill_rate": self._config.refill_rate,
                "refill_interval_ms": self._config.refill_interval_ms,
                "max_wait_time_ms": self._config.max_wait_time_ms
            }


# Named bucket profiles (requests per second with a burst allowance)
RATE_LIMITER_PRESETS: Dict[str, RateLimiterConfig] = {
    "conservative": RateLimiterConfig(
        capacity=10,
        refill_rate=1,
        refill_interval_ms=1000,
        max_wait_time_ms=30000
    ),
    "aggressive": RateLimiterConfig(
        capacity=20,
        refill_rate=5,
        refill_interval_ms=1000,
        max_wait_time_ms=15000
    ),
    "development": RateLimiterConfig(
        capacity=50,
        refill_rate=10,
        refill_interval_ms=1000,
        max_wait_time_ms=10000
    ),
}


def create_rate_limiter(preset: str = "conservative", **kwargs: Any) -> TokenBucketRateLimiter:
    """Build a new limiter from a named preset."""
    key = preset.strip().lower()
    if key not in RATE_LIMITER_PRESETS:
        raise ValidationError(
            f"Unknown rate limiter preset: {preset!r}",
            details={"available": sorted(RATE_LIMITER_PRESETS)}
        )
    return TokenBucketRateLimiter(replace(RATE_LIMITER_PRESETS[key]), name=key, **kwargs)
