"""Token-bucket rate limiter for external API calls.

One bucket per endpoint (broker REST, LLM). Buckets are created lazily from
``DEFAULT_LIMITS`` and can be overridden with ``configure``.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from threading import Lock


@dataclass
class BucketConfig:
    tokens_per_second: float
    max_burst: int
    name: str = ""


DEFAULT_LIMITS: dict[str, BucketConfig] = {
    # OANDA allows 100 req/s per connection; stay well below it
    "oanda": BucketConfig(tokens_per_second=20.0, max_burst=20, name="OANDA v20"),
    "openai": BucketConfig(tokens_per_second=3.0, max_burst=5, name="OpenAI"),
}


class TokenBucket:
    """Thread-safe token bucket."""

    def __init__(self, config: BucketConfig):
        self._config = config
        self._tokens: float = float(config.max_burst)
        self._last_refill: float = time.monotonic()
        self._lock = Lock()
        self.total_waits: int = 0

    def _refill(self) -> None:
        now = time.monotonic()
        elapsed = now - self._last_refill
        self._tokens = min(
            float(self._config.max_burst),
            self._tokens + elapsed * self._config.tokens_per_second,
        )
        self._last_refill = now

    def try_acquire(self) -> bool:
        with self._lock:
            self._refill()
            if self._tokens >= 1.0:
                self._tokens -= 1.0
                return True
            return False

    def wait_time(self) -> float:
        """Seconds until a token is available."""
        with self._lock:
            self._refill()
            if self._tokens >= 1.0:
                return 0.0
            return (1.0 - self._tokens) / self._config.tokens_per_second

    async def acquire(self) -> None:
        """Acquire a token, waiting if necessary."""
        while True:
            wt = self.wait_time()
            if wt <= 0:
                if self.try_acquire():
                    return
            else:
                self.total_waits += 1
                await asyncio.sleep(wt)


class RateLimiterRegistry:
    """Registry of per-endpoint rate limiters."""

    def __init__(self) -> None:
        self._buckets: dict[str, TokenBucket] = {}
        self._lock = Lock()

    def get(self, endpoint: str) -> TokenBucket:
        with self._lock:
            if endpoint not in self._buckets:
                config = DEFAULT_LIMITS.get(
                    endpoint,
                    BucketConfig(tokens_per_second=5.0, max_burst=10, name=endpoint),
                )
                self._buckets[endpoint] = TokenBucket(config)
            return self._buckets[endpoint]

    def configure(self, endpoint: str, tokens_per_second: float, max_burst: int) -> None:
        with self._lock:
            self._buckets[endpoint] = TokenBucket(BucketConfig(
                tokens_per_second=tokens_per_second,
                max_burst=max_burst,
                name=endpoint,
            ))


rate_limiter = RateLimiterRegistry()
