"""
In-memory token bucket rate limiter for the public signing endpoints.
Buckets are per process; multi-instance deployments get a per-instance limit.
"""
import time
import threading
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from fastapi import Request

from app.auth import get_client_ip
from app.config import get_settings
from app.exceptions import RateLimitException


@dataclass
class TokenBucket:
    """Token bucket for rate limiting."""
    tokens: float
    last_update: float
    max_tokens: int
    refill_rate: float  # tokens per second


class RateLimiter:
    """
    In-memory token bucket rate limiter.
    Thread-safe implementation for single-instance deployment.
    """

    def __init__(self, max_requests: int = 30, window_seconds: int = 60, clock=time.monotonic):
        """
        Args:
            max_requests: Maximum requests allowed in the time window
            window_seconds: Time window in seconds
            clock: Monotonic time source, replaceable in tests
        """
        self.max_tokens = max_requests
        self.refill_rate = max_requests / window_seconds
        self._clock = clock
        self._buckets: Dict[str, TokenBucket] = {}
        self._lock = threading.Lock()
        self._cleanup_interval = 3600
        self._last_cleanup = clock()

    def _get_bucket(self, key: str, now: float) -> TokenBucket:
        bucket = self._buckets.get(key)
        if bucket is None:
            bucket = TokenBucket(
                tokens=float(self.max_tokens),
                last_update=now,
                max_tokens=self.max_tokens,
                refill_rate=self.refill_rate,
            )
            self._buckets[key] = bucket
        return bucket

    @staticmethod
    def _refill(bucket: TokenBucket, now: float) -> None:
        elapsed = now - bucket.last_update
        bucket.tokens = min(bucket.max_tokens, bucket.tokens + elapsed * bucket.refill_rate)
        bucket.last_update = now

    def _cleanup_old_buckets(self, now: float) -> None:
        """Drop buckets idle for longer than the cleanup interval."""
        if now - self._last_cleanup < self._cleanup_interval:
            return
        cutoff = now - self._cleanup_interval
        for key in [k for k, b in self._buckets.items() if b.last_update < cutoff]:
            del self._buckets[key]
        self._last_cleanup = now

    def is_allowed(self, key: str) -> Tuple[bool, int]:
        """
        Consume one token for `key`.

        Returns:
            Tuple of (allowed, retry_after_seconds)
        """
        with self._lock:
            now = self._clock()
            self._cleanup_old_buckets(now)
            bucket = self._get_bucket(key, now)
            self._refill(bucket, now)

            if bucket.tokens >= 1:
                bucket.tokens -= 1
                return True, 0

            retry_after = int((1 - bucket.tokens) / bucket.refill_rate) + 1
            return False, retry_after

    def get_remaining(self, key: str) -> int:
        with self._lock:
            now = self._clock()
            bucket = self._get_bucket(key, now)
            self._refill(bucket, now)
            return int(bucket.tokens)

    def reset(self, key: Optional[str] = None) -> None:
        """Reset one bucket, or every bucket when key is None."""
        with self._lock:
            if key is None:
                self._buckets.clear()
            else:
                self._buckets.pop(key, None)


_signing_rate_limiter: Optional[RateLimiter] = None


def get_signing_rate_limiter() -> RateLimiter:
    """Get the limiter shared by the /sign endpoints."""
    global _signing_rate_limiter
    if _signing_rate_limiter is None:
        settings = get_settings()
        _signing_rate_limiter = RateLimiter(
            max_requests=settings.signing_rate_limit_requests,
            window_seconds=settings.signing_rate_limit_window_seconds,
        )
    return _signing_rate_limiter


async def enforce_signing_rate_limit(request: Request) -> None:
    """FastAPI dependency: one token per request, keyed by client IP."""
    allowed, retry_after = get_signing_rate_limiter().is_allowed(get_client_ip(request))
    if not allowed:
        raise RateLimitException(retry_after)
