"""
Tests for rate limiter.
"""
from app.exceptions import RateLimitException
from app.utils.rate_limiter import RateLimiter


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class TestRateLimiter:
    """Tests for token bucket rate limiter."""

    def test_allows_within_limit(self):
        """Requests within limit are allowed."""
        limiter = RateLimiter(max_requests=5, window_seconds=60)

        for i in range(5):
            allowed, retry_after = limiter.is_allowed("test-key")
            assert allowed is True
            assert retry_after == 0

    def test_blocks_over_limit(self):
        """Requests over limit are blocked."""
        limiter = RateLimiter(max_requests=3, window_seconds=60)

        for _ in range(3):
            limiter.is_allowed("test-key")

        allowed, retry_after = limiter.is_allowed("test-key")
        assert allowed is False
        assert retry_after > 0

    def test_different_keys_independent(self):
        """Different keys have independent limits."""
        limiter = RateLimiter(max_requests=2, window_seconds=60)

        limiter.is_allowed("key1")
        limiter.is_allowed("key1")

        allowed, _ = limiter.is_allowed("key2")
        assert allowed is True

    def test_refills_over_time(self):
        """Tokens refill over time."""
        clock = FakeClock()
        limiter = RateLimiter(max_requests=1, window_seconds=1, clock=clock)

        limiter.is_allowed("test-key")

        allowed1, _ = limiter.is_allowed("test-key")
        assert allowed1 is False

        clock.advance(1.1)

        allowed2, _ = limiter.is_allowed("test-key")
        assert allowed2 is True

    def test_retry_after_reflects_refill_rate(self):
        clock = FakeClock()
        limiter = RateLimiter(max_requests=2, window_seconds=60, clock=clock)
        limiter.is_allowed("k")
        limiter.is_allowed("k")

        allowed, retry_after = limiter.is_allowed("k")

        # one token every 30 seconds
        assert allowed is False
        assert 30 <= retry_after <= 31

    def test_reset_clears_bucket(self):
        """Reset clears the bucket for a key."""
        limiter = RateLimiter(max_requests=2, window_seconds=60)

        limiter.is_allowed("test-key")
        limiter.is_allowed("test-key")

        limiter.reset("test-key")

        allowed, _ = limiter.is_allowed("test-key")
        assert allowed is True

    def test_reset_all(self):
        limiter = RateLimiter(max_requests=1, window_seconds=60)
        limiter.is_allowed("a")
        limiter.is_allowed("b")

        limiter.reset()

        assert limiter.is_allowed("a")[0] is True
        assert limiter.is_allowed("b")[0] is True

    def test_get_remaining(self):
        """Get remaining tokens."""
        clock = FakeClock()
        limiter = RateLimiter(max_requests=5, window_seconds=60, clock=clock)

        assert limiter.get_remaining("test-key") == 5

        limiter.is_allowed("test-key")
        assert limiter.get_remaining("test-key") == 4

        limiter.is_allowed("test-key")
        limiter.is_allowed("test-key")
        assert limiter.get_remaining("test-key") == 2

    def test_idle_buckets_are_cleaned_up(self):
        clock = FakeClock()
        limiter = RateLimiter(max_requests=1, window_seconds=60, clock=clock)
        limiter.is_allowed("stale")

        clock.advance(2 * 3600)
        limiter.is_allowed("fresh")

        assert "stale" not in limiter._buckets
        assert "fresh" in limiter._buckets


class TestRateLimitException:
    def test_carries_retry_after(self):
        exc = RateLimitException(42)
        assert exc.status_code == 429
        assert exc.details["retry_after"] == 42
        assert exc.code == "RATE_LIMIT_EXCEEDED"
