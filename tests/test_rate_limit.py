"""
Tests for per-key fixed-window rate limiting.
"""

from uuid import uuid4

import pytest

from app.exceptions import RateLimitExceededError
from app.services.rate_limit import RateLimiter


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestRateLimiter:
    def test_counts_down_remaining(self):
        limiter = RateLimiter(FakeClock())
        key = uuid4()
        assert [limiter.hit(key, 3) for _ in range(3)] == [2, 1, 0]

    def test_exhausted_window_raises_with_retry_after(self):
        clock = FakeClock()
        limiter = RateLimiter(clock)
        key = uuid4()
        limiter.hit(key, 1)

        clock.now += 20
        with pytest.raises(RateLimitExceededError) as exc_info:
            limiter.hit(key, 1)
        assert exc_info.value.limit == 1
        assert exc_info.value.retry_after == 40

    def test_window_resets_after_a_minute(self):
        clock = FakeClock()
        limiter = RateLimiter(clock)
        key = uuid4()
        limiter.hit(key, 1)

        clock.now += 60
        assert limiter.hit(key, 1) == 0

    def test_keys_are_independent(self):
        limiter = RateLimiter(FakeClock())
        first, second = uuid4(), uuid4()
        limiter.hit(first, 1)
        assert limiter.hit(second, 1) == 0

    def test_reset(self):
        limiter = RateLimiter(FakeClock())
        key = uuid4()
        limiter.hit(key, 1)
        limiter.reset()
        assert limiter.hit(key, 1) == 0
