"""
Tests for the per-user fixed-window RateLimiter.
"""
import pytest

from alphaforge.exceptions import RateLimitExceeded
from alphaforge.utils.rate_limiter import RateLimiter


class TestFixedWindow:

    def test_threshold_calls_allowed_then_denied(self, mono_clock):
        limiter = RateLimiter(max_calls=5, window_seconds=60, clock=mono_clock)
        assert all(limiter.check("u1") for _ in range(5))
        assert limiter.check("u1") is False

    def test_call_after_reset_starts_fresh_window(self, mono_clock):
        limiter = RateLimiter(max_calls=2, window_seconds=60, clock=mono_clock)
        limiter.check("u1")
        limiter.check("u1")
        assert limiter.check("u1") is False

        mono_clock.advance(60)
        assert limiter.check("u1") is True
        window = limiter.get_window("u1")
        assert window.count == 1
        assert window.reset_at == mono_clock.now + 60

    def test_denied_calls_do_not_extend_window(self, mono_clock):
        limiter = RateLimiter(max_calls=1, window_seconds=10, clock=mono_clock)
        limiter.check("u1")
        reset_at = limiter.get_window("u1").reset_at
        mono_clock.advance(5)
        assert limiter.check("u1") is False
        assert limiter.get_window("u1").reset_at == reset_at
        assert limiter.get_window("u1").count == 1

    def test_users_are_independent(self, mono_clock):
        limiter = RateLimiter(max_calls=1, window_seconds=60, clock=mono_clock)
        assert limiter.check("u1") is True
        assert limiter.check("u1") is False
        assert limiter.check("u2") is True


class TestRaising:

    def test_check_or_raise_carries_retry_after(self, mono_clock):
        limiter = RateLimiter(max_calls=1, window_seconds=60, clock=mono_clock)
        limiter.check_or_raise("u1")
        mono_clock.advance(15)
        with pytest.raises(RateLimitExceeded) as exc_info:
            limiter.check_or_raise("u1")
        assert exc_info.value.retry_after == pytest.approx(45)
        assert exc_info.value.kind == "RATE_LIMIT_EXCEEDED"

    def test_reset_drops_windows(self, mono_clock):
        limiter = RateLimiter(max_calls=1, window_seconds=60, clock=mono_clock)
        limiter.check("u1")
        limiter.check("u2")
        limiter.reset("u1")
        assert limiter.get_window("u1") is None
        assert limiter.get_window("u2") is not None
        limiter.reset()
        assert limiter.retry_after("u2") is None

    def test_rejects_non_positive_threshold(self):
        with pytest.raises(ValueError):
            RateLimiter(max_calls=0)
