"""
Tests for the per-client RateLimiter, its idle sweeper and client key resolution.
"""

import asyncio

import pytest
from starlette.requests import Request

from eventsink.core.exceptions import RateLimitError
from eventsink.core.ratelimit import BucketSweeper, RateLimiter, resolve_client_key


def _request(headers=None, client=("203.0.113.7", 51000)) -> Request:
    scope = {
        "type": "http",
        "method": "POST",
        "path": "/ingest",
        "headers": [(name.lower().encode(), value.encode()) for name, value in (headers or {}).items()],
    }
    if client is not None:
        scope["client"] = client
    return Request(scope)


class TestRateLimiter:
    """Test per-key bucket management."""

    def test_per_key_isolation(self, clock) -> None:
        """Test exhausting one key does not affect another."""

        limiter = RateLimiter(capacity=5, refill_interval_seconds=10, time_func=clock)
        for _ in range(5):
            assert limiter.admit("10.0.0.1") is True
        assert limiter.admit("10.0.0.1") is False

        assert limiter.admit("10.0.0.2") is True
        assert len(limiter) == 2

    def test_check_raises_with_retry_after(self, clock) -> None:
        """Test check raises RateLimitError carrying a whole-second hint."""

        limiter = RateLimiter(capacity=5, refill_interval_seconds=10, time_func=clock)
        for _ in range(5):
            limiter.check("10.0.0.1")

        with pytest.raises(RateLimitError) as exc_info:
            limiter.check("10.0.0.1")

        assert exc_info.value.status_code == 429
        assert exc_info.value.details["retry_after"] == 10

    def test_burst_recovers_after_refill_interval(self, clock) -> None:
        """Test capacity 5 over 10s: five admitted, the sixth refused, all five again after 10s."""

        limiter = RateLimiter(capacity=5, refill_interval_seconds=10, time_func=clock)
        assert [limiter.admit("10.0.0.1") for _ in range(6)] == [True] * 5 + [False]
        assert 0 < limiter.retry_after("10.0.0.1") <= 10

        clock.advance(10)
        assert [limiter.admit("10.0.0.1") for _ in range(6)] == [True] * 5 + [False]

    def test_retry_after_is_at_least_one_second(self, clock) -> None:
        limiter = RateLimiter(
            capacity=5,
            refill_interval_seconds=10,
            retry_after_mode="next_token",
            time_func=clock,
        )
        for _ in range(5):
            limiter.check("10.0.0.1")

        clock.advance(1.9)
        with pytest.raises(RateLimitError) as exc_info:
            limiter.check("10.0.0.1")
        assert exc_info.value.details["retry_after"] == 1

    def test_retry_after_for_unknown_key(self, clock) -> None:
        limiter = RateLimiter(capacity=5, refill_interval_seconds=10, time_func=clock)
        assert limiter.retry_after("never-seen") == 0.0

    def test_disabled_limiter_admits_everything(self, clock) -> None:
        limiter = RateLimiter(capacity=1, refill_interval_seconds=10, enabled=False, time_func=clock)
        for _ in range(10):
            assert limiter.admit("10.0.0.1") is True
            limiter.check("10.0.0.1")
        assert len(limiter) == 0

    def test_least_recently_used_key_is_evicted(self, clock) -> None:
        """Test the key map stays bounded by evicting the stalest key."""

        limiter = RateLimiter(capacity=5, refill_interval_seconds=10, max_buckets=2, time_func=clock)
        limiter.admit("a")
        limiter.admit("b")
        limiter.admit("a")
        limiter.admit("c")

        assert list(limiter.buckets) == ["a", "c"]
        assert limiter.buckets["a"].tokens == 3

    def test_sweep_removes_idle_full_buckets(self, clock) -> None:
        limiter = RateLimiter(capacity=5, refill_interval_seconds=10, time_func=clock)
        limiter.admit("old")
        clock.advance(100)
        limiter.admit("recent")

        assert limiter.sweep_idle(idle_seconds=60) == 1
        assert list(limiter.buckets) == ["recent"]

    def test_sweep_keeps_drained_buckets(self, clock) -> None:
        """Test a bucket that would not be full after refill survives the sweep."""

        limiter = RateLimiter(capacity=5, refill_interval_seconds=1000, time_func=clock)
        for _ in range(6):
            limiter.admit("drained")

        clock.advance(61)
        assert limiter.sweep_idle(idle_seconds=60) == 0
        assert limiter.admit("drained") is False


class TestBucketSweeper:
    """Test the background sweep loop."""

    @pytest.mark.asyncio
    async def test_sweeper_removes_idle_buckets(self, clock) -> None:
        limiter = RateLimiter(capacity=5, refill_interval_seconds=10, time_func=clock)
        limiter.admit("10.0.0.1")
        clock.advance(3600)

        sweeper = BucketSweeper(limiter, interval_seconds=0.01, idle_seconds=60)
        await sweeper.start()
        for _ in range(100):
            if len(limiter) == 0:
                break
            await asyncio.sleep(0.01)
        await sweeper.stop()

        assert len(limiter) == 0

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, clock) -> None:
        limiter = RateLimiter(capacity=5, refill_interval_seconds=10, time_func=clock)
        sweeper = BucketSweeper(limiter, interval_seconds=60, idle_seconds=60)
        await sweeper.start()
        await sweeper.stop()
        await sweeper.stop()


class TestClientKey:
    """Test client key resolution."""

    def test_remote_address_is_used(self) -> None:
        assert resolve_client_key(_request()) == "203.0.113.7"

    def test_forwarded_header_ignored_unless_trusted(self) -> None:
        request = _request(headers={"X-Forwarded-For": "198.51.100.1, 10.0.0.2"})
        assert resolve_client_key(request) == "203.0.113.7"
        assert resolve_client_key(request, trust_forwarded_headers=True) == "198.51.100.1"

    def test_missing_address_is_unknown(self) -> None:
        assert resolve_client_key(_request(client=None)) == "unknown"
