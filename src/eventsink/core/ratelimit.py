"""
Per-client rate limiting.

Token buckets keyed by client address, refilled lazily on access. The key map
and each bucket carry their own locks; the map lock is held only long enough to
find or insert a bucket handle, so unrelated clients never serialize on each
other's bucket.
"""

import asyncio
import math
import threading
import time
from collections import OrderedDict
from typing import Callable, Literal, Optional

import structlog
from fastapi import Request

from .exceptions import RateLimitError

logger = structlog.get_logger(__name__)

RetryAfterMode = Literal["burst", "next_token"]

# Absorbs float error so a wait of exactly n / fill_rate yields n tokens
_REFILL_EPSILON = 1e-6


class TokenBucket:
    """
    Token bucket rate limiter implementation.

    Tokens are whole numbers; refill is computed in floating point from the
    elapsed time and truncated before being added. `last_refill` only advances
    by the time that paid for the tokens actually added, so callers polling
    faster than one token per interval still accumulate refill.
    """

    def __init__(
        self,
        capacity: int,
        refill_interval: float,
        time_func: Callable[[], float] = time.monotonic,
        retry_after_mode: RetryAfterMode = "burst",
    ) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        if refill_interval <= 0:
            raise ValueError("refill_interval must be positive")

        self.capacity = capacity
        self.fill_rate = capacity / refill_interval
        self.tokens = capacity
        self.retry_after_mode = retry_after_mode
        self._time_func = time_func
        self.last_refill = time_func()
        self.last_used = self.last_refill
        self.lock = threading.Lock()

    def take(self, count: int = 1) -> bool:
        """
        Try to consume tokens from bucket.

        Returns True if tokens available, False otherwise.
        """
        if count < 0:
            raise ValueError("count must be non-negative")

        with self.lock:
            now = self._time_func()
            self._refill(now)
            self.last_used = now

            if self.tokens >= count:
                self.tokens -= count
                return True

            return False

    def retry_after(self) -> float:
        """
        Seconds until the client should retry.

        Zero when a token is available. In "burst" mode this is the time for an
        empty bucket to refill completely, minus the time already accrued; in
        "next_token" mode it is the time to the next single token. The value
        can be zero or negative when a refill raced in, so callers clamp it.
        """
        with self.lock:
            now = self._time_func()
            self._refill(now)

            if self.tokens >= 1:
                return 0.0

            elapsed = now - self.last_refill
            if self.retry_after_mode == "next_token":
                return (1 / self.fill_rate) - elapsed
            return (self.capacity / self.fill_rate) - elapsed

    def is_idle(self, now: float, idle_seconds: float) -> bool:
        """True when unused for idle_seconds and the bucket would be full if refilled now."""
        with self.lock:
            if now - self.last_used < idle_seconds:
                return False
            pending = int(max(0.0, now - self.last_refill) * self.fill_rate + _REFILL_EPSILON)
            return self.tokens + pending >= self.capacity

    def _refill(self, now: float) -> None:
        # Time spent at capacity does not accrue
        if self.tokens >= self.capacity:
            self.last_refill = now
            return

        elapsed = max(0.0, now - self.last_refill)
        tokens_to_add = int(elapsed * self.fill_rate + _REFILL_EPSILON)
        if tokens_to_add <= 0:
            return

        self.tokens = min(self.capacity, self.tokens + tokens_to_add)
        if self.tokens >= self.capacity:
            self.last_refill = now
        else:
            self.last_refill = min(now, self.last_refill + tokens_to_add / self.fill_rate)


class RateLimiter:
    """
    Per-client rate limiter using token buckets.

    Every key shares the same capacity and refill interval. The key map is
    bounded: inserting past `max_buckets` evicts the least recently used key,
    and `sweep_idle` drops buckets that are indistinguishable from new ones.
    """

    def __init__(
        self,
        capacity: int,
        refill_interval_seconds: float,
        max_buckets: int = 100_000,
        retry_after_mode: RetryAfterMode = "burst",
        enabled: bool = True,
        time_func: Callable[[], float] = time.monotonic,
    ) -> None:
        self.capacity = capacity
        self.refill_interval_seconds = refill_interval_seconds
        self.max_buckets = max_buckets
        self.retry_after_mode = retry_after_mode
        self.enabled = enabled
        self._time_func = time_func
        self.buckets: "OrderedDict[str, TokenBucket]" = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self.buckets)

    def _get_bucket(self, key: str) -> TokenBucket:
        """Find or create the bucket for key; holds the map lock only for the lookup."""
        with self._lock:
            bucket = self.buckets.get(key)
            if bucket is not None:
                self.buckets.move_to_end(key)
                return bucket

            if len(self.buckets) >= self.max_buckets:
                evicted_key, _ = self.buckets.popitem(last=False)
                logger.info(
                    "Evicted least recently used rate limit bucket",
                    client_key=evicted_key,
                    max_buckets=self.max_buckets,
                )

            bucket = TokenBucket(
                capacity=self.capacity,
                refill_interval=self.refill_interval_seconds,
                time_func=self._time_func,
                retry_after_mode=self.retry_after_mode,
            )
            self.buckets[key] = bucket

        logger.debug(
            "Creating new rate limit bucket",
            client_key=key,
            capacity=self.capacity,
            refill_interval_seconds=self.refill_interval_seconds,
        )
        return bucket

    def admit(self, key: str) -> bool:
        """Take one token for key. Returns True to proceed, False to reject."""
        if not self.enabled:
            return True
        return self._get_bucket(key).take(1)

    def retry_after(self, key: str) -> float:
        """Clamped retry hint in seconds for key (0.0 for unknown keys)."""
        with self._lock:
            bucket = self.buckets.get(key)
        if bucket is None:
            return 0.0
        return max(0.0, bucket.retry_after())

    def check(self, key: str) -> None:
        """
        Check rate limit for key.

        Raises RateLimitError if limit exceeded.
        """
        if not self.enabled:
            return

        bucket = self._get_bucket(key)

        if bucket.take(1):
            logger.debug(
                "Rate limit check passed",
                client_key=key,
                remaining_tokens=bucket.tokens,
                bucket_capacity=bucket.capacity,
            )
            return

        retry_after = max(1, math.ceil(max(0.0, bucket.retry_after())))
        logger.warning(
            "Rate limit exceeded",
            client_key=key,
            retry_after=retry_after,
            remaining_tokens=bucket.tokens,
            bucket_capacity=bucket.capacity,
        )
        raise RateLimitError(
            message="Too many requests",
            retry_after=retry_after,
        )

    def sweep_idle(self, idle_seconds: float) -> int:
        """Remove buckets idle for idle_seconds whose refill would make them full."""
        now = self._time_func()
        with self._lock:
            stale_keys = [key for key, bucket in self.buckets.items() if bucket.is_idle(now, idle_seconds)]
            for key in stale_keys:
                del self.buckets[key]
        return len(stale_keys)


class BucketSweeper:
    """
    Background task that periodically sweeps idle rate limit buckets.
    """

    def __init__(self, rate_limiter: RateLimiter, interval_seconds: float, idle_seconds: float) -> None:
        self.rate_limiter = rate_limiter
        self.interval_seconds = interval_seconds
        self.idle_seconds = idle_seconds
        self._task: Optional[asyncio.Task[None]] = None
        self._running = False

    async def start(self) -> None:
        """Start the sweeper loop."""
        if self._running:
            return

        self._running = True
        self._task = asyncio.create_task(self._run_sweep_loop())
        logger.info("Bucket sweeper started", interval_seconds=self.interval_seconds)

    async def stop(self) -> None:
        """Stop the sweeper loop."""
        if not self._running:
            return

        self._running = False

        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        logger.info("Bucket sweeper stopped")

    async def _run_sweep_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.interval_seconds)
            try:
                removed = self.rate_limiter.sweep_idle(self.idle_seconds)
                if removed:
                    logger.info(
                        "Swept idle rate limit buckets",
                        removed=removed,
                        remaining=len(self.rate_limiter),
                    )
            except Exception as e:
                logger.error("Bucket sweep failed", error=str(e), exc_info=True)


def resolve_client_key(request: Request, trust_forwarded_headers: bool = False) -> str:
    """Client identifier for rate limiting: remote address, or "unknown"."""
    if trust_forwarded_headers:
        forwarded_for = request.headers.get("x-forwarded-for", "")
        first_hop = forwarded_for.split(",")[0].strip()
        if first_hop:
            return first_hop

    if request.client and request.client.host:
        return request.client.host
    return "unknown"


async def enforce_rate_limit(request: Request) -> str:
    """
    FastAPI dependency gating a request by client key.

    Runs before the request body is read. Returns the client key.
    """
    settings = request.app.state.settings
    rate_limiter: RateLimiter = request.app.state.rate_limiter
    client_key = resolve_client_key(request, settings.rate_limit.trust_forwarded_headers)

    try:
        rate_limiter.check(client_key)
    except RateLimitError:
        metrics = getattr(request.app.state, "metrics", None)
        if metrics:
            metrics.record_rate_limited()
        raise

    return client_key
