"""
Tracking Rate Limiter
=====================

Fixed-window request limiting for the /api/track endpoint.

WHY THIS FILE EXISTS
--------------------
The tracking endpoint is public. A misbehaving page (or a script replaying
payloads) can flood it. Each (website, client IP) key gets a fixed budget of
requests per window; the request that exceeds it is rejected with 429 before
anything is written.

WINDOW SEMANTICS
----------------
- The first request for a key opens a window of `window_seconds`.
- Up to `max_requests` requests are allowed inside the window.
- Request N+1 inside the same window is rejected.
- The first request after the window has elapsed opens a new window.

BACKENDS
--------
- FixedWindowRateLimiter: in-process dict, swept by `evict()`. State is
  per-process, so a multi-instance deployment gets per-instance limits.
- RedisRateLimiter: INCR + EXPIRE NX in one transaction on a shared Redis, for deployments that
  run several API instances behind a load balancer.

RELATED FILES
-------------
- services/ingestion.py: Calls `allow()` after resolving the website
- state.py: Builds one limiter per process and sweeps it
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from redis.asyncio import Redis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)


@dataclass
class RateLimitWindow:
    """
    Counter for one key.

    Attributes:
        count: Requests seen in the current window
        window_start: Clock reading when the window opened
    """

    count: int
    window_start: float


class RateLimiter:
    """Port implemented by every limiter backend."""

    async def allow(self, key: str) -> bool:
        raise NotImplementedError

    def evict(self) -> int:
        """Drop expired state. Returns the number of entries removed."""
        return 0


class FixedWindowRateLimiter(RateLimiter):
    """
    In-memory fixed-window limiter.

    WHAT: Counts requests per key in a dict of RateLimitWindow
    WHY: Zero infrastructure; good enough for a single API process

    Usage:
        limiter = FixedWindowRateLimiter(max_requests=60, window_seconds=60)
        if not await limiter.allow(f"{website_id}:{ip}"):
            raise RateLimitError()
    """

    def __init__(
        self,
        max_requests: int,
        window_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._windows: Dict[str, RateLimitWindow] = {}

    def __len__(self) -> int:
        return len(self._windows)

    def _expired(self, window: RateLimitWindow, now: float) -> bool:
        return now - window.window_start >= self.window_seconds

    async def allow(self, key: str) -> bool:
        now = self._clock()
        window = self._windows.get(key)

        if window is None or self._expired(window, now):
            self._windows[key] = RateLimitWindow(count=1, window_start=now)
            return True

        if window.count >= self.max_requests:
            logger.warning(
                f"[RATE_LIMIT] Key {key} exceeded {self.max_requests} requests "
                f"per {self.window_seconds}s"
            )
            return False

        window.count += 1
        return True

    def evict(self) -> int:
        """Remove windows that have elapsed so the dict cannot grow without bound."""
        now = self._clock()
        expired = [key for key, window in self._windows.items() if self._expired(window, now)]
        for key in expired:
            del self._windows[key]
        if expired:
            logger.debug(f"[RATE_LIMIT] Evicted {len(expired)} expired windows")
        return len(expired)


class RedisRateLimiter(RateLimiter):
    """
    Redis-backed fixed-window limiter.

    HOW:
        - Key format: "track_rate:{key}"
        - INCR the key and EXPIRE ... NX in one MULTI/EXEC, so the counter
          never exists without a TTL. NX keeps later requests from pushing
          the window forward; a key that lost its TTL gets one back.
        - Allowed while the counter is <= max_requests
        - Redis expires the key, which opens the next window

    If Redis is unreachable the request is allowed: rate limiting is a
    guard rail, not a reason to drop analytics.
    """

    def __init__(
        self,
        redis_client: Optional[Redis],
        max_requests: int,
        window_seconds: int,
        prefix: str = "track_rate",
    ):
        self.redis = redis_client
        self.max_requests = max_requests
        self.window_seconds = int(window_seconds)
        self.prefix = prefix

        if not self.redis:
            logger.warning("[RATE_LIMIT] No Redis client - rate limiting disabled")

    def _get_key(self, key: str) -> str:
        return f"{self.prefix}:{key}"

    async def allow(self, key: str) -> bool:
        if not self.redis:
            return True

        redis_key = self._get_key(key)
        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.incr(redis_key)
                pipe.expire(redis_key, self.window_seconds, nx=True)
                count, _ = await pipe.execute()
        except RedisError as e:
            logger.warning(f"[RATE_LIMIT] Redis unavailable, allowing request: {e}")
            return True

        if count > self.max_requests:
            logger.warning(
                f"[RATE_LIMIT] Key {key} exceeded {self.max_requests} requests "
                f"per {self.window_seconds}s"
            )
            return False
        return True
