"""
Sliding-window rate limiters.

Two interchangeable backends:
1. Redis sorted sets, shared by every API instance
2. In-process deques, for single-instance deployments and tests
"""
import math
import time
import uuid
from collections import deque
from typing import Callable, Deque, Dict, Optional

import redis.asyncio as aioredis
import structlog

from settlement.config import Settings
from settlement.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class RateLimiter:
    """Allows at most `limit` hits per key within any `window_seconds` span."""

    def __init__(self, name: str, limit: int, window_seconds: float):
        if limit < 1:
            raise ValueError("limit must be at least 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.name = name
        self.limit = limit
        self.window_seconds = window_seconds

    async def hit(self, key: str) -> bool:
        """
        Record an attempt for `key`.

        Returns:
            bool: True if the attempt is within the limit, False if rejected
        """
        allowed = await self._hit(key)
        if not allowed:
            metrics.record_rate_limit_rejection(self.name)
            logger.info(
                "rate_limit_rejected",
                limiter=self.name,
                key=key,
                limit=self.limit,
                window_seconds=self.window_seconds,
            )
        return allowed

    async def _hit(self, key: str) -> bool:
        raise NotImplementedError


class InMemoryRateLimiter(RateLimiter):
    """Process-local limiter. Counters are not shared between instances."""

    def __init__(
        self,
        name: str,
        limit: int,
        window_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__(name, limit, window_seconds)
        self._clock = clock
        self._hits: Dict[str, Deque[float]] = {}
        self._next_eviction: Optional[float] = None

    async def _hit(self, key: str) -> bool:
        now = self._clock()
        cutoff = now - self.window_seconds

        hits = self._hits.setdefault(key, deque())
        while hits and hits[0] <= cutoff:
            hits.popleft()

        if len(hits) >= self.limit:
            return False

        hits.append(now)
        # Sweep idle keys at most once per window
        if self._next_eviction is None or now >= self._next_eviction:
            self._evict_idle(cutoff)
            self._next_eviction = now + self.window_seconds
        return True

    def _evict_idle(self, cutoff: float) -> None:
        # Drop keys whose newest hit has left the window
        stale = [k for k, v in self._hits.items() if not v or v[-1] <= cutoff]
        for k in stale:
            del self._hits[k]


class RedisRateLimiter(RateLimiter):
    """
    Limiter backed by a Redis sorted set per key.

    Members are scored by their timestamp; members older than the window
    are trimmed on every hit and the key expires once the window passes.
    """

    def __init__(
        self,
        name: str,
        limit: int,
        window_seconds: float,
        redis_client: aioredis.Redis,
        key_prefix: str = "ratelimit",
    ):
        super().__init__(name, limit, window_seconds)
        self.redis = redis_client
        self.key_prefix = key_prefix

    def _key(self, key: str) -> str:
        return f"{self.key_prefix}:{self.name}:{key}"

    async def _hit(self, key: str) -> bool:
        redis_key = self._key(key)
        now = time.time()
        member = f"{now:.6f}:{uuid.uuid4().hex}"

        pipe = self.redis.pipeline(transaction=True)
        pipe.zremrangebyscore(redis_key, 0, now - self.window_seconds)
        pipe.zadd(redis_key, {member: now})
        pipe.zcard(redis_key)
        pipe.expire(redis_key, max(1, math.ceil(self.window_seconds)))
        _, _, count, _ = await pipe.execute()

        if count > self.limit:
            # Rejected attempts do not consume the window
            await self.redis.zrem(redis_key, member)
            return False
        return True


def build_rate_limiter(
    name: str,
    limit: int,
    window_seconds: float,
    settings: Settings,
    redis_client: Optional[aioredis.Redis] = None,
) -> RateLimiter:
    """
    Create a limiter for the configured backend.

    Args:
        name: Limiter name, used in keys, logs and metrics
        limit: Hits allowed per window
        window_seconds: Window length
        settings: Application settings
        redis_client: Optional Redis client (created from settings if omitted)
    """
    if settings.rate_limit_backend == "redis":
        if redis_client is None:
            if not settings.redis_url:
                raise ValueError("REDIS_URL is required for the redis rate limit backend")
            redis_client = aioredis.from_url(
                settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return RedisRateLimiter(name, limit, window_seconds, redis_client)

    return InMemoryRateLimiter(name, limit, window_seconds)
