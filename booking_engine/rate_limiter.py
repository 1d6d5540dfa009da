"""
Request Rate Limiter
====================

Per-client rate limiting for the public booking endpoints.

Two backends share the ``RateLimiter`` interface:
- ``InMemoryRateLimiter``: fixed window counters held in process memory.
  Correct for a single instance only.
- ``RedisRateLimiter``: sliding window on a Redis sorted set, shared by
  every instance.

The backend is chosen by ``RATE_LIMIT_BACKEND`` and injected into routes
through ``rate_limit(...)``.
"""

import asyncio
import math
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, Optional

import redis.asyncio as aioredis
import structlog
from fastapi import Request
from prometheus_client import Counter

from .config import settings
from .exceptions import RateLimitExceeded

logger = structlog.get_logger(__name__)

# =============================================================================
# PROMETHEUS METRICS
# =============================================================================

RATE_LIMIT_DECISIONS = Counter(
    "booking_rate_limit_decisions_total",
    "Rate limit decisions for public endpoints",
    ["path", "result"]  # result: allowed, blocked
)


# =============================================================================
# RATE LIMIT CONFIGURATION
# =============================================================================

@dataclass
class RateLimitConfig:
    """Request budget for one route."""
    max_requests: int
    window_seconds: int


@dataclass
class RateLimitDecision:
    allowed: bool
    remaining: int
    retry_after: int = 0


def verify_payment_limit() -> RateLimitConfig:
    return RateLimitConfig(
        max_requests=settings.RATE_LIMIT_VERIFY_MAX_REQUESTS,
        window_seconds=settings.RATE_LIMIT_WINDOW_SECONDS,
    )


def create_booking_limit() -> RateLimitConfig:
    return RateLimitConfig(
        max_requests=settings.RATE_LIMIT_CREATE_MAX_REQUESTS,
        window_seconds=settings.RATE_LIMIT_WINDOW_SECONDS,
    )


# =============================================================================
# INTERFACE
# =============================================================================

class RateLimiter(ABC):
    """Checks and records one request against a key's budget."""

    @abstractmethod
    async def check(self, key: str, config: RateLimitConfig) -> RateLimitDecision:
        ...

    async def reset(self, key: Optional[str] = None) -> None:
        """Forget recorded requests (for tests/admin)."""

    async def close(self) -> None:
        pass


# =============================================================================
# IN-MEMORY FIXED WINDOW
# =============================================================================

@dataclass
class _Window:
    count: int
    reset_at: float


class InMemoryRateLimiter(RateLimiter):
    """
    Fixed window counter keyed by client, for single-instance deployments.

    Expired windows are swept lazily every ``sweep_interval`` seconds so the
    map does not grow with every client ever seen.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic, sweep_interval: float = 60.0):
        self._clock = clock
        self._sweep_interval = sweep_interval
        self._windows: Dict[str, _Window] = {}
        self._last_sweep = clock()
        self._lock = asyncio.Lock()

    async def check(self, key: str, config: RateLimitConfig) -> RateLimitDecision:
        async with self._lock:
            now = self._clock()
            self._maybe_sweep(now)

            window = self._windows.get(key)
            if window is None or now > window.reset_at:
                self._windows[key] = _Window(count=1, reset_at=now + config.window_seconds)
                return RateLimitDecision(allowed=True, remaining=config.max_requests - 1)

            if window.count >= config.max_requests:
                retry_after = max(1, math.ceil(window.reset_at - now))
                return RateLimitDecision(allowed=False, remaining=0, retry_after=retry_after)

            window.count += 1
            return RateLimitDecision(allowed=True, remaining=config.max_requests - window.count)

    def _maybe_sweep(self, now: float) -> None:
        if now - self._last_sweep < self._sweep_interval:
            return
        expired = [key for key, window in self._windows.items() if now > window.reset_at]
        for key in expired:
            del self._windows[key]
        self._last_sweep = now

    async def reset(self, key: Optional[str] = None) -> None:
        async with self._lock:
            if key is None:
                self._windows.clear()
            else:
                self._windows.pop(key, None)

    def __len__(self) -> int:
        return len(self._windows)


# =============================================================================
# REDIS SLIDING WINDOW
# =============================================================================

# Trim, count and record in one atomic step. Returns {allowed, count, oldest score}.
SLIDING_WINDOW_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])

redis.call('ZREMRANGEBYSCORE', key, 0, now - window)
local count = redis.call('ZCARD', key)

if count >= limit then
    local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
    return {0, count, oldest[2] or ''}
end

redis.call('ZADD', key, now, ARGV[4])
redis.call('EXPIRE', key, math.ceil(window * 2))
return {1, count + 1, ''}
"""


class RedisRateLimiter(RateLimiter):
    """
    Distributed rate limiter using a Redis sorted set per key.

    1. Remove timestamps older than the window
    2. Count the remaining timestamps
    3. Allow and record the request if count < limit

    All three run server-side in one Lua script.
    """

    def __init__(self, redis_url: Optional[str] = None, key_prefix: str = "booking_rate_limit"):
        self.redis_url = redis_url or settings.REDIS_URL
        self.key_prefix = key_prefix
        self._redis: Optional[aioredis.Redis] = None

    async def get_redis(self) -> aioredis.Redis:
        if self._redis is None:
            self._redis = aioredis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True
            )
        return self._redis

    async def close(self) -> None:
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    def _key(self, key: str) -> str:
        return f"{self.key_prefix}:{key}"

    async def check(self, key: str, config: RateLimitConfig) -> RateLimitDecision:
        redis_key = self._key(key)
        redis = await self.get_redis()
        now = time.time()

        # Unique member so concurrent requests in the same instant all count
        allowed, count, oldest = await redis.eval(
            SLIDING_WINDOW_SCRIPT,
            1,
            redis_key,
            now,
            config.window_seconds,
            config.max_requests,
            f"{now}:{uuid.uuid4().hex}",
        )

        if not int(allowed):
            retry_after = config.window_seconds
            if oldest:
                retry_after = max(1, math.ceil(float(oldest) + config.window_seconds - now))
            return RateLimitDecision(allowed=False, remaining=0, retry_after=retry_after)

        return RateLimitDecision(allowed=True, remaining=max(0, config.max_requests - int(count)))

    async def reset(self, key: Optional[str] = None) -> None:
        redis = await self.get_redis()
        if key is not None:
            await redis.delete(self._key(key))


# =============================================================================
# FACTORY & DEPENDENCY
# =============================================================================

def create_rate_limiter(backend: Optional[str] = None, redis_url: Optional[str] = None) -> RateLimiter:
    """
    Create the configured rate limiter.

    Args:
        backend: "memory" or "redis" (defaults to RATE_LIMIT_BACKEND)
        redis_url: Redis connection URL for the redis backend

    Returns:
        Rate limiter instance
    """
    backend = backend or settings.RATE_LIMIT_BACKEND
    if backend == "redis":
        return RedisRateLimiter(redis_url=redis_url)
    return InMemoryRateLimiter()


def client_ip(request: Request) -> str:
    """Client address as seen through the proxy headers."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    return "unknown"


def rate_limit(config_factory: Callable[[], RateLimitConfig]):
    """
    Build a FastAPI dependency that enforces a per-IP, per-path budget.

    The limiter instance lives on ``app.state.rate_limiter``.
    """

    async def dependency(request: Request) -> None:
        limiter: RateLimiter = request.app.state.rate_limiter
        config = config_factory()
        path = request.url.path
        key = f"{client_ip(request)}:{path}"

        decision = await limiter.check(key, config)
        if not decision.allowed:
            RATE_LIMIT_DECISIONS.labels(path=path, result="blocked").inc()
            logger.warning(
                "Rate limit exceeded",
                key=key,
                limit=config.max_requests,
                retry_after=decision.retry_after
            )
            raise RateLimitExceeded(retry_after=decision.retry_after)

        RATE_LIMIT_DECISIONS.labels(path=path, result="allowed").inc()

    return dependency
