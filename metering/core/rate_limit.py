"""Fixed-window request throttling.

``InMemoryRateLimiter`` is per-process: with several instances behind a load
balancer each one counts on its own, so the effective limit scales with the
instance count. ``RedisRateLimiter`` shares one window across instances and is
opted into with ``rate_limit_backend="redis"``.
"""

import asyncio
import math
import time
from collections.abc import Callable
from dataclasses import dataclass

import structlog
from redis.asyncio import Redis

from metering.core.config import Settings

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_at: int  # unix seconds
    retry_after: int  # seconds, 0 when allowed

    def headers(self) -> dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset_at),
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.retry_after)
        return headers


@dataclass
class _Window:
    count: int
    reset_at: float


class InMemoryRateLimiter:
    """Per-key fixed window kept in a dict, swept by a background task."""

    def __init__(
        self,
        max_requests: int = 10,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.time,
    ):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._windows: dict[str, _Window] = {}
        self._sweeper: asyncio.Task | None = None

    def __len__(self) -> int:
        return len(self._windows)

    async def start(self) -> None:
        if self._sweeper is None:
            self._sweeper = asyncio.get_running_loop().create_task(self._sweep_loop())

    async def stop(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None
        self._windows.clear()

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.window_seconds)
            removed = self.sweep()
            if removed:
                logger.debug("rate_limit_swept", removed=removed, remaining=len(self._windows))

    def sweep(self) -> int:
        """Drop windows that have already reset. Returns how many were dropped."""
        now = self._clock()
        expired = [key for key, window in self._windows.items() if now > window.reset_at]
        for key in expired:
            del self._windows[key]
        return len(expired)

    async def hit(self, key: str) -> RateLimitDecision:
        now = self._clock()
        window = self._windows.get(key)

        if window is None or now > window.reset_at:
            window = _Window(count=1, reset_at=now + self.window_seconds)
            self._windows[key] = window
            return self._decision(True, window, now)

        if window.count >= self.max_requests:
            return self._decision(False, window, now)

        window.count += 1
        return self._decision(True, window, now)

    def _decision(self, allowed: bool, window: _Window, now: float) -> RateLimitDecision:
        return RateLimitDecision(
            allowed=allowed,
            limit=self.max_requests,
            remaining=max(0, self.max_requests - window.count),
            reset_at=math.ceil(window.reset_at),
            retry_after=0 if allowed else max(1, math.ceil(window.reset_at - now)),
        )


class RedisRateLimiter:
    """Fixed window shared across instances via INCR + EXPIRE."""

    def __init__(
        self,
        redis: Redis,
        max_requests: int = 10,
        window_seconds: int = 60,
        prefix: str = "ratelimit",
        clock: Callable[[], float] = time.time,
    ):
        self.redis = redis
        self.max_requests = max_requests
        self.window_seconds = int(window_seconds)
        self.prefix = prefix
        self._clock = clock

    async def start(self) -> None:
        return None

    async def stop(self) -> None:
        return None

    async def hit(self, key: str) -> RateLimitDecision:
        now = self._clock()
        redis_key = f"{self.prefix}:{key}"

        count = await self.redis.incr(redis_key)
        if count == 1:
            await self.redis.expire(redis_key, self.window_seconds)
            ttl = self.window_seconds
        else:
            ttl = await self.redis.ttl(redis_key)
            if ttl < 0:  # key lost its expiry
                await self.redis.expire(redis_key, self.window_seconds)
                ttl = self.window_seconds

        allowed = count <= self.max_requests
        return RateLimitDecision(
            allowed=allowed,
            limit=self.max_requests,
            remaining=max(0, self.max_requests - count),
            reset_at=math.ceil(now + ttl),
            retry_after=0 if allowed else max(1, ttl),
        )


def build_rate_limiter(settings: Settings, redis: Redis | None = None):
    """Construct the limiter chosen by ``settings.rate_limit_backend``."""
    if settings.rate_limit_backend == "redis":
        if redis is None:
            raise RuntimeError("rate_limit_backend=redis requires an initialized Redis client")
        return RedisRateLimiter(
            redis,
            max_requests=settings.realtime_token_rate_limit,
            window_seconds=settings.realtime_token_rate_window_seconds,
        )
    return InMemoryRateLimiter(
        max_requests=settings.realtime_token_rate_limit,
        window_seconds=settings.realtime_token_rate_window_seconds,
    )
