"""Tests for the fixed-window rate limiters."""

import pytest
from fakeredis import FakeAsyncRedis

from metering.core.config import Settings
from metering.core.rate_limit import (
    InMemoryRateLimiter,
    RateLimitDecision,
    RedisRateLimiter,
    build_rate_limiter,
)

pytestmark = pytest.mark.unit


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# ============================================================================
# In-memory limiter
# ============================================================================


async def test_allows_up_to_max_requests_then_denies():
    clock = FakeClock()
    limiter = InMemoryRateLimiter(max_requests=3, window_seconds=60, clock=clock)

    decisions = [await limiter.hit("user_alice:1.2.3.4") for _ in range(4)]

    assert [d.allowed for d in decisions] == [True, True, True, False]
    assert [d.remaining for d in decisions] == [2, 1, 0, 0]


async def test_denial_reports_retry_after_and_reset():
    clock = FakeClock()
    limiter = InMemoryRateLimiter(max_requests=1, window_seconds=60, clock=clock)

    await limiter.hit("k")
    clock.advance(15)
    denied = await limiter.hit("k")

    assert not denied.allowed
    assert denied.retry_after == 45
    assert denied.reset_at == int(clock.now - 15 + 60)


async def test_window_resets_after_expiry():
    clock = FakeClock()
    limiter = InMemoryRateLimiter(max_requests=1, window_seconds=60, clock=clock)

    await limiter.hit("k")
    assert not (await limiter.hit("k")).allowed

    clock.advance(61)
    assert (await limiter.hit("k")).allowed


async def test_keys_are_counted_independently():
    limiter = InMemoryRateLimiter(max_requests=1, window_seconds=60, clock=FakeClock())

    assert (await limiter.hit("user_alice:ip")).allowed
    assert (await limiter.hit("user_bob:ip")).allowed
    assert not (await limiter.hit("user_alice:ip")).allowed


async def test_sweep_drops_expired_windows():
    clock = FakeClock()
    limiter = InMemoryRateLimiter(max_requests=5, window_seconds=60, clock=clock)
    await limiter.hit("a")
    clock.advance(30)
    await limiter.hit("b")

    clock.advance(31)
    removed = limiter.sweep()

    assert removed == 1
    assert len(limiter) == 1


async def test_start_stop_clears_state():
    limiter = InMemoryRateLimiter(max_requests=5, window_seconds=60)
    await limiter.start()
    await limiter.hit("a")

    await limiter.stop()

    assert len(limiter) == 0


def test_decision_headers():
    allowed = RateLimitDecision(allowed=True, limit=10, remaining=9, reset_at=1000, retry_after=0)
    denied = RateLimitDecision(allowed=False, limit=10, remaining=0, reset_at=1000, retry_after=30)

    assert allowed.headers() == {
        "X-RateLimit-Limit": "10",
        "X-RateLimit-Remaining": "9",
        "X-RateLimit-Reset": "1000",
    }
    assert denied.headers()["Retry-After"] == "30"


# ============================================================================
# Redis limiter
# ============================================================================


@pytest.fixture
async def fake_redis():
    r = FakeAsyncRedis(decode_responses=True)
    yield r
    await r.aclose()


async def test_redis_limiter_counts_across_calls(fake_redis):
    limiter = RedisRateLimiter(fake_redis, max_requests=2, window_seconds=60)

    decisions = [await limiter.hit("user_alice:ip") for _ in range(3)]

    assert [d.allowed for d in decisions] == [True, True, False]
    assert decisions[-1].retry_after >= 1
    assert await fake_redis.ttl("ratelimit:user_alice:ip") > 0


async def test_redis_limiter_restores_missing_expiry(fake_redis):
    limiter = RedisRateLimiter(fake_redis, max_requests=5, window_seconds=60)
    await fake_redis.set("ratelimit:k", 1)

    decision = await limiter.hit("k")

    assert decision.allowed
    assert 0 < await fake_redis.ttl("ratelimit:k") <= 60


async def test_build_rate_limiter_selects_backend(fake_redis):
    memory = build_rate_limiter(Settings(rate_limit_backend="memory"))
    shared = build_rate_limiter(Settings(rate_limit_backend="redis"), fake_redis)

    assert isinstance(memory, InMemoryRateLimiter)
    assert isinstance(shared, RedisRateLimiter)


def test_build_redis_limiter_without_client_raises():
    with pytest.raises(RuntimeError):
        build_rate_limiter(Settings(rate_limit_backend="redis"))
