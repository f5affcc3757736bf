"""Tests for the client-side subscription/usage cache."""

import json

import httpx
import pytest

from metering.client.cache import SUBSCRIPTION, USAGE, SubscriptionClient
from metering.realtime.events import ChangeTable, EventType, StreamMessage

pytestmark = pytest.mark.unit

SUBSCRIPTION_VIEW = {
    "user_id": "user_alice",
    "status": "active",
    "plan": "pro",
    "effective_plan": "pro",
    "plan_name": "Pro",
    "has_active_subscription": True,
    "cancel_at_period_end": False,
}

USAGE_OVERVIEW = {
    "user_id": "user_alice",
    "month": "2025-03",
    "plan": "pro",
    "resources": [
        {
            "resource": "premium_interactions",
            "label": "Premium interactions",
            "current": 10,
            "limit": 500,
            "percentage": 2.0,
            "remaining": 490,
        }
    ],
    "should_notify": False,
}


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


class Backend:
    """httpx.MockTransport handler counting requests per path."""

    def __init__(self, stream_lines=None, sync_status=200):
        self.calls = []
        self.stream_lines = stream_lines or []
        self.sync_status = sync_status

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls.append((request.method, request.url.path))
        assert request.headers["Authorization"] == "Bearer tok"
        if request.url.path == "/api/subscription/status":
            return httpx.Response(200, json=SUBSCRIPTION_VIEW)
        if request.url.path == "/api/usage":
            return httpx.Response(200, json=USAGE_OVERVIEW)
        if request.url.path == "/api/subscription/sync":
            return httpx.Response(self.sync_status, json={"status": "active", "plan": "pro"})
        if request.url.path == "/api/realtime/subscribe":
            body = "".join(self.stream_lines).encode()
            return httpx.Response(200, content=body, headers={"Content-Type": "text/event-stream"})
        return httpx.Response(404)


@pytest.fixture
def clock():
    return FakeClock()


def make_client(backend, clock, ttl=30.0):
    return SubscriptionClient(
        "http://metering.test",
        "tok",
        ttl=ttl,
        clock=clock,
        transport=httpx.MockTransport(backend),
    )


def update(table, data):
    return StreamMessage(type=EventType.UPDATE, table=table, operation="update", data=data)


# ============================================================================
# Freshness
# ============================================================================


async def test_second_read_within_ttl_hits_cache(clock):
    backend = Backend()
    async with make_client(backend, clock) as client:
        await client.get_subscription()
        clock.now += 29
        await client.get_subscription()

    assert backend.calls == [("GET", "/api/subscription/status")]


async def test_read_after_ttl_refetches(clock):
    backend = Backend()
    async with make_client(backend, clock) as client:
        await client.get_usage()
        clock.now += 31
        assert not client.is_fresh(USAGE)
        await client.get_usage()

    assert backend.calls.count(("GET", "/api/usage")) == 2


async def test_refresh_with_sync_posts_only_once(clock):
    backend = Backend()
    async with make_client(backend, clock) as client:
        await client.refresh(sync=True)
        await client.refresh(sync=True)

    assert backend.calls.count(("POST", "/api/subscription/sync")) == 1
    assert backend.calls.count(("GET", "/api/subscription/status")) == 2


async def test_failed_sync_still_refreshes(clock):
    backend = Backend(sync_status=502)
    async with make_client(backend, clock) as client:
        subscription, usage = await client.refresh(sync=True)

    assert subscription["plan"] == "pro"
    assert usage["month"] == "2025-03"


# ============================================================================
# Push updates
# ============================================================================


async def test_subscription_event_recomputes_effective_plan(clock):
    async with make_client(Backend(), clock) as client:
        await client.get_subscription()

        changed = client.apply_event(
            update(ChangeTable.SUBSCRIPTION, {"status": "canceled", "plan": "pro"})
        )

        view = client.cached(SUBSCRIPTION)
        assert changed
        assert view["status"] == "canceled"
        assert view["effective_plan"] == "free"
        assert view["plan_name"] == "Free"
        assert view["has_active_subscription"] is False


async def test_cancellation_rebases_cached_usage_on_free_limits(clock):
    async with make_client(Backend(), clock) as client:
        await client.get_subscription()
        await client.get_usage()

        client.apply_event(
            update(ChangeTable.SUBSCRIPTION, {"status": "canceled", "plan": "free"})
        )

        usage = client.cached(USAGE)
        item = usage["resources"][0]
        assert usage["plan"] == "free"
        assert item["limit"] == 0
        assert item["percentage"] == 100.0
        assert item["remaining"] == 0
        assert item["current"] == 10

        # Later counter pushes keep the free limits
        client.apply_event(
            update(ChangeTable.USAGE, {"month": "2025-03", "premium_interactions": 11})
        )
        item = client.cached(USAGE)["resources"][0]
        assert item["limit"] == 0
        assert item["remaining"] == 0


async def test_status_change_within_same_plan_leaves_usage_alone(clock):
    async with make_client(Backend(), clock) as client:
        await client.get_subscription()
        await client.get_usage()

        client.apply_event(update(ChangeTable.SUBSCRIPTION, {"status": "past_due"}))

        assert client.cached(USAGE) == USAGE_OVERVIEW


async def test_usage_event_patches_counters(clock):
    async with make_client(Backend(), clock) as client:
        await client.get_usage()
        clock.now += 25

        changed = client.apply_event(
            update(ChangeTable.USAGE, {"month": "2025-03", "premium_interactions": 250})
        )

        item = client.cached(USAGE)["resources"][0]
        assert changed
        assert item["current"] == 250
        assert item["percentage"] == 50.0
        assert item["remaining"] == 250
        # Push updates restart the freshness window
        clock.now += 25
        assert client.is_fresh(USAGE)


async def test_usage_event_for_new_month_drops_entry(clock):
    async with make_client(Backend(), clock) as client:
        await client.get_usage()

        changed = client.apply_event(
            update(ChangeTable.USAGE, {"month": "2025-04", "premium_interactions": 1})
        )

        assert not changed
        assert client.cached(USAGE) is None


async def test_heartbeat_and_uncached_events_are_ignored(clock):
    async with make_client(Backend(), clock) as client:
        assert not client.apply_event(StreamMessage.heartbeat())
        assert not client.apply_event(update(ChangeTable.SUBSCRIPTION, {"status": "active"}))


async def test_listen_applies_and_yields_frames(clock):
    frames = [
        StreamMessage.connected("user_alice").to_sse(),
        update(ChangeTable.SUBSCRIPTION, {"status": "past_due"}).to_sse(),
        "data: {broken\n\n",
        'data: {"type": "snapshot"}\n\n',
        StreamMessage.heartbeat().to_sse(),
    ]
    backend = Backend(stream_lines=frames)

    async with make_client(backend, clock) as client:
        await client.get_subscription()
        received = [m async for m in client.listen("user_alice")]

    assert [m.type for m in received] == [EventType.CONNECTED, EventType.UPDATE, EventType.HEARTBEAT]
    assert client.cached(SUBSCRIPTION)["status"] == "past_due"
    assert client.cached(SUBSCRIPTION)["effective_plan"] == "pro"
    assert ("GET", "/api/realtime/subscribe") in backend.calls


def test_frames_are_single_data_lines():
    frame = StreamMessage.heartbeat().to_sse()
    assert frame.startswith("data: ")
    assert frame.endswith("\n\n")
    assert json.loads(frame[len("data: "):])["type"] == "heartbeat"
