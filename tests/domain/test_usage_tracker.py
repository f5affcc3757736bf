"""Tests for the fire-and-forget usage tracker."""

import asyncio

import pytest

from metering.plans.limits import ResourceKind
from metering.usage.tracker import UsageTracker

pytestmark = pytest.mark.unit


class RecordingStore:
    def __init__(self, fail_with: Exception | None = None, delay: float = 0.0):
        self.calls = []
        self.fail_with = fail_with
        self.delay = delay

    async def increment(self, user_id, resource, amount=1, now=None):
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_with is not None:
            raise self.fail_with
        self.calls.append((user_id, resource, amount))


async def test_track_async_returns_none_immediately():
    store = RecordingStore(delay=0.05)
    tracker = UsageTracker(store)

    assert tracker.track_async("user_alice", ResourceKind.BASIC_INTERACTIONS) is None
    assert store.calls == []
    assert tracker.pending == 1

    await tracker.drain()
    assert store.calls == [("user_alice", ResourceKind.BASIC_INTERACTIONS, 1)]


async def test_concurrent_tracks_all_reach_the_store():
    store = RecordingStore(delay=0.01)
    tracker = UsageTracker(store)

    for _ in range(3):
        tracker.track_async("user_alice", "memories_added")
    await tracker.drain()

    assert len(store.calls) == 3
    assert tracker.pending == 0


async def test_failed_increment_is_swallowed():
    store = RecordingStore(fail_with=ConnectionError("db down"))
    tracker = UsageTracker(store)

    tracker.track_async("user_alice", ResourceKind.VOICE_CHATS, 2)
    await tracker.drain()

    assert store.calls == []
    assert tracker.pending == 0


async def test_unknown_resource_is_logged_not_raised():
    store = RecordingStore()
    tracker = UsageTracker(store)

    tracker.track_async("user_alice", "teleportations")
    await tracker.drain()

    assert store.calls == []


async def test_drain_with_nothing_pending_returns():
    tracker = UsageTracker(RecordingStore())
    await tracker.drain()
    assert tracker.pending == 0
