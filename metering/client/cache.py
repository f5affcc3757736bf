"""Client-side subscription/usage cache.

Keeps the last fetched subscription view and usage overview for a short
freshness window. Events pushed over the realtime stream patch the cached
values in place and restart the window, so a connected client rarely polls.
"""

import time
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from typing import Any

import httpx
import structlog
from pydantic import ValidationError

from metering.plans.limits import (
    Plan,
    ResourceKind,
    effective_plan,
    get_limits,
    get_plan_features,
    is_approaching_limit,
    remaining_usage,
    usage_percentage,
)
from metering.realtime.events import ChangeTable, EventType, StreamMessage, parse_sse_data

logger = structlog.get_logger(__name__)

SUBSCRIPTION = "subscription"
USAGE = "usage"

_PATHS = {
    SUBSCRIPTION: "/api/subscription/status",
    USAGE: "/api/usage",
}

_SUBSCRIPTION_ROW_FIELDS = (
    "status",
    "plan",
    "stripe_subscription_id",
    "current_period_start",
    "current_period_end",
    "cancel_at_period_end",
    "trial_end",
)


def _should_notify(resources: list[dict[str, Any]]) -> bool:
    return any(
        r["limit"] != 0 and is_approaching_limit(r["current"], r["limit"]) for r in resources
    )


@dataclass
class CacheEntry:
    value: dict[str, Any]
    fetched_at: float


class SubscriptionClient:
    def __init__(
        self,
        base_url: str,
        token: str,
        ttl: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.ttl = ttl
        self._clock = clock
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers={"Authorization": f"Bearer {token}"},
            transport=transport,
            timeout=httpx.Timeout(10.0, read=None),
        )
        self._entries: dict[str, CacheEntry] = {}
        self._sync_attempted = False

    async def __aenter__(self) -> "SubscriptionClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    def is_fresh(self, key: str) -> bool:
        entry = self._entries.get(key)
        return entry is not None and self._clock() - entry.fetched_at < self.ttl

    def cached(self, key: str) -> dict[str, Any] | None:
        entry = self._entries.get(key)
        return entry.value if entry else None

    async def _fetch(self, key: str) -> dict[str, Any]:
        response = await self._client.get(_PATHS[key])
        response.raise_for_status()
        value = response.json()
        self._entries[key] = CacheEntry(value=value, fetched_at=self._clock())
        return value

    async def _get(self, key: str) -> dict[str, Any]:
        if self.is_fresh(key):
            return self._entries[key].value
        return await self._fetch(key)

    async def get_subscription(self) -> dict[str, Any]:
        return await self._get(SUBSCRIPTION)

    async def get_usage(self) -> dict[str, Any]:
        return await self._get(USAGE)

    async def refresh(self, sync: bool = False) -> tuple[dict[str, Any], dict[str, Any]]:
        """Fetch both views, bypassing the cache.

        With ``sync=True`` the server is first asked to reconcile with the
        billing provider, at most once per client lifetime.
        """
        if sync and not self._sync_attempted:
            self._sync_attempted = True
            try:
                response = await self._client.post("/api/subscription/sync")
                response.raise_for_status()
            except httpx.HTTPError as exc:
                logger.warning("subscription_sync_failed", error=str(exc))

        return await self._fetch(SUBSCRIPTION), await self._fetch(USAGE)

    # ── Push updates ────────────────────────────────────────────────

    def apply_event(self, message: StreamMessage) -> bool:
        """Patch the cache from one stream frame. Returns True if an entry changed."""
        if message.type is not EventType.UPDATE or message.data is None:
            return False

        if message.table is ChangeTable.SUBSCRIPTION:
            return self._apply_subscription(message.data)
        if message.table is ChangeTable.USAGE:
            return self._apply_usage(message.data)
        return False

    def _apply_subscription(self, row: dict[str, Any]) -> bool:
        entry = self._entries.get(SUBSCRIPTION)
        if entry is None:
            return False

        view = dict(entry.value)
        for field in _SUBSCRIPTION_ROW_FIELDS:
            if field in row:
                view[field] = row[field]

        effective = effective_plan(view.get("status"), view.get("plan"))
        view["effective_plan"] = effective.value
        view["plan_name"] = get_plan_features(effective).name
        view["has_active_subscription"] = view.get("status") in ("active", "trialing")

        self._entries[SUBSCRIPTION] = CacheEntry(value=view, fetched_at=self._clock())
        self._rebase_usage(effective)
        return True

    def _rebase_usage(self, plan: Plan) -> None:
        """Re-derive cached usage limits after the effective plan changed."""
        entry = self._entries.get(USAGE)
        if entry is None or entry.value.get("plan") == plan.value:
            return

        limits = get_limits(plan)
        overview = dict(entry.value)
        resources = []
        for item in overview.get("resources", []):
            item = dict(item)
            try:
                limit = limits.limit_for(ResourceKind(item["resource"]))
            except (KeyError, ValueError):
                # Unknown to this client; the next fetch fills it in
                self._entries.pop(USAGE, None)
                return
            item["limit"] = limit
            item["percentage"] = usage_percentage(item["current"], limit)
            item["remaining"] = remaining_usage(item["current"], limit)
            resources.append(item)

        overview["plan"] = plan.value
        overview["resources"] = resources
        overview["should_notify"] = _should_notify(resources)
        self._entries[USAGE] = CacheEntry(value=overview, fetched_at=entry.fetched_at)
        logger.info("usage_cache_rebased", plan=plan.value)

    def _apply_usage(self, row: dict[str, Any]) -> bool:
        entry = self._entries.get(USAGE)
        if entry is None or row.get("month") != entry.value.get("month"):
            # A new month's row invalidates the cached overview
            self._entries.pop(USAGE, None)
            return False

        overview = dict(entry.value)
        resources = []
        for item in overview.get("resources", []):
            item = dict(item)
            current = row.get(item["resource"])
            if current is not None:
                item["current"] = current
                item["percentage"] = usage_percentage(current, item["limit"])
                item["remaining"] = remaining_usage(current, item["limit"])
            resources.append(item)
        overview["resources"] = resources
        overview["should_notify"] = _should_notify(resources)

        self._entries[USAGE] = CacheEntry(value=overview, fetched_at=self._clock())
        return True

    async def listen(self, user_id: str) -> AsyncIterator[StreamMessage]:
        """Consume the realtime stream, applying and yielding every frame."""
        async with self._client.stream(
            "GET",
            "/api/realtime/subscribe",
            params={"user_id": user_id},
            headers={"Accept": "text/event-stream"},
        ) as response:
            response.raise_for_status()
            async for line in response.aiter_lines():
                try:
                    payload = parse_sse_data(line)
                except ValueError:
                    logger.warning("realtime_frame_malformed", line=line[:200])
                    continue
                if payload is None:
                    continue
                try:
                    message = StreamMessage.model_validate(payload)
                except ValidationError as exc:
                    logger.warning("realtime_frame_invalid", error=str(exc))
                    continue
                self.apply_event(message)
                yield message
