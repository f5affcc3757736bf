"""Fire-and-forget usage tracking.

``track_async`` schedules the atomic increment on a background task and
returns at once. The task carries its own error boundary: a failed increment
is logged and dropped, it never reaches the caller.
"""

import asyncio

import structlog

from metering.plans.limits import ResourceKind
from metering.usage.store import UsageStore

logger = structlog.get_logger(__name__)


class UsageTracker:
    def __init__(self, store: UsageStore):
        self._store = store
        # Strong refs so pending tasks are not garbage-collected mid-flight
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def track_async(self, user_id: str, resource: ResourceKind | str, amount: int = 1) -> None:
        """Schedule an increment of ``resource`` for ``user_id``. Returns None immediately."""
        task = asyncio.get_running_loop().create_task(self._track(user_id, resource, amount))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _track(self, user_id: str, resource: ResourceKind | str, amount: int) -> None:
        try:
            kind = ResourceKind(resource)
            await self._store.increment(user_id, kind, amount)
            logger.debug("usage_tracked", user_id=user_id, resource=kind.value, amount=amount)
        except Exception as exc:
            logger.warning(
                "usage_tracking_failed",
                user_id=user_id,
                resource=str(getattr(resource, "value", resource)),
                amount=amount,
                error=str(exc),
                error_type=type(exc).__name__,
            )

    async def drain(self) -> None:
        """Wait for every in-flight increment to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
