"""Postgres LISTEN/NOTIFY change notifier.

One dedicated asyncpg connection per process listens on the per-user
``<table>_<user_id>`` channels that the database triggers publish to.
A channel is LISTENed while at least one subscriber needs it and
UNLISTENed when the last one leaves.
"""

import asyncio
import json
from collections.abc import Callable, Iterable

import asyncpg
import structlog
from pydantic import ValidationError
from tenacity import AsyncRetrying, retry_if_exception_type, wait_exponential

from metering.core.exceptions import StoreUnavailableError
from metering.realtime.events import ChangeEvent, ChangeTable

logger = structlog.get_logger(__name__)

EventCallback = Callable[[ChangeEvent], None]

RECONNECT_ERRORS = (OSError, asyncpg.PostgresError)


def channel_name(table: ChangeTable | str, user_id: str) -> str:
    return f"{ChangeTable(table).value}_{user_id}"


class NotifierSubscription:
    """Handle returned by ``PgChangeNotifier.subscribe``."""

    def __init__(
        self,
        notifier: "PgChangeNotifier",
        user_id: str,
        channels: list[str],
        callback: EventCallback,
    ):
        self._notifier = notifier
        self.user_id = user_id
        self.channels = channels
        self.callback = callback
        self.active = True

    async def unsubscribe(self) -> None:
        """Stop delivery. Safe to call more than once."""
        if not self.active:
            return
        self.active = False
        await self._notifier._release(self)


class PgChangeNotifier:
    def __init__(
        self,
        dsn: str,
        connect=asyncpg.connect,
        reconnect_wait=wait_exponential(multiplier=1, min=1, max=30),
    ):
        self._dsn = dsn
        self._connect = connect
        self._reconnect_wait = reconnect_wait
        self._conn = None
        self._lock = asyncio.Lock()
        self._channels: dict[str, set[NotifierSubscription]] = {}
        self._reconnect_task: asyncio.Task | None = None
        self._stopping = False

    @property
    def is_connected(self) -> bool:
        return self._conn is not None and not self._conn.is_closed()

    def listener_count(self, channel: str) -> int:
        return len(self._channels.get(channel, ()))

    async def start(self) -> None:
        self._stopping = False
        self._conn = await self._connect(self._dsn)
        self._conn.add_termination_listener(self._on_terminated)
        logger.info("notifier_started")

    async def stop(self) -> None:
        self._stopping = True
        if self._reconnect_task is not None:
            self._reconnect_task.cancel()
            self._reconnect_task = None

        async with self._lock:
            for subs in self._channels.values():
                for sub in subs:
                    sub.active = False
            channels = list(self._channels)
            self._channels.clear()

            if self._conn is not None:
                if not self._conn.is_closed():
                    for channel in channels:
                        await self._conn.remove_listener(channel, self._dispatch)
                    await self._conn.close()
                self._conn = None

        logger.info("notifier_stopped", channels_released=len(channels))

    async def subscribe(
        self,
        user_id: str,
        tables: Iterable[ChangeTable | str] | None,
        callback: EventCallback,
    ) -> NotifierSubscription:
        """Register ``callback`` for changes to ``user_id``'s rows in ``tables``.

        Raises:
            StoreUnavailableError: If the listening connection is down
        """
        tables = [ChangeTable(t) for t in tables] if tables else list(ChangeTable)
        channels = [channel_name(t, user_id) for t in tables]
        sub = NotifierSubscription(self, user_id, channels, callback)

        async with self._lock:
            if not self.is_connected:
                raise StoreUnavailableError("Change notifier is not connected")
            for channel in channels:
                subs = self._channels.setdefault(channel, set())
                if not subs:
                    await self._conn.add_listener(channel, self._dispatch)
                subs.add(sub)

        logger.debug("notifier_subscribed", user_id=user_id, channels=channels)
        return sub

    async def _release(self, sub: NotifierSubscription) -> None:
        # Subscriber leaves the map before any await
        emptied = []
        for channel in sub.channels:
            subs = self._channels.get(channel)
            if subs is None:
                continue
            subs.discard(sub)
            if not subs:
                del self._channels[channel]
                emptied.append(channel)

        async with self._lock:
            for channel in emptied:
                # Re-subscribed while waiting for the lock
                if channel in self._channels:
                    continue
                if self.is_connected:
                    await self._conn.remove_listener(channel, self._dispatch)

        logger.debug("notifier_unsubscribed", user_id=sub.user_id, channels=sub.channels)

    def _dispatch(self, connection, pid: int, channel: str, payload: str) -> None:
        try:
            event = ChangeEvent.from_notify_payload(payload)
        except (ValidationError, ValueError) as exc:
            logger.warning("notify_payload_malformed", channel=channel, error=str(exc))
            return

        for sub in list(self._channels.get(channel, ())):
            if not sub.active:
                continue
            # Never hand one user's row to another user's subscriber
            if event.user_id != sub.user_id:
                logger.warning(
                    "notify_user_mismatch_dropped",
                    channel=channel,
                    event_user_id=event.user_id,
                    subscriber_user_id=sub.user_id,
                )
                continue
            try:
                sub.callback(event)
            except Exception as exc:
                logger.error(
                    "notify_callback_failed",
                    channel=channel,
                    user_id=sub.user_id,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )

    async def notify(
        self,
        user_id: str,
        table: ChangeTable | str,
        operation: str,
        data: dict,
    ) -> None:
        """Publish a change by hand, for writes that bypass the triggers."""
        event = ChangeEvent(table=ChangeTable(table), operation=operation, user_id=user_id, data=data)
        async with self._lock:
            if not self.is_connected:
                raise StoreUnavailableError("Change notifier is not connected")
            await self._conn.execute(
                "SELECT pg_notify($1, $2)",
                channel_name(event.table, user_id),
                json.dumps(event.model_dump(mode="json"), default=str),
            )

    def _on_terminated(self, connection) -> None:
        if self._stopping:
            return
        logger.warning("notifier_connection_lost", channels=len(self._channels))
        if self._reconnect_task is None or self._reconnect_task.done():
            self._reconnect_task = asyncio.get_running_loop().create_task(self._reconnect())

    def _stop_reconnecting(self, retry_state) -> bool:
        return self._stopping

    async def _connect_with_retry(self):
        """Open a fresh listening connection, retrying until it succeeds or ``stop()`` runs.

        Raises:
            OSError | asyncpg.PostgresError: The last connect error, once stopping
        """
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(RECONNECT_ERRORS),
            wait=self._reconnect_wait,
            stop=self._stop_reconnecting,
            reraise=True,
            before_sleep=lambda rs: logger.warning(
                "notifier_reconnect_failed",
                attempt=rs.attempt_number,
                sleep_seconds=rs.next_action.sleep,
                error=str(rs.outcome.exception()),
            ),
        ):
            with attempt:
                return await self._connect(self._dsn)

    async def _reconnect(self) -> None:
        try:
            conn = await self._connect_with_retry()
        except RECONNECT_ERRORS as exc:
            logger.info("notifier_reconnect_abandoned", error=str(exc))
            return

        async with self._lock:
            if self._stopping:
                await conn.close()
                return
            self._conn = conn
            conn.add_termination_listener(self._on_terminated)
            for channel in self._channels:
                await conn.add_listener(channel, self._dispatch)
        # Events published while disconnected are lost; clients re-fetch on reconnect
        logger.info("notifier_reconnected", channels=len(self._channels))
