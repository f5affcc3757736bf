"""Per-connection realtime channel.

Lifecycle::

    CONNECTING -> CONNECTED -> CLOSING -> CLOSED

A channel subscribes to the change notifier for exactly one user, forwards
that user's change events as SSE frames and emits a heartbeat on a fixed
interval. The transport is asked whether it is still open before each write;
a closed transport moves the channel to CLOSING. ``close()`` releases the
heartbeat task, the notifier subscription and the queue exactly once,
whichever path gets there first, including cancellation of the stream.
"""

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable
from enum import Enum

import anyio
import structlog

from metering.core.exceptions import TransportClosedError
from metering.realtime.events import ChangeEvent, ChangeTable, StreamMessage
from metering.realtime.notifier import NotifierSubscription, PgChangeNotifier

logger = structlog.get_logger(__name__)


class ChannelState(str, Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CLOSING = "closing"
    CLOSED = "closed"


class RealtimeChannel:
    def __init__(
        self,
        user_id: str,
        notifier: PgChangeNotifier,
        is_disconnected: Callable[[], Awaitable[bool]],
        heartbeat_seconds: float = 30.0,
        tables: Iterable[ChangeTable | str] | None = None,
        poll_seconds: float = 1.0,
    ):
        self.user_id = user_id
        self._notifier = notifier
        self._is_disconnected = is_disconnected
        self._heartbeat_seconds = heartbeat_seconds
        self._tables = list(tables) if tables else None
        self._poll_seconds = poll_seconds

        self._state = ChannelState.CONNECTING
        # None is the wake-up sentinel that ends the stream
        self._queue: asyncio.Queue[StreamMessage | None] = asyncio.Queue()
        self._subscription: NotifierSubscription | None = None
        self._heartbeat_task: asyncio.Task | None = None
        self._close_started = False

    @property
    def state(self) -> ChannelState:
        return self._state

    async def open(self) -> None:
        """Subscribe and enter CONNECTED, queueing the ``connected`` frame."""
        if self._state is not ChannelState.CONNECTING:
            return
        self._subscription = await self._notifier.subscribe(self.user_id, self._tables, self._on_event)
        self._state = ChannelState.CONNECTED
        self._queue.put_nowait(StreamMessage.connected(self.user_id))
        self._heartbeat_task = asyncio.get_running_loop().create_task(self._heartbeat_loop())
        logger.info("realtime_channel_opened", user_id=self.user_id)

    def _on_event(self, event: ChangeEvent) -> None:
        if self._state is not ChannelState.CONNECTED:
            return
        self._queue.put_nowait(StreamMessage.update(event))

    async def _ensure_writable(self) -> None:
        """Raises TransportClosedError if the client has gone away."""
        try:
            disconnected = await self._is_disconnected()
        except Exception:
            disconnected = True
        if disconnected:
            raise TransportClosedError("Realtime client disconnected")

    async def _heartbeat_loop(self) -> None:
        while self._state is ChannelState.CONNECTED:
            await asyncio.sleep(self._heartbeat_seconds)
            if self._state is not ChannelState.CONNECTED:
                return
            try:
                await self._ensure_writable()
            except TransportClosedError:
                logger.info("realtime_transport_closed", user_id=self.user_id, detected_by="heartbeat")
                await self.close()
                return
            self._queue.put_nowait(StreamMessage.heartbeat())

    async def stream(self) -> AsyncIterator[str]:
        """Yield SSE frames until the client goes away or the channel is closed.

        Opens the channel on first iteration, so nothing is subscribed until
        the response actually starts streaming.
        """
        try:
            await self.open()
            while self._state is ChannelState.CONNECTED:
                try:
                    message = await asyncio.wait_for(self._queue.get(), timeout=self._poll_seconds)
                except TimeoutError:
                    await self._ensure_writable()
                    continue

                if message is None:
                    break
                await self._ensure_writable()
                yield message.to_sse()
        except TransportClosedError:
            logger.info("realtime_transport_closed", user_id=self.user_id, detected_by="stream")
        finally:
            await self.close()

    async def close(self) -> None:
        """Release everything held by this channel. Idempotent."""
        if self._close_started:
            return
        self._close_started = True
        self._state = ChannelState.CLOSING

        task = self._heartbeat_task
        if task is not None and task is not asyncio.current_task():
            task.cancel()
        self._heartbeat_task = None

        if self._subscription is not None:
            # Starlette cancels the response task group on disconnect
            with anyio.CancelScope(shield=True):
                try:
                    await self._subscription.unsubscribe()
                except Exception as exc:
                    logger.warning(
                        "realtime_unsubscribe_failed", user_id=self.user_id, error=str(exc)
                    )

        dropped = 0
        while not self._queue.empty():
            self._queue.get_nowait()
            dropped += 1
        self._queue.put_nowait(None)

        self._state = ChannelState.CLOSED
        logger.info("realtime_channel_closed", user_id=self.user_id, dropped_messages=dropped)
