"""
Status broadcast hub.

Routes per-order status events to the observers connected for that order.

Each registered sink gets its own bounded outbound queue drained by a
dedicated task, so `publish` never awaits a sink: a slow or dead observer
can never stall the execution pipeline. When a sink's queue is full the
oldest pending event is dropped; when a send fails or times out the sink is
logged and removed.
"""

import asyncio
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Protocol

from swap_engine.domain.order import BroadcastStatus
from swap_engine.exceptions import BroadcastDeliveryError
from swap_engine.logging import get_logger

logger = get_logger(__name__)

CONNECTED_MESSAGE = "Waiting for order processing"


class Sink(Protocol):
    """Anything that can receive JSON messages (e.g. a WebSocket)."""

    async def send_json(self, data: Any) -> None: ...


class _SinkChannel:
    """Outbound queue and pump task for one sink."""

    def __init__(
        self,
        sink: Sink,
        order_id: str | None,
        queue_size: int,
        send_timeout_s: float,
        hub: "BroadcastHub",
    ):
        self.sink = sink
        self.order_id = order_id
        self.dropped = 0
        self._queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=queue_size)
        self._send_timeout_s = send_timeout_s
        self._hub = hub
        self._task: asyncio.Task[None] | None = None
        self._dead = False

    def start(self) -> None:
        self._task = asyncio.create_task(self._pump(), name=f"sink:{self.order_id or '*'}")

    def offer(self, message: dict[str, Any]) -> None:
        """Queue a message without waiting, evicting the oldest if full."""
        if self._dead:
            return
        try:
            self._queue.put_nowait(message)
        except asyncio.QueueFull:
            self._queue.get_nowait()
            self._queue.task_done()
            self.dropped += 1
            logger.warning(
                "Sink for %s is falling behind, dropped oldest event (%d dropped)",
                self.order_id or "*",
                self.dropped,
            )
            self._queue.put_nowait(message)

    async def flush(self, timeout: float) -> None:
        if self._dead:
            return
        await asyncio.wait_for(self._queue.join(), timeout=timeout)

    async def close(self) -> None:
        self._dead = True
        if self._task is None or self._task is asyncio.current_task():
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass

    async def _pump(self) -> None:
        while True:
            message = await self._queue.get()
            try:
                await asyncio.wait_for(self.sink.send_json(message), timeout=self._send_timeout_s)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                error = BroadcastDeliveryError(f"send to sink for {self.order_id or '*'} failed: {e!r}")
                logger.warning("%s; removing sink", error)
                self._dead = True
                self._drain_pending()
                await self._hub._discard(self)
                return
            finally:
                self._queue.task_done()

    def _drain_pending(self) -> None:
        while not self._queue.empty():
            self._queue.get_nowait()
            self._queue.task_done()


@dataclass(frozen=True)
class Subscription:
    """Handle for a registered sink."""

    order_id: str | None
    sink: Sink


def _json_value(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


class BroadcastHub:
    """
    Registry of connected observers, keyed by order ID.

    Several sinks may watch the same order. Generic observers registered
    with `watch_all` only receive events through the fallback fan-out.
    """

    def __init__(
        self,
        fallback_to_all: bool = False,
        queue_size: int = 100,
        send_timeout_s: float = 5.0,
    ):
        """
        Initialize hub.

        Args:
            fallback_to_all: Fan events with no order-specific sink out to
                every connected sink instead of dropping them
            queue_size: Outbound queue bound per sink
            send_timeout_s: Time allowed for a single send
        """
        self._fallback_to_all = fallback_to_all
        self._queue_size = queue_size
        self._send_timeout_s = send_timeout_s
        self._subscribers: dict[str, list[_SinkChannel]] = {}
        self._watchers: list[_SinkChannel] = []
        self._lock = asyncio.Lock()

    @property
    def fallback_to_all(self) -> bool:
        return self._fallback_to_all

    def subscriber_count(self, order_id: str | None = None) -> int:
        """Sinks watching `order_id`, or every registered sink when None."""
        if order_id is not None:
            return len(self._subscribers.get(order_id, []))
        return sum(len(channels) for channels in self._subscribers.values()) + len(self._watchers)

    async def subscribe(self, order_id: str, sink: Sink) -> Subscription:
        """
        Register a sink for one order.

        The sink immediately receives a synthetic `connected` event.
        """
        channel = self._new_channel(sink, order_id)
        async with self._lock:
            self._subscribers.setdefault(order_id, []).append(channel)

        channel.offer(
            {
                "orderId": order_id,
                "status": BroadcastStatus.CONNECTED.value,
                "message": CONNECTED_MESSAGE,
                "timestamp": datetime.now(UTC).isoformat(),
            }
        )
        logger.info("Observer subscribed to %s (%d watching)", order_id, self.subscriber_count(order_id))
        return Subscription(order_id=order_id, sink=sink)

    async def unsubscribe(self, order_id: str, sink: Sink | None = None) -> int:
        """
        Remove the sink(s) registered for an order.

        Args:
            order_id: Order being watched
            sink: Specific sink to remove; all sinks for the order when None

        Returns:
            Number of sinks removed
        """
        async with self._lock:
            channels = self._subscribers.get(order_id, [])
            removed = [c for c in channels if sink is None or c.sink is sink]
            remaining = [c for c in channels if c not in removed]
            if remaining:
                self._subscribers[order_id] = remaining
            else:
                self._subscribers.pop(order_id, None)

        for channel in removed:
            await channel.close()
        if removed:
            logger.info("Observer unsubscribed from %s", order_id)
        return len(removed)

    async def watch_all(self, sink: Sink) -> Subscription:
        """Register a generic observer that receives fallback fan-out."""
        channel = self._new_channel(sink, None)
        async with self._lock:
            self._watchers.append(channel)
        return Subscription(order_id=None, sink=sink)

    async def unwatch(self, sink: Sink) -> None:
        async with self._lock:
            removed = [c for c in self._watchers if c.sink is sink]
            self._watchers = [c for c in self._watchers if c.sink is not sink]
        for channel in removed:
            await channel.close()

    async def publish(self, order_id: str, status: Any, message: str, **fields: Any) -> int:
        """
        Deliver a status event to the observers of an order.

        Never blocks on a sink and never raises on delivery problems.

        Args:
            order_id: Order the event belongs to
            status: Order or broadcast status
            message: Human-readable description
            **fields: Stage-specific fields (selectedDex, txHash, ...)

        Returns:
            Number of sinks the event was queued for
        """
        event: dict[str, Any] = {
            "orderId": order_id,
            "status": _json_value(status),
            "message": message,
            "timestamp": datetime.now(UTC).isoformat(),
        }
        event.update({key: _json_value(value) for key, value in fields.items()})

        async with self._lock:
            targets = list(self._subscribers.get(order_id, []))
            if not targets and self._fallback_to_all:
                targets = [c for channels in self._subscribers.values() for c in channels]
                targets.extend(self._watchers)

        if not targets:
            logger.debug("No observers for %s, dropped %s event", order_id, event["status"])
            return 0

        for channel in targets:
            channel.offer(event)
        return len(targets)

    async def reply(self, sink: Sink, message: dict[str, Any]) -> bool:
        """
        Queue a direct message for one registered sink.

        The message is sent by the sink's pump, after any status events
        already queued for it.

        Returns:
            False if the sink is not registered
        """
        async with self._lock:
            channel = next((c for c in self._all_channels() if c.sink is sink), None)
        if channel is None:
            return False
        channel.offer(message)
        return True

    async def flush(self, timeout: float = 1.0) -> None:
        """Wait until every queued event has been handed to its sink."""
        async with self._lock:
            channels = self._all_channels()
        for channel in channels:
            await channel.flush(timeout)

    async def close_all(self) -> None:
        """Stop every pump and close sinks that support closing."""
        async with self._lock:
            channels = self._all_channels()
            self._subscribers.clear()
            self._watchers.clear()

        for channel in channels:
            await channel.close()
            close = getattr(channel.sink, "close", None)
            if close is None:
                continue
            try:
                await close()
            except Exception as e:
                logger.debug("Closing sink for %s failed: %s", channel.order_id or "*", e)

        if channels:
            logger.info("Closed %d observer connections", len(channels))

    # =========================================================================
    # Internals
    # =========================================================================

    def _new_channel(self, sink: Sink, order_id: str | None) -> _SinkChannel:
        channel = _SinkChannel(sink, order_id, self._queue_size, self._send_timeout_s, self)
        channel.start()
        return channel

    def _all_channels(self) -> list[_SinkChannel]:
        channels = [c for group in self._subscribers.values() for c in group]
        channels.extend(self._watchers)
        return channels

    async def _discard(self, channel: _SinkChannel) -> None:
        """Remove a dead channel from the registry."""
        async with self._lock:
            if channel.order_id is None:
                if channel in self._watchers:
                    self._watchers.remove(channel)
                return
            channels = self._subscribers.get(channel.order_id, [])
            if channel in channels:
                channels.remove(channel)
            if not channels:
                self._subscribers.pop(channel.order_id, None)
