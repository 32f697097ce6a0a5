"""
Tests for the status broadcast hub.

Tests:
- Per-order routing and isolation
- Unsubscribe and fallback fan-out
- Non-blocking publish with slow, failing and backed-up sinks
- Shutdown
"""

import asyncio
from typing import Any

import pytest

from swap_engine.domain.order import OrderStatus
from swap_engine.domain.quote import Venue
from swap_engine.streaming.hub import CONNECTED_MESSAGE, BroadcastHub


class RecordingSink:
    """Sink that records what it is sent."""

    def __init__(self, delay: float = 0.0, fail: bool = False):
        self.messages: list[dict[str, Any]] = []
        self.delay = delay
        self.fail = fail
        self.gate: asyncio.Event | None = None
        self.closed = False

    async def send_json(self, data: Any) -> None:
        if self.gate is not None:
            await self.gate.wait()
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise RuntimeError("connection reset")
        self.messages.append(data)

    async def close(self) -> None:
        self.closed = True

    def statuses(self) -> list[str]:
        return [m["status"] for m in self.messages]


# =============================================================================
# Routing
# =============================================================================


class TestSubscribeAndPublish:
    @pytest.mark.asyncio
    async def test_connected_event_on_subscribe(self) -> None:
        hub = BroadcastHub()
        sink = RecordingSink()

        await hub.subscribe("order_1", sink)
        await hub.flush()

        assert sink.messages[0]["orderId"] == "order_1"
        assert sink.messages[0]["status"] == "connected"
        assert sink.messages[0]["message"] == CONNECTED_MESSAGE
        assert "timestamp" in sink.messages[0]
        await hub.close_all()

    @pytest.mark.asyncio
    async def test_event_reaches_only_its_order(self) -> None:
        hub = BroadcastHub()
        watcher_x = RecordingSink()
        watcher_y = RecordingSink()
        await hub.subscribe("order_x", watcher_x)
        await hub.subscribe("order_y", watcher_y)

        delivered = await hub.publish(
            "order_x", OrderStatus.ROUTING, "Comparing DEX prices...", selectedDex=Venue.METEORA
        )
        await hub.flush()

        assert delivered == 1
        assert watcher_x.statuses() == ["connected", "routing"]
        assert watcher_x.messages[1]["selectedDex"] == "meteora"
        assert watcher_y.statuses() == ["connected"]
        await hub.close_all()

    @pytest.mark.asyncio
    async def test_multiple_sinks_per_order(self) -> None:
        hub = BroadcastHub()
        first, second = RecordingSink(), RecordingSink()
        await hub.subscribe("order_1", first)
        await hub.subscribe("order_1", second)

        assert await hub.publish("order_1", OrderStatus.PENDING, "queued") == 2
        await hub.flush()

        assert first.statuses() == second.statuses() == ["connected", "pending"]
        await hub.close_all()

    @pytest.mark.asyncio
    async def test_events_delivered_in_publish_order(self) -> None:
        hub = BroadcastHub()
        sink = RecordingSink()
        await hub.subscribe("order_1", sink)

        for status in ("pending", "routing", "building", "submitted", "confirmed"):
            await hub.publish("order_1", status, status)
        await hub.flush()

        assert sink.statuses() == [
            "connected",
            "pending",
            "routing",
            "building",
            "submitted",
            "confirmed",
        ]
        await hub.close_all()

    @pytest.mark.asyncio
    async def test_no_subscriber_is_silent(self) -> None:
        hub = BroadcastHub()
        assert await hub.publish("order_nobody", OrderStatus.PENDING, "queued") == 0


class TestUnsubscribe:
    @pytest.mark.asyncio
    async def test_publish_after_unsubscribe_dropped(self) -> None:
        hub = BroadcastHub()
        sink = RecordingSink()
        await hub.subscribe("order_1", sink)
        await hub.flush()

        removed = await hub.unsubscribe("order_1", sink)
        delivered = await hub.publish("order_1", OrderStatus.CONFIRMED, "done")

        assert removed == 1
        assert delivered == 0
        assert sink.statuses() == ["connected"]
        assert hub.subscriber_count("order_1") == 0

    @pytest.mark.asyncio
    async def test_unsubscribe_one_of_many(self) -> None:
        hub = BroadcastHub()
        stays, leaves = RecordingSink(), RecordingSink()
        await hub.subscribe("order_1", stays)
        await hub.subscribe("order_1", leaves)

        await hub.unsubscribe("order_1", leaves)

        assert hub.subscriber_count("order_1") == 1
        assert await hub.publish("order_1", OrderStatus.PENDING, "queued") == 1
        await hub.close_all()

    @pytest.mark.asyncio
    async def test_unsubscribe_unknown_is_noop(self) -> None:
        assert await BroadcastHub().unsubscribe("order_missing") == 0


class TestFallback:
    @pytest.mark.asyncio
    async def test_disabled_by_default(self) -> None:
        hub = BroadcastHub()
        watcher = RecordingSink()
        await hub.watch_all(watcher)

        assert await hub.publish("order_1", OrderStatus.PENDING, "queued") == 0
        await hub.flush()
        assert watcher.messages == []
        await hub.close_all()

    @pytest.mark.asyncio
    async def test_fans_out_when_order_has_no_subscriber(self) -> None:
        hub = BroadcastHub(fallback_to_all=True)
        watcher = RecordingSink()
        other = RecordingSink()
        await hub.watch_all(watcher)
        await hub.subscribe("order_other", other)

        delivered = await hub.publish("order_1", OrderStatus.PENDING, "queued")
        await hub.flush()

        assert delivered == 2
        assert watcher.statuses() == ["pending"]
        assert other.statuses() == ["connected", "pending"]
        assert other.messages[-1]["orderId"] == "order_1"
        await hub.close_all()

    @pytest.mark.asyncio
    async def test_not_used_when_order_has_subscriber(self) -> None:
        hub = BroadcastHub(fallback_to_all=True)
        watcher = RecordingSink()
        sink = RecordingSink()
        await hub.watch_all(watcher)
        await hub.subscribe("order_1", sink)

        assert await hub.publish("order_1", OrderStatus.PENDING, "queued") == 1
        await hub.flush()
        assert watcher.messages == []
        await hub.close_all()


# =============================================================================
# Delivery Isolation
# =============================================================================


class TestDeliveryIsolation:
    @pytest.mark.asyncio
    async def test_slow_sink_does_not_block_publish(self) -> None:
        hub = BroadcastHub(send_timeout_s=5.0)
        slow = RecordingSink(delay=1.0)
        await hub.subscribe("order_1", slow)

        await asyncio.wait_for(hub.publish("order_1", OrderStatus.PENDING, "queued"), timeout=0.1)
        await hub.close_all()

    @pytest.mark.asyncio
    async def test_failing_sink_removed(self) -> None:
        hub = BroadcastHub()
        broken = RecordingSink(fail=True)
        await hub.subscribe("order_1", broken)

        await hub.flush()

        assert hub.subscriber_count("order_1") == 0
        assert await hub.publish("order_1", OrderStatus.PENDING, "queued") == 0

    @pytest.mark.asyncio
    async def test_timed_out_sink_removed(self) -> None:
        hub = BroadcastHub(send_timeout_s=0.05)
        stuck = RecordingSink(delay=10.0)
        await hub.subscribe("order_1", stuck)

        await hub.flush(timeout=1.0)

        assert hub.subscriber_count("order_1") == 0

    @pytest.mark.asyncio
    async def test_backed_up_sink_drops_oldest(self) -> None:
        hub = BroadcastHub(queue_size=2)
        sink = RecordingSink()
        sink.gate = asyncio.Event()
        await hub.subscribe("order_1", sink)
        await asyncio.sleep(0.01)  # pump is now blocked sending "connected"

        for i in range(5):
            await hub.publish("order_1", OrderStatus.ROUTING, f"event {i}")
        sink.gate.set()
        await hub.flush()

        assert [m["message"] for m in sink.messages] == [CONNECTED_MESSAGE, "event 3", "event 4"]
        await hub.close_all()

    @pytest.mark.asyncio
    async def test_healthy_sink_unaffected_by_broken_one(self) -> None:
        hub = BroadcastHub()
        healthy = RecordingSink()
        broken = RecordingSink(fail=True)
        await hub.subscribe("order_1", healthy)
        await hub.subscribe("order_1", broken)

        await hub.publish("order_1", OrderStatus.CONFIRMED, "done")
        await hub.flush()

        assert healthy.statuses() == ["connected", "confirmed"]
        assert hub.subscriber_count("order_1") == 1
        await hub.close_all()


# =============================================================================
# Registry
# =============================================================================


class TestRegistry:
    @pytest.mark.asyncio
    async def test_concurrent_registration_and_publish(self) -> None:
        hub = BroadcastHub()
        sinks = [RecordingSink() for _ in range(30)]

        await asyncio.gather(
            *[hub.subscribe(f"order_{i % 5}", sink) for i, sink in enumerate(sinks)],
            *[hub.publish(f"order_{i}", OrderStatus.PENDING, "queued") for i in range(5)],
        )
        await asyncio.gather(
            *[hub.unsubscribe(f"order_{i % 5}", sink) for i, sink in enumerate(sinks[:10])],
            *[hub.publish(f"order_{i}", OrderStatus.ROUTING, "routing") for i in range(5)],
        )

        assert hub.subscriber_count() == 20
        await hub.close_all()

    @pytest.mark.asyncio
    async def test_reply_queued_behind_pending_events(self) -> None:
        hub = BroadcastHub()
        sink = RecordingSink()
        sink.gate = asyncio.Event()
        await hub.subscribe("order_1", sink)
        await asyncio.sleep(0.01)  # pump is now blocked sending "connected"

        await hub.publish("order_1", OrderStatus.PENDING, "queued")
        assert await hub.reply(sink, {"type": "pong"})
        sink.gate.set()
        await hub.flush()

        assert sink.messages[-1] == {"type": "pong"}
        assert [m.get("status") for m in sink.messages] == ["connected", "pending", None]
        await hub.close_all()

    @pytest.mark.asyncio
    async def test_reply_to_unregistered_sink(self) -> None:
        hub = BroadcastHub()
        assert not await hub.reply(RecordingSink(), {"type": "pong"})

    @pytest.mark.asyncio
    async def test_close_all(self) -> None:
        hub = BroadcastHub()
        sink, watcher = RecordingSink(), RecordingSink()
        await hub.subscribe("order_1", sink)
        await hub.watch_all(watcher)

        await hub.close_all()

        assert hub.subscriber_count() == 0
        assert sink.closed
        assert watcher.closed
        assert await hub.publish("order_1", OrderStatus.PENDING, "queued") == 0
