"""
Swap engine.

Wires the order store, quote providers, comparator, broadcast hub, event
bus, execution pipeline and work queue together and owns their lifecycle.
"""

import random
from datetime import UTC, datetime
from typing import Any

from swap_engine.config import Settings, StorageBackend
from swap_engine.domain.order import Order, OrderRequest, OrderStatus, OrderUpdate
from swap_engine.domain.quote import Venue
from swap_engine.exceptions import (
    OrderNotFoundError,
    PersistenceError,
    QueueClosedError,
    TerminalExecutionError,
)
from swap_engine.execution.pipeline import ExecutionPipeline
from swap_engine.jobs.models import BackoffPolicy, JobOptions, RetentionPolicy
from swap_engine.jobs.scheduler import WorkQueue
from swap_engine.jobs.store import JobStore
from swap_engine.logging import get_logger
from swap_engine.routing.comparator import DexComparator
from swap_engine.routing.providers import HttpQuoteProvider, MockQuoteProvider, QuoteProvider
from swap_engine.runtime.event_bus import Event, EventBus, EventType
from swap_engine.store.orders import InMemoryOrderStore, JsonFileOrderStore, OrderStore
from swap_engine.streaming.hub import BroadcastHub

logger = get_logger(__name__)


# =============================================================================
# Factories
# =============================================================================


def build_order_store(settings: Settings) -> OrderStore:
    if settings.storage_backend == StorageBackend.FILE:
        return JsonFileOrderStore(settings.orders_path)
    return InMemoryOrderStore()


def build_job_store(settings: Settings) -> JobStore:
    if settings.storage_backend == StorageBackend.FILE:
        return JobStore(settings.jobs_path)
    return JobStore()


def build_quote_providers(settings: Settings) -> tuple[QuoteProvider, QuoteProvider]:
    """Venue A and Venue B providers: HTTP when a URL is configured, mocked otherwise."""

    def make(venue: Venue, url: str | None) -> QuoteProvider:
        if url:
            return HttpQuoteProvider(venue, url, timeout_s=settings.quote_request_timeout_s)
        return MockQuoteProvider(
            venue,
            base_price=settings.quote_base_price,
            latency_s=settings.quote_latency_ms / 1000,
        )

    return (
        make(Venue.RAYDIUM, settings.venue_a_quote_url),
        make(Venue.METEORA, settings.venue_b_quote_url),
    )


def _retention(age: int | None, count: int | None = None) -> RetentionPolicy | None:
    if age is None and count is None:
        return None
    return RetentionPolicy(age=age, count=count)


def build_job_options(settings: Settings) -> JobOptions:
    return JobOptions(
        attempts=settings.queue_max_attempts,
        backoff=BackoffPolicy(delay=settings.queue_backoff_delay_ms),
        remove_on_complete=_retention(
            settings.queue_remove_on_complete_age_s,
            settings.queue_remove_on_complete_count,
        ),
        remove_on_fail=_retention(settings.queue_remove_on_fail_age_s),
    )


# =============================================================================
# Engine
# =============================================================================


class SwapEngine:
    """
    Order execution engine.

    Usage:
        engine = SwapEngine(settings)
        await engine.start()
        order = await engine.submit(request)
        ...
        await engine.stop()
    """

    def __init__(
        self,
        settings: Settings,
        *,
        order_store: OrderStore | None = None,
        quote_providers: tuple[QuoteProvider, QuoteProvider] | None = None,
        hub: BroadcastHub | None = None,
        event_bus: EventBus | None = None,
        job_store: JobStore | None = None,
        rng: random.Random | None = None,
    ):
        self.settings = settings
        self.store = order_store or build_order_store(settings)
        self.providers = quote_providers or build_quote_providers(settings)
        self.hub = hub or BroadcastHub(
            fallback_to_all=settings.broadcast_fallback_to_all,
            queue_size=settings.broadcast_queue_size,
            send_timeout_s=settings.broadcast_send_timeout_s,
        )
        self.event_bus = event_bus or EventBus()
        self.comparator = DexComparator(settings.preferred_venue)

        self.pipeline = ExecutionPipeline(
            self.store,
            self.hub,
            self.providers,
            self.comparator,
            pending_delay_s=settings.pending_delay_ms / 1000,
            building_delay_s=settings.building_delay_ms / 1000,
            confirmation_delay_s=settings.confirmation_delay_ms / 1000,
            confirmation_jitter_s=settings.confirmation_jitter_ms / 1000,
            rng=rng,
        )
        self.queue = WorkQueue(
            settings.queue_name,
            self.pipeline.process,
            concurrency=settings.queue_concurrency,
            lock_duration_s=settings.queue_lock_duration_ms / 1000,
            max_stalled_count=settings.queue_max_stalled_count,
            poll_interval_s=settings.queue_poll_interval_ms / 1000,
            default_options=build_job_options(settings),
            store=job_store or build_job_store(settings),
            event_bus=self.event_bus,
        )

        self.start_time: datetime | None = None
        self._started = False
        self._stopped = False

    @property
    def is_running(self) -> bool:
        return self._started and not self._stopped

    async def start(self) -> None:
        """Subscribe observers and start dispatching."""
        if self._started:
            return
        self._started = True
        self.start_time = datetime.now(UTC)

        await self.event_bus.subscribe(EventType.JOB_RETRYING, self.pipeline.on_job_event)
        await self.event_bus.subscribe(EventType.JOB_FAILED, self.pipeline.on_job_event)
        await self.event_bus.subscribe(None, self._log_lifecycle)

        await self.queue.start()
        await self.event_bus.publish(Event(type=EventType.ENGINE_STARTED))
        logger.info(
            "Swap engine started (venues: %s, %s)",
            self.providers[0].venue.value,
            self.providers[1].venue.value,
        )

    async def submit(self, request: OrderRequest) -> Order:
        """
        Persist a pending order and enqueue it for execution.

        Raises:
            QueueClosedError: if the engine is shutting down
            PersistenceError: if the order or its job cannot be saved; a
                stored order that never got a job is marked failed
        """
        if self.queue.is_closed:
            raise QueueClosedError("Engine is shutting down")

        order = await self.store.create(request.to_order())
        try:
            await self.queue.enqueue(order.id, order.to_api(), name=order.id)
        except (QueueClosedError, PersistenceError) as e:
            reason = (
                "Engine shut down before dispatch"
                if isinstance(e, QueueClosedError)
                else "Order could not be queued"
            )
            await self.store.update(order.id, OrderUpdate(status=OrderStatus.FAILED, error=reason))
            raise

        logger.info(
            "Order %s queued: %s %s -> %s",
            order.id,
            order.amount,
            order.token_in,
            order.token_out,
        )
        return order

    async def get_order(self, order_id: str) -> Order:
        order = await self.store.get(order_id)
        if order is None:
            raise OrderNotFoundError(order_id)
        return order

    async def list_orders(self, limit: int | None = None) -> list[Order]:
        return await self.store.list_orders(limit=limit)

    async def queue_stats(self) -> dict[str, Any]:
        return {
            "queue": self.queue.name,
            "running": self.queue.is_running,
            "concurrency": self.queue.concurrency,
            "in_flight": self.queue.in_flight,
            "counts": await self.queue.counts(),
        }

    async def stop(self) -> None:
        """
        Shut down.

        Stops dispatch, waits up to `shutdown_grace_s` for in-flight orders,
        then closes observer connections, providers and the store. Safe to
        call more than once.
        """
        if self._stopped:
            return
        self._stopped = True
        logger.info("Stopping swap engine")

        await self.queue.close(grace_s=self.settings.shutdown_grace_s)
        await self.hub.close_all()
        for provider in self.providers:
            await provider.aclose()
        await self.store.close()

        await self.event_bus.publish(Event(type=EventType.ENGINE_STOPPED))
        await self.event_bus.clear()
        logger.info("Swap engine stopped")

    async def _log_lifecycle(self, event: Event) -> None:
        """Log queue lifecycle events."""
        data = event.data
        if event.type == EventType.JOB_ACTIVE:
            logger.debug(
                "Job %s active (attempt %d/%d)",
                event.job_id,
                data["attempt"],
                data["max_attempts"],
            )
        elif event.type == EventType.JOB_COMPLETED:
            logger.info("Job %s completed", event.job_id)
        elif event.type == EventType.JOB_RETRYING:
            logger.warning(
                "Job %s attempt %d/%d failed, retrying in %s: %s",
                event.job_id,
                data["attempt"],
                data["max_attempts"],
                data["next_retry_in"],
                data["error"],
            )
        elif event.type == EventType.JOB_FAILED:
            error = TerminalExecutionError(event.job_id or "", data["attempt"], data["error"])
            logger.error("%s", error)
        elif event.type == EventType.JOB_STALLED:
            logger.warning(
                "Job %s stalled %d time(s), re-queued",
                event.job_id,
                data["stalled_count"],
            )
