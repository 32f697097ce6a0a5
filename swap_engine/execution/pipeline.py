"""
Execution pipeline.

Drives one order through its lifecycle for a single attempt:

    pending -> routing -> building -> submitted -> confirmed

Every stage is broadcast to the order's observers. The only write to the
order store on the success path is the single confirmed update, so a
retried attempt always restarts from a clean pending order. Failures are
returned to the work queue as Retryable/Fatal results; retry and final
failure broadcasts are driven by the queue's lifecycle events.
"""

import asyncio
import math
import random

from pydantic import ValidationError

from swap_engine.domain.order import (
    BroadcastStatus,
    Order,
    OrderStatus,
    OrderUpdate,
    generate_execution_reference,
)
from swap_engine.domain.quote import RoutingDecision
from swap_engine.exceptions import PersistenceError, TransientExecutionError
from swap_engine.jobs.models import Job
from swap_engine.jobs.results import Fatal, JobResult, Ok, Retryable
from swap_engine.logging import clear_order_id, get_logger, set_order_id
from swap_engine.routing.comparator import DexComparator
from swap_engine.routing.providers import QuoteProvider
from swap_engine.runtime.event_bus import Event, EventType
from swap_engine.store.orders import OrderStore
from swap_engine.streaming.hub import BroadcastHub

logger = get_logger(__name__)


class ExecutionPipeline:
    """
    Order state machine run by the work queue, one attempt at a time.

    Usage:
        pipeline = ExecutionPipeline(store, hub, (raydium, meteora), DexComparator())
        queue = WorkQueue("orders", pipeline.process, ...)
        await bus.subscribe(EventType.JOB_RETRYING, pipeline.on_job_event)
        await bus.subscribe(EventType.JOB_FAILED, pipeline.on_job_event)
    """

    def __init__(
        self,
        store: OrderStore,
        hub: BroadcastHub,
        providers: tuple[QuoteProvider, QuoteProvider],
        comparator: DexComparator,
        *,
        pending_delay_s: float = 0.5,
        building_delay_s: float = 1.0,
        confirmation_delay_s: float = 2.0,
        confirmation_jitter_s: float = 1.0,
        failure_write_attempts: int = 5,
        failure_write_backoff_s: float = 0.1,
        rng: random.Random | None = None,
    ):
        self._store = store
        self._hub = hub
        self._providers = providers
        self._comparator = comparator
        self._pending_delay_s = pending_delay_s
        self._building_delay_s = building_delay_s
        self._confirmation_delay_s = confirmation_delay_s
        self._confirmation_jitter_s = confirmation_jitter_s
        self._failure_write_attempts = max(failure_write_attempts, 1)
        self._failure_write_backoff_s = failure_write_backoff_s
        self._rng = rng or random.Random()

    async def process(self, job: Job) -> JobResult:
        """
        Run one attempt for the order carried by `job`.

        Returns:
            Ok(order) once confirmed (or if the order was already terminal),
            Retryable(error) for transient stage failures,
            Fatal(error) for orders that can never execute
        """
        set_order_id(job.id)
        try:
            logger.info("Processing attempt %d/%d", job.attempt, job.max_attempts)
            return await self._run(job)
        except TransientExecutionError as e:
            logger.warning("Attempt %d failed: %s", job.attempt, e)
            return Retryable(e)
        finally:
            clear_order_id()

    async def _run(self, job: Job) -> JobResult:
        order = await self._store.get(job.id)
        if order is None:
            try:
                order = Order.model_validate(job.payload)
            except ValidationError as e:
                return Fatal(f"Invalid order payload: {e.error_count()} errors")
            logger.warning("Order missing from store, restoring from job payload")
            order = await self._store.create(order)

        if order.is_terminal:
            logger.info("Order already %s, nothing to do", order.status.value)
            return Ok(order)

        if not math.isfinite(order.amount) or order.amount <= 0:
            return Fatal(f"Invalid amount: {order.amount}")

        # Pending
        await self._hub.publish(
            order.id,
            OrderStatus.PENDING,
            "Order received and queued",
            attempt=job.attempt,
        )
        await self._pause(self._pending_delay_s)

        # Routing
        await self._hub.publish(order.id, OrderStatus.ROUTING, "Comparing DEX prices...")
        decision = await self._route(order)
        await self._hub.publish(
            order.id,
            OrderStatus.ROUTING,
            f"Best price on {decision.venue.value}",
            selectedDex=decision.venue,
            prices={q.venue.value: q.price for q in (decision.selected, decision.rejected)},
        )

        # Building
        await self._hub.publish(
            order.id,
            OrderStatus.BUILDING,
            f"Creating swap transaction on {decision.venue.value}",
            selectedDex=decision.venue,
        )
        await self._pause(self._building_delay_s)

        # Submitted
        tx_hash = generate_execution_reference()
        await self._hub.publish(
            order.id,
            OrderStatus.SUBMITTED,
            "Transaction submitted to blockchain",
            txHash=tx_hash,
            selectedDex=decision.venue,
        )
        await self._pause(
            self._confirmation_delay_s + self._rng.uniform(0, self._confirmation_jitter_s)
        )

        # Confirmed: persist before telling anyone
        confirmed = await self._store.update(
            order.id,
            OrderUpdate(
                status=OrderStatus.CONFIRMED,
                selected_dex=decision.venue,
                executed_price=decision.price,
                tx_hash=tx_hash,
            ),
        )
        await self._hub.publish(
            order.id,
            OrderStatus.CONFIRMED,
            "Swap executed successfully",
            txHash=tx_hash,
            executedPrice=decision.price,
            selectedDex=decision.venue,
        )
        logger.info(
            "Confirmed on %s at %.4f (%s)",
            decision.venue.value,
            decision.price,
            tx_hash[:12],
        )
        return Ok(confirmed)

    async def _route(self, order: Order) -> RoutingDecision:
        """Fetch both venues' quotes concurrently and pick the better one."""
        provider_a, provider_b = self._providers
        quote_a, quote_b = await asyncio.gather(
            provider_a.get_quote(order.token_in, order.token_out, order.amount),
            provider_b.get_quote(order.token_in, order.token_out, order.amount),
        )
        decision = self._comparator.select(quote_a, quote_b)
        logger.info(
            "Quotes %s=%.4f %s=%.4f -> %s%s",
            quote_a.venue.value,
            quote_a.price,
            quote_b.venue.value,
            quote_b.price,
            decision.venue.value,
            " (tie)" if decision.tie else "",
        )
        return decision

    @staticmethod
    async def _pause(seconds: float) -> None:
        if seconds > 0:
            await asyncio.sleep(seconds)

    # =========================================================================
    # Queue lifecycle
    # =========================================================================

    async def on_job_event(self, event: Event) -> None:
        """
        React to work queue lifecycle events for order jobs.

        - job.retrying: broadcast `retrying` with the error and delay
        - job.failed: persist `failed` with the error, then broadcast it.
          Store errors on that write are retried with backoff
        """
        order_id = event.job_id
        if order_id is None:
            return
        data = event.data
        error = data.get("error") or "unknown error"
        attempt = data.get("attempt", 0)

        if event.type == EventType.JOB_RETRYING:
            await self._hub.publish(
                order_id,
                BroadcastStatus.RETRYING,
                f"Attempt {attempt} failed, retrying...",
                error=error,
                attempt=attempt,
                nextRetryIn=data.get("next_retry_in"),
            )

        elif event.type == EventType.JOB_FAILED:
            if not await self._record_failure(order_id, error):
                return
            await self._hub.publish(
                order_id,
                OrderStatus.FAILED,
                f"Order failed after {attempt} attempts: {error}",
                error=error,
                attempts=attempt,
            )

    async def _record_failure(self, order_id: str, error: str) -> bool:
        """Write the final `failed` status, backing off between store errors."""
        update = OrderUpdate(status=OrderStatus.FAILED, error=error)
        for attempt in range(1, self._failure_write_attempts + 1):
            try:
                await self._store.update(order_id, update)
                return True
            except PersistenceError as e:
                if attempt == self._failure_write_attempts:
                    logger.error(
                        "Giving up recording failure of %s after %d writes: %s",
                        order_id,
                        attempt,
                        e,
                    )
                    return False
                delay = self._failure_write_backoff_s * 2 ** (attempt - 1)
                logger.warning(
                    "Recording failure of %s failed, retrying in %.2fs: %s", order_id, delay, e
                )
                await asyncio.sleep(delay)
        return False
