"""
Order store.

Durable record of order intent and status. Writes are applied atomically
per order, keyed by order ID, with last-write-wins semantics, so re-running
a pipeline attempt from the start is always safe. Terminal statuses are
final: an update against a confirmed or failed order is ignored.
"""

import asyncio
from abc import ABC, abstractmethod
from datetime import UTC, datetime
from pathlib import Path

from pydantic import ValidationError

from swap_engine.domain.order import Order, OrderUpdate
from swap_engine.exceptions import OrderNotFoundError, PersistenceError
from swap_engine.logging import get_logger
from swap_engine.runtime.files import atomic_write_json, read_json

logger = get_logger(__name__)


class OrderStore(ABC):
    """Abstract order persistence."""

    @abstractmethod
    async def create(self, order: Order) -> Order:
        """
        Persist a new order.

        Raises:
            PersistenceError: if an order with the same ID already exists
                or the write fails
        """
        pass

    @abstractmethod
    async def get(self, order_id: str) -> Order | None:
        """Get an order by ID, or None."""
        pass

    @abstractmethod
    async def update(self, order_id: str, update: OrderUpdate) -> Order:
        """
        Apply a partial update to one order.

        Returns:
            The stored order after the update (unchanged if it was terminal)

        Raises:
            OrderNotFoundError: if the order does not exist
            PersistenceError: if the write fails
        """
        pass

    @abstractmethod
    async def list_orders(self, limit: int | None = None) -> list[Order]:
        """List orders, newest first."""
        pass

    async def close(self) -> None:
        """Release any held resources."""
        return None


class InMemoryOrderStore(OrderStore):
    """Order store held in process memory."""

    def __init__(self) -> None:
        self._orders: dict[str, Order] = {}
        self._lock = asyncio.Lock()

    async def create(self, order: Order) -> Order:
        async with self._lock:
            if order.id in self._orders:
                raise PersistenceError(f"Order {order.id} already exists")
            self._orders[order.id] = order.model_copy(deep=True)
            try:
                self._flush()
            except Exception:
                del self._orders[order.id]
                raise
        return order.model_copy(deep=True)

    async def get(self, order_id: str) -> Order | None:
        async with self._lock:
            order = self._orders.get(order_id)
            return order.model_copy(deep=True) if order else None

    async def update(self, order_id: str, update: OrderUpdate) -> Order:
        async with self._lock:
            current = self._orders.get(order_id)
            if current is None:
                raise OrderNotFoundError(order_id)

            if current.is_terminal:
                logger.warning(
                    "Ignoring update to %s order %s: %s",
                    current.status.value,
                    order_id,
                    update.changes(),
                )
                return current.model_copy(deep=True)

            updated = current.model_copy(
                update={**update.changes(), "updated_at": datetime.now(UTC)},
            )
            self._orders[order_id] = updated
            try:
                self._flush()
            except Exception:
                self._orders[order_id] = current
                raise
            return updated.model_copy(deep=True)

    async def list_orders(self, limit: int | None = None) -> list[Order]:
        async with self._lock:
            orders = sorted(self._orders.values(), key=lambda o: o.created_at, reverse=True)
        if limit is not None:
            orders = orders[:limit]
        return [o.model_copy(deep=True) for o in orders]

    def _flush(self) -> None:
        """Persist the current table. Called with the lock held."""
        return None


class JsonFileOrderStore(InMemoryOrderStore):
    """
    Order store persisted to a single JSON file.

    The whole table is rewritten via temp file + rename on every write, so
    a crash never leaves a half-written file behind.
    """

    def __init__(self, path: Path) -> None:
        super().__init__()
        self._path = path
        self._load()
        logger.debug("JsonFileOrderStore initialized at %s (%d orders)", path, len(self._orders))

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> None:
        try:
            raw = read_json(self._path, default=[])
            for item in raw:
                order = Order.model_validate(item)
                self._orders[order.id] = order
        except (OSError, ValueError, ValidationError) as e:
            raise PersistenceError(f"Failed to load orders from {self._path}: {e}") from e

    def _flush(self) -> None:
        records = [o.model_dump(mode="json", by_alias=True) for o in self._orders.values()]
        try:
            atomic_write_json(self._path, records)
        except OSError as e:
            raise PersistenceError(f"Failed to write orders to {self._path}: {e}") from e
