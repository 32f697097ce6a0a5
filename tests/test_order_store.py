"""
Tests for order persistence.
"""

import asyncio
import json
from pathlib import Path
from unittest.mock import patch

import pytest

from swap_engine.domain.order import Order, OrderRequest, OrderStatus, OrderUpdate
from swap_engine.domain.quote import Venue
from swap_engine.exceptions import OrderNotFoundError, PersistenceError
from swap_engine.store.orders import InMemoryOrderStore, JsonFileOrderStore


def new_order(amount: float = 10.0) -> Order:
    return OrderRequest(token_in="SOL", token_out="USDC", amount=amount).to_order()


# =============================================================================
# In-memory Store
# =============================================================================


class TestInMemoryOrderStore:
    @pytest.mark.asyncio
    async def test_create_and_get(self) -> None:
        store = InMemoryOrderStore()
        order = new_order()

        await store.create(order)
        loaded = await store.get(order.id)

        assert loaded == order

    @pytest.mark.asyncio
    async def test_get_missing_returns_none(self) -> None:
        assert await InMemoryOrderStore().get("order_missing") is None

    @pytest.mark.asyncio
    async def test_duplicate_create_rejected(self) -> None:
        store = InMemoryOrderStore()
        order = new_order()
        await store.create(order)

        with pytest.raises(PersistenceError):
            await store.create(order)

    @pytest.mark.asyncio
    async def test_returned_orders_are_copies(self) -> None:
        store = InMemoryOrderStore()
        order = await store.create(new_order())

        order.status = OrderStatus.CONFIRMED
        loaded = await store.get(order.id)

        assert loaded is not None
        assert loaded.status == OrderStatus.PENDING

    @pytest.mark.asyncio
    async def test_update_applies_only_given_fields(self) -> None:
        store = InMemoryOrderStore()
        order = await store.create(new_order())

        updated = await store.update(
            order.id,
            OrderUpdate(status=OrderStatus.CONFIRMED, selected_dex=Venue.METEORA, executed_price=206.55),
        )

        assert updated.status == OrderStatus.CONFIRMED
        assert updated.selected_dex == Venue.METEORA
        assert updated.executed_price == 206.55
        assert updated.tx_hash is None
        assert updated.amount == order.amount
        assert updated.updated_at >= order.updated_at

    @pytest.mark.asyncio
    async def test_update_missing_order(self) -> None:
        with pytest.raises(OrderNotFoundError):
            await InMemoryOrderStore().update("order_missing", OrderUpdate(error="x"))

    @pytest.mark.asyncio
    async def test_terminal_status_is_final(self) -> None:
        store = InMemoryOrderStore()
        order = await store.create(new_order())
        await store.update(order.id, OrderUpdate(status=OrderStatus.CONFIRMED, tx_hash="abc"))

        result = await store.update(order.id, OrderUpdate(status=OrderStatus.FAILED, error="late"))

        assert result.status == OrderStatus.CONFIRMED
        assert result.error is None
        stored = await store.get(order.id)
        assert stored is not None and stored.status == OrderStatus.CONFIRMED

    @pytest.mark.asyncio
    async def test_list_newest_first(self) -> None:
        store = InMemoryOrderStore()
        first = await store.create(new_order(1))
        await asyncio.sleep(0.002)
        second = await store.create(new_order(2))

        orders = await store.list_orders()

        assert [o.id for o in orders] == [second.id, first.id]
        assert [o.id for o in await store.list_orders(limit=1)] == [second.id]

    @pytest.mark.asyncio
    async def test_concurrent_updates_to_different_orders(self) -> None:
        store = InMemoryOrderStore()
        orders = [await store.create(new_order(i + 1)) for i in range(20)]

        await asyncio.gather(
            *[
                store.update(o.id, OrderUpdate(status=OrderStatus.CONFIRMED, executed_price=float(i)))
                for i, o in enumerate(orders)
            ]
        )

        for i, o in enumerate(orders):
            stored = await store.get(o.id)
            assert stored is not None
            assert stored.executed_price == float(i)


# =============================================================================
# JSON File Store
# =============================================================================


class TestJsonFileOrderStore:
    @pytest.mark.asyncio
    async def test_persists_across_instances(self, tmp_path: Path) -> None:
        path = tmp_path / "orders.json"
        store = JsonFileOrderStore(path)
        order = await store.create(new_order())
        await store.update(order.id, OrderUpdate(status=OrderStatus.FAILED, error="no route"))

        reopened = JsonFileOrderStore(path)
        loaded = await reopened.get(order.id)

        assert loaded is not None
        assert loaded.status == OrderStatus.FAILED
        assert loaded.error == "no route"

    @pytest.mark.asyncio
    async def test_file_uses_api_field_names(self, tmp_path: Path) -> None:
        path = tmp_path / "orders.json"
        store = JsonFileOrderStore(path)
        await store.create(new_order())

        records = json.loads(path.read_text())

        assert len(records) == 1
        assert records[0]["tokenIn"] == "SOL"
        assert records[0]["status"] == "pending"

    @pytest.mark.asyncio
    async def test_no_temp_files_left_behind(self, tmp_path: Path) -> None:
        store = JsonFileOrderStore(tmp_path / "orders.json")
        for i in range(5):
            await store.create(new_order(i + 1))

        assert [p.name for p in tmp_path.iterdir()] == ["orders.json"]

    def test_corrupt_file_raises(self, tmp_path: Path) -> None:
        path = tmp_path / "orders.json"
        path.write_text("{not json")

        with pytest.raises(PersistenceError):
            JsonFileOrderStore(path)

    @pytest.mark.asyncio
    async def test_failed_write_rolls_back(self, tmp_path: Path) -> None:
        store = JsonFileOrderStore(tmp_path / "orders.json")
        order = await store.create(new_order())

        with patch(
            "swap_engine.store.orders.atomic_write_json",
            side_effect=OSError("disk full"),
        ):
            with pytest.raises(PersistenceError):
                await store.update(order.id, OrderUpdate(status=OrderStatus.CONFIRMED))

        stored = await store.get(order.id)
        assert stored is not None
        assert stored.status == OrderStatus.PENDING
