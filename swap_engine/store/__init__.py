"""
Order persistence.
"""

from swap_engine.store.orders import InMemoryOrderStore, JsonFileOrderStore, OrderStore

__all__ = ["InMemoryOrderStore", "JsonFileOrderStore", "OrderStore"]
