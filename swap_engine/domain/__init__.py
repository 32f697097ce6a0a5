"""
Domain models for the swap execution engine.

- Order: a requested swap and its lifecycle status
- Quote: a venue's priced offer for a swap
- RoutingDecision: the winning venue for an order
"""

from swap_engine.domain.order import (
    BroadcastStatus,
    Order,
    OrderRequest,
    OrderStatus,
    OrderUpdate,
    generate_execution_reference,
    generate_order_id,
    validate_order_request,
)
from swap_engine.domain.quote import Quote, RoutingDecision, Venue

__all__ = [
    "BroadcastStatus",
    "Order",
    "OrderRequest",
    "OrderStatus",
    "OrderUpdate",
    "Quote",
    "RoutingDecision",
    "Venue",
    "generate_execution_reference",
    "generate_order_id",
    "validate_order_request",
]
