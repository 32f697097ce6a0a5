"""
Quote domain model.

A quote is a venue's priced offer for a single swap. Quotes are produced
per routing decision and never persisted; only the winning venue and price
are written onto the order.
"""

from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, Field


class Venue(str, Enum):
    """Execution venues competing for each order."""

    RAYDIUM = "raydium"  # Venue A
    METEORA = "meteora"  # Venue B


class Quote(BaseModel):
    """
    A priced offer from one venue.

    `price` is the output received for the whole input amount, so it is
    directly comparable between venues quoting the same order.
    """

    venue: Venue = Field(..., alias="dex")
    price: float = Field(..., gt=0, allow_inf_nan=False)
    fee: float = Field(
        default=0.0, ge=0, lt=1, allow_inf_nan=False, description="Fee fraction, informational"
    )
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))

    model_config = {"populate_by_name": True}


class RoutingDecision(BaseModel):
    """Outcome of comparing two venue quotes."""

    venue: Venue
    price: float
    selected: Quote
    rejected: Quote
    tie: bool = False
