"""
Venue routing: quote sources and best-price selection.
"""

from swap_engine.routing.comparator import DexComparator
from swap_engine.routing.providers import (
    HttpQuoteProvider,
    MockQuoteProvider,
    QuoteProvider,
    StaticQuoteProvider,
)

__all__ = [
    "DexComparator",
    "HttpQuoteProvider",
    "MockQuoteProvider",
    "QuoteProvider",
    "StaticQuoteProvider",
]
