"""
Quote providers.

A QuoteProvider is the engine's only view of a venue's pricing. Every
variant (mocked, static, HTTP) satisfies the same interface so the
pipeline never knows which one it is talking to.
"""

import asyncio
import random
from abc import ABC, abstractmethod
from datetime import UTC, datetime
from typing import Any

import httpx
from pydantic import ValidationError

from swap_engine.domain.quote import Quote, Venue
from swap_engine.exceptions import QuoteUnavailableError
from swap_engine.logging import get_logger

logger = get_logger(__name__)


class QuoteProvider(ABC):
    """
    Abstract base class for venue quote sources.

    Implementations must raise QuoteUnavailableError (never a raw library
    exception) when no quote can be produced.
    """

    venue: Venue

    @abstractmethod
    async def get_quote(self, token_in: str, token_out: str, amount: float) -> Quote:
        """
        Get a quote for swapping `amount` of `token_in` into `token_out`.

        Args:
            token_in: Input asset symbol
            token_out: Output asset symbol
            amount: Input amount (finite, positive)

        Returns:
            Quote whose price is the output for the whole amount.
        """
        pass

    async def aclose(self) -> None:
        """Release any held resources."""
        return None


# Variance ranges and fees of the simulated venues
MOCK_VENUE_PROFILES: dict[Venue, dict[str, float]] = {
    Venue.RAYDIUM: {"variance_low": 0.98, "variance_high": 1.02, "fee": 0.003},
    Venue.METEORA: {"variance_low": 0.97, "variance_high": 1.02, "fee": 0.002},
}


class MockQuoteProvider(QuoteProvider):
    """
    Simulated venue.

    Prices are the reference price times a uniform random variance times
    the amount, after a simulated network delay.
    """

    def __init__(
        self,
        venue: Venue,
        base_price: float = 200.0,
        latency_s: float = 0.2,
        rng: random.Random | None = None,
    ):
        profile = MOCK_VENUE_PROFILES[venue]
        self.venue = venue
        self._base_price = base_price
        self._latency_s = latency_s
        self._variance_low = profile["variance_low"]
        self._variance_high = profile["variance_high"]
        self._fee = profile["fee"]
        self._rng = rng or random.Random()

    async def get_quote(self, token_in: str, token_out: str, amount: float) -> Quote:
        if self._latency_s > 0:
            await asyncio.sleep(self._latency_s)

        variance = self._rng.uniform(self._variance_low, self._variance_high)
        price = self._base_price * variance * amount
        logger.debug(
            "%s quote %s->%s amount=%s: %.4f (fee %.2f%%)",
            self.venue.value,
            token_in,
            token_out,
            amount,
            price,
            self._fee * 100,
        )
        return Quote(venue=self.venue, price=price, fee=self._fee)


class StaticQuoteProvider(QuoteProvider):
    """
    Deterministic venue that always quotes the same total price.

    `failures` makes the next N calls raise QuoteUnavailableError, which is
    how callers simulate transient venue outages.
    """

    def __init__(self, venue: Venue, price: float, fee: float = 0.0, failures: int = 0):
        self.venue = venue
        self.price = price
        self.fee = fee
        self.failures = failures
        self.calls = 0

    async def get_quote(self, token_in: str, token_out: str, amount: float) -> Quote:
        self.calls += 1
        if self.failures > 0:
            self.failures -= 1
            raise QuoteUnavailableError(self.venue.value, "simulated outage")
        return Quote(venue=self.venue, price=self.price, fee=self.fee)


class HttpQuoteProvider(QuoteProvider):
    """
    Venue quoted over HTTP.

    Expects GET {quote_url}?tokenIn=..&tokenOut=..&amount=.. to return
    {"price": <float>, "fee": <float>}.
    """

    def __init__(
        self,
        venue: Venue,
        quote_url: str,
        timeout_s: float = 5.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.venue = venue
        self._quote_url = quote_url
        self._timeout = timeout_s
        self._client = client
        self._owns_client = client is None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self._timeout)
            self._owns_client = True
        return self._client

    async def get_quote(self, token_in: str, token_out: str, amount: float) -> Quote:
        client = await self._get_client()
        params: dict[str, Any] = {"tokenIn": token_in, "tokenOut": token_out, "amount": amount}

        try:
            response = await client.get(self._quote_url, params=params)
        except httpx.HTTPError as e:
            raise QuoteUnavailableError(self.venue.value, f"request failed: {e}") from e

        if response.status_code != 200:
            raise QuoteUnavailableError(
                self.venue.value,
                f"HTTP {response.status_code}",
            )

        try:
            data = response.json()
            return Quote(
                venue=self.venue,
                price=data["price"],
                fee=data.get("fee", 0.0),
                timestamp=data.get("timestamp") or datetime.now(UTC),
            )
        except (ValueError, KeyError, TypeError, ValidationError) as e:
            raise QuoteUnavailableError(self.venue.value, f"malformed quote: {e}") from e

    async def aclose(self) -> None:
        """Close HTTP client."""
        if self._owns_client and self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None
