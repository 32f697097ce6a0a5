"""
DEX comparator.

Picks the venue offering the strictly higher price. An exact tie goes to
the preferred venue so selection is deterministic. Fees are carried on the
quotes for reporting but do not influence the choice.
"""

from swap_engine.domain.quote import Quote, RoutingDecision, Venue


class DexComparator:
    """Selects the better of two venue quotes."""

    def __init__(self, preferred_venue: Venue = Venue.RAYDIUM):
        self._preferred = preferred_venue

    @property
    def preferred_venue(self) -> Venue:
        return self._preferred

    def select(self, quote_a: Quote, quote_b: Quote) -> RoutingDecision:
        """
        Compare two quotes.

        Args:
            quote_a: First venue's quote
            quote_b: Second venue's quote

        Returns:
            RoutingDecision for the higher-priced quote, or for the quote
            from the preferred venue on an exact tie (the first quote if
            neither is from the preferred venue).
        """
        if quote_a.price > quote_b.price:
            return self._decide(quote_a, quote_b)
        if quote_b.price > quote_a.price:
            return self._decide(quote_b, quote_a)

        if quote_b.venue == self._preferred and quote_a.venue != self._preferred:
            return self._decide(quote_b, quote_a, tie=True)
        return self._decide(quote_a, quote_b, tie=True)

    @staticmethod
    def _decide(selected: Quote, rejected: Quote, tie: bool = False) -> RoutingDecision:
        return RoutingDecision(
            venue=selected.venue,
            price=selected.price,
            selected=selected,
            rejected=rejected,
            tie=tie,
        )
