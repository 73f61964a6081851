"""
Best-Price Selector.

Consolidates a market snapshot into the single best price per selection.
"Best" means the highest decimal price (the smallest contribution to the
market's implied probability) among quotes that are fresh and live.
"""

from types import MappingProxyType
from typing import Optional

import structlog

from config.settings import DetectionSettings, settings
from src.engine.errors import InsufficientData, StaleQuote
from src.models.schemas import BestPrice, BestPriceSet, MarketSnapshot, Quote

logger = structlog.get_logger()


def ensure_fresh(quote: Quote, now_ms: int, max_age_seconds: float) -> None:
    """Raise StaleQuote if the quote is older than the allowed age."""
    age = quote.age_seconds(now_ms)
    if age > max_age_seconds:
        raise StaleQuote(quote.key, age, max_age_seconds)


def _rank(quote: Quote) -> tuple:
    # Highest price, then most recent, then smallest source id
    return (-quote.decimal_price, -quote.observed_at_ms, quote.source)


class BestPriceSelector:
    """
    Picks the best eligible source per selection.

    A selection with no eligible quote keeps the whole market out of this
    detection cycle by raising InsufficientData.
    """

    def __init__(self, config: Optional[DetectionSettings] = None):
        self.config = config or settings.detection
        self.logger = logger.bind(component="best_price_selector")

    def required_selections(self, snapshot: MarketSnapshot) -> list[str]:
        """Selections that must all be priced for the market to be compared."""
        configured = self.config.required_selections.get(snapshot.market_key.market_type)
        if configured:
            return sorted(set(configured) | snapshot.known_selections)
        return snapshot.selections

    def best_for_selection(
        self,
        snapshot: MarketSnapshot,
        selection: str,
        now_ms: int,
    ) -> tuple[Optional[BestPrice], int]:
        """
        Best eligible price for one selection.

        Returns:
            (best price or None, number of stale quotes excluded)
        """
        eligible = []
        stale = 0
        for quote in snapshot.quotes.get(selection, {}).values():
            if not quote.is_live:
                continue
            try:
                ensure_fresh(quote, now_ms, self.config.max_quote_age_seconds)
            except StaleQuote as e:
                stale += 1
                self.logger.debug(
                    "Stale quote excluded",
                    key=str(snapshot.market_key),
                    selection=selection,
                    source=quote.source,
                    age_s=round(e.age_seconds, 1),
                )
                continue
            eligible.append(quote)

        if not eligible:
            return None, stale

        best = min(eligible, key=_rank)
        return BestPrice(
            selection=selection,
            source=best.source,
            price=best.decimal_price,
            observed_at_ms=best.observed_at_ms,
        ), stale

    def select(self, snapshot: MarketSnapshot, now_ms: int) -> BestPriceSet:
        """
        Build the BestPriceSet for a market snapshot.

        Raises:
            InsufficientData: a required selection has no eligible quote, or
                the market has fewer than two selections
        """
        required = self.required_selections(snapshot)
        prices: dict[str, BestPrice] = {}
        missing: list[str] = []
        stale_total = 0

        for selection in required:
            best, stale = self.best_for_selection(snapshot, selection, now_ms)
            stale_total += stale
            if best is None:
                missing.append(selection)
            else:
                prices[selection] = best

        if missing or len(prices) < 2:
            raise InsufficientData(snapshot.market_key, missing, stale_excluded=stale_total)

        return BestPriceSet(
            market_key=snapshot.market_key,
            prices=MappingProxyType(prices),
            computed_at_ms=now_ms,
        )
