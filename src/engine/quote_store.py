"""
Quote Store.

Holds the latest quote per (event, market, selection, source), grouped into
one MarketGroup per (event, market). A group is only ever mutated by the
dispatcher worker that owns its market key, so the store itself carries no
locks. Readers get immutable snapshots.
"""

from dataclasses import dataclass, field
from typing import Iterator, Optional

import structlog

from src.models.schemas import (
    MarketKey,
    MarketSnapshot,
    Quote,
    freeze_quotes,
)

logger = structlog.get_logger()


@dataclass
class MarketGroup:
    """Mutable per-market state: selection -> source -> latest Quote."""
    market_key: MarketKey
    quotes: dict[str, dict[str, Quote]] = field(default_factory=dict)
    known_selections: set[str] = field(default_factory=set)
    version: int = 0
    last_update_ms: int = 0

    def get(self, selection: str, source: str) -> Optional[Quote]:
        return self.quotes.get(selection, {}).get(source)

    def put(self, quote: Quote) -> None:
        self.quotes.setdefault(quote.selection, {})[quote.source] = quote
        self.known_selections.add(quote.selection)
        self.version += 1
        self.last_update_ms = max(self.last_update_ms, quote.observed_at_ms)

    def snapshot(self) -> MarketSnapshot:
        return MarketSnapshot(
            market_key=self.market_key,
            quotes=freeze_quotes(self.quotes),
            known_selections=frozenset(self.known_selections),
            version=self.version,
        )


@dataclass
class StoreStats:
    """Counters for the quote store."""
    accepted: int = 0
    dropped_out_of_order: int = 0
    evicted_markets: int = 0


class QuoteStore:
    """
    Latest-quote store sharded by market key.

    Upserts only move forward in time: a quote replaces the stored one for
    its key only when its observation time is strictly newer, so a delayed
    network response can never regress a price.
    """

    def __init__(self):
        self.logger = logger.bind(component="quote_store")
        self._groups: dict[MarketKey, MarketGroup] = {}
        self._stats = StoreStats()

    def upsert(self, quote: Quote) -> bool:
        """
        Store a quote if it is newer than what we hold for its key.

        Args:
            quote: Incoming quote

        Returns:
            True if stored, False if dropped as a late arrival

        Raises:
            InvalidOdds: the quote's price is malformed; nothing is stored
        """
        # Normalize before touching state so a bad price never lands
        quote.decimal_price

        group = self._groups.get(quote.market_key)
        if group is None:
            group = MarketGroup(market_key=quote.market_key)
            self._groups[quote.market_key] = group

        current = group.get(quote.selection, quote.source)
        if current is not None and quote.observed_at_ms <= current.observed_at_ms:
            self._stats.dropped_out_of_order += 1
            self.logger.debug(
                "Dropped out-of-order quote",
                key=str(quote.market_key),
                selection=quote.selection,
                source=quote.source,
                incoming_ms=quote.observed_at_ms,
                stored_ms=current.observed_at_ms,
            )
            return False

        group.put(quote)
        self._stats.accepted += 1
        return True

    def snapshot(self, market_key: MarketKey) -> Optional[MarketSnapshot]:
        """Immutable view of a market group, or None if never quoted."""
        group = self._groups.get(market_key)
        if group is None:
            return None
        return group.snapshot()

    def markets(self) -> list[MarketKey]:
        """All market keys currently held."""
        return list(self._groups)

    def latest_quotes(self) -> Iterator[Quote]:
        """Every stored quote; replaying these rebuilds the store."""
        for group in self._groups.values():
            for by_source in group.quotes.values():
                yield from by_source.values()

    def evict(self, market_key: MarketKey) -> bool:
        """Drop a finished market entirely."""
        if self._groups.pop(market_key, None) is None:
            return False
        self._stats.evicted_markets += 1
        self.logger.info("Evicted market", key=str(market_key))
        return True

    def __contains__(self, market_key: MarketKey) -> bool:
        return market_key in self._groups

    def __len__(self) -> int:
        return len(self._groups)

    def get_metrics(self) -> dict:
        """Get quote store metrics."""
        return {
            "markets": len(self._groups),
            "quotes": sum(
                len(by_source)
                for group in self._groups.values()
                for by_source in group.quotes.values()
            ),
            "accepted": self._stats.accepted,
            "dropped_out_of_order": self._stats.dropped_out_of_order,
            "evicted_markets": self._stats.evicted_markets,
        }
