"""
Arbitrage Engine.

Runs the full pipeline for one market shard:

    upsert quotes -> snapshot -> best prices -> detect
        -> {stake split, risk} -> lifecycle -> publish events

`process` is synchronous and side-effect free apart from the engine's own
in-memory state; the dispatcher guarantees it never runs concurrently for
the same market key.
"""

import time
from typing import Callable, Iterable, Optional, Union

import structlog

from config.settings import Settings, settings as default_settings
from src.engine.best_price import BestPriceSelector
from src.engine.detector import ArbitrageDetector
from src.engine.errors import AllocationError, InsufficientData, InvalidOdds
from src.engine.events import EventStream, MarketFilter
from src.engine.lifecycle import OpportunityLifecycleManager, StatusChange
from src.engine.quote_store import QuoteStore
from src.engine.risk import RiskAssessor
from src.engine.stake_allocator import StakeAllocator
from src.models.schemas import (
    DetectionKind,
    DetectionResult,
    ExpiryReason,
    InsufficientDataReport,
    LifecycleEvent,
    MarketKey,
    Opportunity,
    Quote,
)

logger = structlog.get_logger()


def now_ms() -> int:
    return int(time.time() * 1000)


class ArbitrageEngine:
    """
    Consolidated best-price view and arbitrage lifecycle for many markets.

    Usage:
        engine = ArbitrageEngine()
        engine.process(MarketKey("evt-1", "h2h"), quotes)
        result = engine.query("evt-1", "h2h")
        async for event in engine.subscribe():
            ...
    """

    def __init__(
        self,
        config: Optional[Settings] = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.config = config or default_settings
        self.clock = clock
        self.logger = logger.bind(component="arbitrage_engine")

        self.store = QuoteStore()
        self.selector = BestPriceSelector(self.config.detection)
        self.detector = ArbitrageDetector(self.config.detection)
        self.allocator = StakeAllocator(self.config.detection)
        self.risk = RiskAssessor(self.config.risk)
        self.lifecycle = OpportunityLifecycleManager(self.config.lifecycle)
        self.events = EventStream(buffer_size=self.config.dispatcher.event_buffer_size)

        # Latest detection result per market
        self._results: dict[MarketKey, DetectionResult] = {}

        # Stats
        self._recomputations = 0
        self._rejected_quotes = 0
        self._suppressed_candidates = 0

    # =========================================================================
    # Ingestion
    # =========================================================================

    def ingest(self, quote: Quote) -> bool:
        """
        Upsert a single quote without recomputing.

        Returns:
            True if the quote was stored
        """
        try:
            return self.store.upsert(quote)
        except InvalidOdds as e:
            self._rejected_quotes += 1
            self.logger.warning(
                "Rejected quote with invalid odds",
                key=str(quote.market_key),
                selection=quote.selection,
                source=quote.source,
                reason=e.reason,
            )
            return False

    def process(
        self,
        market_key: MarketKey,
        quotes: Iterable[Quote] = (),
        now: Optional[int] = None,
    ) -> list[LifecycleEvent]:
        """
        Upsert quotes for one market and recompute it once.

        Args:
            market_key: Market the quotes belong to
            quotes: New quotes (all for market_key)
            now: Recomputation time in ms (defaults to the engine clock)

        Returns:
            Lifecycle events published by this recomputation
        """
        for quote in quotes:
            if quote.market_key != market_key:
                self.logger.error(
                    "Quote routed to wrong market",
                    expected=str(market_key),
                    actual=str(quote.market_key),
                )
                continue
            self.ingest(quote)

        return self.recompute(market_key, now)

    def recompute(self, market_key: MarketKey, now: Optional[int] = None) -> list[LifecycleEvent]:
        """Re-run detection for a market against its current snapshot."""
        now = self.clock() if now is None else now
        if market_key not in self.store:
            return []

        self._recomputations += 1
        result = self.evaluate(market_key, now)
        self._results[market_key] = result

        allocation = None
        risk = None
        if result.kind != DetectionKind.INSUFFICIENT_DATA:
            self.risk.observe(result.best_prices, now)

        if result.kind == DetectionKind.CANDIDATE:
            try:
                allocation = self.allocator.allocate(result.best_prices)
            except AllocationError as e:
                self._suppressed_candidates += 1
                self.logger.warning("Candidate suppressed", key=str(market_key), error=str(e))
            self.risk.record_scan(market_key, now, found=allocation is not None)
            if allocation is not None:
                risk = self.risk.assess(result.best_prices, now)
        elif result.kind == DetectionKind.EFFICIENCY:
            self.risk.record_scan(market_key, now, found=False)

        changes = self.lifecycle.apply(market_key, result, now, allocation, risk)
        return self._publish(changes, now)

    def evaluate(self, market_key: MarketKey, now: Optional[int] = None) -> DetectionResult:
        """Pure detection for a market's current snapshot (no state changes)."""
        now = self.clock() if now is None else now
        snapshot = self.store.snapshot(market_key)
        if snapshot is None:
            return InsufficientDataReport(market_key=market_key)
        try:
            best_prices = self.selector.select(snapshot, now)
        except InsufficientData as e:
            self.logger.debug(
                "Insufficient data",
                key=str(market_key),
                missing=list(e.missing),
                stale_excluded=e.stale_excluded,
            )
            return InsufficientDataReport(
                market_key=market_key,
                missing_selections=e.missing,
                stale_excluded=e.stale_excluded,
            )
        return self.detector.detect(best_prices)

    def _publish(self, changes: list[StatusChange], now: int) -> list[LifecycleEvent]:
        published = []
        for change in changes:
            opp = change.opportunity
            published.append(self.events.publish(LifecycleEvent(
                event_id=opp.event_id,
                market_type=opp.market_type,
                previous_status=change.previous,
                status=opp.status,
                opportunity=opp,
                timestamp_ms=now,
            )))
        return published

    # =========================================================================
    # External interface
    # =========================================================================

    def query(self, event_id: str, market_type: str) -> Union[Opportunity, DetectionResult]:
        """
        Read-only view of a market.

        Returns the open Opportunity while it is still valid: inside its
        window and still detected on fresh quotes. Otherwise returns the
        freshly computed detection result. The open opportunity itself is
        only closed by the next recomputation.
        """
        market_key = MarketKey(event_id, market_type)
        now = self.clock()
        result = self.evaluate(market_key, now)
        opportunity = self.lifecycle.get(market_key)
        if (
            opportunity is not None
            and now <= opportunity.expires_at_ms
            and result.kind == DetectionKind.CANDIDATE
        ):
            return opportunity
        return result

    def last_result(self, event_id: str, market_type: str) -> Optional[DetectionResult]:
        """Detection result from the last recomputation of a market."""
        return self._results.get(MarketKey(event_id, market_type))

    def confirm_execution(
        self,
        event_id: str,
        market_type: str,
        opportunity_id: Optional[str] = None,
    ) -> Optional[LifecycleEvent]:
        """External signal that an opportunity was executed."""
        now = self.clock()
        change = self.lifecycle.confirm_execution(MarketKey(event_id, market_type), now, opportunity_id)
        if change is None:
            return None
        return self._publish([change], now)[0]

    def evict(self, event_id: str, market_type: str) -> list[LifecycleEvent]:
        """Forget a finished market, expiring any open opportunity."""
        market_key = MarketKey(event_id, market_type)
        now = self.clock()
        change = self.lifecycle.expire(market_key, now, ExpiryReason.STALE_QUOTES)
        self.store.evict(market_key)
        self.risk.forget(market_key)
        self._results.pop(market_key, None)
        return self._publish([change], now) if change else []

    def subscribe(self, market_filter: Optional[MarketFilter] = None, since: int = 0):
        """Async iterator of lifecycle events (see EventStream.subscribe)."""
        return self.events.subscribe(market_filter, since)

    def get_metrics(self) -> dict:
        """Get engine metrics."""
        return {
            "recomputations": self._recomputations,
            "rejected_quotes": self._rejected_quotes,
            "suppressed_candidates": self._suppressed_candidates,
            "store": self.store.get_metrics(),
            "lifecycle": self.lifecycle.get_metrics(),
            "risk": self.risk.get_metrics(),
            "events": self.events.get_metrics(),
        }
