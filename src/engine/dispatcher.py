"""
Ingestion Dispatcher.

The only synchronization boundary in the engine. Quotes are routed to their
market shard; each shard has at most one worker task in flight, so a
market's recomputation always sees a consistent snapshot, while different
markets interleave freely on the event loop.

Quotes arriving for a shard while its worker is busy are coalesced: only
the latest quote per key survives, and the whole batch is applied before a
single recomputation. Intermediate states are never surfaced.
"""

import asyncio
import time
import zlib
from typing import Iterable, Optional

import structlog

from config.settings import DispatcherSettings, settings
from src.engine.arbitrage_engine import ArbitrageEngine
from src.models.schemas import LifecycleEvent, MarketKey, Quote, QuoteKey
from src.utils.logging import bind_market

logger = structlog.get_logger()


def shard_for(market_key: MarketKey, shard_count: int) -> int:
    """Stable worker index for a market key (same on every process)."""
    if shard_count <= 1:
        return 0
    return zlib.crc32(str(market_key).encode("utf-8")) % shard_count


class IngestionDispatcher:
    """
    Routes quotes to per-market workers with update coalescing.

    Usage:
        dispatcher = IngestionDispatcher(engine)
        dispatcher.submit(quote)        # non-blocking
        await dispatcher.join()         # wait until every shard is idle
    """

    def __init__(
        self,
        engine: ArbitrageEngine,
        config: Optional[DispatcherSettings] = None,
        shard_index: Optional[int] = None,
    ):
        self.engine = engine
        self.config = config or settings.dispatcher
        self.shard_index = shard_index
        self.logger = logger.bind(component="dispatcher", shard=shard_index)

        self._pending: dict[MarketKey, dict[QuoteKey, Quote]] = {}
        self._workers: dict[MarketKey, asyncio.Task] = {}
        self._idle = asyncio.Event()
        self._idle.set()
        self._running = True

        # Stats
        self._submitted = 0
        self._coalesced = 0
        self._skipped_foreign = 0
        self._batches = 0
        self._errors = 0
        self._last_batch_latency_ms = 0.0

    def owns(self, market_key: MarketKey) -> bool:
        """Whether this dispatcher instance handles the market's shard."""
        if self.shard_index is None:
            return True
        return shard_for(market_key, self.config.shard_count) == self.shard_index

    def submit(self, quote: Quote) -> bool:
        """
        Queue a quote for its market shard.

        Must be called from within the running event loop.

        Returns:
            False if the dispatcher is stopped or the market belongs to
            another shard
        """
        if not self._running:
            return False

        market_key = quote.market_key
        if not self.owns(market_key):
            self._skipped_foreign += 1
            return False

        self._submitted += 1
        pending = self._pending.setdefault(market_key, {})
        queued = pending.get(quote.key)
        if queued is not None:
            self._coalesced += 1
        if queued is None or quote.observed_at_ms > queued.observed_at_ms:
            pending[quote.key] = quote

        if market_key not in self._workers:
            self._idle.clear()
            self._workers[market_key] = asyncio.get_running_loop().create_task(
                self._drain(market_key),
                name=f"shard:{market_key}",
            )
        return True

    def submit_many(self, quotes: Iterable[Quote]) -> int:
        """Queue several quotes; returns how many were accepted."""
        return sum(1 for quote in quotes if self.submit(quote))

    async def _drain(self, market_key: MarketKey) -> None:
        """Worker for one market: apply pending batches until none remain."""
        bind_market(market_key.event_id, market_key.market_type, self.shard_index)
        try:
            while self._pending.get(market_key):
                batch = self._pending.pop(market_key)
                self._process_batch(market_key, list(batch.values()))
                # Let other shards and submitters run between batches
                await asyncio.sleep(0)
        finally:
            self._workers.pop(market_key, None)
            if not self._workers:
                self._idle.set()

    def _process_batch(self, market_key: MarketKey, quotes: list[Quote]) -> list[LifecycleEvent]:
        start = time.perf_counter()
        try:
            events = self.engine.process(market_key, quotes)
        except Exception as e:
            # One misbehaving market must never halt the others
            self._errors += 1
            self.logger.exception("Recompute failed", key=str(market_key), error=str(e))
            return []
        finally:
            self._last_batch_latency_ms = (time.perf_counter() - start) * 1000
        self._batches += 1
        return events

    async def join(self) -> None:
        """Wait until every shard has drained."""
        while self._workers:
            await self._idle.wait()

    async def stop(self, drain: bool = True) -> None:
        """
        Stop accepting quotes.

        Args:
            drain: Finish queued work first; otherwise queued batches are
                discarded (in-flight recomputations still complete)
        """
        self._running = False
        if not drain:
            self._pending.clear()
        await self.join()
        self.logger.info("Dispatcher stopped", **self.get_metrics())

    @property
    def is_running(self) -> bool:
        return self._running

    def get_metrics(self) -> dict:
        """Get dispatcher metrics."""
        return {
            "submitted": self._submitted,
            "coalesced": self._coalesced,
            "batches": self._batches,
            "errors": self._errors,
            "skipped_foreign": self._skipped_foreign,
            "active_shards": len(self._workers),
            "pending_markets": len(self._pending),
            "last_batch_latency_ms": round(self._last_batch_latency_ms, 3),
        }
