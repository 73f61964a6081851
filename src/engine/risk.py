"""
Risk Assessor.

Descriptive metadata attached to opportunities. Nothing here gates
detection:

- volatility: variance of each selection's best price over a trailing window
- restriction_risk: stake spread over more books than the configured cap
  (many simultaneous winning accounts draw bookmaker scrutiny)
- rarity_score: opportunities found / markets scanned over a rolling period
"""

from collections import deque
from dataclasses import dataclass, field
from typing import Mapping, Optional, Sequence

import numpy as np
import structlog

from config.settings import RiskSettings, settings
from src.models.schemas import BestPriceSet, MarketKey, RiskProfile

logger = structlog.get_logger()


def assess(
    best_prices: BestPriceSet,
    price_history: Mapping[str, Sequence[float]],
    rarity_score: float,
    max_sources: int,
) -> RiskProfile:
    """
    Pure risk assessment over a best-price set and its trailing history.

    Args:
        best_prices: Current best price per selection
        price_history: Selection -> prices observed within the window
        rarity_score: Current opportunities/markets ratio
        max_sources: Source count above which restriction risk is flagged
    """
    volatility = {}
    for selection in best_prices.prices:
        window = price_history.get(selection, ())
        volatility[selection] = float(np.var(window)) if len(window) >= 2 else 0.0

    source_count = len(best_prices.sources)
    return RiskProfile(
        volatility=volatility,
        source_count=source_count,
        restriction_risk=source_count > max_sources,
        rarity_score=rarity_score,
    )


@dataclass
class PriceHistory:
    """Rolling best-price history: market -> selection -> (timestamp_ms, price)."""
    window_seconds: float = 300.0
    max_size: int = 500
    _series: dict[MarketKey, dict[str, deque]] = field(default_factory=dict)

    def add(self, market_key: MarketKey, selection: str, price: float, timestamp_ms: int) -> None:
        """Add a price point."""
        by_selection = self._series.setdefault(market_key, {})
        series = by_selection.get(selection)
        if series is None:
            series = deque(maxlen=self.max_size)
            by_selection[selection] = series
        series.append((timestamp_ms, price))

    def record(self, best_prices: BestPriceSet, timestamp_ms: int) -> None:
        """Add every selection's current best price."""
        for bp in best_prices.prices.values():
            self.add(best_prices.market_key, bp.selection, float(bp.price), timestamp_ms)

    def window(self, market_key: MarketKey, now_ms: int) -> dict[str, list[float]]:
        """Selection -> prices recorded within the trailing window."""
        cutoff_ms = now_ms - int(self.window_seconds * 1000)
        result = {}
        for selection, series in self._series.get(market_key, {}).items():
            while series and series[0][0] < cutoff_ms:
                series.popleft()
            result[selection] = [price for _, price in series]
        return result

    def forget(self, market_key: MarketKey) -> None:
        self._series.pop(market_key, None)


@dataclass
class RarityTracker:
    """
    Measured opportunity rarity.

    Ratio of distinct markets with an opportunity to distinct markets
    scanned within the rolling window. Only the latest scan and latest hit
    per market are kept, so state is bounded by the number of live markets.
    """
    window_seconds: float = 3600.0
    _markets: dict[MarketKey, tuple[int, Optional[int]]] = field(default_factory=dict)  # last scan, last hit

    def record(self, market_key: MarketKey, timestamp_ms: int, found: bool) -> None:
        """Record one detection pass over a market."""
        last_scan, last_hit = self._markets.get(market_key, (timestamp_ms, None))
        if found:
            last_hit = timestamp_ms if last_hit is None else max(last_hit, timestamp_ms)
        self._markets[market_key] = (max(last_scan, timestamp_ms), last_hit)

    def _cutoff(self, now_ms: int) -> int:
        return now_ms - int(self.window_seconds * 1000)

    def _cleanup(self, now_ms: int) -> None:
        cutoff_ms = self._cutoff(now_ms)
        for key in [k for k, (scan, _) in self._markets.items() if scan < cutoff_ms]:
            del self._markets[key]

    def score(self, now_ms: Optional[int] = None) -> float:
        """Opportunities found / markets scanned (0.0 with no scans)."""
        if now_ms is not None:
            self._cleanup(now_ms)
        if not self._markets:
            return 0.0
        cutoff_ms = self._cutoff(now_ms) if now_ms is not None else None
        found = sum(
            1 for _, hit in self._markets.values()
            if hit is not None and (cutoff_ms is None or hit >= cutoff_ms)
        )
        return found / len(self._markets)

    @property
    def markets(self) -> int:
        """Markets currently inside the window."""
        return len(self._markets)


class RiskAssessor:
    """Maintains the trailing state the pure assessment runs over."""

    def __init__(self, config: Optional[RiskSettings] = None):
        self.config = config or settings.risk
        self.logger = logger.bind(component="risk_assessor")
        self.history = PriceHistory(
            window_seconds=self.config.volatility_window_seconds,
            max_size=self.config.max_history_per_selection,
        )
        self.rarity = RarityTracker(window_seconds=self.config.rarity_window_seconds)

    def observe(self, best_prices: BestPriceSet, now_ms: int) -> None:
        """Feed the latest best prices into the volatility history."""
        self.history.record(best_prices, now_ms)

    def record_scan(self, market_key: MarketKey, now_ms: int, found: bool) -> None:
        self.rarity.record(market_key, now_ms, found)

    def assess(self, best_prices: BestPriceSet, now_ms: int) -> RiskProfile:
        profile = assess(
            best_prices,
            self.history.window(best_prices.market_key, now_ms),
            self.rarity.score(now_ms),
            self.config.max_sources_before_restriction,
        )
        if profile.restriction_risk:
            self.logger.debug(
                "Restriction risk flagged",
                key=str(best_prices.market_key),
                sources=profile.source_count,
                cap=self.config.max_sources_before_restriction,
            )
        return profile

    def forget(self, market_key: MarketKey) -> None:
        self.history.forget(market_key)

    def get_metrics(self) -> dict:
        return {
            "rarity_score": self.rarity.score(),
            "rarity_markets": self.rarity.markets,
        }
