"""Tests for risk metadata."""

from decimal import Decimal
from types import MappingProxyType

import pytest

from config.settings import RiskSettings
from src.engine.risk import PriceHistory, RarityTracker, RiskAssessor, assess
from src.models.schemas import BestPrice, BestPriceSet, MarketKey

KEY = MarketKey("evt-1", "h2h")
OTHER = MarketKey("evt-2", "h2h")


def best_prices(market_key=KEY, **legs) -> BestPriceSet:
    """legs: selection=(source, price)"""
    return BestPriceSet(
        market_key=market_key,
        prices=MappingProxyType({
            selection: BestPrice(selection, source, Decimal(price), 0)
            for selection, (source, price) in legs.items()
        }),
    )


class TestAssess:
    """Pure assessment function."""

    def test_volatility_is_population_variance(self):
        prices = best_prices(x=("a", "2.2"), y=("b", "2.1"))
        profile = assess(prices, {"x": [2.0, 2.2, 2.4], "y": [2.1]}, 0.0, 2)

        assert profile.volatility["x"] == pytest.approx(0.026667, abs=1e-6)
        assert profile.volatility["y"] == 0.0

    def test_restriction_risk_above_cap(self):
        prices = best_prices(home=("a", "3.5"), draw=("b", "4.0"), away=("c", "3.6"))

        assert assess(prices, {}, 0.0, 2).restriction_risk
        assert not assess(prices, {}, 0.0, 3).restriction_risk

    def test_source_count_is_distinct(self):
        prices = best_prices(home=("a", "3.5"), draw=("b", "4.0"), away=("a", "3.6"))
        profile = assess(prices, {}, 0.5, 2)

        assert profile.source_count == 2
        assert not profile.restriction_risk
        assert profile.rarity_score == 0.5


class TestPriceHistory:
    """Trailing best-price window."""

    def test_window_prunes_old_points(self, clock):
        history = PriceHistory(window_seconds=60)
        history.add(KEY, "x", 2.0, clock.now_ms)
        history.add(KEY, "x", 2.1, clock.now_ms + 30_000)
        history.add(KEY, "x", 2.2, clock.now_ms + 90_000)

        assert history.window(KEY, clock.now_ms + 90_000) == {"x": [2.1, 2.2]}

    def test_markets_kept_apart(self, clock):
        history = PriceHistory()
        history.add(KEY, "x", 2.0, clock.now_ms)
        history.add(OTHER, "x", 5.0, clock.now_ms)

        assert history.window(KEY, clock.now_ms) == {"x": [2.0]}
        history.forget(KEY)
        assert history.window(KEY, clock.now_ms) == {}
        assert history.window(OTHER, clock.now_ms) == {"x": [5.0]}

    def test_series_capped_at_max_size(self, clock):
        history = PriceHistory(window_seconds=3600, max_size=10)
        for i in range(1000):
            history.add(KEY, "x", 2.0 + i / 1000, clock.now_ms + i)

        assert len(history.window(KEY, clock.now_ms + 1000)["x"]) == 10


class TestRarity:
    """Measured opportunity rarity."""

    def test_no_scans(self):
        assert RarityTracker().score() == 0.0

    def test_ratio_of_distinct_markets(self, clock):
        tracker = RarityTracker(window_seconds=3600)
        tracker.record(KEY, clock.now_ms, found=False)
        tracker.record(KEY, clock.now_ms + 1, found=True)
        tracker.record(OTHER, clock.now_ms + 2, found=False)
        tracker.record(OTHER, clock.now_ms + 3, found=False)

        assert tracker.score() == 0.5

    def test_old_scans_roll_off(self, clock):
        tracker = RarityTracker(window_seconds=60)
        tracker.record(KEY, clock.now_ms, found=True)
        tracker.record(OTHER, clock.now_ms + 120_000, found=False)

        assert tracker.score(clock.now_ms + 120_000) == 0.0
        assert tracker.markets == 1

    def test_hit_outside_window_no_longer_counts(self, clock):
        tracker = RarityTracker(window_seconds=60)
        tracker.record(KEY, clock.now_ms, found=True)
        tracker.record(KEY, clock.now_ms + 90_000, found=False)

        assert tracker.score(clock.now_ms + 90_000) == 0.0

    def test_state_bounded_by_markets(self, clock):
        tracker = RarityTracker(window_seconds=3600)
        for i in range(20_000):
            tracker.record(KEY if i % 2 else OTHER, clock.now_ms + i * 10, found=i % 4 == 1)

        assert tracker.markets == 2
        assert tracker.score(clock.now_ms + 200_000) == 0.5


class TestRiskAssessor:
    """Stateful assessor."""

    def test_volatility_from_observed_best_prices(self, clock):
        assessor = RiskAssessor(RiskSettings(max_sources_before_restriction=2))
        for i, price in enumerate(["2.0", "2.2", "2.4"]):
            assessor.observe(best_prices(x=("a", price), y=("b", "2.1")), clock.now_ms + i * 1000)

        assessor.record_scan(KEY, clock.now_ms + 2000, found=True)
        profile = assessor.assess(best_prices(x=("a", "2.4"), y=("b", "2.1")), clock.now_ms + 2000)

        assert profile.volatility["x"] == pytest.approx(0.026667, abs=1e-6)
        assert profile.volatility["y"] == 0.0
        assert profile.rarity_score == 1.0
        assert not profile.restriction_risk
