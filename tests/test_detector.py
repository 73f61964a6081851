"""Tests for arbitrage detection."""

from decimal import Decimal
from types import MappingProxyType

import pytest

from config.settings import DetectionSettings
from src.engine.detector import ArbitrageDetector
from src.models.schemas import (
    ArbitrageCandidate,
    BestPrice,
    BestPriceSet,
    DetectionKind,
    EfficiencyReport,
    MarketKey,
)

KEY = MarketKey("evt-1", "h2h")


def best_prices(**prices) -> BestPriceSet:
    return BestPriceSet(
        market_key=KEY,
        prices=MappingProxyType({
            selection: BestPrice(selection, f"book_{selection}", Decimal(price), 0)
            for selection, price in prices.items()
        }),
    )


@pytest.fixture
def detector():
    return ArbitrageDetector(DetectionSettings(min_profit_threshold=0.042))


class TestDetection:
    """Candidate vs efficiency classification."""

    def test_two_way_arbitrage(self, detector):
        result = detector.detect(best_prices(x="2.20", y="2.10"))

        assert isinstance(result, ArbitrageCandidate)
        assert result.kind == DetectionKind.CANDIDATE
        assert float(result.implied_total) == pytest.approx(0.930736, abs=1e-6)
        assert float(result.margin) == pytest.approx(0.0744, abs=1e-4)

    def test_over_round_market_reports_house_edge(self, detector):
        result = detector.detect(best_prices(x="1.94", y="1.94"))

        assert isinstance(result, EfficiencyReport)
        assert float(result.implied_total) == pytest.approx(1.03, abs=1e-3)
        assert float(result.house_edge) == pytest.approx(3.0, abs=0.1)
        assert result.market_efficiency == result.implied_total

    def test_fair_probabilities_sum_to_one(self, detector):
        result = detector.detect(best_prices(home="2.50", draw="3.20", away="2.80"))

        assert isinstance(result, EfficiencyReport)
        assert float(sum(result.fair_probabilities.values())) == pytest.approx(1.0)

    def test_arbitrage_below_threshold_is_not_a_candidate(self, detector):
        # implied_total 0.98 -> margin ~2.04%
        result = detector.detect(best_prices(x="2.00", y="2.083333"))

        assert result.kind == DetectionKind.EFFICIENCY
        assert result.implied_total < 1
        assert result.house_edge < 0

    def test_margin_exactly_at_threshold_is_not_a_candidate(self):
        # implied_total 0.8 -> margin 0.25 exactly
        detector = ArbitrageDetector(DetectionSettings(min_profit_threshold=0.25))
        result = detector.detect(best_prices(x="2.50", y="2.50"))
        assert result.kind == DetectionKind.EFFICIENCY

    def test_zero_threshold_accepts_any_arbitrage(self):
        detector = ArbitrageDetector(DetectionSettings(min_profit_threshold=0.0))
        result = detector.detect(best_prices(x="2.02", y="2.00"))
        assert result.kind == DetectionKind.CANDIDATE

    def test_three_way_market(self, detector):
        result = detector.detect(best_prices(home="3.50", draw="4.00", away="3.60"))

        # 1/3.5 + 1/4 + 1/3.6 = 0.8135
        assert result.kind == DetectionKind.CANDIDATE
        assert float(result.margin) == pytest.approx(0.2293, abs=1e-4)

    def test_detection_is_idempotent(self, detector):
        prices = best_prices(x="2.20", y="2.10")
        assert detector.detect(prices) == detector.detect(prices)
