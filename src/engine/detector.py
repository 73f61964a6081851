"""
Arbitrage Detector.

Sums the implied probabilities of a market's best prices:

    implied_total = sum(1 / best_price[selection])

Below 1 the best prices across books over-pay the market and a stake split
exists that profits whatever the outcome:

    margin = (1 - implied_total) / implied_total

Detection is a pure function of the BestPriceSet.
"""

from decimal import Decimal, localcontext
from typing import Optional

import structlog

from config.settings import DetectionSettings, settings
from src.engine.odds import PRICE_CONTEXT
from src.models.schemas import (
    ArbitrageCandidate,
    BestPriceSet,
    DetectionResult,
    EfficiencyReport,
)

logger = structlog.get_logger()

ONE = Decimal(1)


class ArbitrageDetector:
    """Turns a BestPriceSet into a candidate or an efficiency report."""

    def __init__(self, config: Optional[DetectionSettings] = None):
        self.config = config or settings.detection
        self.logger = logger.bind(component="arbitrage_detector")
        self._min_margin = Decimal(str(self.config.min_profit_threshold))

    @property
    def min_margin(self) -> Decimal:
        return self._min_margin

    def detect(self, best_prices: BestPriceSet) -> DetectionResult:
        """
        Run detection on one market's best prices.

        Returns:
            ArbitrageCandidate when implied_total < 1 and the margin exceeds
            the configured minimum, otherwise an EfficiencyReport
        """
        with localcontext(PRICE_CONTEXT):
            implied_total = sum(
                (ONE / bp.price for bp in best_prices.prices.values()),
                Decimal(0),
            )

            if implied_total < ONE:
                margin = (ONE - implied_total) / implied_total
                if margin > self._min_margin:
                    self.logger.debug(
                        "Arbitrage candidate",
                        key=str(best_prices.market_key),
                        implied_total=f"{implied_total:.4f}",
                        margin=f"{margin:.2%}",
                    )
                    return ArbitrageCandidate(
                        market_key=best_prices.market_key,
                        best_prices=best_prices,
                        implied_total=implied_total,
                        margin=margin,
                    )

            fair = {
                selection: (ONE / bp.price) / implied_total
                for selection, bp in best_prices.prices.items()
            }
            return EfficiencyReport(
                market_key=best_prices.market_key,
                best_prices=best_prices,
                implied_total=implied_total,
                market_efficiency=implied_total,
                house_edge=(implied_total - ONE) * 100,
                fair_probabilities=fair,
            )
