"""
Stake Allocator.

Splits a total stake across a market's best prices so every outcome pays
the same amount:

    stake[s] = total_stake * (1 / price[s]) / implied_total
    payout   = total_stake / implied_total

Stakes are rounded to the currency unit; the rounding residual goes to the
largest stake so the split always sums exactly to the total.
"""

from decimal import Decimal, ROUND_HALF_EVEN, localcontext
from typing import Optional

import structlog

from config.settings import DetectionSettings, settings
from src.engine.errors import AllocationError
from src.engine.odds import PRICE_CONTEXT
from src.models.schemas import BestPriceSet, StakeAllocation, StakeLeg

logger = structlog.get_logger()

ONE = Decimal(1)


class StakeAllocator:
    """Computes payout-equalizing stake splits."""

    def __init__(self, config: Optional[DetectionSettings] = None):
        self.config = config or settings.detection
        self.logger = logger.bind(component="stake_allocator")

    def allocate(
        self,
        best_prices: BestPriceSet,
        total_stake: Optional[Decimal] = None,
    ) -> StakeAllocation:
        """
        Compute the stake split for a market.

        Args:
            best_prices: Best price per selection
            total_stake: Amount to distribute (defaults to configured stake)

        Raises:
            AllocationError: non-positive stake or implied total, a price at
                or below 1, or prices that do not form an arbitrage
        """
        total = Decimal(str(total_stake)) if total_stake is not None else self.config.total_stake
        unit = self.config.stake_precision

        if total <= 0:
            raise AllocationError(f"total stake must be positive, got {total}")
        if not best_prices.prices:
            raise AllocationError(f"{best_prices.market_key}: no prices to allocate")

        legs = sorted(best_prices.prices.values(), key=lambda bp: bp.selection)
        for bp in legs:
            if bp.price <= ONE:
                raise AllocationError(
                    f"{best_prices.market_key}: {bp.selection} price {bp.price} at {bp.source} must exceed 1"
                )

        with localcontext(PRICE_CONTEXT):
            implied_total = sum((ONE / bp.price for bp in legs), Decimal(0))
            if implied_total <= 0:
                raise AllocationError(f"{best_prices.market_key}: implied total {implied_total} is not positive")
            if implied_total >= ONE:
                raise AllocationError(
                    f"{best_prices.market_key}: implied total {implied_total:.4f} leaves no arbitrage"
                )

            raw = [total * (ONE / bp.price) / implied_total for bp in legs]
            stakes = [s.quantize(unit, rounding=ROUND_HALF_EVEN) for s in raw]

            # Push rounding residue onto the largest stake (first one on ties)
            residual = total - sum(stakes, Decimal(0))
            if residual:
                largest = max(range(len(stakes)), key=lambda i: (stakes[i], -i))
                stakes[largest] += residual
                if stakes[largest] < 0:
                    raise AllocationError(f"{best_prices.market_key}: rounding produced a negative stake")

            payout = total / implied_total
            stake_legs = tuple(
                StakeLeg(
                    selection=bp.selection,
                    source=bp.source,
                    price=bp.price,
                    stake=stake,
                    payout=stake * bp.price,
                )
                for bp, stake in zip(legs, stakes)
            )
            guaranteed = min(leg.payout for leg in stake_legs)

        return StakeAllocation(
            total_stake=total,
            legs=stake_legs,
            payout=payout,
            guaranteed_payout=guaranteed,
            guaranteed_profit=guaranteed - total,
        )
