"""
Error kinds raised inside the arbitrage engine.

None of these are fatal: each one downgrades a single quote or market to
"no opportunity" and processing of every other market carries on.
"""

from typing import Iterable


class ArbitrageError(Exception):
    """Base class for engine errors."""


class InvalidOdds(ArbitrageError, ValueError):
    """Malformed price at ingestion. The quote is rejected and not stored."""

    def __init__(self, value, odds_format, reason: str):
        self.value = value
        self.odds_format = odds_format
        self.reason = reason
        super().__init__(f"invalid {odds_format} odds {value!r}: {reason}")


class InsufficientData(ArbitrageError):
    """Market lacks eligible quotes for every required selection."""

    def __init__(self, market_key, missing: Iterable[str], stale_excluded: int = 0):
        self.market_key = market_key
        self.missing = tuple(sorted(missing))
        self.stale_excluded = stale_excluded
        super().__init__(
            f"{market_key}: no eligible quote for {', '.join(self.missing) or 'any selection'}"
        )


class AllocationError(ArbitrageError):
    """Degenerate prices prevent computing a stake split."""


class StaleQuote(ArbitrageError):
    """Quote is older than the configured maximum age."""

    def __init__(self, quote_key, age_seconds: float, max_age_seconds: float):
        self.quote_key = quote_key
        self.age_seconds = age_seconds
        self.max_age_seconds = max_age_seconds
        super().__init__(
            f"{quote_key} is {age_seconds:.1f}s old (max {max_age_seconds:.1f}s)"
        )
