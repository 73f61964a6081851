"""
Data models and schemas for the arbitrage engine.

Internal pipeline values are frozen dataclasses; the records that leave the
engine (opportunities and lifecycle events) are Pydantic models so consumers
can validate and serialize them.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from functools import cached_property
from types import MappingProxyType
from typing import Any, Mapping, NamedTuple, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field


class OddsFormat(str, Enum):
    """Odds format types."""
    AMERICAN = "american"      # +150, -200
    DECIMAL = "decimal"        # 2.50, 1.50
    FRACTIONAL = "fractional"  # 3/2, 1/2


class OpportunityStatus(str, Enum):
    """Lifecycle status of an arbitrage opportunity."""
    CANDIDATE = "candidate"
    ACTIVE = "active"
    EXPIRED = "expired"
    EXECUTED = "executed"

    @property
    def is_open(self) -> bool:
        return self in (OpportunityStatus.CANDIDATE, OpportunityStatus.ACTIVE)


class ExpiryReason(str, Enum):
    """Why an opportunity was closed without execution."""
    BELOW_THRESHOLD = "below_threshold"
    STALE_QUOTES = "stale_quotes"
    WINDOW_ELAPSED = "window_elapsed"
    UNCONFIRMED = "unconfirmed"
    ALLOCATION_FAILED = "allocation_failed"


class DetectionKind(str, Enum):
    """Outcome of one detection pass over a market."""
    CANDIDATE = "candidate"
    EFFICIENCY = "efficiency"
    INSUFFICIENT_DATA = "insufficient_data"


# --- Keys ---

class MarketKey(NamedTuple):
    """One event and one market type: the unit prices are compared within."""
    event_id: str
    market_type: str

    def __str__(self) -> str:
        return f"{self.event_id}/{self.market_type}"


class QuoteKey(NamedTuple):
    """Identity of a single source's price for a single selection."""
    event_id: str
    market_type: str
    selection: str
    source: str

    @property
    def market_key(self) -> MarketKey:
        return MarketKey(self.event_id, self.market_type)


# --- Quotes ---

@dataclass(frozen=True)
class Quote:
    """
    Latest price a source offers for one selection.

    `odds` is kept in the representation the source published it in;
    `decimal_price` is the normalized value used for comparison.
    """
    event_id: str
    market_type: str
    selection: str
    source: str
    odds: Any
    odds_format: OddsFormat
    observed_at_ms: int
    is_live: bool = True  # False when the source has suspended the price

    @property
    def key(self) -> QuoteKey:
        return QuoteKey(self.event_id, self.market_type, self.selection, self.source)

    @property
    def market_key(self) -> MarketKey:
        return MarketKey(self.event_id, self.market_type)

    @cached_property
    def decimal_price(self) -> Decimal:
        """Normalized decimal odds. Raises InvalidOdds for malformed prices."""
        from src.engine.odds import to_decimal
        return to_decimal(self.odds, self.odds_format)

    def age_seconds(self, now_ms: int) -> float:
        """Seconds since the quote was observed."""
        return max(0, now_ms - self.observed_at_ms) / 1000.0

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Quote":
        """Build a quote from a fetcher record (JSON line, API payload...)."""
        return cls(
            event_id=str(data["event_id"]),
            market_type=str(data["market_type"]),
            selection=str(data["selection"]),
            source=str(data["source"]),
            odds=data["odds"],
            odds_format=OddsFormat(data.get("odds_format", OddsFormat.DECIMAL.value)),
            observed_at_ms=int(data["observed_at_ms"]),
            is_live=bool(data.get("is_live", True)),
        )


@dataclass(frozen=True)
class MarketSnapshot:
    """
    Immutable view of one market group at a point in time.

    `quotes` maps selection -> source -> Quote. `known_selections` holds
    every selection ever quoted for the market, even if its quotes were
    since evicted.
    """
    market_key: MarketKey
    quotes: Mapping[str, Mapping[str, Quote]]
    known_selections: frozenset[str]
    version: int = 0

    @property
    def selections(self) -> list[str]:
        return sorted(self.known_selections)

    def quote_count(self) -> int:
        return sum(len(by_source) for by_source in self.quotes.values())


def freeze_quotes(quotes: Mapping[str, Mapping[str, Quote]]) -> Mapping[str, Mapping[str, Quote]]:
    """Deep read-only copy of a selection -> source -> Quote mapping."""
    return MappingProxyType({
        selection: MappingProxyType(dict(by_source))
        for selection, by_source in quotes.items()
    })


# --- Best prices ---

@dataclass(frozen=True)
class BestPrice:
    """Best available price for one selection."""
    selection: str
    source: str
    price: Decimal
    observed_at_ms: int

    @property
    def implied_probability(self) -> Decimal:
        return Decimal(1) / self.price


@dataclass(frozen=True)
class BestPriceSet:
    """Per-market best price per selection; derived, never stored."""
    market_key: MarketKey
    prices: Mapping[str, BestPrice]
    computed_at_ms: int = field(default=0, compare=False)

    @property
    def implied_total(self) -> Decimal:
        return sum((bp.implied_probability for bp in self.prices.values()), Decimal(0))

    @property
    def sources(self) -> frozenset[str]:
        return frozenset(bp.source for bp in self.prices.values())

    @property
    def oldest_observation_ms(self) -> int:
        return min((bp.observed_at_ms for bp in self.prices.values()), default=0)

    def __iter__(self):
        return iter(self.prices[s] for s in sorted(self.prices))

    def __len__(self) -> int:
        return len(self.prices)


# --- Detection results ---

@dataclass(frozen=True)
class ArbitrageCandidate:
    """Best prices imply < 1 and the margin clears the threshold."""
    market_key: MarketKey
    best_prices: BestPriceSet
    implied_total: Decimal
    margin: Decimal
    kind: DetectionKind = DetectionKind.CANDIDATE


@dataclass(frozen=True)
class EfficiencyReport:
    """No arbitrage: how much the consolidated book is over-round."""
    market_key: MarketKey
    best_prices: BestPriceSet
    implied_total: Decimal
    market_efficiency: Decimal
    house_edge: Decimal  # percent
    fair_probabilities: Mapping[str, Decimal] = field(default_factory=dict)
    kind: DetectionKind = DetectionKind.EFFICIENCY


@dataclass(frozen=True)
class InsufficientDataReport:
    """Market could not be compared this cycle."""
    market_key: MarketKey
    missing_selections: tuple[str, ...] = ()
    stale_excluded: int = 0
    kind: DetectionKind = DetectionKind.INSUFFICIENT_DATA


DetectionResult = Union[ArbitrageCandidate, EfficiencyReport, InsufficientDataReport]


# --- Stakes and risk ---

@dataclass(frozen=True)
class StakeLeg:
    """Stake placed on one selection at one source."""
    selection: str
    source: str
    price: Decimal
    stake: Decimal
    payout: Decimal


@dataclass(frozen=True)
class StakeAllocation:
    """Payout-equalizing stake split across a market's best prices."""
    total_stake: Decimal
    legs: tuple[StakeLeg, ...]
    payout: Decimal            # Payout before rounding stakes to currency units
    guaranteed_payout: Decimal  # Worst realized payout after rounding
    guaranteed_profit: Decimal

    def by_source(self) -> dict[str, Decimal]:
        """Total stake per source."""
        totals: dict[str, Decimal] = {}
        for leg in self.legs:
            totals[leg.source] = totals.get(leg.source, Decimal(0)) + leg.stake
        return totals

    def by_selection(self) -> dict[str, Decimal]:
        return {leg.selection: leg.stake for leg in self.legs}


@dataclass(frozen=True)
class RiskProfile:
    """Descriptive risk metadata; never gates detection."""
    volatility: Mapping[str, float]
    source_count: int
    restriction_risk: bool
    rarity_score: float


# --- Published records ---

class StakeLegModel(BaseModel):
    """Serializable stake leg."""
    model_config = ConfigDict(frozen=True)

    selection: str
    source: str
    price: Decimal
    stake: Decimal
    payout: Decimal


class RiskModel(BaseModel):
    """Serializable risk metadata."""
    model_config = ConfigDict(frozen=True)

    volatility: dict[str, float] = Field(default_factory=dict)
    source_count: int = 0
    restriction_risk: bool = False
    rarity_score: float = 0.0


class Opportunity(BaseModel):
    """
    Stateful arbitrage opportunity for one market.

    Instances are immutable; every lifecycle step produces a new copy via
    `model_copy(update=...)`.
    """
    model_config = ConfigDict(frozen=True)

    opportunity_id: str = Field(default_factory=lambda: str(uuid4()))
    event_id: str
    market_type: str
    status: OpportunityStatus = OpportunityStatus.CANDIDATE

    # The numbers
    profit_margin: Decimal
    implied_total: Decimal
    total_stake: Decimal
    guaranteed_payout: Decimal
    guaranteed_profit: Decimal
    legs: tuple[StakeLegModel, ...] = ()
    stake_by_source: dict[str, Decimal] = Field(default_factory=dict)
    sources: tuple[str, ...] = ()
    risk: RiskModel = Field(default_factory=RiskModel)

    # Timing
    detected_at_ms: int
    expires_at_ms: int
    updated_at_ms: int
    confirmations: int = 0
    expiry_reason: Optional[ExpiryReason] = None

    @property
    def market_key(self) -> MarketKey:
        return MarketKey(self.event_id, self.market_type)

    @property
    def is_open(self) -> bool:
        return self.status.is_open

    def to_log(self) -> dict:
        """Convert to loggable dict."""
        return {
            "opportunity_id": self.opportunity_id,
            "market": str(self.market_key),
            "status": self.status.value,
            "margin": f"{self.profit_margin:.2%}",
            "implied_total": f"{self.implied_total:.4f}",
            "sources": list(self.sources),
            "restriction_risk": self.risk.restriction_risk,
            "expiry_reason": self.expiry_reason.value if self.expiry_reason else None,
        }


class LifecycleEvent(BaseModel):
    """A single opportunity status transition, as published to subscribers."""
    model_config = ConfigDict(frozen=True)

    sequence: int = 0
    event_id: str
    market_type: str
    previous_status: Optional[OpportunityStatus] = None
    status: OpportunityStatus
    opportunity: Opportunity
    timestamp_ms: int

    @property
    def market_key(self) -> MarketKey:
        return MarketKey(self.event_id, self.market_type)
