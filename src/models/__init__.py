"""Data models and schemas."""

from src.models.schemas import (
    OddsFormat,
    OpportunityStatus,
    ExpiryReason,
    MarketKey,
    QuoteKey,
    Quote,
    MarketSnapshot,
    BestPrice,
    BestPriceSet,
    ArbitrageCandidate,
    EfficiencyReport,
    InsufficientDataReport,
    DetectionResult,
    StakeAllocation,
    RiskProfile,
    Opportunity,
    LifecycleEvent,
)

__all__ = [
    "OddsFormat",
    "OpportunityStatus",
    "ExpiryReason",
    "MarketKey",
    "QuoteKey",
    "Quote",
    "MarketSnapshot",
    "BestPrice",
    "BestPriceSet",
    "ArbitrageCandidate",
    "EfficiencyReport",
    "InsufficientDataReport",
    "DetectionResult",
    "StakeAllocation",
    "RiskProfile",
    "Opportunity",
    "LifecycleEvent",
]
