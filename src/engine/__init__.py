"""Arbitrage detection engines."""

from src.engine.arbitrage_engine import ArbitrageEngine
from src.engine.best_price import BestPriceSelector
from src.engine.detector import ArbitrageDetector
from src.engine.dispatcher import IngestionDispatcher, shard_for
from src.engine.errors import (
    AllocationError,
    ArbitrageError,
    InsufficientData,
    InvalidOdds,
    StaleQuote,
)
from src.engine.events import EventStream, MarketFilter
from src.engine.lifecycle import OpportunityLifecycleManager
from src.engine.odds import convert
from src.engine.quote_store import QuoteStore
from src.engine.risk import RiskAssessor
from src.engine.stake_allocator import StakeAllocator

__all__ = [
    "ArbitrageEngine",
    "BestPriceSelector",
    "ArbitrageDetector",
    "IngestionDispatcher",
    "shard_for",
    "AllocationError",
    "ArbitrageError",
    "InsufficientData",
    "InvalidOdds",
    "StaleQuote",
    "EventStream",
    "MarketFilter",
    "OpportunityLifecycleManager",
    "convert",
    "QuoteStore",
    "RiskAssessor",
    "StakeAllocator",
]
