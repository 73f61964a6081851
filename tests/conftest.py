"""Shared fixtures for engine tests."""

import pytest

from config.settings import (
    DetectionSettings,
    DispatcherSettings,
    LifecycleSettings,
    RiskSettings,
    Settings,
)
from src.models.schemas import OddsFormat, Quote

T0 = 1_700_000_000_000  # Fixed epoch ms all tests start from


class FakeClock:
    """Manually advanced engine clock."""

    def __init__(self, now_ms: int = T0):
        self.now_ms = now_ms

    def advance(self, seconds: float) -> int:
        self.now_ms += int(seconds * 1000)
        return self.now_ms

    def __call__(self) -> int:
        return self.now_ms


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def engine_settings():
    """Settings with the documented defaults, isolated from the environment."""
    return Settings(
        detection=DetectionSettings(
            min_profit_threshold=0.042,
            total_stake="1000",
            max_quote_age_seconds=30,
        ),
        lifecycle=LifecycleSettings(
            opportunity_window_seconds=300,
            confirmation_grace_seconds=10,
        ),
        risk=RiskSettings(max_sources_before_restriction=2),
        dispatcher=DispatcherSettings(event_buffer_size=100),
    )


@pytest.fixture
def make_quote():
    """Factory for decimal quotes on a two-way market."""

    def _make(
        selection: str,
        source: str,
        odds="2.00",
        observed_at_ms: int = T0,
        event_id: str = "evt-1",
        market_type: str = "h2h",
        odds_format: OddsFormat = OddsFormat.DECIMAL,
        is_live: bool = True,
    ) -> Quote:
        return Quote(
            event_id=event_id,
            market_type=market_type,
            selection=selection,
            source=source,
            odds=odds,
            odds_format=odds_format,
            observed_at_ms=observed_at_ms,
            is_live=is_live,
        )

    return _make


@pytest.fixture
def scenario_a_quotes(make_quote):
    """Two-outcome market: best X=2.20 (book_c), best Y=2.10 (book_a)."""
    return [
        make_quote("x", "book_a", "2.05"),
        make_quote("x", "book_b", "2.10"),
        make_quote("x", "book_c", "2.20"),
        make_quote("y", "book_a", "2.10"),
        make_quote("y", "book_b", "1.95"),
        make_quote("y", "book_c", "1.90"),
    ]
