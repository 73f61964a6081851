"""
Configuration settings for the sportsbook arbitrage engine.
Uses pydantic-settings for validation and environment variable loading.
"""

from decimal import Decimal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class DetectionSettings(BaseSettings):
    """Best-price selection and arbitrage detection thresholds."""

    # Minimum guaranteed profit margin before a market is reported as an arb
    min_profit_threshold: float = Field(default=0.042, ge=0.0)  # 4.2%

    # Reference bankroll the stake split is computed for (currency units)
    total_stake: Decimal = Field(default=Decimal("1000"), gt=0)

    # Currency unit stakes are rounded to
    stake_precision: Decimal = Decimal("0.01")

    # Quotes older than this are ignored even if numerically best
    max_quote_age_seconds: float = Field(default=30.0, gt=0)

    # Selections that must be quoted before a market type is compared.
    # Market types not listed require every selection ever quoted for them.
    required_selections: dict[str, list[str]] = Field(default_factory=lambda: {
        "1x2": ["home", "draw", "away"],
    })

    @field_validator("stake_precision")
    @classmethod
    def _positive_precision(cls, value: Decimal) -> Decimal:
        if value <= 0:
            raise ValueError("stake_precision must be positive")
        return value


class LifecycleSettings(BaseSettings):
    """Opportunity lifecycle timing."""

    # Max lifetime of an opportunity measured from detection
    opportunity_window_seconds: float = Field(default=300.0, gt=0)  # 5 minutes

    # A candidate must be re-confirmed within this window to become active
    confirmation_grace_seconds: float = Field(default=10.0, gt=0)

    # Closed opportunities kept in memory for inspection
    closed_history_size: int = Field(default=500, ge=0)


class RiskSettings(BaseSettings):
    """Descriptive risk metadata attached to opportunities."""

    # Spreading stake over more books than this draws account scrutiny
    max_sources_before_restriction: int = Field(default=2, ge=1)

    # Trailing window for per-selection price volatility
    volatility_window_seconds: float = Field(default=300.0, gt=0)
    max_history_per_selection: int = Field(default=500, ge=2)

    # Rolling period for the opportunities / markets scanned ratio
    rarity_window_seconds: float = Field(default=3600.0, gt=0)  # 1 hour


class DispatcherSettings(BaseSettings):
    """Ingestion and event stream settings."""

    # Lifecycle events retained for replaying to late/restarting subscribers
    event_buffer_size: int = Field(default=1000, ge=1)

    # Workers shards are spread across when scaling horizontally
    shard_count: int = Field(default=1, ge=1)


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore"
    )

    # Debug settings
    debug: bool = False
    log_level: str = "INFO"
    json_logs: bool = True

    # Sub-settings
    detection: DetectionSettings = Field(default_factory=DetectionSettings)
    lifecycle: LifecycleSettings = Field(default_factory=LifecycleSettings)
    risk: RiskSettings = Field(default_factory=RiskSettings)
    dispatcher: DispatcherSettings = Field(default_factory=DispatcherSettings)

    @field_validator("log_level")
    @classmethod
    def _upper_log_level(cls, value: str) -> str:
        return value.upper()


# Global settings instance
settings = Settings()
