"""Configuration module."""

from config.settings import (
    settings,
    Settings,
    DetectionSettings,
    LifecycleSettings,
    RiskSettings,
    DispatcherSettings,
)

__all__ = [
    "settings",
    "Settings",
    "DetectionSettings",
    "LifecycleSettings",
    "RiskSettings",
    "DispatcherSettings",
]
