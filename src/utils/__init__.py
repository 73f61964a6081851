"""Utility modules."""

from src.utils.logging import setup_logging, bind_market

__all__ = [
    "setup_logging",
    "bind_market",
]
