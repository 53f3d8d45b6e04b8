"""Trading strategy implementations."""

from .base import TradingStrategy
from .simple import BuyAndHoldStrategy, ThresholdStrategy

__all__ = [
    "TradingStrategy",
    "BuyAndHoldStrategy",
    "ThresholdStrategy",
]
