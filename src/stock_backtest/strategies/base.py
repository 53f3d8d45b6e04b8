"""Base class for backtest strategies."""

from abc import ABC, abstractmethod
from typing import Any

from stock_backtest.engine.catalog import CatalogEntry
from stock_backtest.engine.ledger import Order
from stock_backtest.engine.replay import VisibleData


class TradingStrategy(ABC):
    """
    Base class for strategies driven by the replay engine.

    Subclasses validate their config in `_validate_config` and return
    new orders from `on_step`. Strategies only ever see a `VisibleData`
    view bounded by the current step.
    """

    def __init__(self, name: str, config: dict[str, Any] | None = None):
        """
        Initialize strategy.

        Args:
            name: Strategy name
            config: Strategy parameters

        Raises:
            ValueError: If the config is invalid
        """
        self.name = name
        self.config = config or {}
        self._validate_config()

    def _validate_config(self) -> None:
        """Validate configuration. Override in subclasses."""
        pass

    @abstractmethod
    def on_step(
        self,
        step_index: int,
        entry: CatalogEntry,
        data: VisibleData,
    ) -> list[Order]:
        """
        Produce orders for the current step.

        Args:
            step_index: Index of the current catalog entry
            entry: Current catalog entry
            data: Market data visible at this step

        Returns:
            New orders (may be empty)
        """

    def target_assets(self, data: VisibleData) -> list[str]:
        """Assets this strategy trades, from config `assets` or all visible."""
        assets = self.config.get("assets")
        if not assets:
            return list(data.assets)
        return [a for a in assets if a in data.assets]

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r})"
