"""Reference strategies for exercising the replay engine."""

from typing import Any

from stock_backtest.engine.catalog import CatalogEntry
from stock_backtest.engine.ledger import Order, OrderSide
from stock_backtest.engine.replay import VisibleData

from .base import TradingStrategy


class BuyAndHoldStrategy(TradingStrategy):
    """
    Buys each target asset once, on its first update.

    Config:
        quantity: Shares per asset (default: 1)
        assets: Assets to trade (default: all)
    """

    def __init__(self, name: str, config: dict[str, Any] | None = None):
        super().__init__(name, config)
        self._bought: set[str] = set()

    def _validate_config(self) -> None:
        quantity = self.config.get("quantity", 1)
        if not isinstance(quantity, (int, float)) or quantity <= 0:
            raise ValueError("quantity must be a positive number")

    def on_step(
        self,
        step_index: int,
        entry: CatalogEntry,
        data: VisibleData,
    ) -> list[Order]:
        quantity = self.config.get("quantity", 1)
        orders = []

        for asset in self.target_assets(data):
            if asset in self._bought or not data.has_update(asset):
                continue
            self._bought.add(asset)
            orders.append(Order(asset=asset, side=OrderSide.BUY, quantity=quantity))

        return orders


class ThresholdStrategy(TradingStrategy):
    """
    Trades on fixed close-price levels.

    Buys when the latest close is at or below `buy_below` and the
    strategy is flat; sells the held quantity when the close is at or
    above `sell_above`. Holdings are tracked from the orders it sends.

    Config:
        buy_below: Close price that triggers a buy (required)
        sell_above: Close price that triggers a sell (required)
        quantity: Shares per buy (default: 1)
        limit_offset: If set, send limit orders this far from the close
        assets: Assets to trade (default: all)
    """

    def __init__(self, name: str, config: dict[str, Any] | None = None):
        super().__init__(name, config)
        self._holdings: dict[str, float] = {}

    def _validate_config(self) -> None:
        for key in ("buy_below", "sell_above"):
            if key not in self.config:
                raise ValueError(f"ThresholdStrategy requires '{key}' config")
            if not isinstance(self.config[key], (int, float)):
                raise ValueError(f"{key} must be a number")

        if self.config["buy_below"] >= self.config["sell_above"]:
            raise ValueError("buy_below must be lower than sell_above")

        quantity = self.config.get("quantity", 1)
        if not isinstance(quantity, (int, float)) or quantity <= 0:
            raise ValueError("quantity must be a positive number")

    def on_step(
        self,
        step_index: int,
        entry: CatalogEntry,
        data: VisibleData,
    ) -> list[Order]:
        buy_below = self.config["buy_below"]
        sell_above = self.config["sell_above"]
        quantity = self.config.get("quantity", 1)
        limit_offset = self.config.get("limit_offset")

        orders = []
        for asset in self.target_assets(data):
            # Only act on fresh bars
            if not data.has_update(asset):
                continue

            record = data.latest(asset)
            if record is None:
                continue

            held = self._holdings.get(asset, 0)

            if held == 0 and record.close <= buy_below:
                limit = record.close + limit_offset if limit_offset is not None else None
                orders.append(Order(asset, OrderSide.BUY, quantity, limit_price=limit))
                self._holdings[asset] = quantity
            elif held > 0 and record.close >= sell_above:
                limit = record.close - limit_offset if limit_offset is not None else None
                orders.append(Order(asset, OrderSide.SELL, held, limit_price=limit))
                self._holdings[asset] = 0

        return orders
