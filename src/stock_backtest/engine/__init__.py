"""Core backtesting engine components."""

from .backtester import BacktestResult, Backtester, run_backtest
from .catalog import CatalogEntry, CatalogOutOfRangeError, EventCatalog, build_catalog
from .ledger import (
    LedgerError,
    LedgerSnapshot,
    Order,
    OrderLedger,
    OrderSide,
    OrderStatus,
)
from .replay import (
    ReplayEngine,
    ReplayResult,
    ReplayState,
    ResultLogger,
    Settlement,
    SettlementPolicy,
    Strategy,
    StrategyError,
    VisibleData,
)

__all__ = [
    "CatalogEntry",
    "CatalogOutOfRangeError",
    "EventCatalog",
    "build_catalog",
    "LedgerError",
    "LedgerSnapshot",
    "Order",
    "OrderLedger",
    "OrderSide",
    "OrderStatus",
    "ReplayEngine",
    "ReplayResult",
    "ReplayState",
    "ResultLogger",
    "Settlement",
    "SettlementPolicy",
    "Strategy",
    "StrategyError",
    "VisibleData",
    "Backtester",
    "BacktestResult",
    "run_backtest",
]
