"""Backtest harness wiring the data cache, catalog and replay engine together."""

import asyncio
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Sequence

import structlog

from stock_backtest.data.cache import DataCache
from stock_backtest.data.database import MarketDataDatabase
from stock_backtest.data.models import AssetSeries
from stock_backtest.monitoring.logger import StepLogger

from .catalog import EventCatalog
from .ledger import Order, OrderLedger, OrderStatus
from .replay import ReplayEngine, ReplayResult, SettlementPolicy, Strategy

logger = structlog.get_logger()


@dataclass
class BacktestResult:
    """Results from a backtest run."""

    run_id: str
    strategy: str
    assets: list[str]
    start: float | None = None
    end: float | None = None
    steps: int = 0
    total_orders: int = 0
    filled: int = 0
    rejected: int = 0
    cancelled: int = 0
    unresolved: int = 0
    traded_notional: float = 0.0
    orders: list[Order] = field(default_factory=list)
    unresolved_orders: list[Order] = field(default_factory=list)

    @property
    def fill_rate(self) -> float:
        """Share of orders that filled."""
        if self.total_orders == 0:
            return 0.0
        return self.filled / self.total_orders

    @classmethod
    def from_replay(
        cls,
        run_id: str,
        strategy: str,
        assets: list[str],
        catalog: EventCatalog,
        replay: ReplayResult,
    ) -> "BacktestResult":
        """Summarize a replay result."""
        timestamps = catalog.timestamps
        return cls(
            run_id=run_id,
            strategy=strategy,
            assets=assets,
            start=timestamps[0] if timestamps else None,
            end=timestamps[-1] if timestamps else None,
            steps=replay.steps,
            total_orders=len(replay.orders),
            filled=len(replay.by_status(OrderStatus.FILLED)),
            rejected=len(replay.by_status(OrderStatus.REJECTED)),
            cancelled=len(replay.by_status(OrderStatus.CANCELLED)),
            unresolved=len(replay.unresolved_orders),
            traded_notional=sum(o.notional for o in replay.orders),
            orders=list(replay.orders),
            unresolved_orders=list(replay.unresolved_orders),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for reporting."""
        return {
            "run_id": self.run_id,
            "strategy": self.strategy,
            "assets": self.assets,
            "start": self.start,
            "end": self.end,
            "steps": self.steps,
            "total_orders": self.total_orders,
            "filled": self.filled,
            "rejected": self.rejected,
            "cancelled": self.cancelled,
            "unresolved": self.unresolved,
            "fill_rate": f"{self.fill_rate:.1%}",
            "traded_notional": round(self.traded_notional, 2),
        }


class Backtester:
    """
    Runs one backtest: loads series through the cache, builds the
    catalog and replays it through a strategy.

    Each call to `run` uses its own catalog, ledger and engine; only the
    cache is shared, so several backtesters can use one cache.

    Example:
        backtester = Backtester(cache, strategy, log_dir=Path("logs"))
        result = await backtester.run(["AAPL", "MSFT"], start="2024-01-01")
        backtester.print_summary(result)
    """

    def __init__(
        self,
        cache: DataCache,
        strategy: Strategy,
        db: MarketDataDatabase | None = None,
        log_dir: Path | None = None,
        settlement: SettlementPolicy | None = None,
        cancel_unresolved: bool = False,
    ):
        """
        Initialize backtester.

        Args:
            cache: Data cache to load series through
            strategy: Strategy to replay
            db: Optional database to persist the run's orders
            log_dir: Directory for per-step JSONL logs (no step log if None)
            settlement: Order settlement policy
            cancel_unresolved: Cancel orders still pending at the end
        """
        self.cache = cache
        self.strategy = strategy
        self.db = db
        self.log_dir = log_dir
        self.settlement = settlement
        self.cancel_unresolved = cancel_unresolved

    @property
    def strategy_name(self) -> str:
        return getattr(self.strategy, "name", type(self.strategy).__name__)

    async def load_series(
        self,
        assets: Sequence[str],
        as_of: float | None = None,
    ) -> dict[str, AssetSeries]:
        """Fetch all assets concurrently through the cache."""
        unique = list(dict.fromkeys(assets))
        results = await asyncio.gather(
            *(self.cache.fetch(asset, as_of=as_of) for asset in unique)
        )
        return dict(zip(unique, results))

    async def run(
        self,
        assets: Sequence[str],
        as_of: float | None = None,
        start: Any = None,
        end: Any = None,
        run_id: str | None = None,
    ) -> BacktestResult:
        """
        Run a backtest.

        Args:
            assets: Assets to load and replay
            as_of: Data must be current as of this epoch timestamp
            start: First timestamp to replay (inclusive)
            end: Last timestamp to replay (inclusive)
            run_id: Identifier for logs and stored orders

        Returns:
            BacktestResult with order statistics

        Raises:
            UpstreamUnavailableError: If an asset cannot be loaded at all
            StrategyError: If the strategy fails during replay
        """
        run_id = run_id or uuid.uuid4().hex[:12]
        log = logger.bind(run_id=run_id, strategy=self.strategy_name)

        series = await self.load_series(assets, as_of=as_of)
        catalog = EventCatalog.build(series, start=start, end=end)

        if not catalog:
            log.warning("No data in range for backtest", assets=list(series))

        step_logger = StepLogger(self.log_dir, run_id=run_id) if self.log_dir else None

        engine = ReplayEngine(
            catalog,
            series,
            self.strategy,
            ledger=OrderLedger(id_prefix=run_id),
            result_logger=step_logger,
            settlement=self.settlement,
            cancel_unresolved=self.cancel_unresolved,
        )
        replay = engine.run()

        result = BacktestResult.from_replay(
            run_id=run_id,
            strategy=self.strategy_name,
            assets=list(series),
            catalog=catalog,
            replay=replay,
        )

        if self.db is not None:
            self.db.insert_orders(run_id, result.orders)

        log.info(
            "Backtest complete",
            steps=result.steps,
            orders=result.total_orders,
            filled=result.filled,
            unresolved=result.unresolved,
        )
        return result

    def print_summary(self, result: BacktestResult) -> None:
        """Print a formatted summary of backtest results."""
        print("\n" + "=" * 60)
        print("BACKTEST RESULTS")
        print("=" * 60)
        print(f"Run: {result.run_id}")
        print(f"Strategy: {result.strategy}")
        print(f"Assets: {', '.join(result.assets)}")
        print(f"Period: {result.start} to {result.end} ({result.steps} steps)")
        print("-" * 60)
        print(f"Total Orders: {result.total_orders}")
        print(f"Filled: {result.filled}")
        print(f"Rejected: {result.rejected}")
        print(f"Cancelled: {result.cancelled}")
        print(f"Fill Rate: {result.fill_rate:.1%}")
        print(f"Traded Notional: {result.traded_notional:,.2f}")
        if result.unresolved:
            print(f"WARNING: {result.unresolved} orders unresolved at end of run")
        print("=" * 60)


async def run_backtest(
    cache: DataCache,
    strategy: Strategy,
    assets: Sequence[str],
    as_of: float | None = None,
    start: Any = None,
    end: Any = None,
    db: MarketDataDatabase | None = None,
    log_dir: Path | None = None,
    cancel_unresolved: bool = False,
) -> BacktestResult:
    """
    Convenience function to run a backtest and print its summary.

    Args:
        cache: Data cache to load series through
        strategy: Strategy to replay
        assets: Assets to replay
        as_of: Data must be current as of this epoch timestamp
        start: First timestamp to replay
        end: Last timestamp to replay
        db: Optional database to persist orders
        log_dir: Directory for per-step logs
        cancel_unresolved: Cancel orders still pending at the end

    Returns:
        BacktestResult with order statistics
    """
    backtester = Backtester(
        cache=cache,
        strategy=strategy,
        db=db,
        log_dir=log_dir,
        cancel_unresolved=cancel_unresolved,
    )

    result = await backtester.run(assets, as_of=as_of, start=start, end=end)

    backtester.print_summary(result)
    return result
