"""Replay engine driving a backtest over an event catalog."""

import bisect
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping, Protocol, Sequence

import structlog

from stock_backtest.data.models import AssetSeries, Record

from .catalog import CatalogEntry, EventCatalog
from .ledger import LedgerSnapshot, Order, OrderLedger, OrderSide, OrderStatus

logger = structlog.get_logger()


class ReplayState(str, Enum):
    """Lifecycle of a replay run."""

    NOT_STARTED = "not_started"
    RUNNING = "running"
    FINISHED = "finished"
    FAILED = "failed"


class StrategyError(Exception):
    """Raised when the strategy fails during a replay step."""

    def __init__(
        self,
        step_index: int,
        timestamp: float,
        assets: Sequence[str],
        cause: BaseException,
    ):
        self.step_index = step_index
        self.timestamp = timestamp
        self.assets = tuple(assets)
        self.cause = cause
        super().__init__(
            f"Strategy failed at step {step_index} (timestamp={timestamp}, "
            f"assets={', '.join(self.assets) or '-'}): "
            f"{type(cause).__name__}: {cause}"
        )


class VisibleData:
    """
    Read-only view of market data as of one replay step.

    Each asset exposes records up to the latest index it has reached at
    or before the current step. Later records are not reachable.
    """

    def __init__(
        self,
        series_by_asset: Mapping[str, AssetSeries],
        cursors: Mapping[str, int],
        entry: CatalogEntry,
        step_index: int,
    ):
        self._series = series_by_asset
        self._cursors = MappingProxyType(dict(cursors))
        self._entry = entry
        self.step_index = step_index

    @property
    def timestamp(self) -> float:
        return self._entry.timestamp

    @property
    def assets(self) -> tuple[str, ...]:
        """Assets with at least one visible record."""
        return tuple(self._cursors)

    def has_update(self, asset: str) -> bool:
        """Check whether the asset has a new record at this step."""
        return asset in self._entry

    def latest(self, asset: str) -> Record | None:
        """Most recent visible record for an asset, or None before its first record."""
        cursor = self._cursors.get(asset)
        if cursor is None:
            return None
        return self._series[asset][cursor]

    def history(self, asset: str, lookback: int | None = None) -> tuple[Record, ...]:
        """
        Visible records for an asset, oldest first.

        Args:
            asset: Asset identifier
            lookback: Limit to the last N records
        """
        cursor = self._cursors.get(asset)
        if cursor is None:
            return ()
        start = 0 if lookback is None else max(0, cursor + 1 - lookback)
        return self._series[asset].records[start : cursor + 1]

    def closes(self, asset: str, lookback: int | None = None) -> list[float]:
        """Visible close prices for an asset, oldest first."""
        return [r.close for r in self.history(asset, lookback)]


class Strategy(Protocol):
    """Signal collaborator invoked once per replay step."""

    def on_step(
        self,
        step_index: int,
        entry: CatalogEntry,
        data: VisibleData,
    ) -> Sequence[Order]: ...


class ResultLogger(Protocol):
    """Append-only sink for per-step ledger snapshots."""

    def record(self, step_index: int, snapshot: LedgerSnapshot) -> None: ...


@dataclass(frozen=True)
class Settlement:
    """Outcome of settling one order against one record."""

    status: OrderStatus
    fill_price: float | None = None
    reason: str = ""


class SettlementPolicy:
    """
    Decides how a pending order resolves against the step's record.

    Market orders fill at the bar's open. Limit orders fill at the open
    when it is already marketable, at the limit when the bar trades
    through it, and are rejected otherwise. Orders with a non-positive
    quantity, or against a bar with no volume, are rejected.
    """

    def settle(self, order: Order, record: Record) -> Settlement:
        if order.quantity <= 0:
            return Settlement(OrderStatus.REJECTED, reason="Quantity must be positive")

        if record.volume <= 0:
            return Settlement(OrderStatus.REJECTED, reason="No volume traded")

        if order.limit_price is None:
            return Settlement(OrderStatus.FILLED, fill_price=record.open)

        limit = order.limit_price
        if order.side == OrderSide.BUY:
            if record.open <= limit:
                return Settlement(OrderStatus.FILLED, fill_price=record.open)
            if record.low <= limit:
                return Settlement(OrderStatus.FILLED, fill_price=limit)
            return Settlement(
                OrderStatus.REJECTED,
                reason=f"Buy limit {limit} below bar low {record.low}",
            )

        if record.open >= limit:
            return Settlement(OrderStatus.FILLED, fill_price=record.open)
        if record.high >= limit:
            return Settlement(OrderStatus.FILLED, fill_price=limit)
        return Settlement(
            OrderStatus.REJECTED,
            reason=f"Sell limit {limit} above bar high {record.high}",
        )


@dataclass
class ReplayResult:
    """Outcome of a completed replay."""

    steps: int
    orders: list[Order] = field(default_factory=list)
    unresolved_orders: list[Order] = field(default_factory=list)

    @property
    def has_unresolved_orders(self) -> bool:
        """True when orders were still pending when the catalog ran out."""
        return bool(self.unresolved_orders)

    def by_status(self, status: OrderStatus) -> list[Order]:
        return [o for o in self.orders if o.status == status]


class ReplayEngine:
    """
    Replays a catalog through a strategy, one step at a time.

    Each step settles orders placed in earlier steps against the current
    step's data, then asks the strategy for new orders, then hands a
    ledger snapshot to the result logger. Orders placed at step i are
    never settled before step i + 1.

    Example:
        engine = ReplayEngine(catalog, series, strategy, result_logger=StepLogger(path))
        result = engine.run()
        if result.has_unresolved_orders:
            print(f"{len(result.unresolved_orders)} orders never settled")
    """

    def __init__(
        self,
        catalog: EventCatalog,
        series_by_asset: Mapping[str, AssetSeries],
        strategy: Strategy,
        ledger: OrderLedger | None = None,
        result_logger: ResultLogger | None = None,
        settlement: SettlementPolicy | None = None,
        cancel_unresolved: bool = False,
    ):
        """
        Initialize replay engine.

        Args:
            catalog: Event catalog built from `series_by_asset`
            series_by_asset: Series the catalog indices refer to
            strategy: Signal collaborator
            ledger: Order ledger (a fresh one by default)
            result_logger: Optional per-step observer
            settlement: Order settlement policy
            cancel_unresolved: Cancel orders still pending at the end
        """
        self.catalog = catalog
        self.series = MappingProxyType(dict(series_by_asset))
        self.strategy = strategy
        self.ledger = ledger or OrderLedger()
        self.result_logger = result_logger
        self.settlement = settlement or SettlementPolicy()
        self.cancel_unresolved = cancel_unresolved

        self.state = ReplayState.NOT_STARTED
        self._cursors: dict[str, int] = {}

    def run(self) -> ReplayResult:
        """
        Run the replay to the end of the catalog.

        Returns:
            ReplayResult with every order and those left unresolved

        Raises:
            StrategyError: If the strategy raises during a step
            CatalogOutOfRangeError: On invalid catalog access
            RuntimeError: If the engine has already run
        """
        if self.state != ReplayState.NOT_STARTED:
            raise RuntimeError(f"Replay engine cannot run from state {self.state.value}")

        self.state = ReplayState.RUNNING
        log = logger.bind(steps=len(self.catalog), assets=len(self.series))
        log.info("Starting replay")

        try:
            self._seed_cursors()
            for step_index in range(len(self.catalog)):
                self._run_step(step_index)
        except Exception:
            self.state = ReplayState.FAILED
            raise

        self.state = ReplayState.FINISHED
        return self._finish(log)

    def _seed_cursors(self) -> None:
        """Expose records that precede the first catalog entry, if any."""
        if not self.catalog:
            return

        first = self.catalog.at(0).timestamp
        for asset, series in self.series.items():
            index = bisect.bisect_left(series.timestamps, first) - 1
            if index >= 0:
                self._cursors[asset] = index

    def _run_step(self, step_index: int) -> None:
        """Run settlement, signal and observation phases for one step."""
        entry = self.catalog.at(step_index)

        for asset, index in entry.indices.items():
            self._cursors[asset] = index

        resolved = self._settle(step_index, entry)
        submitted = self._generate_orders(step_index, entry)

        if self.result_logger is not None:
            snapshot = self.ledger.snapshot(
                step_index,
                entry.timestamp,
                resolved=resolved,
                submitted=submitted,
            )
            self.result_logger.record(step_index, snapshot)

    def _settle(self, step_index: int, entry: CatalogEntry) -> list[Order]:
        """Resolve orders placed before this step using this step's records."""
        resolved: list[Order] = []

        for order in self.ledger.pending(before_step=step_index):
            if order.asset not in self.series:
                resolved.append(
                    self.ledger.resolve(
                        order.order_id,
                        OrderStatus.REJECTED,
                        step_index,
                        reason=f"Unknown asset {order.asset}",
                    )
                )
                continue

            index = entry.index_for(order.asset)
            if index is None:
                # No new data for this asset; wait for its next record
                continue

            record = self.series[order.asset][index]
            outcome = self.settlement.settle(order, record)
            resolved.append(
                self.ledger.resolve(
                    order.order_id,
                    outcome.status,
                    step_index,
                    fill_price=outcome.fill_price,
                    reason=outcome.reason,
                )
            )

        return resolved

    def _generate_orders(self, step_index: int, entry: CatalogEntry) -> list[Order]:
        """Ask the strategy for new orders and add them to the ledger."""
        data = VisibleData(self.series, self._cursors, entry, step_index)

        try:
            orders = list(self.strategy.on_step(step_index, entry, data) or ())
        except Exception as e:
            logger.exception(
                "Strategy failed",
                step_index=step_index,
                timestamp=entry.timestamp,
                assets=list(entry.assets),
            )
            raise StrategyError(step_index, entry.timestamp, entry.assets, e) from e

        submitted: list[Order] = []
        for order in orders:
            try:
                if not isinstance(order, Order):
                    raise TypeError(f"Expected Order, got {type(order).__name__}")
                submitted.append(self.ledger.submit(order, step_index))
            except Exception as e:
                assets = [order.asset] if isinstance(order, Order) else list(entry.assets)
                logger.error(
                    "Invalid order from strategy",
                    step_index=step_index,
                    timestamp=entry.timestamp,
                    assets=assets,
                    error=str(e),
                )
                raise StrategyError(step_index, entry.timestamp, assets, e) from e

        return submitted

    def _finish(self, log: Any) -> ReplayResult:
        """Report orders left pending at the end of the catalog."""
        unresolved = self.ledger.pending()

        if unresolved:
            log.warning(
                "Unresolved orders at end of replay",
                count=len(unresolved),
                order_ids=[o.order_id for o in unresolved],
            )
            if self.cancel_unresolved:
                final_step = max(len(self.catalog) - 1, 0)
                unresolved = [
                    self.ledger.cancel(o.order_id, final_step, reason="Unresolved at end of replay")
                    for o in unresolved
                ]

        log.info("Replay finished", orders=len(self.ledger), unresolved=len(unresolved))

        return ReplayResult(
            steps=len(self.catalog),
            orders=self.ledger.orders,
            unresolved_orders=unresolved,
        )
