"""Shared test fixtures and configuration."""

import asyncio
from pathlib import Path
from typing import Callable

import pytest

from stock_backtest.data import (
    AssetSeries,
    MarketDataDatabase,
    Record,
    TimeSeriesStore,
    UpstreamUnavailableError,
)


def make_record(
    timestamp: float,
    close: float = 100.0,
    open_: float | None = None,
    high: float | None = None,
    low: float | None = None,
    volume: float = 1000.0,
) -> Record:
    """Build a bar around a close price."""
    open_ = close if open_ is None else open_
    return Record(
        timestamp=float(timestamp),
        open=open_,
        high=max(open_, close) + 1.0 if high is None else high,
        low=min(open_, close) - 1.0 if low is None else low,
        close=close,
        volume=volume,
    )


def make_series(asset: str, timestamps: list[float], last_updated: float | None = None) -> AssetSeries:
    """Build a series with one bar per timestamp, closes 100, 101, ..."""
    return AssetSeries(
        asset=asset,
        records=tuple(make_record(ts, close=100.0 + i) for i, ts in enumerate(timestamps)),
        last_updated=last_updated,
    )


class FakeFetcher:
    """In-memory upstream that counts calls and can be told to fail."""

    def __init__(self, data: dict[str, list[Record]] | None = None, delay: float = 0.0):
        self.data = data or {}
        self.delay = delay
        self.calls: list[tuple[str, float | None]] = []
        self.failures: dict[str, list[Exception]] = {}

    def fail(self, asset: str, error: Exception | None = None, times: int = 1) -> None:
        """Make the next `times` fetches for an asset raise."""
        error = error or UpstreamUnavailableError("upstream down", asset=asset)
        self.failures.setdefault(asset, []).extend([error] * times)

    def calls_for(self, asset: str) -> int:
        return sum(1 for called, _ in self.calls if called == asset)

    async def fetch(self, asset: str, since: float | None) -> list[Record]:
        self.calls.append((asset, since))
        if self.delay:
            await asyncio.sleep(self.delay)

        pending = self.failures.get(asset)
        if pending:
            raise pending.pop(0)

        if asset not in self.data:
            raise UpstreamUnavailableError(f"Unknown asset {asset}", asset=asset, status_code=404)

        records = self.data[asset]
        if since is None:
            return list(records)
        return [r for r in records if r.timestamp >= since]


class ManualClock:
    """Settable clock for cache freshness tests."""

    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# -- Factories --


@pytest.fixture
def record_factory() -> Callable[..., Record]:
    """Factory for single bars."""
    return make_record


@pytest.fixture
def series_factory() -> Callable[..., AssetSeries]:
    """Factory for series with one bar per timestamp."""
    return make_series


# -- Data Fixtures --


@pytest.fixture
def two_asset_series() -> dict[str, AssetSeries]:
    """A at [1, 2, 3], B at [2, 3, 4]."""
    return {
        "A": make_series("A", [1, 2, 3]),
        "B": make_series("B", [2, 3, 4]),
    }


@pytest.fixture
def upstream_data() -> dict[str, list[Record]]:
    """Upstream holdings for two assets."""
    return {
        "AAPL": [make_record(ts, close=150.0 + ts) for ts in (100, 200, 300)],
        "MSFT": [make_record(ts, close=300.0 + ts) for ts in (150, 250)],
    }


@pytest.fixture
def fetcher(upstream_data: dict[str, list[Record]]) -> FakeFetcher:
    """Fake upstream with a call counter."""
    return FakeFetcher(upstream_data)


@pytest.fixture
def clock() -> ManualClock:
    """Manually advanced clock."""
    return ManualClock()


@pytest.fixture
def db(tmp_path: Path) -> MarketDataDatabase:
    """Initialized database in a temp directory."""
    db = MarketDataDatabase(tmp_path / "market.db")
    db.initialize()
    return db


@pytest.fixture
def store() -> TimeSeriesStore:
    """Memory-only store."""
    return TimeSeriesStore()


@pytest.fixture
def fetcher_factory() -> Callable[..., FakeFetcher]:
    """Factory for fake upstreams with custom data or delay."""
    return FakeFetcher
