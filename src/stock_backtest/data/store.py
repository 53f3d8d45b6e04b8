"""In-memory time series store with optional SQLite write-through."""

import threading
import time
from typing import Iterable

import structlog

from .database import MarketDataDatabase
from .models import AssetSeries, Record

logger = structlog.get_logger()


class AssetNotFoundError(KeyError):
    """Raised when an asset has no stored series."""

    def __init__(self, asset: str):
        super().__init__(asset)
        self.asset = asset

    def __str__(self) -> str:
        return f"Unknown asset: {self.asset}"


class TimeSeriesStore:
    """
    Holds one ordered series per asset plus its freshness watermark.

    Writes merge into the existing series by timestamp with
    last-write-wins. When a database is attached, writes go through to
    it and reads fall back to it for assets not held in memory.

    Example:
        store = TimeSeriesStore(db=MarketDataDatabase("data/market.db"))
        store.put("AAPL", records)
        series = store.get("AAPL")
    """

    def __init__(self, db: MarketDataDatabase | None = None):
        """
        Initialize store.

        Args:
            db: Optional durable backing database (must be initialized)
        """
        self.db = db
        self._series: dict[str, AssetSeries] = {}
        self._lock = threading.RLock()

    def put(
        self,
        asset: str,
        records: Iterable[Record],
        updated_at: float | None = None,
        replace: bool = False,
    ) -> AssetSeries:
        """
        Merge or replace the series for an asset.

        Args:
            asset: Asset identifier
            records: New records, in any order
            updated_at: Freshness watermark to set (defaults to now)
            replace: Drop existing records instead of merging

        Returns:
            The stored series after the write
        """
        incoming = list(records)
        watermark = time.time() if updated_at is None else updated_at

        with self._lock:
            by_timestamp: dict[float, Record] = {}
            if not replace:
                existing = self._load(asset)
                if existing is not None:
                    for record in existing.records:
                        by_timestamp[record.timestamp] = record
            for record in incoming:
                by_timestamp[record.timestamp] = record

            series = AssetSeries(
                asset=asset,
                records=tuple(by_timestamp[ts] for ts in sorted(by_timestamp)),
                last_updated=watermark,
            )

            if self.db is not None:
                if replace:
                    self.db.replace_records(asset, series.records, last_updated=watermark)
                else:
                    self.db.upsert_records(asset, incoming, last_updated=watermark)

            self._series[asset] = series

        logger.debug(
            "Stored series",
            asset=asset,
            new_records=len(incoming),
            total_records=len(series),
            replace=replace,
        )
        return series

    def get(self, asset: str) -> AssetSeries:
        """
        Get the stored series for an asset.

        Raises:
            AssetNotFoundError: If nothing is stored for the asset
        """
        with self._lock:
            series = self._load(asset)
        if series is None:
            raise AssetNotFoundError(asset)
        return series

    def freshness(self, asset: str) -> float | None:
        """Get the freshness watermark for an asset, or None if unknown."""
        with self._lock:
            series = self._load(asset)
        return series.last_updated if series is not None else None

    def assets(self) -> list[str]:
        """List known assets."""
        with self._lock:
            known = set(self._series)
            if self.db is not None:
                known.update(self.db.list_assets())
        return sorted(known)

    def remove(self, asset: str) -> None:
        """Forget an asset in memory and in the database."""
        with self._lock:
            self._series.pop(asset, None)
            if self.db is not None:
                self.db.delete_asset(asset)

    def evict(self, asset: str) -> bool:
        """
        Drop the in-memory copy of an asset, keeping its database rows.

        A memory-only store keeps everything, since its series would
        otherwise be lost.

        Returns:
            True if a series was dropped from memory
        """
        if self.db is None:
            return False
        with self._lock:
            return self._series.pop(asset, None) is not None

    def resident_assets(self) -> list[str]:
        """Assets whose series are currently held in memory."""
        with self._lock:
            return sorted(self._series)

    def __contains__(self, asset: object) -> bool:
        if not isinstance(asset, str):
            return False
        with self._lock:
            return self._load(asset) is not None

    def _load(self, asset: str) -> AssetSeries | None:
        """Get a series from memory, falling back to the database."""
        series = self._series.get(asset)
        if series is not None or self.db is None:
            return series

        if not self.db.has_asset(asset):
            return None

        series = AssetSeries(
            asset=asset,
            records=tuple(self.db.load_records(asset)),
            last_updated=self.db.get_last_updated(asset),
        )
        self._series[asset] = series
        return series
