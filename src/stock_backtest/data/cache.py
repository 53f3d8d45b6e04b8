"""Freshness-aware read-through cache in front of an upstream fetcher."""

import asyncio
import threading
import time
from collections import OrderedDict, deque
from concurrent.futures import Future
from dataclasses import dataclass, field
from typing import Any, Callable

import structlog

from .models import AssetSeries, Record
from .store import TimeSeriesStore
from .upstream import RateLimitedError, UpstreamFetcher, UpstreamUnavailableError

logger = structlog.get_logger()

# Most recent staleness warnings kept for inspection
MAX_STALENESS_WARNINGS = 100


@dataclass
class CacheSettings:
    """
    Cache policy configuration.

    Times are in seconds.
    """

    max_entries: int = 128  # In-memory LRU capacity
    max_age_seconds: float | None = 86400.0  # Refetch when older, None disables
    fetch_timeout: float = 30.0  # Per upstream attempt
    max_retries: int = 2  # Extra attempts after the first
    retry_backoff: float = 0.5  # Base delay, doubled per attempt


@dataclass
class CacheEntry:
    """In-memory copy of a stored series."""

    series: AssetSeries
    freshness: float | None
    last_access: float


@dataclass
class StalenessWarning:
    """Record of a stale series served because the upstream failed."""

    asset: str
    freshness: float | None
    as_of: float | None
    error: str
    timestamp: float = field(default_factory=time.time)


@dataclass
class CacheStats:
    """Counters for cache behaviour."""

    hits: int = 0
    misses: int = 0
    upstream_calls: int = 0
    evictions: int = 0
    stale_serves: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "upstream_calls": self.upstream_calls,
            "evictions": self.evictions,
            "stale_serves": self.stale_serves,
        }


class DataCache:
    """
    Read-through cache that keeps a store in sync with an upstream source.

    A series is refreshed from upstream when it has never been fetched,
    when its watermark is older than the requested `as_of`, or when it is
    older than `max_age_seconds`. Concurrent fetches for one asset share a
    single upstream call, whether they come from one event loop or from
    several threads each running their own loop.

    Evicting an entry also drops the store's in-memory copy when the
    store is backed by a database, so memory holds at most `max_entries`
    series.

    Example:
        cache = DataCache(store, fetcher, CacheSettings(max_entries=32))
        series = await cache.fetch("AAPL", as_of=time.time() - 3600)
    """

    def __init__(
        self,
        store: TimeSeriesStore,
        fetcher: UpstreamFetcher,
        settings: CacheSettings | None = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize cache.

        Args:
            store: Store that holds the durable copy of each series
            fetcher: Upstream source for missing or stale data
            settings: Cache policy
            clock: Source of the current time in epoch seconds
        """
        self.store = store
        self.fetcher = fetcher
        self.settings = settings or CacheSettings()
        self.clock = clock

        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._in_flight: dict[str, Future] = {}
        self._lock = threading.RLock()
        self.stats = CacheStats()
        self.staleness_warnings: deque[StalenessWarning] = deque(maxlen=MAX_STALENESS_WARNINGS)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    async def fetch(self, asset: str, as_of: float | None = None) -> AssetSeries:
        """
        Get the series for an asset, refreshing from upstream if stale.

        Args:
            asset: Asset identifier
            as_of: The data must be current as of this epoch timestamp

        Returns:
            The current (or, if upstream failed, the last known) series

        Raises:
            UpstreamUnavailableError: If upstream failed and nothing is stored
        """
        with self._lock:
            entry = self._lookup(asset)
            if entry is not None and self._is_fresh(entry, as_of):
                self.stats.hits += 1
                return entry.series

            flight = self._in_flight.get(asset)
            leader = flight is None
            if leader:
                flight = Future()
                self._in_flight[asset] = flight
                self.stats.misses += 1

        if not leader:
            # Another caller, possibly on another thread, is refreshing
            return await asyncio.wrap_future(flight)

        try:
            series = await self._refresh(asset, entry, as_of)
        except Exception as e:
            self._land(asset)
            flight.set_exception(e)
            raise
        except BaseException:
            self._land(asset)
            flight.cancel()
            raise

        self._land(asset)
        flight.set_result(series)
        return series

    def invalidate(self, asset: str) -> bool:
        """
        Drop the in-memory copy of an asset.

        Returns:
            True if an entry was removed
        """
        with self._lock:
            removed = self._entries.pop(asset, None) is not None
            self.store.evict(asset)
        return removed

    def clear(self) -> None:
        """Drop all in-memory entries."""
        with self._lock:
            for asset in self._entries:
                self.store.evict(asset)
            self._entries.clear()

    def cached_assets(self) -> list[str]:
        """Assets currently held in memory, least recently used first."""
        with self._lock:
            return list(self._entries)

    def get_stats(self) -> dict[str, Any]:
        """Get counters and occupancy."""
        with self._lock:
            return {
                **self.stats.to_dict(),
                "size": len(self._entries),
                "max_entries": self.settings.max_entries,
            }

    async def _refresh(
        self,
        asset: str,
        entry: CacheEntry | None,
        as_of: float | None,
    ) -> AssetSeries:
        """Fetch new records and merge them, or fall back to stored data."""
        since = entry.series.last_timestamp if entry is not None else None

        try:
            records = await self._fetch_upstream(asset, since)
        except UpstreamUnavailableError as e:
            if entry is None:
                logger.error("Upstream failed with no stored data", asset=asset, error=str(e))
                raise
            return self._serve_stale(entry, as_of, e)

        with self._lock:
            series = self.store.put(asset, records, updated_at=self.clock())
            self._remember(asset, series)

        logger.info(
            "Refreshed series from upstream",
            asset=asset,
            new_records=len(records),
            total_records=len(series),
        )
        return series

    def _land(self, asset: str) -> None:
        with self._lock:
            self._in_flight.pop(asset, None)

    def _lookup(self, asset: str) -> CacheEntry | None:
        """Find an entry in memory, loading it from the store on a miss."""
        entry = self._entries.get(asset)
        if entry is None:
            if asset not in self.store:
                return None
            series = self.store.get(asset)
            entry = self._remember(asset, series)
        else:
            entry.last_access = self.clock()
            self._entries.move_to_end(asset)
        return entry

    def _remember(self, asset: str, series: AssetSeries) -> CacheEntry:
        """Insert or update an entry, evicting least recently used ones."""
        entry = CacheEntry(
            series=series,
            freshness=series.last_updated,
            last_access=self.clock(),
        )
        self._entries[asset] = entry
        self._entries.move_to_end(asset)

        while len(self._entries) > self.settings.max_entries:
            evicted, _ = self._entries.popitem(last=False)
            self.store.evict(evicted)
            self.stats.evictions += 1
            logger.debug("Evicted cache entry", asset=evicted)

        return entry

    def _is_fresh(self, entry: CacheEntry, as_of: float | None) -> bool:
        if entry.freshness is None:
            return False
        if as_of is not None and entry.freshness < as_of:
            return False
        max_age = self.settings.max_age_seconds
        if max_age is not None and entry.freshness < self.clock() - max_age:
            return False
        return True

    async def _fetch_upstream(self, asset: str, since: float | None) -> list[Record]:
        """Call the fetcher with a timeout, retrying with exponential backoff."""
        attempts = self.settings.max_retries + 1
        last_error: UpstreamUnavailableError | None = None

        for attempt in range(attempts):
            with self._lock:
                self.stats.upstream_calls += 1
            try:
                return await asyncio.wait_for(
                    self.fetcher.fetch(asset, since),
                    timeout=self.settings.fetch_timeout,
                )
            except asyncio.TimeoutError:
                last_error = UpstreamUnavailableError(
                    f"Upstream fetch timed out after {self.settings.fetch_timeout}s",
                    asset=asset,
                )
            except UpstreamUnavailableError as e:
                last_error = e

            if attempt + 1 < attempts:
                delay = self.settings.retry_backoff * (2**attempt)
                logger.warning(
                    "Upstream fetch failed, retrying",
                    asset=asset,
                    attempt=attempt + 1,
                    delay=delay,
                    rate_limited=isinstance(last_error, RateLimitedError),
                    error=str(last_error),
                )
                await asyncio.sleep(delay)

        raise last_error  # type: ignore[misc]

    def _serve_stale(
        self,
        entry: CacheEntry,
        as_of: float | None,
        error: UpstreamUnavailableError,
    ) -> AssetSeries:
        """Return stored data after an upstream failure."""
        warning = StalenessWarning(
            asset=entry.series.asset,
            freshness=entry.freshness,
            as_of=as_of,
            error=str(error),
        )
        with self._lock:
            self.staleness_warnings.append(warning)
            self.stats.stale_serves += 1

        logger.warning(
            "Serving stale series",
            asset=warning.asset,
            freshness=warning.freshness,
            as_of=as_of,
            error=warning.error,
        )
        return entry.series
