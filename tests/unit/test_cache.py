"""Unit tests for the freshness-aware data cache."""

import asyncio
import threading
import time

import pytest

from stock_backtest.data import (
    CacheSettings,
    DataCache,
    MarketDataDatabase,
    RateLimitedError,
    TimeSeriesStore,
    UpstreamUnavailableError,
)
from stock_backtest.data.cache import MAX_STALENESS_WARNINGS


@pytest.fixture
def settings() -> CacheSettings:
    """Settings with no retry delay so failure tests stay fast."""
    return CacheSettings(max_entries=8, max_age_seconds=3600.0, max_retries=0, retry_backoff=0.0)


@pytest.fixture
def cache(store, fetcher, settings, clock) -> DataCache:
    """Cache over a memory store and a fake upstream."""
    return DataCache(store, fetcher, settings, clock=clock)


class TestFreshness:
    """When the cache goes upstream."""

    @pytest.mark.asyncio
    async def test_first_fetch_calls_upstream_once(self, cache, fetcher):
        """A cold asset should cost exactly one upstream call."""
        series = await cache.fetch("AAPL")

        assert fetcher.calls_for("AAPL") == 1
        assert series.timestamps == (100.0, 200.0, 300.0)
        assert cache.stats.misses == 1

    @pytest.mark.asyncio
    async def test_fresh_fetch_uses_no_upstream(self, cache, fetcher):
        """A second fetch within max age should be served from memory."""
        await cache.fetch("AAPL")
        await cache.fetch("AAPL")

        assert fetcher.calls_for("AAPL") == 1
        assert cache.stats.hits == 1

    @pytest.mark.asyncio
    async def test_as_of_newer_than_watermark_refreshes(self, cache, fetcher, clock):
        """Data older than as_of should be refetched, newer should not."""
        await cache.fetch("AAPL")
        watermark = clock.now

        clock.advance(60)
        await cache.fetch("AAPL", as_of=watermark - 10)
        assert fetcher.calls_for("AAPL") == 1

        await cache.fetch("AAPL", as_of=watermark + 30)
        assert fetcher.calls_for("AAPL") == 2

    @pytest.mark.asyncio
    async def test_watermark_is_clock_at_refresh(self, cache, store, clock):
        """The freshness watermark should be the cache clock."""
        series = await cache.fetch("AAPL")

        assert series.last_updated == clock.now
        assert store.freshness("AAPL") == clock.now

    @pytest.mark.asyncio
    async def test_max_age_expiry(self, cache, fetcher, clock):
        """Data older than max_age_seconds should be refetched."""
        await cache.fetch("AAPL")
        clock.advance(3601)
        await cache.fetch("AAPL")

        assert fetcher.calls_for("AAPL") == 2

    @pytest.mark.asyncio
    async def test_refresh_is_incremental(self, cache, fetcher, clock, upstream_data, record_factory):
        """Refreshes should ask only for data since the last stored timestamp."""
        await cache.fetch("AAPL")
        upstream_data["AAPL"].append(record_factory(400, close=555.0))
        clock.advance(3601)

        series = await cache.fetch("AAPL")

        assert fetcher.calls[-1] == ("AAPL", 300.0)
        assert series.timestamps == (100.0, 200.0, 300.0, 400.0)

    @pytest.mark.asyncio
    async def test_stored_without_watermark_is_stale(
        self, db: MarketDataDatabase, fetcher, settings, clock, record_factory
    ):
        """Rows imported with no watermark should be refreshed on first read."""
        db.upsert_records("AAPL", [record_factory(100)])
        cache = DataCache(TimeSeriesStore(db), fetcher, settings, clock=clock)

        series = await cache.fetch("AAPL")

        assert fetcher.calls == [("AAPL", 100.0)]
        assert series.last_updated == clock.now

    @pytest.mark.asyncio
    async def test_loads_persisted_series_without_upstream(
        self, db: MarketDataDatabase, fetcher, settings, clock, record_factory
    ):
        """A fresh series already in the database should not hit upstream."""
        TimeSeriesStore(db).put("AAPL", [record_factory(100)], updated_at=clock.now)
        cache = DataCache(TimeSeriesStore(db), fetcher, settings, clock=clock)

        series = await cache.fetch("AAPL")

        assert fetcher.calls == []
        assert series.timestamps == (100.0,)


class TestSingleFlight:
    """Concurrent fetches share one upstream call."""

    @pytest.mark.asyncio
    async def test_concurrent_fetches_one_upstream_call(self, store, fetcher_factory, upstream_data, settings, clock):
        """Ten concurrent readers of a cold asset should cause one call."""
        fetcher = fetcher_factory(upstream_data, delay=0.05)
        cache = DataCache(store, fetcher, settings, clock=clock)

        results = await asyncio.gather(*(cache.fetch("AAPL") for _ in range(10)))

        assert fetcher.calls_for("AAPL") == 1
        assert all(r is results[0] for r in results)

    @pytest.mark.asyncio
    async def test_different_assets_fetch_in_parallel(self, store, fetcher_factory, upstream_data, settings, clock):
        """Locks are per asset, so two assets each get one call."""
        fetcher = fetcher_factory(upstream_data, delay=0.05)
        cache = DataCache(store, fetcher, settings, clock=clock)

        await asyncio.gather(cache.fetch("AAPL"), cache.fetch("MSFT"), cache.fetch("AAPL"))

        assert fetcher.calls_for("AAPL") == 1
        assert fetcher.calls_for("MSFT") == 1


class TestUpstreamFailure:
    """Behaviour when upstream cannot serve."""

    @pytest.mark.asyncio
    async def test_no_data_raises(self, cache, fetcher):
        """With nothing stored the upstream error should propagate."""
        with pytest.raises(UpstreamUnavailableError):
            await cache.fetch("NOPE")

    @pytest.mark.asyncio
    async def test_stale_data_served_with_warning(self, cache, fetcher, clock):
        """With stale data stored the cache should return it and record a warning."""
        first = await cache.fetch("AAPL")
        clock.advance(7200)
        fetcher.fail("AAPL")

        series = await cache.fetch("AAPL")

        assert series is first
        assert cache.stats.stale_serves == 1
        assert len(cache.staleness_warnings) == 1
        warning = cache.staleness_warnings[0]
        assert warning.asset == "AAPL"
        assert warning.freshness == first.last_updated
        assert "upstream down" in warning.error

    @pytest.mark.asyncio
    async def test_retries_then_succeeds(self, store, fetcher, clock):
        """Transient failures should be retried."""
        settings = CacheSettings(max_retries=2, retry_backoff=0.0)
        cache = DataCache(store, fetcher, settings, clock=clock)
        fetcher.fail("AAPL", RateLimitedError("slow down", asset="AAPL", status_code=429), times=2)

        series = await cache.fetch("AAPL")

        assert fetcher.calls_for("AAPL") == 3
        assert len(series) == 3
        assert cache.stats.upstream_calls == 3

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, store, fetcher, clock):
        """After max_retries the last error should propagate."""
        settings = CacheSettings(max_retries=1, retry_backoff=0.0)
        cache = DataCache(store, fetcher, settings, clock=clock)
        fetcher.fail("AAPL", times=5)

        with pytest.raises(UpstreamUnavailableError):
            await cache.fetch("AAPL")

        assert fetcher.calls_for("AAPL") == 2

    @pytest.mark.asyncio
    async def test_timeout_is_unavailable(self, store, fetcher_factory, upstream_data, clock):
        """A hung upstream should time out as unavailable."""
        fetcher = fetcher_factory(upstream_data, delay=1.0)
        settings = CacheSettings(fetch_timeout=0.01, max_retries=0)
        cache = DataCache(store, fetcher, settings, clock=clock)

        with pytest.raises(UpstreamUnavailableError, match="timed out"):
            await cache.fetch("AAPL")


class TestEviction:
    """Bounded in-memory LRU."""

    @pytest.mark.asyncio
    async def test_lru_eviction(self, store, fetcher_factory, record_factory, clock):
        """Least recently used entries should be dropped past max_entries."""
        data = {name: [record_factory(1)] for name in ("A", "B", "C")}
        cache = DataCache(store, fetcher_factory(data), CacheSettings(max_entries=2), clock=clock)

        await cache.fetch("A")
        await cache.fetch("B")
        await cache.fetch("A")  # A becomes most recent
        await cache.fetch("C")

        assert cache.cached_assets() == ["A", "C"]
        assert cache.stats.evictions == 1
        assert len(cache) == 2

    @pytest.mark.asyncio
    async def test_evicted_asset_reloads_from_store(self, store, fetcher_factory, record_factory, clock):
        """Eviction is memory-only; the store still holds the series."""
        data = {name: [record_factory(1)] for name in ("A", "B")}
        fetcher = fetcher_factory(data)
        cache = DataCache(store, fetcher, CacheSettings(max_entries=1), clock=clock)

        await cache.fetch("A")
        await cache.fetch("B")
        await cache.fetch("A")

        assert fetcher.calls_for("A") == 1
        assert "A" in store

    @pytest.mark.asyncio
    async def test_invalidate_and_clear(self, cache):
        """invalidate and clear should drop memory entries."""
        await cache.fetch("AAPL")
        await cache.fetch("MSFT")

        assert cache.invalidate("AAPL") is True
        assert cache.invalidate("AAPL") is False
        assert cache.cached_assets() == ["MSFT"]

        cache.clear()
        assert len(cache) == 0

    @pytest.mark.asyncio
    async def test_get_stats(self, cache):
        """Stats should include occupancy."""
        await cache.fetch("AAPL")
        stats = cache.get_stats()

        assert stats["size"] == 1
        assert stats["max_entries"] == 8
        assert stats["upstream_calls"] == 1

    @pytest.mark.asyncio
    async def test_eviction_bounds_store_memory(
        self, db: MarketDataDatabase, fetcher_factory, record_factory, clock
    ):
        """With a database behind the store, memory should hold only max_entries series."""
        data = {name: [record_factory(1)] for name in ("A", "B", "C")}
        fetcher = fetcher_factory(data)
        store = TimeSeriesStore(db)
        cache = DataCache(store, fetcher, CacheSettings(max_entries=1), clock=clock)

        for name in ("A", "B", "C"):
            await cache.fetch(name)

        assert cache.cached_assets() == ["C"]
        assert store.resident_assets() == ["C"]

        series = await cache.fetch("A")
        assert series.timestamps == (1.0,)
        assert fetcher.calls_for("A") == 1
        assert store.resident_assets() == ["A"]

    @pytest.mark.asyncio
    async def test_staleness_warnings_are_bounded(self, cache, fetcher, clock):
        """Only the most recent staleness warnings are kept."""
        await cache.fetch("AAPL")
        for _ in range(MAX_STALENESS_WARNINGS + 5):
            clock.advance(7200)
            fetcher.fail("AAPL")
            await cache.fetch("AAPL")

        assert len(cache.staleness_warnings) == MAX_STALENESS_WARNINGS
        assert cache.stats.stale_serves == MAX_STALENESS_WARNINGS + 5


class TestThreadedCallers:
    """Callers on separate threads, each with its own event loop."""

    def test_two_threads_share_one_upstream_call(self, store, fetcher_factory, upstream_data, settings, clock):
        """A second thread should wait for the first thread's refresh, not hang."""
        fetcher = fetcher_factory(upstream_data, delay=0.2)
        cache = DataCache(store, fetcher, settings, clock=clock)
        barrier = threading.Barrier(2)
        results: list = []
        errors: list = []

        def worker():
            barrier.wait()
            started = time.monotonic()
            try:
                series = asyncio.run(asyncio.wait_for(cache.fetch("AAPL"), 5))
            except Exception as e:
                errors.append(e)
                return
            results.append((series, time.monotonic() - started))

        threads = [threading.Thread(target=worker) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(10)

        assert errors == []
        assert len(results) == 2
        assert fetcher.calls_for("AAPL") == 1
        assert results[0][0] is results[1][0]
        assert all(elapsed < 2 for _, elapsed in results)

    def test_threads_failing_upstream_all_raise(self, store, fetcher_factory, upstream_data, settings, clock):
        """Every waiting thread should see the leader's error."""
        fetcher = fetcher_factory(upstream_data, delay=0.2)
        fetcher.fail("AAPL")
        cache = DataCache(store, fetcher, settings, clock=clock)
        barrier = threading.Barrier(3)
        errors: list = []

        def worker():
            barrier.wait()
            try:
                asyncio.run(asyncio.wait_for(cache.fetch("AAPL"), 5))
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=worker) for _ in range(3)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(10)

        assert len(errors) == 3
        assert all(isinstance(e, UpstreamUnavailableError) for e in errors)
        assert fetcher.calls_for("AAPL") == 1
