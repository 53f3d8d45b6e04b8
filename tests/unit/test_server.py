"""Unit tests for the HTTP data proxy."""

import pytest
from fastapi.testclient import TestClient

from stock_backtest.config import AppConfig
from stock_backtest.data import CacheSettings, DataCache, RateLimitedError
from stock_backtest.server import create_app


@pytest.fixture
def cache(store, fetcher, clock) -> DataCache:
    """Cache over the fake upstream."""
    return DataCache(store, fetcher, CacheSettings(max_retries=0), clock=clock)


@pytest.fixture
def client(cache: DataCache):
    """Test client with lifespan events."""
    with TestClient(create_app(cache=cache)) as client:
        yield client


class TestSeriesEndpoint:
    """Tests for GET /api/series/{asset}."""

    def test_returns_records(self, client: TestClient, fetcher):
        """Should return the cached series as rows."""
        response = client.get("/api/series/AAPL")

        assert response.status_code == 200
        body = response.json()
        assert body["asset"] == "AAPL"
        assert body["count"] == 3
        assert body["records"][0][0] == 100.0
        assert fetcher.calls_for("AAPL") == 1

    def test_second_request_is_cached(self, client: TestClient, fetcher):
        """A repeated request should not go upstream again."""
        client.get("/api/series/AAPL")
        client.get("/api/series/AAPL")

        assert fetcher.calls_for("AAPL") == 1

    def test_as_of_iso(self, client: TestClient, fetcher):
        """as_of should accept ISO strings and force a refresh when newer."""
        client.get("/api/series/AAPL")
        response = client.get("/api/series/AAPL", params={"as_of": "2100-01-01T00:00:00Z"})

        assert response.status_code == 200
        assert fetcher.calls_for("AAPL") == 2

    def test_bad_as_of(self, client: TestClient):
        """Unparseable as_of should be a 400."""
        response = client.get("/api/series/AAPL", params={"as_of": "whenever"})

        assert response.status_code == 400

    def test_unknown_asset(self, client: TestClient):
        """Upstream failure with no stored data should be a 404."""
        response = client.get("/api/series/NOPE")

        assert response.status_code == 404
        assert "NOPE" in response.json()["detail"]

    def test_upstream_down_is_503(self, client: TestClient, fetcher):
        """An outage with nothing stored should be a 503."""
        fetcher.fail("AAPL")

        assert client.get("/api/series/AAPL").status_code == 503

    def test_rate_limited_is_429(self, client: TestClient, fetcher):
        """A rate-limited upstream with nothing stored should be a 429."""
        fetcher.fail("AAPL", RateLimitedError("slow down", asset="AAPL", status_code=429))

        assert client.get("/api/series/AAPL").status_code == 429


class TestCacheEndpoints:
    """Tests for cache inspection and invalidation."""

    def test_stats(self, client: TestClient):
        """Should report counters and cached assets."""
        client.get("/api/series/AAPL")
        client.get("/api/series/AAPL")

        body = client.get("/api/cache/stats").json()
        assert body["stats"]["hits"] == 1
        assert body["stats"]["misses"] == 1
        assert body["cached_assets"] == ["AAPL"]
        assert body["staleness_warnings"] == 0

    def test_invalidate(self, client: TestClient):
        """DELETE should drop the in-memory entry."""
        client.get("/api/series/AAPL")

        assert client.delete("/api/cache/AAPL").json() == {"asset": "AAPL", "invalidated": True}
        assert client.delete("/api/cache/AAPL").json()["invalidated"] is False
        assert client.get("/api/cache/stats").json()["cached_assets"] == []


class TestStatus:
    """Tests for GET /api/status."""

    def test_status(self, client: TestClient):
        """Should report readiness and request count."""
        client.get("/api/series/AAPL")
        body = client.get("/api/status").json()

        assert body["cache_ready"] is True
        assert body["requests_served"] == 1
        assert body["started_at"] is not None

    def test_builds_cache_from_config(self, tmp_path):
        """Without an injected cache one is built on startup."""
        config = AppConfig.model_validate({"database": {"path": str(tmp_path / "proxy.db")}})

        with TestClient(create_app(config=config)) as client:
            assert client.get("/api/status").json()["cache_ready"] is True

        assert (tmp_path / "proxy.db").exists()
