"""FastAPI data proxy serving cached market data."""

from contextlib import AsyncExitStack, asynccontextmanager
from datetime import datetime
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI, HTTPException

from stock_backtest.config import AppConfig
from stock_backtest.data import (
    DataCache,
    MarketDataClient,
    MarketDataDatabase,
    RateLimitedError,
    TimeSeriesStore,
    UpstreamUnavailableError,
    normalize_timestamp,
)

logger = structlog.get_logger()


class AppState:
    """Objects shared by the request handlers."""

    def __init__(self, cache: DataCache | None = None, config: AppConfig | None = None):
        self.cache = cache
        self.config = config or AppConfig()
        self.started_at: datetime | None = None
        self.requests_served = 0


async def build_cache(config: AppConfig, stack: AsyncExitStack) -> DataCache:
    """
    Build a database-backed cache in front of the configured upstream.

    The upstream client is entered on `stack` and closed with it.
    """
    db = MarketDataDatabase(config.database.path)
    db.initialize()
    client = MarketDataClient(
        base_url=config.upstream.base_url,
        api_key=config.upstream.api_key,
        timeout=config.upstream.timeout,
    )
    await stack.enter_async_context(client)
    return DataCache(TimeSeriesStore(db), client, config.cache.to_settings())


def create_app(cache: DataCache | None = None, config: AppConfig | None = None) -> FastAPI:
    """
    Create the data proxy application.

    Args:
        cache: Cache to serve from. If None, one is built from config on
            startup and its upstream client is closed on shutdown.
        config: Application config (defaults if None)

    Returns:
        Configured FastAPI app
    """
    state = AppState(cache=cache, config=config)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Initialize app state on startup."""
        async with AsyncExitStack() as stack:
            if state.cache is None:
                state.cache = await build_cache(state.config, stack)
            state.started_at = datetime.now()
            logger.info("Data proxy started", max_entries=state.cache.settings.max_entries)
            yield
            logger.info("Data proxy stopped", requests_served=state.requests_served)

    app = FastAPI(
        title="Stock Data Proxy",
        lifespan=lifespan,
    )
    app.state.proxy = state

    def get_cache() -> DataCache:
        if state.cache is None:
            raise HTTPException(status_code=503, detail="Cache not initialized")
        return state.cache

    # --- API Endpoints ---

    @app.get("/api/series/{asset}")
    async def get_series(asset: str, as_of: str | None = None) -> dict:
        """Get the series for an asset, refreshing it if stale."""
        cache = get_cache()

        try:
            as_of_ts = normalize_timestamp(as_of) if as_of is not None else None
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))

        try:
            series = await cache.fetch(asset, as_of=as_of_ts)
        except RateLimitedError as e:
            raise HTTPException(status_code=429, detail=f"Upstream rate limited {asset}: {e}")
        except UpstreamUnavailableError as e:
            if e.status_code == 404:
                raise HTTPException(status_code=404, detail=f"No data for {asset}: {e}")
            raise HTTPException(status_code=503, detail=f"Upstream unavailable for {asset}: {e}")

        state.requests_served += 1
        return {
            "asset": series.asset,
            "last_updated": series.last_updated,
            "count": len(series),
            "records": [record.to_row() for record in series],
        }

    @app.get("/api/cache/stats")
    async def get_cache_stats() -> dict:
        """Get cache counters."""
        cache = get_cache()
        return {
            "stats": cache.get_stats(),
            "cached_assets": cache.cached_assets(),
            "staleness_warnings": len(cache.staleness_warnings),
        }

    @app.delete("/api/cache/{asset}")
    async def invalidate_asset(asset: str) -> dict:
        """Drop an asset from memory so the next read reloads it."""
        removed = get_cache().invalidate(asset)
        return {"asset": asset, "invalidated": removed}

    @app.get("/api/status")
    async def get_status() -> dict:
        """Get system status."""
        return {
            "cache_ready": state.cache is not None,
            "requests_served": state.requests_served,
            "started_at": state.started_at.isoformat() if state.started_at else None,
            "timestamp": datetime.now().isoformat(),
        }

    return app


def run_server(config: AppConfig | None = None, host: str = "127.0.0.1", port: int = 8000) -> None:
    """Run the data proxy server."""
    import uvicorn

    uvicorn.run(create_app(config=config), host=host, port=port)
