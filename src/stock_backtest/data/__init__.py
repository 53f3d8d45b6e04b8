"""Market data models, storage, upstream clients and caching."""

from .cache import CacheEntry, CacheSettings, CacheStats, DataCache, StalenessWarning
from .database import MarketDataDatabase
from .models import AssetSeries, Record, SeriesResponse, normalize_timestamp
from .store import AssetNotFoundError, TimeSeriesStore
from .upstream import (
    MarketDataClient,
    RateLimitedError,
    UpstreamFetcher,
    UpstreamUnavailableError,
)

__all__ = [
    # Models
    "AssetSeries",
    "Record",
    "SeriesResponse",
    "normalize_timestamp",
    # Storage
    "MarketDataDatabase",
    "TimeSeriesStore",
    "AssetNotFoundError",
    # Upstream
    "MarketDataClient",
    "UpstreamFetcher",
    "UpstreamUnavailableError",
    "RateLimitedError",
    # Cache
    "DataCache",
    "CacheSettings",
    "CacheEntry",
    "CacheStats",
    "StalenessWarning",
]
