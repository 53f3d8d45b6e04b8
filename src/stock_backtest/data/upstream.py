"""Upstream market data fetchers."""

from typing import Any, Protocol

import httpx
from pydantic import ValidationError

from .models import Record, SeriesResponse


class UpstreamUnavailableError(Exception):
    """Raised when the upstream data source cannot serve a request."""

    def __init__(self, message: str, asset: str | None = None, status_code: int | None = None):
        super().__init__(message)
        self.asset = asset
        self.status_code = status_code


class RateLimitedError(UpstreamUnavailableError):
    """Raised when the upstream data source rejects a request for rate limiting."""

    pass


class UpstreamFetcher(Protocol):
    """Anything that can fetch records for an asset from a remote source."""

    async def fetch(self, asset: str, since: float | None) -> list[Record]:
        """
        Fetch records for an asset.

        Args:
            asset: Asset identifier
            since: Only records at or after this timestamp are needed
                (None for full history)

        Raises:
            UpstreamUnavailableError: If the source cannot be reached
            RateLimitedError: If the source is throttling requests
        """
        ...


class MarketDataClient:
    """
    Async client for a REST market data endpoint.

    Expects `GET /series/{asset}?since=<epoch seconds>` to return
    `{"asset": ..., "records": [[ts, open, high, low, close, volume], ...]}`.

    Example:
        async with MarketDataClient("https://data.example.com/v1") as client:
            records = await client.fetch("AAPL", since=None)
    """

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """
        Initialize market data client.

        Args:
            base_url: Base URL of the data service
            api_key: Optional API key sent as X-API-Key
            timeout: Request timeout in seconds
            transport: Optional httpx transport override
        """
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> "MarketDataClient":
        """Enter async context."""
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["X-API-Key"] = self.api_key

        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            headers=headers,
            transport=self._transport,
        )
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Exit async context."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _request(
        self,
        path: str,
        asset: str,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """
        Make request to the data service.

        Raises:
            RateLimitedError: If rate limit exceeded
            UpstreamUnavailableError: For transport and HTTP errors
        """
        if not self._client:
            raise RuntimeError("Client not initialized. Use 'async with' context.")

        try:
            response = await self._client.get(path, params=params)
        except httpx.TimeoutException as e:
            raise UpstreamUnavailableError(f"Request timed out: {e}", asset=asset)
        except httpx.RequestError as e:
            raise UpstreamUnavailableError(f"Request failed: {e}", asset=asset)

        if response.status_code == 429:
            raise RateLimitedError("Rate limit exceeded", asset=asset, status_code=429)

        if response.status_code >= 400:
            raise UpstreamUnavailableError(
                f"HTTP error {response.status_code}: {response.text}",
                asset=asset,
                status_code=response.status_code,
            )

        try:
            return response.json()
        except ValueError as e:
            raise UpstreamUnavailableError(f"Invalid JSON response: {e}", asset=asset)

    async def fetch(self, asset: str, since: float | None) -> list[Record]:
        """
        Fetch records for an asset.

        Args:
            asset: Asset identifier
            since: Earliest timestamp needed (None for full history)

        Returns:
            Parsed records in the order the service returned them
        """
        params: dict[str, Any] = {}
        if since is not None:
            params["since"] = since

        data = await self._request(f"/series/{asset}", asset, params=params or None)

        try:
            return SeriesResponse.model_validate(data).to_records()
        except (ValidationError, ValueError) as e:
            raise UpstreamUnavailableError(f"Malformed series payload: {e}", asset=asset)
