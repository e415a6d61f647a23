"""Alpha Vantage client used by the history service."""

from __future__ import annotations

import asyncio
import time
from collections import deque
from typing import Any, Deque, Dict, Optional

import httpx

from app.config import get_settings

BASE_URL = "https://www.alphavantage.co/query"
_WINDOW_SECONDS = 60.0


class AlphaVantageError(RuntimeError):
    """Raised when Alpha Vantage returns an error payload."""


class AlphaVantageClient:
    """Throttled Alpha Vantage client with convenience helpers."""

    def __init__(
        self,
        api_key: str | None = None,
        *,
        requests_per_minute: int | None = None,
        timeout: float | None = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        settings = get_settings()
        self.api_key = api_key or settings.alphavantage_api_key
        self.requests_per_minute = requests_per_minute or settings.alphavantage_requests_per_minute
        self.timeout = timeout or settings.alphavantage_timeout_seconds
        self._client = client or httpx.AsyncClient()
        self._owns_client = client is None
        self._calls: Deque[float] = deque()
        self._lock = asyncio.Lock()

    async def _throttle(self) -> None:
        async with self._lock:
            now = time.monotonic()
            while self._calls and now - self._calls[0] >= _WINDOW_SECONDS:
                self._calls.popleft()
            if len(self._calls) >= self.requests_per_minute:
                await asyncio.sleep(_WINDOW_SECONDS - (now - self._calls[0]))
                self._calls.popleft()
            self._calls.append(time.monotonic())

    async def _get(self, params: Dict[str, Any]) -> dict[str, Any]:
        await self._throttle()
        query = {**params, "apikey": self.api_key}
        try:
            response = await self._client.get(BASE_URL, params=query, timeout=self.timeout)
        except httpx.HTTPError as exc:
            raise AlphaVantageError(f"Alpha Vantage request failed: {exc}") from exc
        if response.status_code >= 400:
            raise AlphaVantageError(f"Alpha Vantage error {response.status_code}")
        payload = response.json()
        for key in ("Error Message", "Note", "Information"):
            if key in payload:
                raise AlphaVantageError(f"{params.get('function')}: {payload[key]}")
        return payload

    async def daily_adjusted(self, symbol: str, *, output: str = "compact") -> dict[str, Any]:
        return await self._get(
            {"function": "TIME_SERIES_DAILY_ADJUSTED", "symbol": symbol, "outputsize": output}
        )

    async def fx_daily(self, from_ccy: str, to_ccy: str, *, output: str = "compact") -> dict[str, Any]:
        return await self._get(
            {
                "function": "FX_DAILY",
                "from_symbol": from_ccy,
                "to_symbol": to_ccy,
                "outputsize": output,
            }
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def get_alpha_vantage_client() -> AlphaVantageClient:
    """Return a client configured from settings; the caller closes it."""

    return AlphaVantageClient()


__all__ = ["AlphaVantageClient", "AlphaVantageError", "get_alpha_vantage_client"]
