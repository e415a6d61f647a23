"""Historical closes from Alpha Vantage shaped for the price cache."""

from __future__ import annotations

from datetime import date, datetime
from typing import Any

import pandas as pd

from app.providers.alpha_vantage import AlphaVantageClient

from .price_cache import PricePoint

DAILY_SERIES_KEY = "Time Series (Daily)"
FX_SERIES_KEY = "Time Series FX (Daily)"


def _parse_series(payload: dict[str, Any], series_key: str, fields: tuple[str, ...]) -> pd.Series:
    series = payload.get(series_key, {})
    rows: dict[datetime, float] = {}
    for day_str, values in series.items():
        try:
            day = datetime.strptime(day_str, "%Y-%m-%d")
        except ValueError:
            continue
        raw = next((values[f] for f in fields if values.get(f) is not None), None)
        if raw is None:
            continue
        rows[day] = float(raw)
    if not rows:
        return pd.Series(dtype=float)
    return pd.Series(rows, dtype=float).sort_index()


def _select_output_size(start: date) -> str:
    days = (date.today() - start).days
    return "compact" if days <= 100 else "full"


def _window(series: pd.Series, start: date, end: date) -> list[PricePoint]:
    if series.empty:
        return []
    sliced = series.loc[pd.Timestamp(start) : pd.Timestamp(end)]
    return [PricePoint(date=ts.date(), close=float(close)) for ts, close in sliced.items()]


class AlphaVantagePriceSource:
    """``PriceSource`` backed by Alpha Vantage daily and FX series."""

    def __init__(self, client: AlphaVantageClient, *, benchmark_symbol: str):
        self.client = client
        self.benchmark_symbol = benchmark_symbol

    async def get_historical_prices(self, symbol: str, start: date, end: date) -> list[PricePoint]:
        payload = await self.client.daily_adjusted(symbol, output=_select_output_size(start))
        series = _parse_series(payload, DAILY_SERIES_KEY, ("4. close", "5. adjusted close"))
        return _window(series, start, end)

    async def get_historical_fx(
        self, base_currency: str, currency: str, start: date, end: date
    ) -> list[PricePoint]:
        payload = await self.client.fx_daily(base_currency, currency, output=_select_output_size(start))
        series = _parse_series(payload, FX_SERIES_KEY, ("4. close",))
        return _window(series, start, end)

    async def get_historical_benchmark(self, start: date, end: date) -> list[PricePoint]:
        return await self.get_historical_prices(self.benchmark_symbol, start, end)


__all__ = ["AlphaVantagePriceSource"]
