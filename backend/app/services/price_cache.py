"""Per-sync price cache with backward-filled daily closes.

All series a sync needs (traded tickers, FX pairs to the base currency, the
benchmark) are fetched concurrently into independent slots. A failed fetch
leaves its slot empty and the sync carries on with partial data. The cache
lives only as long as one sync call.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Awaitable, Iterable, Mapping, Protocol

import pandas as pd

from .fx import fx_symbol

logger = logging.getLogger(__name__)

BENCHMARK_KEY_PREFIX = "BENCH:"


@dataclass(frozen=True)
class PricePoint:
    date: date
    close: float


class PriceSource(Protocol):
    """Pluggable historical market data provider."""

    async def get_historical_prices(self, symbol: str, start: date, end: date) -> list[PricePoint]:
        ...

    async def get_historical_fx(
        self, base_currency: str, currency: str, start: date, end: date
    ) -> list[PricePoint]:
        ...

    async def get_historical_benchmark(self, start: date, end: date) -> list[PricePoint]:
        ...


class InMemoryPriceSource:
    """Simple price source for tests and offline runs.

    ``fx_rates`` is keyed by quote currency and holds units of that currency
    per one base unit.
    """

    def __init__(
        self,
        prices: Mapping[str, Mapping[date, float]] | None = None,
        *,
        fx_rates: Mapping[str, Mapping[date, float]] | None = None,
        benchmark: Mapping[date, float] | None = None,
    ):
        self._prices = {k.upper(): dict(v) for k, v in (prices or {}).items()}
        self._fx = {k.upper(): dict(v) for k, v in (fx_rates or {}).items()}
        self._benchmark = dict(benchmark or {})

    @staticmethod
    def _window(series: Mapping[date, float], start: date, end: date) -> list[PricePoint]:
        return [PricePoint(d, float(v)) for d, v in sorted(series.items()) if start <= d <= end]

    async def get_historical_prices(self, symbol: str, start: date, end: date) -> list[PricePoint]:
        return self._window(self._prices.get(symbol.upper(), {}), start, end)

    async def get_historical_fx(
        self, base_currency: str, currency: str, start: date, end: date
    ) -> list[PricePoint]:
        return self._window(self._fx.get(currency.upper(), {}), start, end)

    async def get_historical_benchmark(self, start: date, end: date) -> list[PricePoint]:
        return self._window(self._benchmark, start, end)


def _backfilled_series(points: Iterable[PricePoint], start: date, end: date, limit: int) -> pd.Series:
    points = list(points)
    index = pd.DatetimeIndex([pd.Timestamp(p.date) for p in points])
    series = pd.Series([p.close for p in points], index=index, dtype=float)
    if series.empty:
        return series
    series = series[~series.index.duplicated(keep="last")].dropna().sort_index()
    series = series[series.index <= pd.Timestamp(end)]
    if series.empty:
        return series
    calendar = pd.date_range(min(series.index.min(), pd.Timestamp(start)), pd.Timestamp(end), freq="D")
    return series.reindex(calendar).ffill(limit=limit)


class PriceCache:
    """Date-indexed closes per symbol, looked up with a bounded backward-fill."""

    def __init__(
        self,
        points: Mapping[str, Iterable[PricePoint]],
        *,
        start: date,
        end: date,
        base_currency: str = "USD",
        benchmark_symbol: str | None = None,
        backfill_days: int = 7,
    ):
        self.base_currency = base_currency.upper()
        self.benchmark_symbol = benchmark_symbol
        self.backfill_days = backfill_days
        self._series = {
            key: _backfilled_series(slot, start, end, backfill_days) for key, slot in points.items()
        }

    def lookup(self, symbol: str, day: date) -> float | None:
        """Close for ``symbol`` on ``day``, or the nearest prior close within the window."""

        series = self._series.get(symbol)
        if series is None or series.empty:
            return None
        value = series.get(pd.Timestamp(day))
        if value is None or pd.isna(value):
            return None
        return float(value)

    def benchmark(self, day: date) -> float | None:
        if not self.benchmark_symbol:
            return None
        return self.lookup(BENCHMARK_KEY_PREFIX + self.benchmark_symbol, day)

    def rates_on(self, day: date, currencies: Iterable[str]) -> dict[str, float]:
        """Known rates for ``day`` keyed by currency, always including the base at 1.0."""

        rates = {self.base_currency: 1.0}
        for currency in currencies:
            code = currency.upper()
            if code in rates:
                continue
            rate = self.lookup(fx_symbol(self.base_currency, code), day)
            if rate is not None:
                rates[code] = rate
        return rates


async def _fetch_slot(key: str, fetch: Awaitable[list[PricePoint]]) -> list[PricePoint]:
    try:
        return list(await fetch)
    except Exception:  # noqa: BLE001 - one symbol must not sink the sync
        logger.warning("Price history unavailable for %s; valuing it as zero", key, exc_info=True)
        return []


async def build_price_cache(
    source: PriceSource,
    *,
    tickers: Iterable[str],
    currencies: Iterable[str],
    benchmark_symbol: str | None,
    base_currency: str,
    start: date,
    end: date,
    inception: date,
    backfill_days: int = 7,
) -> PriceCache:
    """Fetch every series needed to value ``[start, end]`` and wrap them in a cache.

    Series are requested from ``start - 1`` minus the backfill window so the
    first day of a resumed run back-fills exactly like a full recompute. The
    benchmark is requested from inception, where its base value is read.
    """

    base = base_currency.upper()
    fetch_start = start - timedelta(days=1 + backfill_days)
    jobs: dict[str, Awaitable[list[PricePoint]]] = {}
    for ticker in sorted({t.upper() for t in tickers}):
        jobs[ticker] = source.get_historical_prices(ticker, fetch_start, end)
    for currency in sorted({c.upper() for c in currencies} - {base}):
        jobs[fx_symbol(base, currency)] = source.get_historical_fx(base, currency, fetch_start, end)
    if benchmark_symbol:
        bench_start = min(inception, start) - timedelta(days=backfill_days)
        jobs[BENCHMARK_KEY_PREFIX + benchmark_symbol] = source.get_historical_benchmark(bench_start, end)

    results = await asyncio.gather(*(_fetch_slot(key, fetch) for key, fetch in jobs.items()))
    slots = dict(zip(jobs.keys(), results))
    logger.info(
        "Price cache built for %d series (%d empty) over %s..%s",
        len(slots),
        sum(1 for points in slots.values() if not points),
        fetch_start,
        end,
    )
    return PriceCache(
        slots,
        start=fetch_start,
        end=end,
        base_currency=base,
        benchmark_symbol=benchmark_symbol,
        backfill_days=backfill_days,
    )


__all__ = [
    "BENCHMARK_KEY_PREFIX",
    "InMemoryPriceSource",
    "PriceCache",
    "PricePoint",
    "PriceSource",
    "build_price_cache",
]
