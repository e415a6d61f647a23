"""Chart-ready portfolio versus benchmark series built from stored history."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Sequence

import pandas as pd

from .ledger import HistoryEntry

PERIOD_OFFSETS = {
    "1M": pd.DateOffset(months=1),
    "3M": pd.DateOffset(months=3),
    "6M": pd.DateOffset(months=6),
    "1Y": pd.DateOffset(years=1),
}
PERIODS = (*PERIOD_OFFSETS, "YTD", "ALL")


@dataclass
class PerformancePoint:
    date: date
    portfolio_pct: float
    benchmark_pct: float
    value: float


def period_start(period: str, today: date) -> date | None:
    """First date shown for ``period``; ``None`` means no lower bound."""

    code = period.upper()
    if code == "ALL":
        return None
    if code == "YTD":
        return date(today.year, 1, 1)
    if code not in PERIOD_OFFSETS:
        raise ValueError(f"Unsupported period {period!r}; expected one of {', '.join(PERIODS)}")
    return (pd.Timestamp(today) - PERIOD_OFFSETS[code]).date()


def _rebased_pct(cumulative: float, first: float) -> float:
    base = 1.0 + first
    if base == 0:
        return 0.0
    return ((1.0 + cumulative) / base - 1.0) * 100.0


def build_performance_series(entries: Sequence[HistoryEntry]) -> list[PerformancePoint]:
    """Re-base stored cumulative returns so the window starts at 0%."""

    if not entries:
        return []
    ordered = sorted(entries, key=lambda entry: entry.date)
    first = ordered[0]
    return [
        PerformancePoint(
            date=entry.date,
            portfolio_pct=_rebased_pct(entry.cumulative_twr, first.cumulative_twr),
            benchmark_pct=_rebased_pct(entry.bench_cumulative, first.bench_cumulative),
            value=entry.total_value,
        )
        for entry in ordered
    ]


__all__ = ["PERIODS", "PerformancePoint", "build_performance_series", "period_start"]
