from datetime import date

import pytest

from app.services.ledger import HistoryEntry
from app.services.performance_view import build_performance_series, period_start


def _entry(day: date, twr: float, bench: float, value: float = 100.0) -> HistoryEntry:
    return HistoryEntry(
        portfolio_id="p1",
        date=day,
        total_value=value,
        cost_basis=100.0,
        realized_pnl=0.0,
        daily_return=0.0,
        cumulative_twr=twr,
        bench_cumulative=bench,
    )


@pytest.mark.parametrize(
    ("period", "expected"),
    [
        ("1M", date(2024, 2, 29)),
        ("3m", date(2023, 12, 31)),
        ("6M", date(2023, 9, 30)),
        ("1Y", date(2023, 3, 31)),
        ("YTD", date(2024, 1, 1)),
        ("ALL", None),
    ],
)
def test_period_start(period, expected):
    assert period_start(period, date(2024, 3, 31)) == expected


def test_unknown_period_is_rejected():
    with pytest.raises(ValueError):
        period_start("2W", date(2024, 3, 31))


def test_series_is_rebased_to_window_start():
    entries = [
        _entry(date(2024, 1, 3), twr=0.21, bench=0.0, value=121.0),
        _entry(date(2024, 1, 2), twr=0.10, bench=0.10, value=110.0),
    ]

    points = build_performance_series(entries)

    assert [p.date for p in points] == [date(2024, 1, 2), date(2024, 1, 3)]
    assert points[0].portfolio_pct == pytest.approx(0.0)
    assert points[1].portfolio_pct == pytest.approx(10.0)
    assert points[1].benchmark_pct == pytest.approx(-100.0 / 11.0)
    assert points[1].value == pytest.approx(121.0)


def test_empty_history_gives_empty_series():
    assert build_performance_series([]) == []
