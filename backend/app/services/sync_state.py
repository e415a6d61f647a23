"""Resolve where an incremental history sync starts and recover its state."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Sequence

from .ledger import CashRecord, HistoryEntry, Holdings, TradeRecord, group_by_day


@dataclass
class SyncState:
    """Working state carried from one computed day to the next."""

    inception: date
    first_day: date
    holdings: Holdings = field(default_factory=Holdings)
    cost_basis: float = 0.0
    realized_pnl: float = 0.0
    twr_factor: float = 1.0
    bench_factor: float = 1.0
    previous_total_value: float = 0.0
    anchor: HistoryEntry | None = None

    @property
    def resumed(self) -> bool:
        return self.anchor is not None


def inception_date(
    trades: Sequence[TradeRecord],
    cash_transactions: Sequence[CashRecord],
) -> date | None:
    dates = [t.date for t in trades] + [c.date for c in cash_transactions]
    return min(dates) if dates else None


def replay_ledger(
    trades: Sequence[TradeRecord],
    cash_transactions: Sequence[CashRecord],
    cutoff: date,
) -> Holdings:
    """Fold every ledger record dated on or before ``cutoff`` into holdings.

    Records are grouped and sorted here, so callers may pass them in any
    order.
    """

    holdings = Holdings()
    for day, (day_cash, day_trades) in group_by_day(trades, cash_transactions).items():
        if day > cutoff:
            break
        for tx in day_cash:
            holdings.apply_cash(tx)
        for trade in day_trades:
            holdings.apply_trade(trade)
    return holdings


def resolve_sync_state(
    trades: Sequence[TradeRecord],
    cash_transactions: Sequence[CashRecord],
    latest: HistoryEntry | None,
) -> SyncState:
    """Return the state a sync resumes from.

    Without stored history the sync starts at inception with empty holdings.
    Otherwise holdings are replayed up to the stored date and the numeric
    state is taken from the stored row; computation resumes the day after.
    """

    inception = inception_date(trades, cash_transactions)
    if inception is None:
        raise ValueError("Cannot resolve sync state for an empty ledger")

    if latest is None:
        return SyncState(inception=inception, first_day=inception)

    return SyncState(
        inception=inception,
        first_day=latest.date + timedelta(days=1),
        holdings=replay_ledger(trades, cash_transactions, latest.date),
        cost_basis=latest.cost_basis,
        realized_pnl=latest.realized_pnl,
        twr_factor=1.0 + latest.cumulative_twr,
        bench_factor=1.0 + latest.bench_cumulative,
        previous_total_value=latest.total_value,
        anchor=latest,
    )


def _created_after(record: TradeRecord | CashRecord, latest: HistoryEntry) -> bool:
    if record.created_at is None or latest.computed_at is None:
        return False
    return record.created_at >= latest.computed_at


def find_late_activity(
    trades: Sequence[TradeRecord],
    cash_transactions: Sequence[CashRecord],
    latest: HistoryEntry | None,
) -> date | None:
    """Earliest date of records entered after ``latest`` was computed but dated within it."""

    if latest is None:
        return None
    late = [
        record.date
        for record in [*trades, *cash_transactions]
        if record.date <= latest.date and _created_after(record, latest)
    ]
    return min(late) if late else None


def is_up_to_date(
    latest: HistoryEntry | None,
    trades: Sequence[TradeRecord],
    cash_transactions: Sequence[CashRecord],
    today: date,
) -> bool:
    """True when the stored history reaches today and no activity was entered since."""

    if latest is None or latest.date < today:
        return False
    return not any(_created_after(record, latest) for record in [*trades, *cash_transactions])


__all__ = [
    "SyncState",
    "find_late_activity",
    "inception_date",
    "is_up_to_date",
    "replay_ledger",
    "resolve_sync_state",
]
