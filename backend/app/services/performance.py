"""Daily portfolio valuation and time-weighted return computation."""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta
from typing import Mapping

from .fx import to_base
from .ledger import CashRecord, HistoryEntry, Holdings, TradeRecord
from .price_cache import PriceCache
from .sync_state import SyncState

logger = logging.getLogger(__name__)

LedgerDays = Mapping[date, tuple[list[CashRecord], list[TradeRecord]]]


def value_holdings(
    holdings: Holdings,
    prices: PriceCache,
    day: date,
    rates: Mapping[str, float],
    quote_currencies: Mapping[str, str],
) -> float:
    """Base-currency value of open positions plus every cash balance.

    Positions without a close and balances without a rate contribute zero.
    """

    total = 0.0
    for ticker, shares in holdings.shares.items():
        if shares <= 0:
            continue
        close = prices.lookup(ticker, day)
        if close is None:
            logger.debug("No close for %s on %s", ticker, day)
            continue
        value = to_base(shares * close, quote_currencies.get(ticker, prices.base_currency), rates)
        if value is None:
            logger.debug("No FX rate to value %s on %s", ticker, day)
            continue
        total += value
    for currency, balance in holdings.cash.items():
        value = to_base(balance, currency, rates)
        if value is None:
            logger.debug("No FX rate for %s cash on %s", currency, day)
            continue
        total += value
    return total


def daily_return(total_value: float, previous_total_value: float, external_flow: float) -> float:
    """Flow-adjusted return of one day; flows are assumed at the start of the day."""

    denominator = previous_total_value + external_flow
    if denominator <= 0:
        return 0.0
    return (total_value - denominator) / denominator


def compute_history(
    portfolio_id: str,
    state: SyncState,
    ledger_days: LedgerDays,
    prices: PriceCache,
    *,
    today: date,
    quote_currencies: Mapping[str, str],
    user_id: str | None = None,
    computed_at: datetime | None = None,
) -> list[HistoryEntry]:
    """Walk every calendar day from ``state.first_day`` through ``today``.

    ``state`` is advanced in place; one entry is emitted per day.
    """

    entries: list[HistoryEntry] = []
    holdings = state.holdings
    currencies = set(quote_currencies.values())
    for day_cash, day_trades in ledger_days.values():
        currencies.update(tx.currency.upper() for tx in day_cash)
        currencies.update(trade.currency.upper() for trade in day_trades)
    bench_at_inception = prices.benchmark(state.inception)

    day = state.first_day
    while day <= today:
        day_cash, day_trades = ledger_days.get(day, ([], []))
        rates = prices.rates_on(day, currencies | set(holdings.cash))
        external_flow = 0.0

        for tx in day_cash:
            holdings.apply_cash(tx)
            if not tx.is_external_flow:
                continue
            converted = to_base(tx.amount, tx.currency, rates)
            if converted is None:
                logger.debug("No FX rate for %s %s flow on %s", tx.amount, tx.currency, day)
                continue
            external_flow += converted

        for trade in day_trades:
            funding = holdings.apply_trade(trade)
            if funding <= 0:
                continue
            converted = to_base(funding, trade.currency, rates)
            if converted is not None:
                external_flow += converted

        state.cost_basis += external_flow
        total_value = value_holdings(holdings, prices, day, rates, quote_currencies)
        day_return = daily_return(total_value, state.previous_total_value, external_flow)
        state.twr_factor *= 1.0 + day_return

        bench_today = prices.benchmark(day)
        if bench_at_inception and bench_today is not None:
            state.bench_factor = bench_today / bench_at_inception

        entries.append(
            HistoryEntry(
                portfolio_id=portfolio_id,
                user_id=user_id,
                date=day,
                total_value=total_value,
                cost_basis=state.cost_basis,
                realized_pnl=state.realized_pnl,
                daily_return=day_return,
                cumulative_twr=state.twr_factor - 1.0,
                bench_cumulative=state.bench_factor - 1.0,
                computed_at=computed_at,
            )
        )
        state.previous_total_value = total_value
        day += timedelta(days=1)

    return entries


__all__ = ["compute_history", "daily_return", "value_holdings"]
