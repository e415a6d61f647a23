"""Ledger records and the holdings they fold into.

Trades and cash transactions are plain frozen dataclasses so the history
engine can be exercised without a database. ``Holdings`` is the mutable
working state (shares per ticker, cash per currency) that both the resume
replay and the daily iterator advance with the same two methods, which keeps
a replayed state identical to one reached by iterating day by day.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Iterable, Sequence, TypeVar

logger = logging.getLogger(__name__)

TRADE_ACTIONS = ("BUY", "SELL")
CASH_TRANSACTION_TYPES = (
    "DEPOSIT",
    "WITHDRAWAL",
    "DIVIDEND",
    "INTEREST",
    "FEE",
    "TAX",
    "ADJUSTMENT",
)
EXTERNAL_FLOW_TYPES = frozenset({"DEPOSIT", "WITHDRAWAL"})


@dataclass(frozen=True)
class TradeRecord:
    """A buy or sell of a ticker settled in ``currency``."""

    ticker: str
    action: str
    quantity: float
    date: date
    price: float = 0.0
    fees: float = 0.0
    currency: str = "USD"
    id: str | None = None
    created_at: datetime | None = None

    def normalized_action(self) -> str:
        return self.action.upper()


@dataclass(frozen=True)
class CashRecord:
    """A signed cash movement; the sign encodes direction."""

    currency: str
    amount: float
    type: str
    date: date
    ticker: str | None = None
    description: str | None = None
    id: str | None = None
    created_at: datetime | None = None

    def normalized_type(self) -> str:
        return self.type.upper()

    @property
    def is_external_flow(self) -> bool:
        return self.normalized_type() in EXTERNAL_FLOW_TYPES


@dataclass
class HistoryEntry:
    """One computed day of portfolio history."""

    portfolio_id: str
    date: date
    total_value: float
    cost_basis: float
    realized_pnl: float
    daily_return: float
    cumulative_twr: float
    bench_cumulative: float
    user_id: str | None = None
    computed_at: datetime | None = None


@dataclass
class Holdings:
    """Share counts per ticker and cash balances per currency."""

    shares: dict[str, float] = field(default_factory=dict)
    cash: dict[str, float] = field(default_factory=dict)

    def apply_cash(self, tx: CashRecord) -> None:
        currency = tx.currency.upper()
        self.cash[currency] = self.cash.get(currency, 0.0) + tx.amount

    def apply_trade(self, trade: TradeRecord) -> float:
        """Apply ``trade`` and return the cash it had to bring in from outside.

        A BUY is paid from the trade currency's balance. Any part of the cost
        the (non-negative) balance cannot cover is returned so the caller can
        book it as an external deposit. SELL never drives shares below zero.
        """

        ticker = trade.ticker.upper()
        currency = trade.currency.upper()
        quantity = abs(trade.quantity)
        held = self.shares.get(ticker, 0.0)
        balance = self.cash.get(currency, 0.0)
        action = trade.normalized_action()

        if action == "BUY":
            cost = quantity * trade.price + trade.fees
            shortfall = max(cost - max(balance, 0.0), 0.0)
            self.shares[ticker] = held + quantity
            self.cash[currency] = balance + shortfall - cost
            return shortfall
        if action == "SELL":
            sold = min(quantity, held)
            self.shares[ticker] = held - sold
            if sold > 0:
                self.cash[currency] = balance + sold * trade.price - trade.fees
            if sold < quantity:
                logger.debug(
                    "Sell of %s %s exceeds tracked position %s; flooring at zero",
                    quantity,
                    ticker,
                    held,
                )
            return 0.0
        logger.warning("Ignoring trade %s with unsupported action %s", trade.id, trade.action)
        return 0.0


_Dated = TypeVar("_Dated", TradeRecord, CashRecord)


def sort_by_date(records: Iterable[_Dated]) -> list[_Dated]:
    """Stable ascending sort; same-day records keep their ledger order."""

    return sorted(records, key=lambda record: record.date)


def group_by_day(
    trades: Sequence[TradeRecord],
    cash_transactions: Sequence[CashRecord],
) -> dict[date, tuple[list[CashRecord], list[TradeRecord]]]:
    """Bucket the ledger by date, cash first, both in ascending order."""

    days: dict[date, tuple[list[CashRecord], list[TradeRecord]]] = {}
    for tx in sort_by_date(cash_transactions):
        days.setdefault(tx.date, ([], []))[0].append(tx)
    for trade in sort_by_date(trades):
        days.setdefault(trade.date, ([], []))[1].append(trade)
    return dict(sorted(days.items()))


__all__ = [
    "CASH_TRANSACTION_TYPES",
    "EXTERNAL_FLOW_TYPES",
    "TRADE_ACTIONS",
    "CashRecord",
    "HistoryEntry",
    "Holdings",
    "TradeRecord",
    "group_by_day",
    "sort_by_date",
]
