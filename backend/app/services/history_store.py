"""Ledger reads and history writes used by the history sync."""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import date, datetime, timezone
from typing import Protocol, Sequence

from sqlalchemy import exists, func, or_, select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.models import CashTransaction, Portfolio, PortfolioHistory, Trade

from .ledger import CashRecord, HistoryEntry, TradeRecord, sort_by_date

logger = logging.getLogger(__name__)

# Keeps a single INSERT under PostgreSQL's bind parameter limit
UPSERT_CHUNK_SIZE = 1000
_UPSERT_COLUMNS = (
    "user_id",
    "total_value",
    "cost_basis",
    "realized_pnl",
    "daily_return",
    "cumulative_twr",
    "bench_cumulative",
    "computed_at",
)
_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


@dataclass(frozen=True)
class PortfolioRef:
    id: str
    user_id: str


class HistoryStore(Protocol):
    """Storage collaborator of the history sync."""

    async def load_trades(self, portfolio_id: str) -> list[TradeRecord]:
        ...

    async def load_cash_transactions(self, portfolio_id: str) -> list[CashRecord]:
        ...

    async def load_latest_history_entry(
        self, portfolio_id: str, *, before: date | None = None
    ) -> HistoryEntry | None:
        ...

    async def upsert_history_entries(self, entries: Sequence[HistoryEntry]) -> int:
        ...

    async def list_history(
        self, portfolio_id: str, *, start: date | None = None, user_id: str | None = None
    ) -> list[HistoryEntry]:
        ...

    async def get_portfolio(self, portfolio_id: str) -> PortfolioRef | None:
        ...

    async def list_portfolios(self, *, limit: int | None = None) -> list[PortfolioRef]:
        """Portfolios with ledger activity, least recently synced first."""
        ...


class InMemoryHistoryStore:
    """Dictionary-backed store for tests and local experiments."""

    def __init__(self) -> None:
        self.portfolios: dict[str, PortfolioRef] = {}
        self.trades: dict[str, list[TradeRecord]] = {}
        self.cash_transactions: dict[str, list[CashRecord]] = {}
        self.history: dict[tuple[str, date], HistoryEntry] = {}

    def add_portfolio(self, portfolio_id: str, user_id: str) -> PortfolioRef:
        ref = PortfolioRef(id=portfolio_id, user_id=user_id)
        self.portfolios[portfolio_id] = ref
        return ref

    def add_trade(self, portfolio_id: str, trade: TradeRecord) -> None:
        self.trades.setdefault(portfolio_id, []).append(trade)

    def add_cash_transaction(self, portfolio_id: str, tx: CashRecord) -> None:
        self.cash_transactions.setdefault(portfolio_id, []).append(tx)

    async def load_trades(self, portfolio_id: str) -> list[TradeRecord]:
        return sort_by_date(self.trades.get(portfolio_id, []))

    async def load_cash_transactions(self, portfolio_id: str) -> list[CashRecord]:
        return sort_by_date(self.cash_transactions.get(portfolio_id, []))

    async def load_latest_history_entry(
        self, portfolio_id: str, *, before: date | None = None
    ) -> HistoryEntry | None:
        rows = [
            entry
            for (pid, day), entry in self.history.items()
            if pid == portfolio_id and (before is None or day < before)
        ]
        if not rows:
            return None
        return replace(max(rows, key=lambda entry: entry.date))

    async def upsert_history_entries(self, entries: Sequence[HistoryEntry]) -> int:
        for entry in entries:
            self.history[(entry.portfolio_id, entry.date)] = replace(entry)
        return len(entries)

    async def list_history(
        self, portfolio_id: str, *, start: date | None = None, user_id: str | None = None
    ) -> list[HistoryEntry]:
        rows = [
            replace(entry)
            for (pid, day), entry in self.history.items()
            if pid == portfolio_id
            and (start is None or day >= start)
            and (user_id is None or entry.user_id == user_id)
        ]
        return sorted(rows, key=lambda entry: entry.date)

    async def get_portfolio(self, portfolio_id: str) -> PortfolioRef | None:
        return self.portfolios.get(portfolio_id)

    def _last_synced(self, portfolio_id: str) -> datetime | None:
        stamps = [
            entry.computed_at
            for (pid, _), entry in self.history.items()
            if pid == portfolio_id and entry.computed_at is not None
        ]
        return max(stamps) if stamps else None

    async def list_portfolios(self, *, limit: int | None = None) -> list[PortfolioRef]:
        active = [
            ref
            for ref in self.portfolios.values()
            if self.trades.get(ref.id) or self.cash_transactions.get(ref.id)
        ]
        # Never-synced first, then oldest sync; ties keep insertion order
        stamps = {ref.id: self._last_synced(ref.id) for ref in active}
        refs = sorted(
            active,
            key=lambda ref: (stamps[ref.id] is not None, stamps[ref.id] or _EPOCH),
        )
        return refs[:limit] if limit is not None else refs


def _float(value: object) -> float:
    return float(value) if value is not None else 0.0


def _to_entry(row: PortfolioHistory) -> HistoryEntry:
    return HistoryEntry(
        portfolio_id=row.portfolio_id,
        user_id=row.user_id,
        date=row.date,
        total_value=_float(row.total_value),
        cost_basis=_float(row.cost_basis),
        realized_pnl=_float(row.realized_pnl),
        daily_return=_float(row.daily_return),
        cumulative_twr=_float(row.cumulative_twr),
        bench_cumulative=_float(row.bench_cumulative),
        computed_at=row.computed_at,
    )


class SqlHistoryStore:
    """SQLAlchemy-backed store.

    Each call opens its own session so the loads can run concurrently.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def load_trades(self, portfolio_id: str) -> list[TradeRecord]:
        async with self._session_factory() as session:
            rows = (
                await session.execute(
                    select(Trade)
                    .where(Trade.portfolio_id == portfolio_id)
                    .order_by(Trade.date_traded, Trade.created_at)
                )
            ).scalars().all()
        return [
            TradeRecord(
                id=row.id,
                ticker=row.ticker.strip().upper(),
                action=row.action,
                quantity=_float(row.quantity),
                price=_float(row.price_per_share),
                fees=_float(row.fees),
                currency=row.currency.upper(),
                date=row.date_traded,
                created_at=row.created_at,
            )
            for row in rows
        ]

    async def load_cash_transactions(self, portfolio_id: str) -> list[CashRecord]:
        async with self._session_factory() as session:
            rows = (
                await session.execute(
                    select(CashTransaction)
                    .where(CashTransaction.portfolio_id == portfolio_id)
                    .order_by(CashTransaction.transaction_date, CashTransaction.created_at)
                )
            ).scalars().all()
        return [
            CashRecord(
                id=row.id,
                currency=row.currency.upper(),
                amount=_float(row.amount),
                type=row.transaction_type,
                date=row.transaction_date,
                ticker=row.ticker,
                description=row.description,
                created_at=row.created_at,
            )
            for row in rows
        ]

    async def load_latest_history_entry(
        self, portfolio_id: str, *, before: date | None = None
    ) -> HistoryEntry | None:
        stmt = select(PortfolioHistory).where(PortfolioHistory.portfolio_id == portfolio_id)
        if before is not None:
            stmt = stmt.where(PortfolioHistory.date < before)
        stmt = stmt.order_by(PortfolioHistory.date.desc()).limit(1)
        async with self._session_factory() as session:
            row = (await session.execute(stmt)).scalars().first()
        return _to_entry(row) if row is not None else None

    async def upsert_history_entries(self, entries: Sequence[HistoryEntry]) -> int:
        if not entries:
            return 0
        now = datetime.now(timezone.utc)
        records = [
            {
                "portfolio_id": entry.portfolio_id,
                "user_id": entry.user_id,
                "date": entry.date,
                "total_value": entry.total_value,
                "cost_basis": entry.cost_basis,
                "realized_pnl": entry.realized_pnl,
                "daily_return": entry.daily_return,
                "cumulative_twr": entry.cumulative_twr,
                "bench_cumulative": entry.bench_cumulative,
                "computed_at": entry.computed_at or now,
            }
            for entry in entries
        ]
        async with self._session_factory() as session:
            for offset in range(0, len(records), UPSERT_CHUNK_SIZE):
                stmt = insert(PortfolioHistory).values(records[offset : offset + UPSERT_CHUNK_SIZE])
                stmt = stmt.on_conflict_do_update(
                    index_elements=[PortfolioHistory.portfolio_id, PortfolioHistory.date],
                    set_={column: getattr(stmt.excluded, column) for column in _UPSERT_COLUMNS},
                )
                await session.execute(stmt)
            await session.commit()
        logger.info("Upserted %d history rows for %s", len(records), entries[0].portfolio_id)
        return len(records)

    async def list_history(
        self, portfolio_id: str, *, start: date | None = None, user_id: str | None = None
    ) -> list[HistoryEntry]:
        stmt = select(PortfolioHistory).where(PortfolioHistory.portfolio_id == portfolio_id)
        if start is not None:
            stmt = stmt.where(PortfolioHistory.date >= start)
        if user_id is not None:
            stmt = stmt.where(PortfolioHistory.user_id == user_id)
        async with self._session_factory() as session:
            rows = (await session.execute(stmt.order_by(PortfolioHistory.date))).scalars().all()
        return [_to_entry(row) for row in rows]

    async def get_portfolio(self, portfolio_id: str) -> PortfolioRef | None:
        async with self._session_factory() as session:
            row = (
                await session.execute(
                    select(Portfolio.id, Portfolio.user_id).where(Portfolio.id == portfolio_id)
                )
            ).first()
        return PortfolioRef(id=row.id, user_id=row.user_id) if row is not None else None

    async def list_portfolios(self, *, limit: int | None = None) -> list[PortfolioRef]:
        last_synced = (
            select(
                PortfolioHistory.portfolio_id,
                func.max(PortfolioHistory.computed_at).label("last_synced"),
            )
            .group_by(PortfolioHistory.portfolio_id)
            .subquery()
        )
        has_activity = or_(
            exists().where(Trade.portfolio_id == Portfolio.id),
            exists().where(CashTransaction.portfolio_id == Portfolio.id),
        )
        stmt = (
            select(Portfolio.id, Portfolio.user_id)
            .outerjoin(last_synced, last_synced.c.portfolio_id == Portfolio.id)
            .where(has_activity)
            .order_by(last_synced.c.last_synced.asc().nulls_first(), Portfolio.created_at)
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).all()
        return [PortfolioRef(id=row.id, user_id=row.user_id) for row in rows]


__all__ = [
    "HistoryStore",
    "InMemoryHistoryStore",
    "PortfolioRef",
    "SqlHistoryStore",
]
