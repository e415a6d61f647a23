"""Incremental portfolio history sync.

Loads the ledger and the last stored history row, works out where to resume,
fetches the prices the gap needs, walks the gap day by day and upserts the
resulting rows. Only the loads and the price fetches run concurrently; the
daily walk is sequential.
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Awaitable, Sequence, TypeVar
from zoneinfo import ZoneInfo

from opentelemetry import trace

from app.config import AppSettings, get_settings

from .history_store import HistoryStore
from .ledger import HistoryEntry, group_by_day, sort_by_date
from .performance import compute_history
from .price_cache import PriceSource, build_price_cache
from .sync_state import find_late_activity, is_up_to_date, resolve_sync_state

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

_T = TypeVar("_T")

NO_ACTIVITY_MESSAGE = "No activity found"
UP_TO_DATE_MESSAGE = "History already up to date"
NO_GAPS_MESSAGE = "No new gaps to sync"


class HistorySyncError(RuntimeError):
    """A step the sync cannot recover from; ``step`` names it."""

    def __init__(self, step: str, message: str):
        super().__init__(f"{step} failed: {message}")
        self.step = step


@dataclass
class SyncResult:
    success: bool
    message: str
    days_synced: int = 0


@dataclass
class BatchSyncItem:
    portfolio_id: str
    success: bool
    message: str
    days_synced: int = 0
    step: str | None = None


@dataclass
class BatchSyncResult:
    synced: int = 0
    failed: int = 0
    details: list[BatchSyncItem] = field(default_factory=list)


class PortfolioSyncLocks:
    """One asyncio lock per portfolio so syncs of the same portfolio never overlap.

    Locks are held weakly and disappear once no sync holds or awaits them.
    """

    def __init__(self) -> None:
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    def lock_for(self, portfolio_id: str) -> asyncio.Lock:
        lock = self._locks.get(portfolio_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[portfolio_id] = lock
        return lock


def current_day(timezone_name: str) -> date:
    return datetime.now(ZoneInfo(timezone_name)).date()


async def _fatal_step(step: str, awaitable: Awaitable[_T]) -> _T:
    try:
        return await awaitable
    except Exception as exc:
        logger.exception("History sync step %s failed", step)
        raise HistorySyncError(step, str(exc)) from exc


async def write_history(store: HistoryStore, entries: Sequence[HistoryEntry]) -> SyncResult:
    """Upsert computed rows; re-running with the same rows is harmless."""

    if not entries:
        return SyncResult(success=True, message=NO_GAPS_MESSAGE)
    await _fatal_step("upsert_history", store.upsert_history_entries(entries))
    days = len(entries)
    return SyncResult(success=True, message=f"Synced {days} days of history", days_synced=days)


async def sync_portfolio_history(
    portfolio_id: str,
    user_id: str,
    *,
    store: HistoryStore,
    prices: PriceSource,
    settings: AppSettings | None = None,
    locks: PortfolioSyncLocks | None = None,
    today: date | None = None,
) -> SyncResult:
    """Bring the stored history of ``portfolio_id`` up to ``today``."""

    settings = settings or get_settings()
    if locks is None:
        return await _sync(portfolio_id, user_id, store=store, prices=prices, settings=settings, today=today)
    async with locks.lock_for(portfolio_id):
        return await _sync(portfolio_id, user_id, store=store, prices=prices, settings=settings, today=today)


async def _sync(
    portfolio_id: str,
    user_id: str,
    *,
    store: HistoryStore,
    prices: PriceSource,
    settings: AppSettings,
    today: date | None,
) -> SyncResult:
    today = today or current_day(settings.timezone)
    # Stamped before the ledger is read so records saved mid-sync count as late
    computed_at = datetime.now(timezone.utc)
    with tracer.start_as_current_span("portfolio_history.sync") as span:
        span.set_attribute("portfolio.id", portfolio_id)

        trades, cash_transactions, latest = await asyncio.gather(
            _fatal_step("load_trades", store.load_trades(portfolio_id)),
            _fatal_step("load_cash_transactions", store.load_cash_transactions(portfolio_id)),
            _fatal_step("load_latest_history", store.load_latest_history_entry(portfolio_id)),
        )
        if not trades and not cash_transactions:
            return SyncResult(success=True, message=NO_ACTIVITY_MESSAGE)
        trades = sort_by_date(trades)
        cash_transactions = sort_by_date(cash_transactions)

        late_day = find_late_activity(trades, cash_transactions, latest)
        if late_day is not None and settings.history_rewind_on_late_activity:
            logger.warning(
                "Ledger activity dated %s was entered after history for %s was computed; "
                "rewinding",
                late_day,
                portfolio_id,
            )
            latest = await _fatal_step(
                "load_latest_history",
                store.load_latest_history_entry(portfolio_id, before=late_day),
            )
        elif is_up_to_date(latest, trades, cash_transactions, today):
            return SyncResult(success=True, message=UP_TO_DATE_MESSAGE)

        state = resolve_sync_state(trades, cash_transactions, latest)
        if state.first_day > today:
            return SyncResult(success=True, message=NO_GAPS_MESSAGE)
        span.set_attribute("history.first_day", state.first_day.isoformat())

        quote_currencies: dict[str, str] = {}
        for trade in trades:
            quote_currencies.setdefault(trade.ticker.upper(), trade.currency.upper())
        currencies = {tx.currency.upper() for tx in cash_transactions} | set(quote_currencies.values())

        cache = await build_price_cache(
            prices,
            tickers=quote_currencies.keys(),
            currencies=currencies,
            benchmark_symbol=settings.benchmark_symbol,
            base_currency=settings.base_currency,
            start=state.first_day,
            end=today,
            inception=state.inception,
            backfill_days=settings.price_backfill_days,
        )
        entries = compute_history(
            portfolio_id,
            state,
            group_by_day(trades, cash_transactions),
            cache,
            today=today,
            quote_currencies=quote_currencies,
            user_id=user_id,
            computed_at=computed_at,
        )
        result = await write_history(store, entries)
        span.set_attribute("history.days_synced", result.days_synced)
        logger.info("History sync for %s: %s", portfolio_id, result.message)
        return result


async def sync_all_portfolios(
    *,
    store: HistoryStore,
    prices: PriceSource,
    settings: AppSettings | None = None,
    locks: PortfolioSyncLocks | None = None,
    today: date | None = None,
) -> BatchSyncResult:
    """Sync every listed portfolio in turn; one failure does not stop the batch."""

    settings = settings or get_settings()
    portfolios = await _fatal_step(
        "list_portfolios", store.list_portfolios(limit=settings.history_sync_batch_limit)
    )
    batch = BatchSyncResult()
    for ref in portfolios:
        try:
            result = await sync_portfolio_history(
                ref.id,
                ref.user_id,
                store=store,
                prices=prices,
                settings=settings,
                locks=locks,
                today=today,
            )
        except HistorySyncError as exc:
            logger.error("Failed to sync portfolio %s: %s", ref.id, exc)
            batch.failed += 1
            batch.details.append(
                BatchSyncItem(portfolio_id=ref.id, success=False, message=str(exc), step=exc.step)
            )
            continue
        except Exception as exc:  # noqa: BLE001 - recorded per portfolio, the batch goes on
            logger.exception("Unexpected error syncing portfolio %s", ref.id)
            batch.failed += 1
            batch.details.append(
                BatchSyncItem(portfolio_id=ref.id, success=False, message=str(exc), step="compute")
            )
            continue
        batch.synced += 1
        batch.details.append(
            BatchSyncItem(
                portfolio_id=ref.id,
                success=result.success,
                message=result.message,
                days_synced=result.days_synced,
            )
        )
    return batch


__all__ = [
    "BatchSyncItem",
    "BatchSyncResult",
    "HistorySyncError",
    "NO_ACTIVITY_MESSAGE",
    "NO_GAPS_MESSAGE",
    "PortfolioSyncLocks",
    "SyncResult",
    "UP_TO_DATE_MESSAGE",
    "current_day",
    "sync_all_portfolios",
    "sync_portfolio_history",
    "write_history",
]
