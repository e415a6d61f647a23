"""Incremental history sync tests against in-memory collaborators."""

from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import date, datetime, timedelta, timezone

import pytest

from app.config import AppSettings
from app.services.history_store import InMemoryHistoryStore
from app.services.history_sync import (
    NO_ACTIVITY_MESSAGE,
    NO_GAPS_MESSAGE,
    UP_TO_DATE_MESSAGE,
    HistorySyncError,
    PortfolioSyncLocks,
    sync_all_portfolios,
    sync_portfolio_history,
    write_history,
)
from app.services.ledger import CashRecord, TradeRecord
from app.services.price_cache import InMemoryPriceSource, PricePoint

START = date(2024, 5, 1)


def _day(offset: int) -> date:
    return START + timedelta(days=offset)


def _settings(**overrides) -> AppSettings:
    values = {"benchmark_symbol": "SPY", "base_currency": "USD", "price_backfill_days": 7}
    values.update(overrides)
    return AppSettings(**values)


def _prices() -> InMemoryPriceSource:
    # Weekdays only so every run leans on the backfill
    closes = {}
    bench = {}
    for offset in range(0, 30):
        day = _day(offset)
        if day.weekday() < 5:
            closes[day] = 100.0 + offset
            bench[day] = 5000.0 + 10 * offset
    return InMemoryPriceSource(
        {"AAPL": closes, "SAP": {d: v * 2 for d, v in closes.items()}},
        fx_rates={"EUR": {d: 0.9 for d in closes}},
        benchmark=bench,
    )


def _store() -> InMemoryHistoryStore:
    store = InMemoryHistoryStore()
    store.add_portfolio("p1", "u1")
    store.add_cash_transaction("p1", CashRecord(currency="USD", amount=5000, type="DEPOSIT", date=_day(0)))
    store.add_trade("p1", TradeRecord(ticker="AAPL", action="BUY", quantity=10, price=100, date=_day(0)))
    store.add_cash_transaction("p1", CashRecord(currency="EUR", amount=900, type="DEPOSIT", date=_day(3)))
    store.add_trade(
        "p1",
        TradeRecord(ticker="SAP", action="BUY", quantity=2, price=210, currency="EUR", date=_day(5)),
    )
    store.add_trade("p1", TradeRecord(ticker="AAPL", action="SELL", quantity=4, price=112, date=_day(12)))
    store.add_cash_transaction(
        "p1", CashRecord(currency="USD", amount=-1000, type="WITHDRAWAL", date=_day(15))
    )
    return store


_NUMERIC_FIELDS = (
    "total_value",
    "cost_basis",
    "realized_pnl",
    "daily_return",
    "cumulative_twr",
    "bench_cumulative",
)


def _numbers(store: InMemoryHistoryStore) -> list[tuple]:
    return [
        (day, *(getattr(entry, name) for name in _NUMERIC_FIELDS))
        for (_, day), entry in sorted(store.history.items())
    ]


def _assert_same_history(left: InMemoryHistoryStore, right: InMemoryHistoryStore) -> None:
    left_rows, right_rows = _numbers(left), _numbers(right)
    assert [row[0] for row in left_rows] == [row[0] for row in right_rows]
    for a, b in zip(left_rows, right_rows):
        assert a[1:] == pytest.approx(b[1:])


@pytest.mark.asyncio
async def test_first_sync_writes_one_row_per_day_from_inception():
    store = _store()

    result = await sync_portfolio_history(
        "p1", "u1", store=store, prices=_prices(), settings=_settings(), today=_day(9)
    )

    assert result.success
    assert result.days_synced == 10
    assert result.message == "Synced 10 days of history"
    assert sorted(day for _, day in store.history) == [_day(i) for i in range(10)]
    assert all(entry.user_id == "u1" for entry in store.history.values())


@pytest.mark.asyncio
async def test_second_sync_on_same_day_is_a_no_op():
    store = _store()
    settings = _settings()

    await sync_portfolio_history("p1", "u1", store=store, prices=_prices(), settings=settings, today=_day(9))
    before = _numbers(store)
    again = await sync_portfolio_history(
        "p1", "u1", store=store, prices=_prices(), settings=settings, today=_day(9)
    )

    assert again.message == UP_TO_DATE_MESSAGE
    assert again.days_synced == 0
    assert _numbers(store) == before


@pytest.mark.asyncio
async def test_rewriting_the_same_rows_leaves_history_unchanged():
    store = _store()
    await sync_portfolio_history("p1", "u1", store=store, prices=_prices(), settings=_settings(), today=_day(4))
    entries = await store.list_history("p1")
    before = _numbers(store)

    result = await write_history(store, entries)

    assert result.days_synced == len(entries)
    assert _numbers(store) == before


@pytest.mark.asyncio
async def test_resumed_sync_matches_full_recompute():
    settings = _settings()
    incremental = _store()
    full = _store()

    for today in (_day(3), _day(8), _day(16), _day(20)):
        await sync_portfolio_history(
            "p1", "u1", store=incremental, prices=_prices(), settings=settings, today=today
        )
    await sync_portfolio_history("p1", "u1", store=full, prices=_prices(), settings=settings, today=_day(20))

    _assert_same_history(incremental, full)


@pytest.mark.asyncio
async def test_backdated_activity_rewinds_history():
    settings = _settings()
    store = _store()
    await sync_portfolio_history("p1", "u1", store=store, prices=_prices(), settings=settings, today=_day(10))

    late_trade = TradeRecord(
        ticker="AAPL",
        action="BUY",
        quantity=5,
        price=102,
        date=_day(2),
        created_at=datetime.now(timezone.utc) + timedelta(minutes=5),
    )
    store.add_trade("p1", late_trade)
    result = await sync_portfolio_history(
        "p1", "u1", store=store, prices=_prices(), settings=settings, today=_day(10)
    )

    assert result.days_synced == 9
    reference = _store()
    reference.add_trade("p1", late_trade)
    await sync_portfolio_history("p1", "u1", store=reference, prices=_prices(), settings=settings, today=_day(10))
    _assert_same_history(store, reference)


@pytest.mark.asyncio
async def test_backdated_activity_is_ignored_when_rewind_disabled():
    settings = _settings(history_rewind_on_late_activity=False)
    store = _store()
    await sync_portfolio_history("p1", "u1", store=store, prices=_prices(), settings=settings, today=_day(10))
    before = _numbers(store)

    store.add_cash_transaction(
        "p1",
        CashRecord(
            currency="USD",
            amount=300,
            type="DEPOSIT",
            date=_day(1),
            created_at=datetime.now(timezone.utc) + timedelta(minutes=5),
        ),
    )
    result = await sync_portfolio_history(
        "p1", "u1", store=store, prices=_prices(), settings=settings, today=_day(10)
    )

    assert result.message == NO_GAPS_MESSAGE
    assert _numbers(store) == before


@pytest.mark.asyncio
async def test_empty_ledger_reports_no_activity():
    store = InMemoryHistoryStore()
    store.add_portfolio("empty", "u1")

    result = await sync_portfolio_history(
        "empty", "u1", store=store, prices=_prices(), settings=_settings(), today=_day(3)
    )

    assert result.success
    assert result.message == NO_ACTIVITY_MESSAGE
    assert store.history == {}


@pytest.mark.asyncio
async def test_history_ahead_of_today_reports_no_gaps():
    store = _store()
    settings = _settings()
    await sync_portfolio_history("p1", "u1", store=store, prices=_prices(), settings=settings, today=_day(6))

    result = await sync_portfolio_history(
        "p1", "u1", store=store, prices=_prices(), settings=settings, today=_day(4)
    )

    assert result.message == UP_TO_DATE_MESSAGE


@pytest.mark.asyncio
async def test_ledger_load_failure_names_the_step():
    class BrokenStore(InMemoryHistoryStore):
        async def load_trades(self, portfolio_id):
            raise ConnectionError("database unavailable")

    store = BrokenStore()

    with pytest.raises(HistorySyncError) as excinfo:
        await sync_portfolio_history(
            "p1", "u1", store=store, prices=_prices(), settings=_settings(), today=_day(3)
        )

    assert excinfo.value.step == "load_trades"


@pytest.mark.asyncio
async def test_write_failure_names_the_step():
    class ReadOnlyStore(InMemoryHistoryStore):
        async def upsert_history_entries(self, entries):
            raise PermissionError("read only")

    store = ReadOnlyStore()
    store.add_cash_transaction("p1", CashRecord(currency="USD", amount=10, type="DEPOSIT", date=_day(0)))

    with pytest.raises(HistorySyncError) as excinfo:
        await sync_portfolio_history(
            "p1", "u1", store=store, prices=_prices(), settings=_settings(), today=_day(2)
        )

    assert excinfo.value.step == "upsert_history"
    assert store.history == {}


@pytest.mark.asyncio
async def test_price_outage_does_not_abort_the_sync():
    class DownSource(InMemoryPriceSource):
        async def get_historical_prices(self, symbol, start, end):
            raise TimeoutError("provider timeout")

        async def get_historical_benchmark(self, start, end):
            raise TimeoutError("provider timeout")

    store = _store()

    result = await sync_portfolio_history(
        "p1", "u1", store=store, prices=DownSource(), settings=_settings(), today=_day(2)
    )

    assert result.days_synced == 3
    first = store.history[("p1", _day(0))]
    # Only the remaining cash is valued
    assert first.total_value == pytest.approx(4000.0)
    assert first.bench_cumulative == 0.0


@pytest.mark.asyncio
async def test_concurrent_syncs_of_one_portfolio_are_serialised():
    store = _store()
    settings = _settings()
    locks = PortfolioSyncLocks()

    results = await asyncio.gather(
        *(
            sync_portfolio_history(
                "p1", "u1", store=store, prices=_prices(), settings=settings, locks=locks, today=_day(6)
            )
            for _ in range(2)
        )
    )

    messages = sorted(result.message for result in results)
    assert messages == [UP_TO_DATE_MESSAGE, "Synced 7 days of history"]


@pytest.mark.asyncio
async def test_lock_is_released_from_registry_after_sync():
    store = _store()
    locks = PortfolioSyncLocks()

    await sync_portfolio_history(
        "p1", "u1", store=store, prices=_prices(), settings=_settings(), locks=locks, today=_day(2)
    )

    assert len(locks._locks) == 0


@pytest.mark.asyncio
async def test_record_saved_during_sync_is_picked_up_next_time():
    class BusyStore(InMemoryHistoryStore):
        pending: TradeRecord | None = None

        async def load_trades(self, portfolio_id):
            trades = await super().load_trades(portfolio_id)
            if self.pending is not None:
                # Lands after the ledger snapshot was taken
                self.add_trade(portfolio_id, replace(self.pending, created_at=datetime.now(timezone.utc)))
                self.pending = None
            return trades

    settings = _settings()
    store = BusyStore()
    store.add_portfolio("p1", "u1")
    store.add_cash_transaction("p1", CashRecord(currency="USD", amount=1000, type="DEPOSIT", date=_day(0)))
    store.pending = TradeRecord(ticker="AAPL", action="BUY", quantity=5, price=102, date=_day(2))

    await sync_portfolio_history("p1", "u1", store=store, prices=_prices(), settings=settings, today=_day(6))
    assert store.history[("p1", _day(6))].total_value == pytest.approx(1000.0)

    again = await sync_portfolio_history(
        "p1", "u1", store=store, prices=_prices(), settings=settings, today=_day(6)
    )

    assert again.message != UP_TO_DATE_MESSAGE
    assert again.days_synced == 5
    # 490 cash left plus 5 shares at the day-6 close of 106
    assert store.history[("p1", _day(6))].total_value == pytest.approx(490.0 + 5 * 106.0)


@pytest.mark.asyncio
async def test_sync_all_records_failures_per_portfolio():
    class PartlyBrokenStore(InMemoryHistoryStore):
        async def load_cash_transactions(self, portfolio_id):
            if portfolio_id == "broken":
                raise RuntimeError("corrupt ledger")
            return await super().load_cash_transactions(portfolio_id)

    store = PartlyBrokenStore()
    store.add_portfolio("p1", "u1")
    store.add_portfolio("broken", "u2")
    store.add_portfolio("idle", "u3")
    store.add_cash_transaction("p1", CashRecord(currency="USD", amount=100, type="DEPOSIT", date=_day(0)))
    store.add_cash_transaction("broken", CashRecord(currency="USD", amount=50, type="DEPOSIT", date=_day(0)))

    batch = await sync_all_portfolios(store=store, prices=_prices(), settings=_settings(), today=_day(1))

    assert batch.synced == 1
    assert batch.failed == 1
    by_id = {item.portfolio_id: item for item in batch.details}
    assert by_id["p1"].days_synced == 2
    assert by_id["broken"].success is False
    assert by_id["broken"].step == "load_cash_transactions"
    # Portfolios without ledger activity are not picked up by the batch
    assert "idle" not in by_id


@pytest.mark.asyncio
async def test_sync_all_survives_unexpected_errors():
    class GarbledSource(InMemoryPriceSource):
        async def get_historical_prices(self, symbol, start, end):
            if symbol == "BAD":
                return [PricePoint(start, "not a number")]
            return await super().get_historical_prices(symbol, start, end)

    store = InMemoryHistoryStore()
    store.add_portfolio("garbled", "u1")
    store.add_portfolio("p2", "u2")
    store.add_trade("garbled", TradeRecord(ticker="BAD", action="BUY", quantity=1, price=10, date=_day(0)))
    store.add_cash_transaction("p2", CashRecord(currency="USD", amount=100, type="DEPOSIT", date=_day(0)))

    batch = await sync_all_portfolios(
        store=store, prices=GarbledSource(), settings=_settings(), today=_day(1)
    )

    assert batch.synced == 1
    assert batch.failed == 1
    by_id = {item.portfolio_id: item for item in batch.details}
    assert by_id["garbled"].success is False
    assert by_id["garbled"].step == "compute"
    assert by_id["p2"].days_synced == 2


@pytest.mark.asyncio
async def test_batch_limit_rotates_through_stalest_portfolios():
    store = InMemoryHistoryStore()
    for pid in ("p1", "p2", "p3"):
        store.add_portfolio(pid, "u1")
        store.add_cash_transaction(pid, CashRecord(currency="USD", amount=100, type="DEPOSIT", date=_day(0)))
    settings = _settings(history_sync_batch_limit=1)

    synced = []
    for offset in range(1, 5):
        batch = await sync_all_portfolios(
            store=store, prices=_prices(), settings=settings, today=_day(offset)
        )
        synced.extend(item.portfolio_id for item in batch.details)

    assert synced == ["p1", "p2", "p3", "p1"]
