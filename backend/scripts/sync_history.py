"""Sync stored portfolio history from the command line."""

from __future__ import annotations

import argparse
import asyncio

from app.config import get_settings
from app.core.logging import setup_logging
from app.db.init import init_database
from app.db.session import get_session_factory
from app.providers.alpha_vantage import get_alpha_vantage_client
from app.services.history_store import SqlHistoryStore
from app.services.history_sync import sync_all_portfolios, sync_portfolio_history
from app.services.market_data import AlphaVantagePriceSource


async def _run(portfolio_id: str, user_id: str | None, sync_all: bool) -> None:
    settings = get_settings()
    await init_database()
    store = SqlHistoryStore(get_session_factory())
    client = get_alpha_vantage_client()
    prices = AlphaVantagePriceSource(client, benchmark_symbol=settings.benchmark_symbol)
    try:
        if sync_all:
            batch = await sync_all_portfolios(store=store, prices=prices, settings=settings)
            print(f"Synced {batch.synced} portfolios, {batch.failed} failed")
            for item in batch.details:
                status = "ok" if item.success else f"failed at {item.step}"
                print(f"  {item.portfolio_id}: {status} - {item.message}")
        else:
            ref = await store.get_portfolio(portfolio_id)
            if ref is None or (user_id is not None and ref.user_id != user_id):
                raise SystemExit(f"Portfolio {portfolio_id} not found")
            result = await sync_portfolio_history(
                ref.id, ref.user_id, store=store, prices=prices, settings=settings
            )
            print(result.message)
    finally:
        await client.aclose()


def main() -> None:
    parser = argparse.ArgumentParser(description="Sync daily portfolio history")
    parser.add_argument("--portfolio-id")
    parser.add_argument("--user-id", help="Only sync when the portfolio belongs to this user")
    parser.add_argument("--all", action="store_true", dest="sync_all")
    args = parser.parse_args()
    if not args.sync_all and not args.portfolio_id:
        parser.error("either --all or --portfolio-id is required")
    setup_logging()
    asyncio.run(_run(args.portfolio_id, args.user_id, args.sync_all))


if __name__ == "__main__":
    main()
