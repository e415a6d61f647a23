"""Shared FastAPI dependencies for the history endpoints."""

from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass

from fastapi import Depends, Header, HTTPException, status

from app.config import AppSettings, get_settings
from app.db.session import get_session_factory
from app.providers.alpha_vantage import get_alpha_vantage_client
from app.services.history_store import HistoryStore, SqlHistoryStore
from app.services.history_sync import PortfolioSyncLocks
from app.services.market_data import AlphaVantagePriceSource
from app.services.price_cache import PriceSource

_sync_locks = PortfolioSyncLocks()


def get_app_settings() -> AppSettings:
    return get_settings()


def get_history_store() -> HistoryStore:
    return SqlHistoryStore(get_session_factory())


async def get_price_source(
    settings: AppSettings = Depends(get_app_settings),
) -> AsyncIterator[PriceSource]:
    client = get_alpha_vantage_client()
    try:
        yield AlphaVantagePriceSource(client, benchmark_symbol=settings.benchmark_symbol)
    finally:
        await client.aclose()


def get_sync_locks() -> PortfolioSyncLocks:
    return _sync_locks


def verify_internal_token(
    x_internal_token: str | None = Header(default=None),
    settings: AppSettings = Depends(get_app_settings),
) -> None:
    if settings.internal_auth_token is None:
        return
    if x_internal_token != settings.internal_auth_token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid internal token")


InternalAuth = Depends(verify_internal_token)


@dataclass
class RequestContext:
    user_id: str


def get_request_context(x_user_id: str | None = Header(default=None)) -> RequestContext:
    if not x_user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing user context")
    return RequestContext(user_id=x_user_id)


__all__ = [
    "InternalAuth",
    "RequestContext",
    "get_app_settings",
    "get_history_store",
    "get_price_source",
    "get_request_context",
    "get_sync_locks",
]
