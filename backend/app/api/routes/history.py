"""Portfolio history sync and performance endpoints."""

from __future__ import annotations

from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException, Query, status

from app.api.dependencies.history import (
    InternalAuth,
    RequestContext,
    get_app_settings,
    get_history_store,
    get_price_source,
    get_request_context,
    get_sync_locks,
)
from app.config import AppSettings
from app.schemas import (
    BatchSyncResultSchema,
    PerformancePointSchema,
    PerformanceResponse,
    SyncResultSchema,
)
from app.services.history_store import HistoryStore, PortfolioRef
from app.services.history_sync import (
    HistorySyncError,
    PortfolioSyncLocks,
    current_day,
    sync_all_portfolios,
    sync_portfolio_history,
)
from app.services.performance_view import build_performance_series, period_start
from app.services.price_cache import PriceSource

router = APIRouter()


async def _owned_portfolio(store: HistoryStore, portfolio_id: str, context: RequestContext) -> PortfolioRef:
    ref = await store.get_portfolio(portfolio_id)
    if ref is None or ref.user_id != context.user_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Portfolio not found")
    return ref


@router.post("/portfolios/{portfolio_id}/sync", response_model=SyncResultSchema)
async def post_portfolio_sync(
    portfolio_id: str,
    context: RequestContext = Depends(get_request_context),
    store: HistoryStore = Depends(get_history_store),
    prices: PriceSource = Depends(get_price_source),
    locks: PortfolioSyncLocks = Depends(get_sync_locks),
    settings: AppSettings = Depends(get_app_settings),
) -> SyncResultSchema:
    ref = await _owned_portfolio(store, portfolio_id, context)
    try:
        result = await sync_portfolio_history(
            ref.id,
            ref.user_id,
            store=store,
            prices=prices,
            settings=settings,
            locks=locks,
        )
    except HistorySyncError as exc:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={"step": exc.step, "message": str(exc)},
        ) from exc
    return SyncResultSchema(**asdict(result))


@router.post("/sync-all", response_model=BatchSyncResultSchema, dependencies=[InternalAuth])
async def post_sync_all(
    store: HistoryStore = Depends(get_history_store),
    prices: PriceSource = Depends(get_price_source),
    locks: PortfolioSyncLocks = Depends(get_sync_locks),
    settings: AppSettings = Depends(get_app_settings),
) -> BatchSyncResultSchema:
    try:
        batch = await sync_all_portfolios(store=store, prices=prices, settings=settings, locks=locks)
    except HistorySyncError as exc:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={"step": exc.step, "message": str(exc)},
        ) from exc
    return BatchSyncResultSchema.model_validate(batch)


@router.get("/portfolios/{portfolio_id}/performance", response_model=PerformanceResponse)
async def get_performance(
    portfolio_id: str,
    period: str = Query(default="1Y"),
    context: RequestContext = Depends(get_request_context),
    store: HistoryStore = Depends(get_history_store),
    settings: AppSettings = Depends(get_app_settings),
) -> PerformanceResponse:
    try:
        start = period_start(period, current_day(settings.timezone))
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    ref = await _owned_portfolio(store, portfolio_id, context)
    entries = await store.list_history(ref.id, start=start, user_id=ref.user_id)
    points = [PerformancePointSchema.model_validate(p) for p in build_performance_series(entries)]
    return PerformanceResponse(
        portfolio_id=portfolio_id,
        period=period.upper(),
        points=points,
        message=None if points else "No history found. Try performing a sync.",
    )
