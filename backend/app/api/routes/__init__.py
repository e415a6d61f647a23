"""Route registration helpers."""

from __future__ import annotations

from fastapi import APIRouter

from .history import router as history_router

api_router = APIRouter()
api_router.include_router(history_router, prefix="/history", tags=["history"])

__all__ = ["api_router"]
