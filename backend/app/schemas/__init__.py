"""Pydantic schema exports."""

from .history import (
    BatchSyncItemSchema,
    BatchSyncResultSchema,
    PerformancePointSchema,
    PerformanceResponse,
    SyncResultSchema,
)

__all__ = [
    "BatchSyncItemSchema",
    "BatchSyncResultSchema",
    "PerformancePointSchema",
    "PerformanceResponse",
    "SyncResultSchema",
]
