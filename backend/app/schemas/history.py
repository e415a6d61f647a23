"""Pydantic schemas for history sync and performance responses."""

from __future__ import annotations

from datetime import date

from pydantic import BaseModel, ConfigDict, Field


class SyncResultSchema(BaseModel):
    success: bool
    message: str = Field(..., examples=["Synced 12 days of history"])
    days_synced: int = 0

    model_config = ConfigDict(from_attributes=True)


class BatchSyncItemSchema(BaseModel):
    portfolio_id: str
    success: bool
    message: str
    days_synced: int = 0
    step: str | None = None

    model_config = ConfigDict(from_attributes=True)


class BatchSyncResultSchema(BaseModel):
    synced: int
    failed: int
    details: list[BatchSyncItemSchema]

    model_config = ConfigDict(from_attributes=True)


class PerformancePointSchema(BaseModel):
    date: date
    portfolio_pct: float
    benchmark_pct: float
    value: float

    model_config = ConfigDict(from_attributes=True)


class PerformanceResponse(BaseModel):
    portfolio_id: str
    period: str = Field(..., examples=["1Y"])
    points: list[PerformancePointSchema]
    message: str | None = None

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "portfolio_id": "4c7e0a8e-2f1b-4f52-9a57-6d1f4d7f1e11",
                "period": "1M",
                "points": [
                    {"date": "2024-09-10", "portfolio_pct": 0.0, "benchmark_pct": 0.0, "value": 1000.0},
                    {"date": "2024-09-11", "portfolio_pct": 1.2, "benchmark_pct": 0.4, "value": 1012.0},
                ],
            }
        }
    )


__all__ = [
    "BatchSyncItemSchema",
    "BatchSyncResultSchema",
    "PerformancePointSchema",
    "PerformanceResponse",
    "SyncResultSchema",
]
