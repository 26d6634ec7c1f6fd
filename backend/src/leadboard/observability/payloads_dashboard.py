# backend/src/leadboard/observability/payloads_dashboard.py
from __future__ import annotations
from typing import Optional
from pydantic import BaseModel, Field
from datetime import datetime

class BatchSkipped(BaseModel):
    event_type: str = Field(..., description="SUBMISSION | CONSENSUS_RESULT")
    offset: int = Field(..., ge=0)
    consecutive_failures: int = Field(..., ge=1)
    error: str
    ts: Optional[datetime] = None

class SnapshotUnavailable(BaseModel):
    error: Optional[str] = Field(default=None, description="Mensaje del proveedor (si lo hubo)")
    ts: Optional[datetime] = None

class CacheRefreshCompleted(BaseModel):
    dataset: str
    window: int = Field(..., ge=0)
    duracion_ms: int = Field(..., ge=0)
    ts: Optional[datetime] = None

class CacheRefreshFailed(BaseModel):
    dataset: str
    window: int = Field(..., ge=0)
    error: str
    ts: Optional[datetime] = None

class AggregationCompleted(BaseModel):
    hours: int = Field(..., ge=0)
    n_records: int = Field(..., ge=0)
    skipped_batches: int = Field(0, ge=0)
    duracion_ms: int = Field(..., ge=0)
    snapshot_available: bool
    ts: Optional[datetime] = None
