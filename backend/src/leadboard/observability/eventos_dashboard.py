# backend/src/leadboard/observability/eventos_dashboard.py
"""
Constantes y helpers para eventos del dashboard.
Estandarizan nombres y payloads (validados con Pydantic) antes de publicarlos
en el bus. Todos aceptan ``bus=`` para poder aislarlos en tests.
"""

from __future__ import annotations

from typing import Optional
from datetime import datetime, timezone

from .bus_eventos import EventBus, publicador
from .payloads_dashboard import (
    AggregationCompleted,
    BatchSkipped,
    CacheRefreshCompleted,
    CacheRefreshFailed,
    SnapshotUnavailable,
)

# Nombres canónicos de eventos
EV_STORE_BATCH_SKIPPED    = "store.batch_skipped"
EV_SNAPSHOT_UNAVAILABLE   = "snapshot.unavailable"
EV_CACHE_REFRESH_DONE     = "cache.refresh_completed"
EV_CACHE_REFRESH_FAILED   = "cache.refresh_failed"
EV_AGGREGATION_COMPLETED  = "aggregation.completed"

ALL_TOPICS = (
    EV_STORE_BATCH_SKIPPED,
    EV_SNAPSHOT_UNAVAILABLE,
    EV_CACHE_REFRESH_DONE,
    EV_CACHE_REFRESH_FAILED,
    EV_AGGREGATION_COMPLETED,
)


def _now_utc() -> datetime:
    """Datetime actual en UTC con tzinfo."""
    return datetime.now(timezone.utc)


def emit_batch_skipped(
    event_type: str,
    offset: int,
    consecutive_failures: int,
    error: str,
    *,
    bus: Optional[EventBus] = None,
) -> None:
    """
    Emite ``store.batch_skipped``.
    - event_type: tipo de evento que se estaba paginando.
    - offset: offset del batch descartado.
    - consecutive_failures: fallos seguidos incluyendo este.
    """
    payload = BatchSkipped(
        event_type=event_type,
        offset=offset,
        consecutive_failures=consecutive_failures,
        error=error,
        ts=_now_utc(),
    ).model_dump(mode="json", exclude_none=True)
    publicador(EV_STORE_BATCH_SKIPPED, payload, bus)


def emit_snapshot_unavailable(error: Optional[str], *, bus: Optional[EventBus] = None) -> None:
    payload = SnapshotUnavailable(error=error, ts=_now_utc()).model_dump(
        mode="json", exclude_none=True
    )
    publicador(EV_SNAPSHOT_UNAVAILABLE, payload, bus)


def emit_refresh_completed(
    dataset: str, window: int, duracion_ms: int, *, bus: Optional[EventBus] = None
) -> None:
    payload = CacheRefreshCompleted(
        dataset=dataset, window=window, duracion_ms=max(0, duracion_ms), ts=_now_utc()
    ).model_dump(mode="json", exclude_none=True)
    publicador(EV_CACHE_REFRESH_DONE, payload, bus)


def emit_refresh_failed(
    dataset: str, window: int, error: str, *, bus: Optional[EventBus] = None
) -> None:
    """
    Emite ``cache.refresh_failed``. El error se reporta como texto corto;
    el traceback completo queda en el log del cache.
    """
    payload = CacheRefreshFailed(
        dataset=dataset, window=window, error=error[:200], ts=_now_utc()
    ).model_dump(mode="json", exclude_none=True)
    publicador(EV_CACHE_REFRESH_FAILED, payload, bus)


def emit_aggregation_completed(
    hours: int,
    n_records: int,
    duracion_ms: int,
    *,
    skipped_batches: int = 0,
    snapshot_available: bool = False,
    bus: Optional[EventBus] = None,
) -> None:
    payload = AggregationCompleted(
        hours=hours,
        n_records=n_records,
        skipped_batches=skipped_batches,
        duracion_ms=max(0, duracion_ms),
        snapshot_available=snapshot_available,
        ts=_now_utc(),
    ).model_dump(mode="json", exclude_none=True)
    publicador(EV_AGGREGATION_COMPLETED, payload, bus)


__all__ = [
    "EV_STORE_BATCH_SKIPPED",
    "EV_SNAPSHOT_UNAVAILABLE",
    "EV_CACHE_REFRESH_DONE",
    "EV_CACHE_REFRESH_FAILED",
    "EV_AGGREGATION_COMPLETED",
    "ALL_TOPICS",
    "emit_batch_skipped",
    "emit_snapshot_unavailable",
    "emit_refresh_completed",
    "emit_refresh_failed",
    "emit_aggregation_completed",
]
