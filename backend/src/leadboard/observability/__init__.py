# backend/src/leadboard/observability/__init__.py
"""
Paquete de observabilidad.
Exporta el bus de eventos y los helpers de eventos del dashboard.
"""

from .bus_eventos import BUS, EventBus, Evento, publicador
from .eventos_dashboard import (
    EV_STORE_BATCH_SKIPPED,
    EV_SNAPSHOT_UNAVAILABLE,
    EV_CACHE_REFRESH_DONE,
    EV_CACHE_REFRESH_FAILED,
    EV_AGGREGATION_COMPLETED,
    emit_batch_skipped,
    emit_snapshot_unavailable,
    emit_refresh_completed,
    emit_refresh_failed,
    emit_aggregation_completed,
)

__all__ = [
    "BUS",
    "EventBus",
    "Evento",
    "publicador",
    "EV_STORE_BATCH_SKIPPED",
    "EV_SNAPSHOT_UNAVAILABLE",
    "EV_CACHE_REFRESH_DONE",
    "EV_CACHE_REFRESH_FAILED",
    "EV_AGGREGATION_COMPLETED",
    "emit_batch_skipped",
    "emit_snapshot_unavailable",
    "emit_refresh_completed",
    "emit_refresh_failed",
    "emit_aggregation_completed",
]
