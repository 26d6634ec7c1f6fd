"""
Destino de observabilidad vía logging.

- Se suscribe al bus in-memory para los eventos del dashboard:
  - store.batch_skipped | snapshot.unavailable
  - cache.refresh_completed | cache.refresh_failed
  - aggregation.completed
- Escribe cada evento en el logger ``leadboard.events`` con el correlation_id
  del evento (no el del contexto que lo entrega).

Idempotente por bus: llamar dos veces (p.ej. con --reload) no duplica
suscripciones.
"""

from __future__ import annotations

import logging
from typing import Optional, Set

from ..bus_eventos import BUS, EventBus, Evento
from ..logging_context import correlation_scope
from ..eventos_dashboard import ALL_TOPICS, EV_CACHE_REFRESH_FAILED, EV_STORE_BATCH_SKIPPED

logger = logging.getLogger("leadboard.events")

# Eventos que indican degradación se loguean en WARNING
_WARN_TOPICS = frozenset({EV_CACHE_REFRESH_FAILED, EV_STORE_BATCH_SKIPPED})

_WIRED: Set[int] = set()


def _to_log(evt: Evento) -> None:
    level = logging.WARNING if evt.name in _WARN_TOPICS else logging.INFO
    # extra={"correlation_id": ...} choca con la LogRecordFactory; se fija el contexto
    with correlation_scope(evt.correlation_id):
        logger.log(level, "%s %s", evt.name, evt.payload)


def wire_logging_destination(bus: Optional[EventBus] = None) -> bool:
    """
    Conecta una única vez el log handler al bus dado (default: ``BUS``).
    Devuelve ``True`` si realizó el wiring y ``False`` si ya estaba hecho.
    """
    target = bus or BUS
    if id(target) in _WIRED:
        return False

    for topic in ALL_TOPICS:
        target.subscribe(topic, _to_log)

    _WIRED.add(id(target))
    logger.info("Observability logging wired for topics: %s", ALL_TOPICS)
    return True
