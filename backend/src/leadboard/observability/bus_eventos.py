# backend/src/leadboard/observability/bus_eventos.py
from __future__ import annotations
from collections import Counter
from typing import Any, Callable, Dict, List
from dataclasses import dataclass
import time, logging

from .logging_context import get_correlation_id

# Evento base para store.*, cache.*, snapshot.*, aggregation.*
@dataclass
class Evento:
    name: str              # e.g., "cache.refresh_failed"
    ts: float              # epoch seconds
    correlation_id: str    # cid del request o del refresh en background
    payload: Dict[str, Any]

class EventBus:
    """Bus simple in-memory (pub/sub) con entrega sin garantías.

    Además de entregar eventos, lleva un contador por tópico. Ese contador es
    la métrica que expone ``GET /dashboard/status`` (p.ej. cuántos batches del
    store se saltaron por fallos consecutivos).
    """
    def __init__(self) -> None:
        self._subs: Dict[str, List[Callable[[Evento], None]]] = {}
        self._counts: Counter = Counter()
        self._log = logging.getLogger("leadboard.events.bus")

    def subscribe(self, topic: str, handler: Callable[[Evento], None]) -> None:
        """Registra un handler para un tópico concreto (e.g., 'store.batch_skipped')."""
        self._subs.setdefault(topic, []).append(handler)
        self._log.debug("Suscrito handler a topic=%s: %s",
                        topic, getattr(handler, "__name__", repr(handler)))

    def publish(self, topic: str, payload: Dict[str, Any]) -> Evento:
        """Publica un evento al tópico dado y entrega a todos los suscriptores."""
        evt = Evento(
            name=topic,
            ts=time.time(),
            correlation_id=payload.get("correlation_id") or get_correlation_id(),
            payload=payload,
        )
        self._counts[topic] += 1

        for handler in self._subs.get(topic, []):
            try:
                handler(evt)
            except Exception as e:
                # Nunca romper el flujo de la app por el destino de observabilidad
                self._log.warning("Handler error for topic=%s: %s", topic, e)
        return evt

    def counts(self) -> Dict[str, int]:
        """Snapshot de contadores por tópico."""
        return dict(self._counts)

    def reset_counts(self) -> None:
        self._counts.clear()

# Bus por defecto del proceso
BUS = EventBus()

def publicador(event: str, payload: Dict[str, Any], bus: EventBus | None = None) -> Evento:
    """Punto único para publicar eventos desde el dominio."""
    return (bus or BUS).publish(event, payload)

__all__ = ["Evento", "EventBus", "BUS", "publicador"]
