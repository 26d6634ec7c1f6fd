# backend/src/leadboard/observability/logging_context.py
"""
Correlation-id de logging.

- ``correlation_id_var`` guarda el cid del request (lo setea el middleware) o
  del refresh en background (``refresh:<dataset>:<hours>``).
- :class:`CorrelationIdLogFilter` y :func:`install_logrecord_factory` garantizan
  que todo LogRecord tenga ``correlation_id`` para el formatter.

Las tareas creadas con ``asyncio.create_task`` copian el contexto del creador;
por eso el cache envuelve cada refresh en :func:`correlation_scope` con un cid
propio en vez de heredar el del request que lo disparó.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator, Optional

correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="-")


def set_correlation_id(cid: Optional[str]) -> None:
    correlation_id_var.set((cid or "").strip() or "-")


def get_correlation_id() -> str:
    """Obtiene el correlation_id actual del contexto."""
    return correlation_id_var.get()


@contextmanager
def correlation_scope(cid: str) -> Iterator[str]:
    """Fija ``cid`` durante el bloque y restaura el valor previo al salir."""
    token = correlation_id_var.set(cid)
    try:
        yield cid
    finally:
        correlation_id_var.reset(token)


def background_correlation_id(dataset: str, window: int) -> str:
    return f"refresh:{dataset}:{window}"


class CorrelationIdLogFilter(logging.Filter):
    """Asegura ``record.correlation_id`` (usa el ContextVar si falta)."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "correlation_id", None):
            record.correlation_id = correlation_id_var.get()
        return True


_FACTORY_INSTALLED = False


def install_logrecord_factory() -> None:
    """
    Instala (una sola vez) una LogRecordFactory que inyecta ``correlation_id``
    desde el ContextVar. Con la factory instalada, ``extra={"correlation_id": ...}``
    lanza KeyError en ``makeRecord``; para loguear con otro cid usar
    :func:`correlation_scope`.
    """
    global _FACTORY_INSTALLED
    if _FACTORY_INSTALLED:
        return
    old_factory = logging.getLogRecordFactory()

    def record_factory(*args, **kwargs):
        record = old_factory(*args, **kwargs)
        record.correlation_id = correlation_id_var.get() or "-"
        return record

    logging.setLogRecordFactory(record_factory)
    _FACTORY_INSTALLED = True


__all__ = [
    "correlation_id_var",
    "set_correlation_id",
    "get_correlation_id",
    "correlation_scope",
    "background_correlation_id",
    "CorrelationIdLogFilter",
    "install_logrecord_factory",
]
