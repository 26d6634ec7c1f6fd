"""leadboard.dashboard.cache

Cache in-process del dashboard con *stale-while-revalidate* y single-flight.

Estados por clave (derivados de la edad de la entrada)
-----------------------------------------------------
- ``EMPTY``: no hay entrada (o expiró y se desalojó al observarla).
- ``FRESH``: ``edad <= ttl`` (5 min por defecto).
- ``STALE``: ``ttl < edad <= max_stale`` (60 min por defecto).
- Con ``edad > max_stale`` la entrada se borra la próxima vez que se observa.

Concurrencia
------------
- Single-flight: ``_inflight`` mapea clave -> ``asyncio.Task`` del cómputo en
  curso. Todo caller que pida una clave con cómputo en curso espera esa misma
  tarea (con ``asyncio.shield`` para que cancelar a un caller no cancele el
  cómputo compartido). El marcador se quita dentro de la propia tarea, tanto
  si termina bien como si falla.
- Un hit STALE devuelve el dato viejo y, si no hay refresh en curso, agenda
  uno en background. Los refresh se registran por clave en ``_background``
  para poder esperarlos (``wait_background``) o cancelarlos (``aclose``).
- Un refresh fallido se loguea y publica ``cache.refresh_failed``; la entrada
  vieja sigue sirviéndose hasta expirar.

El cache es un objeto inyectable (uno por proceso, creado en el lifespan de la
app). ``clear()`` lo deja vacío para tests.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import Counter
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from ..observability.bus_eventos import EventBus
from ..observability.eventos_dashboard import emit_refresh_completed, emit_refresh_failed
from ..observability.logging_context import background_correlation_id, correlation_scope

logger = logging.getLogger(__name__)

Factory = Callable[[], Awaitable[Any]]

DEFAULT_TTL_S = 5 * 60
DEFAULT_MAX_STALE_S = 60 * 60


class CacheState(str, Enum):
    EMPTY = "EMPTY"
    FRESH = "FRESH"
    STALE = "STALE"


@dataclass(frozen=True)
class CacheKey:
    """Clave del cache: ``(dataset, ventana en horas)``."""

    dataset: str
    window: int = 0

    def __str__(self) -> str:
        return f"{self.dataset}_{self.window}"


@dataclass(frozen=True)
class CacheEntry:
    key: CacheKey
    payload: Any
    created_at: float


@dataclass(frozen=True)
class StaleResult:
    data: Any
    is_stale: bool


def _consume_exception(task: "asyncio.Task[Any]") -> None:
    # Evita "Task exception was never retrieved" si ningún caller quedó esperando
    if not task.cancelled():
        task.exception()


class DashboardCache:
    """
    Cache con TTL / máximo stale y coordinación de cómputos.

    Parameters
    ----------
    ttl_s : float
        Edad máxima para considerar la entrada FRESH.
    max_stale_s : float
        Edad máxima para servirla como STALE; después se desaloja.
    clock : callable
        Reloj monotónico en segundos (inyectable en tests).
    bus : EventBus, optional
        Bus donde publicar ``cache.refresh_*``.
    """

    def __init__(
        self,
        ttl_s: float = DEFAULT_TTL_S,
        max_stale_s: float = DEFAULT_MAX_STALE_S,
        *,
        clock: Callable[[], float] = time.monotonic,
        bus: Optional[EventBus] = None,
    ) -> None:
        if max_stale_s < ttl_s:
            raise ValueError("max_stale_s debe ser >= ttl_s")
        self.ttl_s = ttl_s
        self.max_stale_s = max_stale_s
        self._clock = clock
        self._bus = bus
        self._entries: Dict[CacheKey, CacheEntry] = {}
        self._inflight: Dict[CacheKey, "asyncio.Task[Any]"] = {}
        self._background: Dict[CacheKey, "asyncio.Task[None]"] = {}
        self._prewarm_task: Optional["asyncio.Task[None]"] = None
        self._prewarm_started = False
        self._computations: Counter = Counter()
        self._hits: Counter = Counter()

    # ------------------------------------------------------------------
    # Lectura / escritura
    # ------------------------------------------------------------------

    def _observe(self, key: CacheKey) -> Optional[CacheEntry]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        age = self._clock() - entry.created_at
        if age > self.max_stale_s:
            del self._entries[key]
            logger.info("Cache EXPIRED %s (edad %.0fs): desalojada", key, age)
            return None
        return entry

    def _is_fresh(self, entry: CacheEntry) -> bool:
        return self._clock() - entry.created_at <= self.ttl_s

    def state(self, key: CacheKey) -> CacheState:
        entry = self._observe(key)
        if entry is None:
            return CacheState.EMPTY
        return CacheState.FRESH if self._is_fresh(entry) else CacheState.STALE

    def get(self, key: CacheKey) -> Optional[Any]:
        """Solo datos FRESH; ``None`` en cualquier otro caso."""
        entry = self._observe(key)
        if entry is None or not self._is_fresh(entry):
            return None
        return entry.payload

    def get_stale(self, key: CacheKey) -> Optional[StaleResult]:
        """Cualquier entrada no expirada, marcada con ``is_stale``."""
        entry = self._observe(key)
        if entry is None:
            return None
        return StaleResult(data=entry.payload, is_stale=not self._is_fresh(entry))

    def set(self, key: CacheKey, payload: Any) -> CacheEntry:
        entry = CacheEntry(key=key, payload=payload, created_at=self._clock())
        self._entries[key] = entry
        logger.debug("Cache SET %s", key)
        return entry

    def delete(self, key: CacheKey) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        """Vacía entradas y cancela tareas pendientes (pensado para tests)."""
        self._entries.clear()
        for task in list(self._inflight.values()) + list(self._background.values()):
            if not task.done():
                task.cancel()
        if self._prewarm_task is not None and not self._prewarm_task.done():
            self._prewarm_task.cancel()
        self._inflight.clear()
        self._background.clear()
        self._prewarm_task = None
        self._prewarm_started = False
        self._computations.clear()
        self._hits.clear()

    def is_refreshing(self, key: CacheKey) -> bool:
        task = self._inflight.get(key)
        return task is not None and not task.done()

    def computations(self, key: CacheKey) -> int:
        """Veces que se ejecutó el factory de ``key`` (single-flight en tests)."""
        return self._computations[key]

    # ------------------------------------------------------------------
    # Cómputo coordinado
    # ------------------------------------------------------------------

    async def _compute(self, key: CacheKey, factory: Factory, background: bool) -> Any:
        me = asyncio.current_task()
        cid = background_correlation_id(key.dataset, key.window)
        started = time.perf_counter()
        try:
            if background:
                with correlation_scope(cid):
                    return await self._run_factory(key, factory, started, background)
            return await self._run_factory(key, factory, started, background)
        finally:
            if self._inflight.get(key) is me:
                del self._inflight[key]

    async def _run_factory(self, key: CacheKey, factory: Factory, started: float, background: bool) -> Any:
        kind = "refresh" if background else "build"
        self._computations[key] += 1
        logger.info("Cache %s %s: inicio", kind, key)
        try:
            payload = await factory()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("Cache %s %s falló", kind, key)
            emit_refresh_failed(key.dataset, key.window, f"{type(exc).__name__}: {exc}", bus=self._bus)
            raise
        self.set(key, payload)
        ms = int((time.perf_counter() - started) * 1000)
        logger.info("Cache %s %s: completado en %dms", kind, key, ms)
        emit_refresh_completed(key.dataset, key.window, ms, bus=self._bus)
        return payload

    def _start(self, key: CacheKey, factory: Factory, background: bool = False) -> "asyncio.Task[Any]":
        task = asyncio.get_running_loop().create_task(self._compute(key, factory, background))
        task.add_done_callback(_consume_exception)
        self._inflight[key] = task
        return task

    async def compute(self, key: CacheKey, factory: Factory) -> Any:
        """Calcula ``key`` ignorando el cache, uniéndose a un cómputo en curso si lo hay."""
        task = self._inflight.get(key)
        if task is None or task.done():
            task = self._start(key, factory)
        return await asyncio.shield(task)

    async def get_or_compute(self, key: CacheKey, factory: Factory) -> Any:
        """
        FRESH -> devuelve; STALE -> devuelve y agenda refresh; EMPTY -> single-flight.

        Las excepciones del factory se propagan solo en el caso EMPTY (no hay
        dato previo con el que responder).
        """
        hit = self.get_stale(key)
        if hit is not None:
            if hit.is_stale:
                self._hits["stale"] += 1
                logger.info("Cache STALE HIT %s", key)
                self.schedule_refresh(key, factory)
            else:
                self._hits["fresh"] += 1
            return hit.data

        self._hits["miss"] += 1
        return await self.compute(key, factory)

    def schedule_refresh(self, key: CacheKey, factory: Factory) -> Optional["asyncio.Task[None]"]:
        """Agenda un refresh en background salvo que ya haya uno en curso."""
        if self.is_refreshing(key):
            return None
        inner = self._start(key, factory, background=True)

        async def _watch() -> None:
            try:
                await inner
            except asyncio.CancelledError:
                raise
            except Exception:
                # ya logueado y publicado en _run_factory; el dato stale sigue vigente
                pass

        watcher = asyncio.get_running_loop().create_task(_watch())
        self._background[key] = watcher

        def _forget(t: "asyncio.Task[None]") -> None:
            if self._background.get(key) is t:
                del self._background[key]

        watcher.add_done_callback(_forget)
        return watcher

    # ------------------------------------------------------------------
    # Pre-warm
    # ------------------------------------------------------------------

    async def prewarm(self, keys: Iterable[CacheKey], factory_for: Callable[[CacheKey], Factory]) -> List[CacheKey]:
        """
        Calcula secuencialmente las claves que aún no tienen entrada.

        Best-effort: un fallo se loguea y se sigue con la siguiente clave.
        Devuelve las claves efectivamente calculadas.
        """
        done: List[CacheKey] = []
        for key in keys:
            if self.state(key) is not CacheState.EMPTY or self.is_refreshing(key):
                continue
            with correlation_scope(f"prewarm:{key.dataset}:{key.window}"):
                try:
                    await self.compute(key, factory_for(key))
                except asyncio.CancelledError:
                    raise
                except Exception:
                    logger.warning("Pre-warm %s falló; se continúa", key)
                    continue
            done.append(key)
        logger.info("Pre-warm completado: %d claves calculadas", len(done))
        return done

    def schedule_prewarm(
        self, keys: Iterable[CacheKey], factory_for: Callable[[CacheKey], Factory]
    ) -> Optional["asyncio.Task[None]"]:
        """Lanza el pre-warm en background una sola vez por vida del cache."""
        if self._prewarm_started:
            return None
        self._prewarm_started = True
        pending = list(keys)

        async def _run() -> None:
            await self.prewarm(pending, factory_for)

        self._prewarm_task = asyncio.get_running_loop().create_task(_run())
        self._prewarm_task.add_done_callback(_consume_exception)
        return self._prewarm_task

    @property
    def prewarm_started(self) -> bool:
        return self._prewarm_started

    # ------------------------------------------------------------------
    # Ciclo de vida
    # ------------------------------------------------------------------

    def _pending_tasks(self) -> List["asyncio.Task[Any]"]:
        tasks: List["asyncio.Task[Any]"] = [t for t in self._background.values() if not t.done()]
        if self._prewarm_task is not None and not self._prewarm_task.done():
            tasks.append(self._prewarm_task)
        return tasks

    async def wait_background(self) -> None:
        """Espera refreshes y pre-warm pendientes (incluidos los que se agenden mientras)."""
        while True:
            pending = self._pending_tasks()
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def aclose(self) -> None:
        """Cancela todas las tareas del cache y espera a que terminen."""
        tasks = self._pending_tasks() + [t for t in self._inflight.values() if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._background.clear()
        self._inflight.clear()

    def stats(self) -> Dict[str, Any]:
        now = self._clock()
        entries = {}
        for key in list(self._entries):
            entry = self._observe(key)
            if entry is None:
                continue
            entries[str(key)] = {
                "state": self.state(key).value,
                "age_s": round(now - entry.created_at, 1),
            }
        return {
            "ttl_s": self.ttl_s,
            "max_stale_s": self.max_stale_s,
            "entries": entries,
            "inflight": sorted(str(k) for k, t in self._inflight.items() if not t.done()),
            "background": sorted(str(k) for k, t in self._background.items() if not t.done()),
            "hits": dict(self._hits),
        }


__all__ = [
    "CacheState",
    "CacheKey",
    "CacheEntry",
    "StaleResult",
    "DashboardCache",
]
