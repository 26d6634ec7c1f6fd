"""
leadboard.config
================

Configuración del backend leída desde variables de entorno.

Reglas de resolución
--------------------
- Todas las variables usan el prefijo ``LB_``.
- Si una variable no existe (o no se puede parsear), se usa el default.
- ``load_settings()`` no tiene side effects: no abre conexiones ni crea
  archivos. Los componentes reciben el ``Settings`` ya construido.

Variables soportadas
--------------------
- ``LB_STORE_URL`` / ``LB_STORE_KEY``: endpoint REST (PostgREST/Supabase) y API key.
- ``LB_STORE_TABLE``: tabla del log de eventos (default ``transparency_log``).
- ``LB_STORE_TIMEOUT_S``: timeout por request al store.
- ``LB_EVENTS_FILE``: JSON/JSONL local con eventos (modo offline; tiene
  prioridad sobre ``LB_STORE_URL``).
- ``LB_BATCH_SIZE``, ``LB_MAX_RETRIES``, ``LB_RETRY_DELAY_S``,
  ``LB_MAX_CONSECUTIVE_FAILURES``: paginado y reintentos.
- ``LB_CACHE_TTL_S`` / ``LB_CACHE_MAX_STALE_S``: ventanas fresh/stale del cache.
- ``LB_SNAPSHOT_CMD`` / ``LB_SNAPSHOT_TIMEOUT_S``: comando externo que imprime
  el snapshot de participantes activos en JSON.
- ``LB_ALLOWED_ORIGINS``: orígenes CORS (coma-separados).
- ``LB_PREWARM``: ``0`` desactiva el pre-calentado de presets.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Optional, Tuple


# Presets válidos de ventana temporal (horas). 0 = todo el histórico, 168 = 7 días.
HOUR_PRESETS: Tuple[int, ...] = (0, 1, 6, 12, 24, 48, 72, 168)

_DEFAULT_ORIGINS: Tuple[str, ...] = ("http://localhost:3000", "http://127.0.0.1:3000")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_str(name: str) -> Optional[str]:
    raw = os.getenv(name)
    if raw is None:
        return None
    raw = raw.strip()
    return raw or None


@dataclass(frozen=True)
class Settings:
    """Parámetros de ejecución del backend."""

    store_url: Optional[str] = None
    store_key: Optional[str] = None
    store_table: str = "transparency_log"
    store_timeout_s: float = 30.0
    events_file: Optional[str] = None

    batch_size: int = 1000
    max_retries: int = 3
    retry_delay_s: float = 2.0
    max_consecutive_failures: int = 3
    pause_every_rows: int = 10_000
    pause_s: float = 0.1

    cache_ttl_s: float = 5 * 60
    cache_max_stale_s: float = 60 * 60
    prewarm: bool = True

    snapshot_cmd: Optional[str] = None
    snapshot_timeout_s: float = 120.0

    allowed_origins: Tuple[str, ...] = field(default=_DEFAULT_ORIGINS)


def load_settings() -> Settings:
    """Construye :class:`Settings` desde el entorno actual."""
    raw_origins = _env_str("LB_ALLOWED_ORIGINS")
    origins = (
        tuple(o.strip() for o in raw_origins.split(",") if o.strip())
        if raw_origins
        else _DEFAULT_ORIGINS
    )
    return Settings(
        store_url=_env_str("LB_STORE_URL"),
        store_key=_env_str("LB_STORE_KEY"),
        store_table=_env_str("LB_STORE_TABLE") or "transparency_log",
        store_timeout_s=_env_float("LB_STORE_TIMEOUT_S", 30.0),
        events_file=_env_str("LB_EVENTS_FILE"),
        batch_size=max(1, _env_int("LB_BATCH_SIZE", 1000)),
        max_retries=max(1, _env_int("LB_MAX_RETRIES", 3)),
        retry_delay_s=_env_float("LB_RETRY_DELAY_S", 2.0),
        max_consecutive_failures=max(1, _env_int("LB_MAX_CONSECUTIVE_FAILURES", 3)),
        cache_ttl_s=_env_float("LB_CACHE_TTL_S", 5 * 60),
        cache_max_stale_s=_env_float("LB_CACHE_MAX_STALE_S", 60 * 60),
        prewarm=_env_str("LB_PREWARM") != "0",
        snapshot_cmd=_env_str("LB_SNAPSHOT_CMD"),
        snapshot_timeout_s=_env_float("LB_SNAPSHOT_TIMEOUT_S", 120.0),
        allowed_origins=origins,
    )


def coerce_hours(value: Optional[int]) -> int:
    """Colapsa una ventana inválida a ``0`` (todo el histórico)."""
    if value is None:
        return 0
    return value if value in HOUR_PRESETS else 0
