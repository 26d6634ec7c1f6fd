"""leadboard.dashboard.store

Cliente del *event store* (tabla ``transparency_log``).

El store es un datastore externo consultable con paginado por offset. Este
módulo expone:

- :class:`EventStore`: protocolo que consume el servicio del dashboard.
- :class:`PostgrestEventStore`: implementación sobre la API REST de
  PostgREST/Supabase usando ``httpx.AsyncClient``.
- :class:`InMemoryEventStore`: misma semántica sobre una lista de filas
  (tests y modo local con ``LB_EVENTS_FILE``).

Paginado y reintentos
---------------------
- Batches de tamaño fijo (1000). El scan termina con un batch corto o vacío.
- Un timeout (``httpx.TimeoutException`` o el código PostgREST ``57014``,
  *statement timeout*) se reintenta con backoff exponencial
  (``retry_delay * 2**intento``) hasta ``max_retries`` intentos. Otros errores
  fallan el batch sin reintentar.
- Un batch fallido se **salta** (el offset avanza) y se cuenta. Tras
  ``max_consecutive_failures`` batches fallidos seguidos el scan se detiene.
  Los saltos se reportan en :attr:`StoreFetch.skipped_batches`, se loguean en
  WARNING y se publican como ``store.batch_skipped``.
- Cada ``pause_every_rows`` filas se hace una pausa corta para no saturar el
  store en scans grandes.

Saltar batches puede subcontar. Es un trade-off aceptado: el dashboard
prefiere responder con datos parciales a quedarse colgado.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Protocol, Sequence, Tuple

import httpx

from ..config import Settings
from ..observability.bus_eventos import EventBus
from ..observability.eventos_dashboard import emit_batch_skipped
from .merge import parse_timestamp
from .records import EVENT_CONSENSUS, EVENT_SUBMISSION

logger = logging.getLogger(__name__)

Row = Dict[str, Any]
Sleeper = Callable[[float], Awaitable[None]]
PageFetcher = Callable[[int, int], Awaitable[List[Row]]]

# Código de PostgreSQL para "canceling statement due to statement timeout"
STATEMENT_TIMEOUT_CODE = "57014"

_SUBMISSION_COLUMNS = "ts,actor_hotkey,email_hash,payload"
_CONSENSUS_COLUMNS = "ts,email_hash,payload"
_EVENT_COLUMNS = "ts,event_type,actor_hotkey,email_hash,payload"

# Máximo de hashes por filtro ``in.(...)`` (largo de URL)
_IN_CHUNK = 100


class EventStoreError(RuntimeError):
    """Fallo de I/O contra el event store.

    ``retryable`` indica un timeout (del cliente o del servidor).
    """

    def __init__(self, message: str, *, retryable: bool = False, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.retryable = retryable
        self.code = code


@dataclass(frozen=True)
class StoreFetch:
    """Filas obtenidas por un scan paginado + batches saltados."""

    rows: List[Row] = field(default_factory=list)
    skipped_batches: int = 0


@dataclass(frozen=True)
class PagingPolicy:
    batch_size: int = 1000
    max_retries: int = 3
    retry_delay_s: float = 2.0
    max_consecutive_failures: int = 3
    pause_every_rows: int = 10_000
    pause_s: float = 0.1

    @classmethod
    def from_settings(cls, settings: Settings) -> "PagingPolicy":
        return cls(
            batch_size=settings.batch_size,
            max_retries=settings.max_retries,
            retry_delay_s=settings.retry_delay_s,
            max_consecutive_failures=settings.max_consecutive_failures,
            pause_every_rows=settings.pause_every_rows,
            pause_s=settings.pause_s,
        )


class EventStore(Protocol):
    """Operaciones de lectura que necesita el dashboard."""

    async def fetch_events(self, event_type: str, since: Optional[datetime] = None) -> StoreFetch:
        ...

    async def fetch_latest_consensus(self, limit: int) -> List[Row]:
        ...

    async def fetch_submissions_for_hashes(self, hashes: Sequence[str]) -> List[Row]:
        ...

    async def fetch_events_for_hash(self, content_hash: str) -> List[Row]:
        ...

    async def count_events(self, event_type: str) -> int:
        ...

    async def aclose(self) -> None:
        ...


# ---------------------------------------------------------------------------
# Paginado con reintentos (compartido por todas las implementaciones)
# ---------------------------------------------------------------------------

async def fetch_with_retry(
    fetch_page: PageFetcher,
    offset: int,
    limit: int,
    *,
    policy: PagingPolicy,
    sleep: Sleeper = asyncio.sleep,
) -> List[Row]:
    """Pide un batch reintentando solo timeouts, con backoff exponencial."""
    attempts = max(1, policy.max_retries)
    for attempt in range(attempts):
        try:
            return await fetch_page(offset, limit)
        except EventStoreError as exc:
            if not exc.retryable or attempt == attempts - 1:
                raise
            delay = policy.retry_delay_s * (2 ** attempt)
            logger.warning(
                "Timeout en batch offset=%d (intento %d/%d); reintento en %.1fs",
                offset, attempt + 1, attempts, delay,
            )
            await sleep(delay)
    raise EventStoreError("reintentos agotados")  # pragma: no cover


async def paginate(
    fetch_page: PageFetcher,
    *,
    event_type: str,
    policy: PagingPolicy,
    sleep: Sleeper = asyncio.sleep,
    bus: Optional[EventBus] = None,
) -> StoreFetch:
    """
    Recorre el store en batches de ``policy.batch_size``.

    Parameters
    ----------
    fetch_page : callable
        ``await fetch_page(offset, limit) -> list[row]``. Debe lanzar
        :class:`EventStoreError` ante fallos.
    event_type : str
        Solo para logs y eventos.

    Returns
    -------
    StoreFetch
    """
    rows: List[Row] = []
    offset = 0
    skipped = 0
    consecutive = 0
    since_pause = 0

    while True:
        try:
            batch = await fetch_with_retry(fetch_page, offset, policy.batch_size, policy=policy, sleep=sleep)
        except EventStoreError as exc:
            skipped += 1
            consecutive += 1
            logger.warning(
                "Batch %s offset=%d saltado (%d fallos seguidos): %s",
                event_type, offset, consecutive, exc,
            )
            emit_batch_skipped(event_type, offset, consecutive, str(exc), bus=bus)
            if consecutive >= policy.max_consecutive_failures:
                logger.error(
                    "Scan de %s detenido tras %d fallos seguidos (offset=%d, filas=%d)",
                    event_type, consecutive, offset, len(rows),
                )
                break
            offset += policy.batch_size
            continue

        consecutive = 0
        if not batch:
            break
        rows.extend(batch)
        if len(batch) < policy.batch_size:
            break
        offset += policy.batch_size

        since_pause += len(batch)
        if policy.pause_every_rows and since_pause >= policy.pause_every_rows:
            since_pause = 0
            await sleep(policy.pause_s)

    logger.info("Scan %s: %d filas, %d batches saltados", event_type, len(rows), skipped)
    return StoreFetch(rows=rows, skipped_batches=skipped)


def _iso(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat()


def _chunks(items: Sequence[str], size: int) -> Iterable[Sequence[str]]:
    for i in range(0, len(items), size):
        yield items[i:i + size]


# ---------------------------------------------------------------------------
# PostgREST / Supabase
# ---------------------------------------------------------------------------

class PostgrestEventStore:
    """
    Event store sobre la API REST de PostgREST (Supabase).

    Parameters
    ----------
    base_url : str
        URL del proyecto (p.ej. ``https://xyz.supabase.co``). Se consulta
        ``<base_url>/rest/v1/<table>``.
    api_key : str
        Se envía como ``apikey`` y ``Authorization: Bearer``.
    client : httpx.AsyncClient, optional
        Inyectable (tests con ``httpx.MockTransport``). Si no se pasa, el store
        crea y cierra el suyo.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        table: str = "transparency_log",
        timeout: float = 30.0,
        policy: Optional[PagingPolicy] = None,
        client: Optional[httpx.AsyncClient] = None,
        sleep: Sleeper = asyncio.sleep,
        bus: Optional[EventBus] = None,
    ) -> None:
        self._url = f"{base_url.rstrip('/')}/rest/v1/{table}"
        self._api_key = api_key
        self._policy = policy or PagingPolicy()
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._sleep = sleep
        self._bus = bus

    def _headers(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        headers = {
            "apikey": self._api_key,
            "Authorization": f"Bearer {self._api_key}",
            "Accept": "application/json",
        }
        if extra:
            headers.update(extra)
        return headers

    async def _get(self, params: List[Tuple[str, str]], extra_headers: Optional[Dict[str, str]] = None) -> httpx.Response:
        try:
            resp = await self._client.get(self._url, params=params, headers=self._headers(extra_headers))
        except httpx.TimeoutException as exc:
            raise EventStoreError(f"timeout: {exc}", retryable=True) from exc
        except httpx.HTTPError as exc:
            raise EventStoreError(f"error de red: {exc}") from exc

        if resp.status_code >= 400:
            code: Optional[str] = None
            message = resp.text[:200]
            try:
                body = resp.json()
            except ValueError:
                body = None
            if isinstance(body, dict):
                code = str(body.get("code")) if body.get("code") is not None else None
                message = str(body.get("message") or message)
            raise EventStoreError(
                f"HTTP {resp.status_code}: {message}",
                retryable=code == STATEMENT_TIMEOUT_CODE,
                code=code,
            )
        return resp

    async def _get_rows(self, params: List[Tuple[str, str]]) -> List[Row]:
        resp = await self._get(params)
        try:
            data = resp.json()
        except ValueError as exc:
            raise EventStoreError("respuesta no es JSON") from exc
        if not isinstance(data, list):
            raise EventStoreError("respuesta inesperada (se esperaba una lista)")
        return [r for r in data if isinstance(r, dict)]

    def _event_params(self, event_type: str, since: Optional[datetime]) -> List[Tuple[str, str]]:
        columns = _SUBMISSION_COLUMNS if event_type == EVENT_SUBMISSION else _CONSENSUS_COLUMNS
        params = [
            ("select", columns),
            ("event_type", f"eq.{event_type}"),
            ("email_hash", "not.is.null"),
        ]
        if event_type == EVENT_SUBMISSION:
            params.append(("actor_hotkey", "not.is.null"))
        if since is not None:
            params.append(("ts", f"gte.{_iso(since)}"))
        params.append(("order", "ts.desc"))
        return params

    async def fetch_events(self, event_type: str, since: Optional[datetime] = None) -> StoreFetch:
        base = self._event_params(event_type, since)

        async def page(offset: int, limit: int) -> List[Row]:
            return await self._get_rows(base + [("offset", str(offset)), ("limit", str(limit))])

        return await paginate(page, event_type=event_type, policy=self._policy, sleep=self._sleep, bus=self._bus)

    async def fetch_latest_consensus(self, limit: int) -> List[Row]:
        params = [
            ("select", _CONSENSUS_COLUMNS),
            ("event_type", f"eq.{EVENT_CONSENSUS}"),
            ("email_hash", "not.is.null"),
            ("order", "ts.desc"),
        ]

        async def page(offset: int, size: int) -> List[Row]:
            return await self._get_rows(params + [("offset", str(offset)), ("limit", str(size))])

        return await fetch_with_retry(page, 0, limit, policy=self._policy, sleep=self._sleep)

    async def fetch_submissions_for_hashes(self, hashes: Sequence[str]) -> List[Row]:
        unique = list(dict.fromkeys(h for h in hashes if h))
        rows: List[Row] = []
        for chunk in _chunks(unique, _IN_CHUNK):
            params = [
                ("select", _SUBMISSION_COLUMNS),
                ("event_type", f"eq.{EVENT_SUBMISSION}"),
                ("email_hash", f"in.({','.join(chunk)})"),
                ("order", "ts.desc"),
            ]

            async def page(offset: int, size: int, params=params) -> List[Row]:
                return await self._get_rows(params)

            rows.extend(await fetch_with_retry(page, 0, len(chunk), policy=self._policy, sleep=self._sleep))
        return rows

    async def fetch_events_for_hash(self, content_hash: str) -> List[Row]:
        base = [
            ("select", _EVENT_COLUMNS),
            ("email_hash", f"eq.{content_hash}"),
            ("order", "ts.asc"),
        ]

        async def page(offset: int, limit: int) -> List[Row]:
            return await self._get_rows(base + [("offset", str(offset)), ("limit", str(limit))])

        result = await paginate(page, event_type="ALL", policy=self._policy, sleep=self._sleep, bus=self._bus)
        return result.rows

    async def count_events(self, event_type: str) -> int:
        params = [("select", "ts"), ("event_type", f"eq.{event_type}"), ("limit", "1")]
        resp = await self._get(params, {"Prefer": "count=exact"})
        # Content-Range: "0-0/12345" o "*/0"
        content_range = resp.headers.get("content-range", "")
        _, _, total = content_range.partition("/")
        try:
            return int(total)
        except ValueError:
            logger.warning("Content-Range sin total: %r", content_range)
            return 0

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


# ---------------------------------------------------------------------------
# In-memory (tests y modo local)
# ---------------------------------------------------------------------------

_MIN_TS = datetime.min.replace(tzinfo=timezone.utc)


def _ts_key(row: Row) -> datetime:
    return parse_timestamp(row.get("ts")) or _MIN_TS


class InMemoryEventStore:
    """
    Event store sobre una lista de filas con la forma de ``transparency_log``
    (``ts``, ``event_type``, ``actor_hotkey``, ``email_hash``, ``payload``).

    Usa el mismo paginado que :class:`PostgrestEventStore`.
    """

    def __init__(
        self,
        rows: Optional[Iterable[Row]] = None,
        *,
        policy: Optional[PagingPolicy] = None,
        sleep: Optional[Sleeper] = None,
        bus: Optional[EventBus] = None,
    ) -> None:
        self._rows: List[Row] = [dict(r) for r in (rows or [])]
        self._policy = policy or PagingPolicy(pause_s=0.0)
        self._sleep = sleep or asyncio.sleep
        self._bus = bus
        self.calls: Dict[str, int] = {}

    @classmethod
    def from_file(cls, path: str, **kwargs: Any) -> "InMemoryEventStore":
        """Carga filas desde un ``.json`` (lista) o ``.jsonl`` (una fila por línea)."""
        text = Path(path).read_text(encoding="utf-8")
        if path.endswith(".jsonl"):
            rows = [json.loads(line) for line in text.splitlines() if line.strip()]
        else:
            data = json.loads(text)
            rows = data if isinstance(data, list) else data.get("rows", [])
        logger.info("Event store local: %d filas desde %s", len(rows), path)
        return cls(rows, **kwargs)

    def add(self, row: Row) -> None:
        self._rows.append(dict(row))

    def _count_call(self, name: str) -> None:
        self.calls[name] = self.calls.get(name, 0) + 1

    def _select(self, event_type: Optional[str], since: Optional[datetime] = None) -> List[Row]:
        out = []
        for row in self._rows:
            if event_type is not None and row.get("event_type") != event_type:
                continue
            if not row.get("email_hash"):
                continue
            if event_type == EVENT_SUBMISSION and not row.get("actor_hotkey"):
                continue
            if since is not None:
                ts = parse_timestamp(row.get("ts"))
                if ts is None or ts < since:
                    continue
            out.append(row)
        # sort estable: empates conservan el orden de inserción
        return sorted(out, key=_ts_key, reverse=True)

    async def fetch_events(self, event_type: str, since: Optional[datetime] = None) -> StoreFetch:
        self._count_call("fetch_events")
        if since is not None and since.tzinfo is None:
            since = since.replace(tzinfo=timezone.utc)
        selected = self._select(event_type, since)

        async def page(offset: int, limit: int) -> List[Row]:
            await asyncio.sleep(0)
            return [dict(r) for r in selected[offset:offset + limit]]

        return await paginate(page, event_type=event_type, policy=self._policy, sleep=self._sleep, bus=self._bus)

    async def fetch_latest_consensus(self, limit: int) -> List[Row]:
        self._count_call("fetch_latest_consensus")
        return [dict(r) for r in self._select(EVENT_CONSENSUS)[:limit]]

    async def fetch_submissions_for_hashes(self, hashes: Sequence[str]) -> List[Row]:
        self._count_call("fetch_submissions_for_hashes")
        wanted = set(hashes)
        return [dict(r) for r in self._select(EVENT_SUBMISSION) if r.get("email_hash") in wanted]

    async def fetch_events_for_hash(self, content_hash: str) -> List[Row]:
        self._count_call("fetch_events_for_hash")
        rows = [r for r in self._rows if r.get("email_hash") == content_hash]
        return [dict(r) for r in sorted(rows, key=_ts_key)]

    async def count_events(self, event_type: str) -> int:
        self._count_call("count_events")
        return sum(1 for r in self._rows if r.get("event_type") == event_type)

    async def aclose(self) -> None:
        return None


def build_event_store(settings: Settings, bus: Optional[EventBus] = None) -> EventStore:
    """
    Construye el store según la configuración.

    Prioridad: ``LB_EVENTS_FILE`` (local) > ``LB_STORE_URL`` (PostgREST) >
    store vacío (con WARNING; el dashboard arranca pero sin datos).
    """
    policy = PagingPolicy.from_settings(settings)
    if settings.events_file:
        return InMemoryEventStore.from_file(settings.events_file, policy=policy, bus=bus)
    if settings.store_url:
        if not settings.store_key:
            logger.warning("LB_STORE_URL definido sin LB_STORE_KEY; las requests irán sin API key válida")
        return PostgrestEventStore(
            settings.store_url,
            settings.store_key or "",
            table=settings.store_table,
            timeout=settings.store_timeout_s,
            policy=policy,
            bus=bus,
        )
    logger.warning("Sin LB_EVENTS_FILE ni LB_STORE_URL: se usa un event store vacío")
    return InMemoryEventStore([], policy=policy, bus=bus)


__all__ = [
    "EventStoreError",
    "StoreFetch",
    "PagingPolicy",
    "EventStore",
    "fetch_with_retry",
    "paginate",
    "PostgrestEventStore",
    "InMemoryEventStore",
    "build_event_store",
]
