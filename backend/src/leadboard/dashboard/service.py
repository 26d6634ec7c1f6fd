"""leadboard.dashboard.service

Orquestación del dashboard: fetch -> merge -> agregaciones -> cache.

Flujo de ``get_dashboard(hours)``
--------------------------------
1. Lookup en cache con clave ``("dashboard", hours)``.
2. En miss, se piden en paralelo submissions, consensos y el snapshot de
   participantes; se hace el merge y todas las agregaciones corren sobre el
   mismo snapshot (ninguna vuelve a consultar el store).
3. El bundle queda en cache. Tras el primer build en frío se agenda (una sola
   vez) el pre-warm de todos los presets de ventana.

Las ventanas inválidas colapsan a ``0`` (todo el histórico).
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from ..config import HOUR_PRESETS, Settings, coerce_hours
from ..observability.bus_eventos import BUS, EventBus
from ..observability.eventos_dashboard import emit_aggregation_completed
from .aggregations import aggregate, as_python
from .cache import CacheKey, DashboardCache, Factory
from .merge import MergeResult, build_consensus_map, merge
from .participants import ParticipantSnapshot, SnapshotProvider, load_snapshot
from .records import (
    EVENT_CONSENSUS,
    EVENT_SUBMISSION,
    ConsensusEvent,
    SubmissionEvent,
    normalize_decision,
)
from .rejections import normalize_rejection
from .store import EventStore, EventStoreError, StoreFetch

logger = logging.getLogger(__name__)

DATASET_DASHBOARD = "dashboard"
DATASET_LATEST_LEADS = "latest_leads"

LATEST_CONSENSUS_FETCH = 150
LATEST_LEADS_MAX = 100
JOURNEY_HOURS = 72


def _parse_submissions(rows: Sequence[Dict[str, Any]]) -> List[SubmissionEvent]:
    out = []
    for row in rows:
        ev = SubmissionEvent.from_row(row)
        if ev is not None:
            out.append(ev)
    return out


def _parse_consensus(rows: Sequence[Dict[str, Any]]) -> List[ConsensusEvent]:
    out = []
    for row in rows:
        ev = ConsensusEvent.from_row(row)
        if ev is not None:
            out.append(ev)
    return out


def short_hash(content_hash: str) -> str:
    return content_hash[:16] + "..."


class DashboardService:
    """
    Servicio del dashboard (uno por proceso, creado en el lifespan de la app).

    Parameters
    ----------
    store : EventStore
        Fuente de eventos.
    snapshot_provider : SnapshotProvider, optional
        ``None`` = sin filtro de participantes.
    cache : DashboardCache, optional
        Si no se pasa se crea uno con los TTL de ``settings``.
    settings : Settings, optional
    bus : EventBus, optional
        Bus de observabilidad (default: ``BUS``).
    now : callable, optional
        Reloj UTC (inyectable en tests).
    """

    def __init__(
        self,
        store: EventStore,
        snapshot_provider: Optional[SnapshotProvider] = None,
        cache: Optional[DashboardCache] = None,
        settings: Optional[Settings] = None,
        bus: Optional[EventBus] = None,
        *,
        now: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.settings = settings or Settings()
        self.bus = bus or BUS
        self.store = store
        self.snapshot_provider = snapshot_provider
        self.cache = cache or DashboardCache(
            self.settings.cache_ttl_s, self.settings.cache_max_stale_s, bus=self.bus
        )
        self._now = now or (lambda: datetime.now(timezone.utc))

    # ------------------------------------------------------------------
    # Fetch + merge
    # ------------------------------------------------------------------

    def _since(self, hours: int) -> Optional[datetime]:
        if hours <= 0:
            return None
        return self._now() - timedelta(hours=hours)

    async def _fetch_cycle(
        self, since: Optional[datetime]
    ) -> Tuple[StoreFetch, StoreFetch, ParticipantSnapshot]:
        subs, cons, snapshot = await asyncio.gather(
            self.store.fetch_events(EVENT_SUBMISSION, since),
            self.store.fetch_events(EVENT_CONSENSUS, since),
            load_snapshot(self.snapshot_provider, bus=self.bus),
        )
        return subs, cons, snapshot

    async def _merged(
        self, since: Optional[datetime]
    ) -> Tuple[MergeResult, List[ConsensusEvent], ParticipantSnapshot, int]:
        subs, cons, snapshot = await self._fetch_cycle(since)
        consensus = _parse_consensus(cons.rows)
        merged = merge(_parse_submissions(subs.rows), consensus, snapshot.active_participants())
        return merged, consensus, snapshot, subs.skipped_batches + cons.skipped_batches

    # ------------------------------------------------------------------
    # Dashboard bundle
    # ------------------------------------------------------------------

    async def build_dashboard(self, hours: int = 0) -> Dict[str, Any]:
        """
        Pipeline completo sin cache.

        Returns
        -------
        dict
            ``summary``, ``miner_stats``, ``epoch_stats``, ``rejection_reasons``,
            ``rejection_reason_counts``, ``lead_inventory``,
            ``lead_inventory_count``, ``incentive_data``,
            ``total_submission_count``, ``skipped_batches`` y
            ``snapshot_available``.
        """
        hours = coerce_hours(hours)
        started = time.perf_counter()

        merged, consensus, snapshot, skipped = await self._merged(self._since(hours))
        bundle = aggregate(merged, consensus, snapshot)
        bundle["total_submission_count"] = merged.submissions_total
        bundle["skipped_batches"] = skipped
        bundle["snapshot_available"] = snapshot.available

        ms = int((time.perf_counter() - started) * 1000)
        if skipped:
            logger.warning("Dashboard hours=%d construido con %d batches saltados (datos parciales)", hours, skipped)
        logger.info(
            "Dashboard hours=%d: %d registros de %d submissions en %dms",
            hours, len(merged.records), merged.submissions_filtered, ms,
        )
        emit_aggregation_completed(
            hours,
            len(merged.records),
            ms,
            skipped_batches=skipped,
            snapshot_available=snapshot.available,
            bus=self.bus,
        )
        return as_python(bundle)

    def _factory_for(self, key: CacheKey) -> Factory:
        if key.dataset == DATASET_LATEST_LEADS:
            return self.build_latest_leads

        async def _build() -> Dict[str, Any]:
            return await self.build_dashboard(key.window)

        return _build

    def prewarm_keys(self) -> List[CacheKey]:
        keys = [CacheKey(DATASET_DASHBOARD, h) for h in HOUR_PRESETS]
        keys.append(CacheKey(DATASET_LATEST_LEADS, 0))
        return keys

    async def get_dashboard(self, hours: Optional[int] = 0) -> Dict[str, Any]:
        """Bundle cacheado para la ventana ``hours`` (inválida -> 0)."""
        key = CacheKey(DATASET_DASHBOARD, coerce_hours(hours))
        data = await self.cache.get_or_compute(key, self._factory_for(key))
        if self.settings.prewarm and not self.cache.prewarm_started:
            logger.info("Primer build completado; agendando pre-warm de presets")
            self.cache.schedule_prewarm(self.prewarm_keys(), self._factory_for)
        return data

    async def get_rejection_counts(self, hours: Optional[int] = 0) -> List[Dict[str, Any]]:
        """Conteos crudos por categoría (sin lista de exclusión)."""
        bundle = await self.get_dashboard(hours)
        return bundle["rejection_reason_counts"]

    # ------------------------------------------------------------------
    # Latest leads
    # ------------------------------------------------------------------

    async def build_latest_leads(self) -> List[Dict[str, Any]]:
        """Últimos consensos unidos a su submission (máx. 100, filtro de activos)."""
        snapshot = await load_snapshot(self.snapshot_provider, bus=self.bus)
        consensus = _parse_consensus(await self.store.fetch_latest_consensus(LATEST_CONSENSUS_FETCH))
        if not consensus:
            return []

        sub_rows = await self.store.fetch_submissions_for_hashes([c.content_hash for c in consensus])
        by_hash: Dict[str, SubmissionEvent] = {}
        for sub in _parse_submissions(sub_rows):
            by_hash.setdefault(sub.content_hash, sub)

        active = snapshot.active_participants()
        leads: List[Dict[str, Any]] = []
        seen = set()
        # consensus viene del más nuevo al más viejo: el primero por hash es el ganador
        for cons in consensus:
            if len(leads) >= LATEST_LEADS_MAX:
                break
            if cons.content_hash in seen:
                continue
            seen.add(cons.content_hash)
            sub = by_hash.get(cons.content_hash)
            hotkey = sub.actor if sub is not None else ""
            if active is not None and hotkey not in active:
                continue
            leads.append({
                "email_hash": cons.content_hash,
                "miner_hotkey": hotkey,
                "uid": snapshot.uid_for(hotkey),
                "lead_id": cons.item_id or (sub.item_id if sub is not None else None),
                "timestamp": (sub.timestamp if sub is not None else None) or cons.timestamp,
                "epoch_id": cons.epoch_id,
                "decision": cons.normalized_decision.value,
                "rep_score": cons.score,
                "rejection_reason": normalize_rejection(cons.rejection) if cons.rejection else None,
            })
        logger.info("Latest leads: %d de %d consensos", len(leads), len(consensus))
        return leads

    async def get_latest_leads(self, limit: int = LATEST_LEADS_MAX) -> List[Dict[str, Any]]:
        key = CacheKey(DATASET_LATEST_LEADS, 0)
        leads = await self.cache.get_or_compute(key, self.build_latest_leads)
        return leads[: max(0, limit)]

    # ------------------------------------------------------------------
    # Consultas sin cache
    # ------------------------------------------------------------------

    async def get_lead_journey(self) -> List[Dict[str, Any]]:
        """Registros unificados de las últimas 72 h (sin cache)."""
        merged, _, _, _ = await self._merged(self._since(JOURNEY_HOURS))
        return [
            {
                "email_hash": r.content_hash,
                "email_hash_short": short_hash(r.content_hash),
                "miner_hotkey": r.participant,
                "timestamp": r.timestamp,
                "epoch_id": r.epoch_id,
                "decision": r.decision.value,
                "rep_score": r.score,
                "rejection_reason": r.rejection_category,
                "lead_id": r.item_id,
            }
            for r in merged.records
        ]

    async def get_lead_events(self, content_hash: str) -> Dict[str, Any]:
        """Historia cruda de un hash + decisión autoritativa."""
        rows = await self.store.fetch_events_for_hash(content_hash)
        consensus = build_consensus_map(
            _parse_consensus([r for r in rows if r.get("event_type") == EVENT_CONSENSUS])
        ).get(content_hash)

        if consensus is None:
            decision = normalize_decision(None)
            rejection = normalize_rejection(None)
        else:
            decision = consensus.normalized_decision
            rejection = normalize_rejection(consensus.rejection)

        return {
            "email_hash": content_hash,
            "decision": decision.value,
            "rejection_reason": rejection,
            "events": [
                {
                    "ts": r.get("ts"),
                    "event_type": r.get("event_type"),
                    "actor_hotkey": r.get("actor_hotkey"),
                    "payload": r.get("payload") if isinstance(r.get("payload"), dict) else None,
                }
                for r in rows
            ],
        }

    # ------------------------------------------------------------------
    # Estado / ciclo de vida
    # ------------------------------------------------------------------

    def status(self) -> Dict[str, Any]:
        presets = {
            str(h): self.cache.state(CacheKey(DATASET_DASHBOARD, h)).value for h in HOUR_PRESETS
        }
        latest = self.cache.state(CacheKey(DATASET_LATEST_LEADS, 0))
        return {
            "presets": presets,
            "latest_leads": latest.value,
            "cache": self.cache.stats(),
            "events": self.bus.counts(),
        }

    async def event_totals(self) -> Dict[str, Optional[int]]:
        """Filas por tipo de evento en el store (sin ventana); ``None`` si el conteo falla."""
        totals: Dict[str, Optional[int]] = {}
        for event_type in (EVENT_SUBMISSION, EVENT_CONSENSUS):
            try:
                totals[event_type] = await self.store.count_events(event_type)
            except EventStoreError as exc:
                logger.warning("No se pudo contar %s: %s", event_type, exc)
                totals[event_type] = None
        return totals

    async def aclose(self) -> None:
        await self.cache.aclose()
        await self.store.aclose()


__all__ = [
    "DATASET_DASHBOARD",
    "DATASET_LATEST_LEADS",
    "DashboardService",
    "short_hash",
]
