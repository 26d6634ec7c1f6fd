"""leadboard.dashboard.merge

Merge de los dos streams del log (SUBMISSION y CONSENSUS_RESULT) en
registros unificados (:class:`~leadboard.dashboard.records.MergedRecord`).

Algoritmo
---------
1. Se descartan submissions sin hash o sin actor y se filtran por
   participantes activos (si el conjunto es ``None`` o vacío, no se filtra).
2. Se construye ``hash -> consenso autoritativo``. Regla: gana el evento con
   **timestamp más alto**; un evento sin timestamp pierde frente a cualquiera
   con timestamp; en empate se conserva el primero visto. Así el resultado no
   depende del orden en que el store devolvió las filas.
3. Se deduplican las submissions filtradas por hash (gana la primera) y se
   emite un registro por hash, con el consenso si existe o ``PENDING`` si no.

El merge es determinista e idempotente: misma entrada, misma salida.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import AbstractSet, Dict, Iterable, List, Optional, Tuple

from .records import ConsensusEvent, Decision, MergedRecord, SubmissionEvent
from .rejections import normalize_rejection


@dataclass(frozen=True)
class MergeResult:
    """
    Resultado del merge.

    Attributes
    ----------
    records : list of MergedRecord
        Un registro por hash único entre las submissions filtradas.
    submissions_filtered : int
        Submissions que pasaron el filtro de participantes (antes de dedup).
    submissions_total : int
        Submissions válidas antes del filtro de participantes.
    consensus_by_hash : dict
        Consenso autoritativo por hash, **sin** filtrar por participante.
    """

    records: List[MergedRecord] = field(default_factory=list)
    submissions_filtered: int = 0
    submissions_total: int = 0
    consensus_by_hash: Dict[str, ConsensusEvent] = field(default_factory=dict)


_MIN_TS = datetime.min.replace(tzinfo=timezone.utc)


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parsea un ISO-8601 a datetime aware (UTC si no trae zona). ``None`` si no se puede."""
    if not value:
        return None
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(text)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _sort_key(event: ConsensusEvent) -> Tuple[bool, datetime]:
    ts = parse_timestamp(event.timestamp)
    return (ts is not None, ts or _MIN_TS)


def build_consensus_map(events: Iterable[ConsensusEvent]) -> Dict[str, ConsensusEvent]:
    """Consenso autoritativo por hash (gana el timestamp más alto)."""
    winners: Dict[str, ConsensusEvent] = {}
    keys: Dict[str, Tuple[bool, datetime]] = {}
    for event in events:
        if not event.content_hash:
            continue
        key = _sort_key(event)
        current = keys.get(event.content_hash)
        # estrictamente mayor: en empate se queda el primero visto
        if current is None or key > current:
            winners[event.content_hash] = event
            keys[event.content_hash] = key
    return winners


def active_filter(active: Optional[AbstractSet[str]]) -> Optional[AbstractSet[str]]:
    """``None`` si el filtro no aplica (snapshot ausente o vacío)."""
    return active if active else None


def merge_one(sub: SubmissionEvent, cons: Optional[ConsensusEvent]) -> MergedRecord:
    if cons is None:
        return MergedRecord(
            timestamp=sub.timestamp,
            participant=sub.actor,
            content_hash=sub.content_hash,
            item_id=sub.item_id,
            epoch_id=None,
            decision=Decision.PENDING,
            score=None,
            rejection_category=normalize_rejection(None),
        )
    return MergedRecord(
        timestamp=sub.timestamp,
        participant=sub.actor,
        content_hash=sub.content_hash,
        item_id=sub.item_id,
        epoch_id=cons.epoch_id,
        decision=cons.normalized_decision,
        score=cons.score,
        rejection_category=normalize_rejection(cons.rejection),
    )


def merge(
    submissions: Iterable[SubmissionEvent],
    consensus_events: Iterable[ConsensusEvent],
    active_participants: Optional[AbstractSet[str]] = None,
) -> MergeResult:
    """
    Une submissions y consensos por ``content_hash``.

    Parameters
    ----------
    submissions : iterable of SubmissionEvent
        En el orden del store (normalmente más reciente primero).
    consensus_events : iterable of ConsensusEvent
        Cualquier orden; la regla de ganador no depende del orden salvo empates.
    active_participants : set of str, optional
        Hotkeys activos. ``None`` o vacío desactiva el filtro (fail-open).

    Returns
    -------
    MergeResult
    """
    active = active_filter(active_participants)

    valid = [s for s in submissions if s is not None and s.content_hash and s.actor]
    filtered = valid if active is None else [s for s in valid if s.actor in active]

    consensus_by_hash = build_consensus_map(c for c in consensus_events if c is not None)

    seen = set()
    records: List[MergedRecord] = []
    for sub in filtered:
        if sub.content_hash in seen:
            continue
        seen.add(sub.content_hash)
        records.append(merge_one(sub, consensus_by_hash.get(sub.content_hash)))

    return MergeResult(
        records=records,
        submissions_filtered=len(filtered),
        submissions_total=len(valid),
        consensus_by_hash=consensus_by_hash,
    )


__all__ = [
    "MergeResult",
    "parse_timestamp",
    "build_consensus_map",
    "active_filter",
    "merge_one",
    "merge",
]
