"""leadboard.dashboard.records

Registros de dominio del Dashboard.

El ``transparency_log`` expone dos tipos de eventos que nos interesan:

- ``SUBMISSION``: un miner envía un lead (fuente de verdad de "qué existe").
- ``CONSENSUS_RESULT``: resultado de consenso para un lead (decisión, epoch,
  score y motivo de rechazo).

Ambos se correlacionan por ``email_hash`` (content hash). Este módulo define
las formas tipadas de esos eventos y del registro unificado
(:class:`MergedRecord`) sobre el que trabajan las agregaciones.

Notas
-----
- Todos los registros son inmutables (``frozen=True``). El merge se reconstruye
  completo en cada ciclo de fetch; nunca se parchea un registro existente.
- La conversión desde filas crudas del store es tolerante: filas sin hash (o
  sin actor, en submissions) se descartan devolviendo ``None``.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Mapping, Optional


EVENT_SUBMISSION = "SUBMISSION"
EVENT_CONSENSUS = "CONSENSUS_RESULT"


class Decision(str, Enum):
    """Decisión normalizada de un lead."""

    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"
    PENDING = "PENDING"


_REJECTED_VALUES = frozenset({"deny", "denied", "reject", "rejected"})
_ACCEPTED_VALUES = frozenset({"allow", "allowed", "accept", "accepted", "approve", "approved"})


def normalize_decision(raw: Optional[str]) -> Decision:
    """Normaliza el ``final_decision`` libre del consenso.

    Valores desconocidos (o vacíos) se consideran ``PENDING``.
    """
    if not raw:
        return Decision.PENDING
    lower = str(raw).strip().lower()
    if lower in _REJECTED_VALUES:
        return Decision.REJECTED
    if lower in _ACCEPTED_VALUES:
        return Decision.ACCEPTED
    return Decision.PENDING


def _payload(row: Mapping[str, Any]) -> Dict[str, Any]:
    p = row.get("payload")
    return p if isinstance(p, dict) else {}


def _opt_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _opt_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _opt_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    s = str(value)
    return s if s else None


@dataclass(frozen=True)
class SubmissionEvent:
    """Evento ``SUBMISSION`` (uno por lead enviado)."""

    timestamp: str
    actor: str
    content_hash: str
    item_id: Optional[str] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> Optional["SubmissionEvent"]:
        actor = _opt_str(row.get("actor_hotkey"))
        content_hash = _opt_str(row.get("email_hash"))
        if actor is None or content_hash is None:
            return None
        return cls(
            timestamp=str(row.get("ts") or ""),
            actor=actor,
            content_hash=content_hash,
            item_id=_opt_str(_payload(row).get("lead_id")),
        )


@dataclass(frozen=True)
class ConsensusEvent:
    """Evento ``CONSENSUS_RESULT``.

    ``decision`` conserva el string crudo; la normalización ocurre en el merge
    (ver :func:`normalize_decision`).
    """

    content_hash: str
    decision: str = ""
    timestamp: Optional[str] = None
    epoch_id: Optional[int] = None
    score: Optional[float] = None
    rejection: Optional[str] = None
    item_id: Optional[str] = None

    @property
    def normalized_decision(self) -> Decision:
        return normalize_decision(self.decision)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> Optional["ConsensusEvent"]:
        content_hash = _opt_str(row.get("email_hash"))
        if content_hash is None:
            return None
        p = _payload(row)
        return cls(
            content_hash=content_hash,
            decision=str(p.get("final_decision") or ""),
            timestamp=_opt_str(row.get("ts")),
            epoch_id=_opt_int(p.get("epoch_id")),
            score=_opt_float(p.get("final_rep_score")),
            rejection=_opt_str(p.get("primary_rejection_reason")),
            item_id=_opt_str(p.get("lead_id")),
        )


@dataclass(frozen=True)
class MergedRecord:
    """Registro unificado: una submission + (opcional) su consenso.

    Invariante: ``decision == PENDING`` si y solo si ningún consenso referenció
    ``content_hash``. La única excepción es un consenso con ``final_decision``
    no reconocido, que también se reporta como ``PENDING``.
    """

    timestamp: str
    participant: str
    content_hash: str
    item_id: Optional[str]
    epoch_id: Optional[int]
    decision: Decision
    score: Optional[float]
    rejection_category: str

    def as_row(self) -> Dict[str, Any]:
        """Fila plana para construir DataFrames (ver aggregations)."""
        return {
            "timestamp": self.timestamp,
            "participant": self.participant,
            "content_hash": self.content_hash,
            "item_id": self.item_id,
            "epoch_id": self.epoch_id,
            "decision": self.decision.value,
            "score": self.score,
            "rejection_category": self.rejection_category,
        }
