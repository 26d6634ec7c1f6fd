# backend/src/leadboard/app/schemas/dashboard.py
"""Esquemas (Pydantic) para la API del Dashboard.

Contratos de respuesta estables para ``/dashboard/*``. El servicio produce
dicts planos (cacheables y JSON-safe); estos modelos los validan al salir por
HTTP y documentan la forma en ``/docs``.

Notas
-----
- Las tasas son porcentajes con 1 decimal; ``lead_share_pct`` usa 2.
- ``uid`` es ``None`` cuando no hay snapshot de participantes.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class DashboardSummary(BaseModel):
    """KPIs globales de la ventana."""

    total_submissions: int = Field(..., description="Submissions filtradas, antes de deduplicar por hash.")
    total_accepted: int
    total_rejected: int
    total_pending: int
    acceptance_rate: float = Field(..., description="accepted / (accepted + rejected), en %.")
    avg_rep_score: float = Field(..., description="Promedio de score de ACCEPTED (4 decimales).")
    unique_miners: int
    unique_epochs: int
    latest_epoch: int = Field(0, description="Mayor epoch visto (0 si ninguno).")
    unique_leads: int = Field(..., description="Registros unificados (un lead por hash).")


class RejectionReason(BaseModel):
    reason: str
    count: int
    percentage: float


class MinerEpochPerformance(BaseModel):
    epoch_id: int
    accepted: int
    rejected: int
    acceptance_rate: float


class MinerStats(BaseModel):
    miner_hotkey: str
    uid: Optional[int] = None
    total_submissions: int
    accepted: int
    rejected: int
    pending: int
    acceptance_rate: float
    avg_rep_score: float
    last20_accepted: int
    last20_rejected: int
    current_accepted: int
    current_rejected: int
    epoch_performance: List[MinerEpochPerformance] = Field(default_factory=list)
    rejection_reasons: List[RejectionReason] = Field(default_factory=list)


class EpochMinerStats(BaseModel):
    miner_hotkey: str
    total: int
    accepted: int
    rejected: int
    acceptance_rate: float
    avg_rep_score: float


class EpochStats(BaseModel):
    epoch_id: int
    total_leads: int = Field(..., description="accepted + rejected del epoch (todos los participantes).")
    accepted: int
    rejected: int
    acceptance_rate: float
    avg_rep_score: float
    miners: List[EpochMinerStats] = Field(default_factory=list)


class DailyLeadInventory(BaseModel):
    date: str = Field(..., description="Fecha UTC (YYYY-MM-DD).")
    new_leads: int
    cumulative_leads: int


class LeadInventoryCount(BaseModel):
    accepted: int = 0
    rejected: int = 0
    pending: int = 0


class IncentiveShare(BaseModel):
    miner_hotkey: str
    accepted_leads: int
    lead_share_pct: float
    uid: Optional[int] = None
    bt_incentive_pct: Optional[float] = None


class DashboardResponse(BaseModel):
    """Contrato para ``GET /dashboard``."""

    hours: int = Field(..., description="Ventana efectiva (0 = todo el histórico).")
    fetched_at: str = Field(..., description="Momento de la respuesta (ISO UTC).")
    summary: DashboardSummary
    miner_stats: List[MinerStats] = Field(default_factory=list)
    epoch_stats: List[EpochStats] = Field(default_factory=list)
    rejection_reasons: List[RejectionReason] = Field(default_factory=list)
    lead_inventory: List[DailyLeadInventory] = Field(default_factory=list)
    lead_inventory_count: LeadInventoryCount
    incentive_data: List[IncentiveShare] = Field(default_factory=list)
    total_submission_count: int = Field(..., description="Submissions sin filtrar por participante.")
    skipped_batches: int = Field(0, description="Batches del store saltados (datos parciales si > 0).")
    snapshot_available: bool = False


class LatestLead(BaseModel):
    email_hash: str
    miner_hotkey: str
    uid: Optional[int] = None
    lead_id: Optional[str] = None
    timestamp: Optional[str] = None
    epoch_id: Optional[int] = None
    decision: str
    rep_score: Optional[float] = None
    rejection_reason: Optional[str] = None


class LeadJourneyEntry(BaseModel):
    email_hash: str
    email_hash_short: str
    miner_hotkey: str
    timestamp: str
    epoch_id: Optional[int] = None
    decision: str
    rep_score: Optional[float] = None
    rejection_reason: str
    lead_id: Optional[str] = None


class LeadEvent(BaseModel):
    ts: Optional[str] = None
    event_type: Optional[str] = None
    actor_hotkey: Optional[str] = None
    payload: Optional[Dict[str, Any]] = None


class LeadEvents(BaseModel):
    """Contrato para ``GET /dashboard/leads/{email_hash}``."""

    email_hash: str
    decision: str
    rejection_reason: str
    events: List[LeadEvent] = Field(default_factory=list)


class DashboardStatus(BaseModel):
    """Contrato para ``GET /dashboard/status``."""

    presets: Dict[str, str] = Field(..., description="Estado del cache por preset de horas.")
    latest_leads: str
    cache: Dict[str, Any]
    events: Dict[str, int] = Field(default_factory=dict, description="Contadores por tópico del bus.")
    store_totals: Dict[str, Optional[int]] = Field(
        default_factory=dict, description="Filas por event_type en el store (None si el conteo falló)."
    )
