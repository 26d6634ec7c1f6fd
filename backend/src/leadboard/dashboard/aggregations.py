"""leadboard.dashboard.aggregations

Agregaciones del Dashboard sobre el snapshot de registros unificados.

Todas las funciones reciben el **mismo** DataFrame construido una vez por
ciclo (:func:`records_frame`) a partir de la salida del merge; ninguna vuelve
a consultar el store. :func:`aggregate` es el punto de entrada que usa el
servicio y garantiza esa propiedad.

Agregaciones
------------
- ``summary``: conteos por decisión, tasa de aceptación, score promedio
  (solo ACCEPTED con score), miners y epochs distintos, último epoch.
- ``miner_stats``: por participante, con ventana de los últimos 20 epochs
  (los 20 ids de epoch más altos presentes, no una ventana temporal), epoch
  actual, performance por epoch e histograma de rechazos propio.
- ``epoch_stats``: totales por epoch desde el consenso autoritativo por hash
  de **todos** los participantes; el desglose por miner usa solo registros
  filtrados.
- ``rejection_histogram``: REJECTED por categoría, con lista de exclusión
  opcional (porcentaje sobre el total filtrado).
- ``lead_inventory``: item ids ACCEPTED por fecha UTC de su primer consenso
  aceptado (nuevos y acumulado), sobre todos los consensos.
- ``lead_inventory_count``: item ids únicos por decisión sobre todos los
  consensos.
- ``incentive_distribution``: participación de cada miner en los ACCEPTED.

Convenciones numéricas
----------------------
- Tasas en porcentaje con 1 decimal: ``round(x * 1000) / 10``.
- Scores con 3 o 4 decimales según el campo.
- Redondeo *half away from zero* en todas las agregaciones
  (:func:`round_half_up`), no el *banker's rounding* de ``round``.
"""

from __future__ import annotations

import math
from collections import Counter
from typing import Any, Dict, Iterable, List, Mapping, Optional

import numpy as np
import pandas as pd

from .merge import MergeResult
from .participants import ParticipantSnapshot
from .records import ConsensusEvent, Decision, MergedRecord
from .rejections import is_excluded_category


COLUMNS = (
    "timestamp",
    "participant",
    "content_hash",
    "item_id",
    "epoch_id",
    "decision",
    "score",
    "rejection_category",
)

LAST_EPOCHS_WINDOW = 20
UNKNOWN_CATEGORY = "Unknown"

_ACC = Decision.ACCEPTED.value
_REJ = Decision.REJECTED.value
_PEN = Decision.PENDING.value


# ---------------------------------------------------------------------------
# Helpers numéricos
# ---------------------------------------------------------------------------

def round_half_up(value: float, ndigits: int = 0) -> float:
    """Redondeo al más cercano con empates lejos de cero (como ``Math.round`` en positivos)."""
    factor = 10 ** ndigits
    scaled = float(value) * factor
    rounded = math.floor(abs(scaled) + 0.5)
    return math.copysign(rounded, scaled) / factor


def rate_pct(numerator: int, denominator: int) -> float:
    """Porcentaje con 1 decimal; 0 si el denominador es 0."""
    if denominator <= 0:
        return 0.0
    return round_half_up(numerator / denominator * 1000) / 10


def share_pct(numerator: int, denominator: int) -> float:
    """Porcentaje con 2 decimales; 0 si el denominador es 0."""
    if denominator <= 0:
        return 0.0
    return round_half_up(numerator / denominator * 10000) / 100


def _mean_or_zero(values: pd.Series) -> float:
    clean = values.dropna()
    if clean.empty:
        return 0.0
    return float(clean.mean())


# ---------------------------------------------------------------------------
# Construcción del snapshot
# ---------------------------------------------------------------------------

def records_frame(records: Iterable[MergedRecord]) -> pd.DataFrame:
    """
    DataFrame con una fila por :class:`MergedRecord`.

    ``epoch_id`` y ``score`` quedan como ``float64`` (``NaN`` = ausente) para
    que ``isin``/``groupby`` funcionen sin dtypes nullable.
    """
    df = pd.DataFrame([r.as_row() for r in records], columns=list(COLUMNS))
    df["epoch_id"] = pd.to_numeric(df["epoch_id"], errors="coerce").astype("float64")
    df["score"] = pd.to_numeric(df["score"], errors="coerce").astype("float64")
    df["rejection_category"] = df["rejection_category"].fillna("").astype(str)
    return df


def consensus_frame(events: Iterable[ConsensusEvent]) -> pd.DataFrame:
    rows = [
        {
            "content_hash": e.content_hash,
            "epoch_id": e.epoch_id,
            "decision": e.normalized_decision.value,
            "score": e.score,
            "item_id": e.item_id,
            "timestamp": e.timestamp,
        }
        for e in events
    ]
    df = pd.DataFrame(rows, columns=["content_hash", "epoch_id", "decision", "score", "item_id", "timestamp"])
    df["epoch_id"] = pd.to_numeric(df["epoch_id"], errors="coerce").astype("float64")
    df["score"] = pd.to_numeric(df["score"], errors="coerce").astype("float64")
    return df


def _decision_counts(df: pd.DataFrame) -> Dict[str, int]:
    counts = df["decision"].value_counts()
    return {
        "accepted": int(counts.get(_ACC, 0)),
        "rejected": int(counts.get(_REJ, 0)),
        "pending": int(counts.get(_PEN, 0)),
    }


def _accepted_avg_score(df: pd.DataFrame) -> float:
    return _mean_or_zero(df.loc[df["decision"] == _ACC, "score"])


def _sorted_desc(items: List[Dict[str, Any]], key: str) -> List[Dict[str, Any]]:
    # sorted() es estable: empates conservan el orden de aparición
    return sorted(items, key=lambda d: d[key], reverse=True)


# ---------------------------------------------------------------------------
# Agregaciones
# ---------------------------------------------------------------------------

def summary(df: pd.DataFrame, *, submissions: Optional[int] = None) -> Dict[str, Any]:
    """
    KPIs globales.

    Parameters
    ----------
    df : pandas.DataFrame
        Snapshot de :func:`records_frame`.
    submissions : int, optional
        Submissions filtradas antes de deduplicar por hash (lo que reporta
        ``total_submissions``). Por defecto, igual al número de registros.

    Returns
    -------
    dict
        ``total_submissions`` (submissions filtradas, con duplicados), ``total_accepted``,
        ``total_rejected``, ``total_pending``, ``acceptance_rate``,
        ``avg_rep_score`` (4 decimales), ``unique_miners``, ``unique_epochs``,
        ``latest_epoch`` y ``unique_leads`` (registros unificados, uno por hash).
    """
    counts = _decision_counts(df)
    decided = counts["accepted"] + counts["rejected"]
    epochs = df["epoch_id"].dropna()

    return {
        "total_submissions": int(submissions if submissions is not None else len(df)),
        "total_accepted": counts["accepted"],
        "total_rejected": counts["rejected"],
        "total_pending": counts["pending"],
        "acceptance_rate": rate_pct(counts["accepted"], decided),
        "avg_rep_score": round_half_up(_accepted_avg_score(df), 4),
        "unique_miners": int(df["participant"].nunique()),
        "unique_epochs": int(epochs.nunique()),
        "latest_epoch": int(epochs.max()) if not epochs.empty else 0,
        "unique_leads": int(len(df)),
    }


def rejection_histogram(categories: pd.Series, *, exclude: bool = True) -> List[Dict[str, Any]]:
    """
    Histograma de categorías de rechazo.

    Con ``exclude=True`` se descartan las categorías de infraestructura
    (ver :func:`~leadboard.dashboard.rejections.is_excluded_category`) y el
    porcentaje se calcula sobre el total **filtrado**. Con ``exclude=False``
    se devuelven los conteos crudos (export CSV).
    """
    counter: Counter = Counter()
    for raw in categories.tolist():
        category = str(raw) if raw else UNKNOWN_CATEGORY
        if exclude and is_excluded_category(category):
            continue
        counter[category] += 1

    total = sum(counter.values())
    items = [
        {"reason": reason, "count": int(count), "percentage": rate_pct(count, total)}
        for reason, count in counter.items()
    ]
    return _sorted_desc(items, "count")


def rejected_categories(df: pd.DataFrame) -> pd.Series:
    return df.loc[df["decision"] == _REJ, "rejection_category"]


def miner_stats(df: pd.DataFrame, snapshot: Optional[ParticipantSnapshot] = None) -> List[Dict[str, Any]]:
    """Stats por participante, ordenadas por tasa de aceptación (desc)."""
    epoch_ids = sorted(df["epoch_id"].dropna().unique().tolist(), reverse=True)
    current_epoch = epoch_ids[0] if epoch_ids else None
    last_epochs = epoch_ids[:LAST_EPOCHS_WINDOW]

    out: List[Dict[str, Any]] = []
    for participant, g in df.groupby("participant", sort=False):
        counts = _decision_counts(g)
        decided = counts["accepted"] + counts["rejected"]

        in_window = g[g["epoch_id"].isin(last_epochs)]
        window_counts = _decision_counts(in_window)
        if current_epoch is not None:
            current_counts = _decision_counts(g[g["epoch_id"] == current_epoch])
        else:
            current_counts = {"accepted": 0, "rejected": 0, "pending": 0}

        performance = []
        with_epoch = g[g["epoch_id"].notna()]
        for epoch_id, ge in with_epoch.groupby("epoch_id", sort=False):
            ec = _decision_counts(ge)
            performance.append({
                "epoch_id": int(epoch_id),
                "accepted": ec["accepted"],
                "rejected": ec["rejected"],
                "acceptance_rate": rate_pct(ec["accepted"], ec["accepted"] + ec["rejected"]),
            })

        entry: Dict[str, Any] = {
            "miner_hotkey": str(participant),
            "uid": snapshot.uid_for(str(participant)) if snapshot is not None else None,
            "total_submissions": int(len(g)),
            "accepted": counts["accepted"],
            "rejected": counts["rejected"],
            "pending": counts["pending"],
            "acceptance_rate": rate_pct(counts["accepted"], decided),
            "avg_rep_score": round_half_up(_accepted_avg_score(g), 3),
            "last20_accepted": window_counts["accepted"],
            "last20_rejected": window_counts["rejected"],
            "current_accepted": current_counts["accepted"],
            "current_rejected": current_counts["rejected"],
            "epoch_performance": _sorted_desc(performance, "epoch_id"),
            "rejection_reasons": rejection_histogram(rejected_categories(g)),
        }
        out.append(entry)

    return _sorted_desc(out, "acceptance_rate")


def epoch_stats(consensus: pd.DataFrame, df: pd.DataFrame) -> List[Dict[str, Any]]:
    """
    Stats por epoch.

    Parameters
    ----------
    consensus : pandas.DataFrame
        :func:`consensus_frame` del consenso autoritativo por hash, sin filtrar
        por participante (totales "verdaderos" del epoch).
    df : pandas.DataFrame
        Registros unificados (filtrados) para el desglose por miner.

    Notes
    -----
    ``total_leads`` = aceptados + rechazados del epoch (los pendientes no
    cuentan).
    """
    by_epoch_records = {
        epoch_id: g for epoch_id, g in df[df["epoch_id"].notna()].groupby("epoch_id", sort=False)
    }

    out: List[Dict[str, Any]] = []
    for epoch_id, ge in consensus[consensus["epoch_id"].notna()].groupby("epoch_id", sort=False):
        counts = _decision_counts(ge)
        decided = counts["accepted"] + counts["rejected"]

        miners = []
        records = by_epoch_records.get(epoch_id)
        if records is not None:
            for participant, gm in records.groupby("participant", sort=False):
                mc = _decision_counts(gm)
                miners.append({
                    "miner_hotkey": str(participant),
                    "total": int(len(gm)),
                    "accepted": mc["accepted"],
                    "rejected": mc["rejected"],
                    "acceptance_rate": rate_pct(mc["accepted"], mc["accepted"] + mc["rejected"]),
                    "avg_rep_score": round_half_up(_accepted_avg_score(gm), 3),
                })

        out.append({
            "epoch_id": int(epoch_id),
            "total_leads": decided,
            "accepted": counts["accepted"],
            "rejected": counts["rejected"],
            "acceptance_rate": rate_pct(counts["accepted"], decided),
            "avg_rep_score": round_half_up(_accepted_avg_score(ge), 3),
            "miners": _sorted_desc(miners, "acceptance_rate"),
        })

    return _sorted_desc(out, "epoch_id")


def lead_inventory(consensus: pd.DataFrame) -> List[Dict[str, Any]]:
    """
    Serie diaria (UTC) de leads ACCEPTED: ``new_leads`` y ``cumulative_leads``.

    Recibe todos los consensos (sin filtro de participantes): un lead sigue en
    el inventario aunque su miner deje la red. Cada item id cuenta una sola
    vez, en la fecha de su primer consenso aceptado.
    """
    accepted = consensus[
        (consensus["decision"] == _ACC) & consensus["item_id"].notna() & (consensus["item_id"] != "")
    ]
    if accepted.empty:
        return []
    ts = pd.to_datetime(accepted["timestamp"], utc=True, errors="coerce", format="ISO8601")
    dated = pd.DataFrame({"item_id": accepted["item_id"], "ts": ts}).dropna(subset=["ts"])
    if dated.empty:
        return []
    first = dated.groupby("item_id")["ts"].min()
    per_day = first.dt.strftime("%Y-%m-%d").value_counts().sort_index()
    cumulative = per_day.cumsum()
    return [
        {"date": str(day), "new_leads": int(n), "cumulative_leads": int(cumulative[day])}
        for day, n in per_day.items()
    ]


def lead_inventory_count(consensus: pd.DataFrame) -> Dict[str, int]:
    """Item ids únicos por decisión (sobre todos los consensos, sin filtrar)."""
    with_item = consensus[consensus["item_id"].notna() & (consensus["item_id"] != "")]
    uniques = with_item.groupby("decision")["item_id"].nunique()
    return {
        "accepted": int(uniques.get(_ACC, 0)),
        "rejected": int(uniques.get(_REJ, 0)),
        "pending": int(uniques.get(_PEN, 0)),
    }


def incentive_distribution(
    df: pd.DataFrame, snapshot: Optional[ParticipantSnapshot] = None
) -> List[Dict[str, Any]]:
    """Participación de cada miner en el total de ACCEPTED (2 decimales)."""
    accepted = df[df["decision"] == _ACC]
    total = int(len(accepted))
    if total == 0:
        return []

    counts = accepted.groupby("participant", sort=False).size()
    out = []
    for participant, n in counts.items():
        hotkey = str(participant)
        item: Dict[str, Any] = {
            "miner_hotkey": hotkey,
            "accepted_leads": int(n),
            "lead_share_pct": share_pct(int(n), total),
            "uid": None,
            "bt_incentive_pct": None,
        }
        if snapshot is not None and snapshot.available:
            item["uid"] = snapshot.uid_for(hotkey)
            incentive = snapshot.incentive_pct(hotkey)
            item["bt_incentive_pct"] = round_half_up(incentive, 2) if incentive is not None else None
        out.append(item)
    return _sorted_desc(out, "lead_share_pct")


# ---------------------------------------------------------------------------
# Punto de entrada
# ---------------------------------------------------------------------------

def aggregate(
    merged: MergeResult,
    consensus_events: Iterable[ConsensusEvent],
    snapshot: Optional[ParticipantSnapshot] = None,
) -> Dict[str, Any]:
    """
    Corre todas las agregaciones sobre un único snapshot.

    Parameters
    ----------
    merged : MergeResult
        Salida del merge (registros + consenso autoritativo por hash).
    consensus_events : iterable of ConsensusEvent
        Todos los consensos del ciclo, sin filtrar por participante (para
        ``lead_inventory`` y ``lead_inventory_count``).
    snapshot : ParticipantSnapshot, optional
        Para mapear hotkey -> uid e incentivos.
    """
    df = records_frame(merged.records)
    authoritative = consensus_frame(merged.consensus_by_hash.values())
    all_consensus = consensus_frame(consensus_events)

    return {
        "summary": summary(df, submissions=merged.submissions_filtered),
        "miner_stats": miner_stats(df, snapshot),
        "epoch_stats": epoch_stats(authoritative, df),
        "rejection_reasons": rejection_histogram(rejected_categories(df)),
        "rejection_reason_counts": rejection_histogram(rejected_categories(df), exclude=False),
        "lead_inventory": lead_inventory(all_consensus),
        "lead_inventory_count": lead_inventory_count(all_consensus),
        "incentive_data": incentive_distribution(df, snapshot),
    }


def as_python(value: Any) -> Any:
    """Convierte escalares numpy anidados a tipos nativos (JSON-safe)."""
    if isinstance(value, dict):
        return {k: as_python(v) for k, v in value.items()}
    if isinstance(value, list):
        return [as_python(v) for v in value]
    if isinstance(value, np.generic):
        return value.item()
    return value


__all__ = [
    "round_half_up",
    "rate_pct",
    "share_pct",
    "records_frame",
    "consensus_frame",
    "summary",
    "rejection_histogram",
    "rejected_categories",
    "miner_stats",
    "epoch_stats",
    "lead_inventory",
    "lead_inventory_count",
    "incentive_distribution",
    "aggregate",
    "as_python",
]
