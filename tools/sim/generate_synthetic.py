#!/usr/bin/env python
# -*- coding: utf-8 -*-
"""
Genera un transparency_log sintético (JSONL) para correr el dashboard en modo
local (``LB_EVENTS_FILE``).

Filas:
- SUBMISSION        (ts, actor_hotkey, email_hash, payload.lead_id)
- CONSENSUS_RESULT  (ts, email_hash, payload con final_decision, epoch_id,
                     final_rep_score, primary_rejection_reason, lead_id)

Características:
- Miners con tasas de aceptación distintas (algunos mejores que otros).
- ~10% de leads sin consenso (PENDING) y ~3% de submissions duplicadas.
- Motivos de rechazo en los formatos que aparecen en producción (JSON con
  failed_fields / check_name / stage, texto libre y errores de infraestructura).

Uso:
  python tools/sim/generate_synthetic.py --n 5000 --out data/simulated/events.jsonl
  python tools/sim/generate_synthetic.py --n 500 --miners 8 --days 3 --out data/simulated/small.json
"""
import argparse
import hashlib
import json
import os
from datetime import datetime, timedelta, timezone

import numpy as np
import pandas as pd

REJECTION_SAMPLES = [
    json.dumps({"failed_fields": ["email"]}),
    json.dumps({"failed_fields": ["linkedin", "email"]}),
    json.dumps({"check_name": "check_domain_age", "message": "domain too young"}),
    json.dumps({"check_name": "check_stage5_unified", "message": "Region check failed"}),
    json.dumps({"stage": "Stage 4: LinkedIn/GSE Validation"}),
    json.dumps({"failed_field": "site"}),
    json.dumps({"failed_fields": ["llm_error"]}),
    "duplicate entry found",
    "Email hard bounce",
    "N/A",
]

# Epochs de ~72 minutos
EPOCH_MINUTES = 72


def _hash(i: int, seed: int) -> str:
    return hashlib.sha256(f"lead-{seed}-{i}@example.com".encode()).hexdigest()


def _iso(ts: datetime) -> str:
    return ts.astimezone(timezone.utc).isoformat()


def main():
    ap = argparse.ArgumentParser()
    ap.add_argument("--n", type=int, default=2000, help="Leads a generar")
    ap.add_argument("--miners", type=int, default=12, help="Miners distintos")
    ap.add_argument("--days", type=int, default=10, help="Días hacia atrás desde ahora")
    ap.add_argument("--out", required=True, help="Ruta de salida (.jsonl o .json)")
    ap.add_argument("--seed", type=int, default=42)
    args = ap.parse_args()
    rng = np.random.default_rng(args.seed)

    N = args.n
    now = datetime.now(timezone.utc).replace(microsecond=0)
    hotkeys = np.array([f"5Miner{i:03d}" + "x" * 40 for i in range(args.miners)])
    # calidad por miner: probabilidad de aceptación
    quality = rng.beta(4, 3, size=args.miners)

    miner_idx = rng.integers(0, args.miners, size=N)
    offsets_min = rng.uniform(0, args.days * 24 * 60, size=N)
    submitted = [now - timedelta(minutes=float(m)) for m in offsets_min]

    accepted = rng.random(N) < quality[miner_idx]
    has_consensus = rng.random(N) >= 0.10
    scores = np.clip(rng.normal(0.75, 0.15, size=N), 0, 1)
    reasons = rng.integers(0, len(REJECTION_SAMPLES), size=N)
    duplicated = rng.random(N) < 0.03

    epoch0 = int(now.timestamp() // (EPOCH_MINUTES * 60))

    rows = []
    for i in range(N):
        h = _hash(i, args.seed)
        lead_id = f"lead-{i:06d}"
        ts = submitted[i]
        sub = {
            "ts": _iso(ts),
            "event_type": "SUBMISSION",
            "actor_hotkey": str(hotkeys[miner_idx[i]]),
            "email_hash": h,
            "payload": {"lead_id": lead_id},
        }
        rows.append(sub)
        if duplicated[i]:
            rows.append({**sub, "ts": _iso(ts + timedelta(seconds=30))})

        if not has_consensus[i]:
            continue
        decided = ts + timedelta(minutes=float(rng.uniform(5, 90)))
        if decided > now:
            continue
        payload = {
            "final_decision": "approve" if accepted[i] else "deny",
            "epoch_id": int(decided.timestamp() // (EPOCH_MINUTES * 60)) - epoch0 + 20000,
            "final_rep_score": round(float(scores[i]), 4) if accepted[i] else 0.0,
            "lead_id": lead_id,
        }
        if not accepted[i]:
            payload["primary_rejection_reason"] = REJECTION_SAMPLES[reasons[i]]
        rows.append({
            "ts": _iso(decided),
            "event_type": "CONSENSUS_RESULT",
            "actor_hotkey": None,
            "email_hash": h,
            "payload": payload,
        })

    # orden del store: más reciente primero
    df = pd.DataFrame(rows)
    df["_ts"] = pd.to_datetime(df["ts"], utc=True, format="ISO8601")
    df = df.sort_values("_ts", ascending=False, kind="stable").drop(columns="_ts")
    records = df.to_dict(orient="records")

    # escribir
    os.makedirs(os.path.dirname(args.out) or ".", exist_ok=True)
    ext = os.path.splitext(args.out)[1].lower()
    if ext == ".jsonl":
        with open(args.out, "w", encoding="utf-8") as fh:
            for r in records:
                fh.write(json.dumps(r, ensure_ascii=False) + "\n")
    elif ext == ".json":
        with open(args.out, "w", encoding="utf-8") as fh:
            json.dump(records, fh, ensure_ascii=False)
    else:
        raise ValueError("Usa .jsonl o .json en --out")

    n_cons = int((df["event_type"] == "CONSENSUS_RESULT").sum())
    print(f"[OK] Log sintético escrito en: {args.out} (leads={N}, filas={len(records)}, consensos={n_cons})")


if __name__ == "__main__":
    main()
