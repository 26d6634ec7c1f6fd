# tests/conftest.py
"""Fixtures compartidos.

El histórico de prueba es un ``transparency_log`` mínimo y determinista:

- ``hk_a`` y ``hk_b`` son participantes activos (uid 1 y 2); ``hk_c`` no está
  en el snapshot.
- ``h1`` tiene una submission duplicada; ``h4`` no tiene consenso (PENDING).
- El reloj del servicio está fijo en ``2026-01-10T12:00:00Z``.
"""
import os
from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

# Asegura que el código del backend esté en el path
os.environ.setdefault("PYTHONPATH", "backend/src")  # opcional, pyproject ya lo configura

from leadboard.app.main import app  # noqa: E402
from leadboard.config import Settings  # noqa: E402
from leadboard.dashboard.participants import ParticipantSnapshot, StaticSnapshotProvider  # noqa: E402
from leadboard.dashboard.service import DashboardService  # noqa: E402
from leadboard.dashboard.store import InMemoryEventStore, PagingPolicy  # noqa: E402
from leadboard.observability.bus_eventos import EventBus  # noqa: E402

NOW = datetime(2026, 1, 10, 12, 0, tzinfo=timezone.utc)


def submission(ts, actor, content_hash, lead_id=None):
    return {
        "ts": ts,
        "event_type": "SUBMISSION",
        "actor_hotkey": actor,
        "email_hash": content_hash,
        "payload": {"lead_id": lead_id} if lead_id else {},
    }


def consensus(ts, content_hash, decision, *, epoch=None, score=None, reason=None, lead_id=None):
    payload = {"final_decision": decision}
    if epoch is not None:
        payload["epoch_id"] = epoch
    if score is not None:
        payload["final_rep_score"] = score
    if reason is not None:
        payload["primary_rejection_reason"] = reason
    if lead_id is not None:
        payload["lead_id"] = lead_id
    return {
        "ts": ts,
        "event_type": "CONSENSUS_RESULT",
        "actor_hotkey": None,
        "email_hash": content_hash,
        "payload": payload,
    }


def sample_rows():
    return [
        submission("2026-01-10T10:00:00+00:00", "hk_a", "h1", "L1"),
        submission("2026-01-10T10:05:00+00:00", "hk_a", "h1", "L1"),
        submission("2026-01-10T09:00:00+00:00", "hk_a", "h2", "L2"),
        submission("2026-01-09T08:00:00+00:00", "hk_b", "h3", "L3"),
        submission("2026-01-05T08:00:00+00:00", "hk_b", "h4", "L4"),
        submission("2026-01-10T11:00:00+00:00", "hk_c", "h5", "L5"),
        consensus("2026-01-10T10:30:00+00:00", "h1", "approve", epoch=100, score=0.9, lead_id="L1"),
        consensus(
            "2026-01-10T10:40:00+00:00", "h2", "deny", epoch=100, score=0.2,
            reason='{"failed_fields": ["email"]}', lead_id="L2",
        ),
        consensus(
            "2026-01-09T09:00:00+00:00", "h3", "deny", epoch=99,
            reason="Duplicate lead detected", lead_id="L3",
        ),
        consensus("2026-01-10T11:30:00+00:00", "h5", "accept", epoch=100, score=0.5, lead_id="L5"),
    ]


def sample_snapshot():
    return ParticipantSnapshot.model_validate(
        {
            "hotkeyToUid": {"hk_a": 1, "hk_b": 2},
            "uidToHotkey": {"1": "hk_a", "2": "hk_b"},
            "incentives": {"1": 0.6, "2": 0.4},
            "totalNeurons": 2,
        }
    )


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def store(bus):
    return InMemoryEventStore(sample_rows(), policy=PagingPolicy(batch_size=3, pause_s=0.0), bus=bus)


@pytest.fixture
def snapshot_provider():
    return StaticSnapshotProvider(sample_snapshot())


@pytest.fixture
def service(store, snapshot_provider, bus):
    return DashboardService(
        store,
        snapshot_provider,
        settings=Settings(prewarm=False),
        bus=bus,
        now=lambda: NOW,
    )


@pytest.fixture
def client(service):
    """TestClient con el servicio de prueba ya puesto en ``app.state``."""
    app.state.dashboard_service = service
    try:
        with TestClient(app) as c:
            yield c
    finally:
        app.state.dashboard_service = None
