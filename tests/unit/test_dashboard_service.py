# tests/unit/test_dashboard_service.py
"""Tests del servicio del dashboard sobre el histórico de ``conftest``.

Snapshot activo: ``hk_a`` (uid 1) y ``hk_b`` (uid 2). ``hk_c`` queda fuera
del filtro salvo en los tests sin proveedor de snapshot.
"""
import asyncio

import pytest

from leadboard.config import HOUR_PRESETS, Settings
from leadboard.dashboard.service import DashboardService
from leadboard.dashboard.store import EventStoreError, InMemoryEventStore


def test_build_dashboard_all_time(service):
    bundle = asyncio.run(service.build_dashboard(0))

    s = bundle["summary"]
    assert s["total_submissions"] == 5
    assert s["unique_leads"] == 4
    assert (s["total_accepted"], s["total_rejected"], s["total_pending"]) == (1, 2, 1)
    assert s["acceptance_rate"] == 33.3
    assert s["avg_rep_score"] == pytest.approx(0.9)
    assert s["unique_miners"] == 2
    assert s["latest_epoch"] == 100

    assert bundle["total_submission_count"] == 6
    assert bundle["snapshot_available"] is True
    assert bundle["skipped_batches"] == 0

    assert [m["miner_hotkey"] for m in bundle["miner_stats"]] == ["hk_a", "hk_b"]
    assert [m["uid"] for m in bundle["miner_stats"]] == [1, 2]

    assert bundle["rejection_reasons"] == [
        {"reason": "Invalid Email", "count": 1, "percentage": 50.0},
        {"reason": "Duplicate Lead", "count": 1, "percentage": 50.0},
    ]
    assert bundle["lead_inventory"] == [{"date": "2026-01-10", "new_leads": 2, "cumulative_leads": 2}]
    assert bundle["lead_inventory_count"] == {"accepted": 2, "rejected": 2, "pending": 0}
    assert bundle["incentive_data"] == [
        {"miner_hotkey": "hk_a", "accepted_leads": 1, "lead_share_pct": 100.0, "uid": 1, "bt_incentive_pct": 60.0}
    ]


def test_epoch_totals_count_inactive_participants(service):
    bundle = asyncio.run(service.build_dashboard(0))
    epochs = {e["epoch_id"]: e for e in bundle["epoch_stats"]}

    assert list(epochs) == [100, 99]
    e100 = epochs[100]
    assert (e100["total_leads"], e100["accepted"], e100["rejected"]) == (3, 2, 1)
    assert e100["acceptance_rate"] == 66.7
    assert [m["miner_hotkey"] for m in e100["miners"]] == ["hk_a"]


def test_window_limits_events(service):
    bundle = asyncio.run(service.build_dashboard(24))
    assert bundle["summary"]["total_submissions"] == 3
    assert bundle["summary"]["unique_leads"] == 2


def test_without_snapshot_nothing_is_filtered(store, bus):
    service = DashboardService(store, None, settings=Settings(prewarm=False), bus=bus)
    bundle = asyncio.run(service.build_dashboard(0))
    assert bundle["summary"]["total_submissions"] == 6
    assert bundle["summary"]["unique_leads"] == 5
    assert bundle["snapshot_available"] is False
    assert bundle["miner_stats"][0]["uid"] is None


def test_get_dashboard_is_cached_and_invalid_hours_collapse(service, store):
    async def scenario():
        first = await service.get_dashboard(0)
        second = await service.get_dashboard(5)
        return first, second

    first, second = asyncio.run(scenario())
    assert first is second
    assert store.calls["fetch_events"] == 2


def test_first_build_schedules_prewarm_of_all_presets(store, snapshot_provider, bus):
    service = DashboardService(store, snapshot_provider, settings=Settings(prewarm=True), bus=bus)

    async def scenario():
        await service.get_dashboard(24)
        await service.cache.wait_background()
        return service.status()

    status = asyncio.run(scenario())
    assert set(status["presets"]) == {str(h) for h in HOUR_PRESETS}
    assert all(state == "FRESH" for state in status["presets"].values())
    assert status["latest_leads"] == "FRESH"
    assert status["events"]["aggregation.completed"] == len(HOUR_PRESETS)


def test_latest_leads_joined_and_filtered(service):
    leads = asyncio.run(service.get_latest_leads(100))

    assert [lead["email_hash"] for lead in leads] == ["h2", "h1", "h3"]
    h2 = leads[0]
    assert h2["miner_hotkey"] == "hk_a"
    assert h2["uid"] == 1
    assert h2["lead_id"] == "L2"
    assert h2["decision"] == "REJECTED"
    assert h2["rejection_reason"] == "Invalid Email"
    assert h2["timestamp"] == "2026-01-10T09:00:00+00:00"
    assert leads[1]["rejection_reason"] is None


def test_latest_leads_limit(service):
    assert len(asyncio.run(service.get_latest_leads(2))) == 2


def test_lead_journey_last_72h(service):
    journey = asyncio.run(service.get_lead_journey())
    assert [j["email_hash"] for j in journey] == ["h1", "h2", "h3"]
    assert journey[0]["email_hash_short"] == "h1..."
    assert journey[2]["rejection_reason"] == "Duplicate Lead"


def test_lead_events(service):
    result = asyncio.run(service.get_lead_events("h1"))
    assert result["decision"] == "ACCEPTED"
    assert result["rejection_reason"] == "N/A"
    assert [e["event_type"] for e in result["events"]] == ["SUBMISSION", "SUBMISSION", "CONSENSUS_RESULT"]

    missing = asyncio.run(service.get_lead_events("nope"))
    assert missing["events"] == []
    assert missing["decision"] == "PENDING"


def test_rejection_counts_keep_excluded_categories(store, bus):
    store.add({
        "ts": "2026-01-10T08:00:00+00:00", "event_type": "SUBMISSION",
        "actor_hotkey": "hk_a", "email_hash": "h6", "payload": {},
    })
    store.add({
        "ts": "2026-01-10T08:30:00+00:00", "event_type": "CONSENSUS_RESULT",
        "email_hash": "h6", "payload": {"final_decision": "deny", "primary_rejection_reason": '{"failed_fields": ["llm_error"]}'},
    })
    service = DashboardService(store, None, settings=Settings(prewarm=False), bus=bus)

    async def scenario():
        bundle = await service.get_dashboard(0)
        counts = await service.get_rejection_counts(0)
        return bundle, counts

    bundle, counts = asyncio.run(scenario())
    assert "LLM Error" not in {r["reason"] for r in bundle["rejection_reasons"]}
    assert "LLM Error" in {r["reason"] for r in counts}


class _BrokenStore(InMemoryEventStore):
    async def fetch_events(self, event_type, since=None):
        raise EventStoreError("store unreachable")


def test_cold_failure_propagates(bus):
    service = DashboardService(_BrokenStore([]), None, settings=Settings(prewarm=False), bus=bus)
    with pytest.raises(EventStoreError):
        asyncio.run(service.get_dashboard(0))
    assert bus.counts()["cache.refresh_failed"] == 1
    assert not service.cache.is_refreshing(service.prewarm_keys()[0])


def test_event_totals(service):
    assert asyncio.run(service.event_totals()) == {"SUBMISSION": 6, "CONSENSUS_RESULT": 4}


class _UncountableStore(InMemoryEventStore):
    async def count_events(self, event_type):
        raise EventStoreError("count unavailable")


def test_event_totals_failure_reports_none(bus):
    service = DashboardService(_UncountableStore([]), None, settings=Settings(prewarm=False), bus=bus)
    assert asyncio.run(service.event_totals()) == {"SUBMISSION": None, "CONSENSUS_RESULT": None}
