# tests/unit/test_aggregations.py
import pandas as pd
import pytest

from leadboard.dashboard.aggregations import (
    aggregate,
    consensus_frame,
    epoch_stats,
    incentive_distribution,
    lead_inventory,
    lead_inventory_count,
    miner_stats,
    rate_pct,
    records_frame,
    rejection_histogram,
    round_half_up,
    share_pct,
    summary,
)
from leadboard.dashboard.merge import merge
from leadboard.dashboard.participants import ParticipantSnapshot
from leadboard.dashboard.records import ConsensusEvent, SubmissionEvent


def _sub(content_hash, actor="X", ts="2026-01-01T10:00:00Z"):
    return SubmissionEvent(timestamp=ts, actor=actor, content_hash=content_hash)


def _cons(content_hash, decision, *, epoch=None, score=None, reason=None, item=None, ts="2026-01-01T11:00:00Z"):
    return ConsensusEvent(
        content_hash=content_hash,
        decision=decision,
        timestamp=ts,
        epoch_id=epoch,
        score=score,
        rejection=reason,
        item_id=item,
    )


def test_participant_scenario_accepted_and_pending():
    merged = merge([_sub("a"), _sub("b")], [_cons("a", "ACCEPTED", score=0.9)])
    stats = miner_stats(records_frame(merged.records))

    assert len(stats) == 1
    x = stats[0]
    assert x["miner_hotkey"] == "X"
    assert x["total_submissions"] == 2
    assert x["accepted"] == 1
    assert x["pending"] == 1
    assert x["rejected"] == 0
    assert x["avg_rep_score"] == pytest.approx(0.9)


def test_counts_add_up_per_participant():
    subs = [_sub(f"h{i}", "XY"[i % 2]) for i in range(10)]
    cons = [_cons(f"h{i}", "approve" if i % 3 else "deny", epoch=i // 4) for i in range(7)]
    for m in miner_stats(records_frame(merge(subs, cons).records)):
        assert m["accepted"] + m["rejected"] + m["pending"] == m["total_submissions"]


@pytest.mark.parametrize(
    "acc,rej,expected",
    [(0, 0, 0.0), (1, 2, 33.3), (2, 1, 66.7), (1, 7, 12.5), (5, 0, 100.0)],
)
def test_rate_formula(acc, rej, expected):
    assert rate_pct(acc, acc + rej) == expected


def test_round_half_away_from_zero():
    assert round_half_up(0.5) == 1.0
    assert round_half_up(2.5) == 3.0
    assert round_half_up(-2.5) == -3.0
    assert share_pct(1, 8) == 12.5


def test_summary_without_scored_accepted_is_zero():
    merged = merge([_sub("a"), _sub("b")], [_cons("a", "approve"), _cons("b", "deny", score=0.7)])
    s = summary(records_frame(merged.records))
    assert s["avg_rep_score"] == 0.0
    assert s["acceptance_rate"] == 50.0


def test_summary_empty_dataset():
    s = summary(records_frame([]))
    assert s["total_submissions"] == 0
    assert s["acceptance_rate"] == 0.0
    assert s["latest_epoch"] == 0
    assert s["unique_epochs"] == 0


def test_summary_epochs_and_miners():
    subs = [_sub("a", "X"), _sub("b", "Y"), _sub("c", "Y")]
    cons = [_cons("a", "approve", epoch=3), _cons("b", "deny", epoch=5), _cons("c", "approve", epoch=5)]
    s = summary(records_frame(merge(subs, cons).records), submissions=4)
    assert s["unique_miners"] == 2
    assert s["unique_epochs"] == 2
    assert s["latest_epoch"] == 5
    assert s["total_submissions"] == 4
    assert s["unique_leads"] == 3


def test_histogram_excludes_infrastructure_and_uses_filtered_total():
    categories = pd.Series(["Invalid Email", "LLM Error", "Invalid Email", "Duplicate Lead", "Validation Error"])

    filtered = rejection_histogram(categories)
    assert filtered == [
        {"reason": "Invalid Email", "count": 2, "percentage": 66.7},
        {"reason": "Duplicate Lead", "count": 1, "percentage": 33.3},
    ]

    raw = rejection_histogram(categories, exclude=False)
    assert sum(item["count"] for item in raw) == 5
    assert {"reason": "LLM Error", "count": 1, "percentage": 20.0} in raw


def test_last20_window_uses_epoch_ids_not_time():
    subs = [_sub(f"h{i}") for i in range(25)]
    cons = [_cons(f"h{i}", "approve", epoch=i) for i in range(25)]
    stats = miner_stats(records_frame(merge(subs, cons).records))[0]
    assert stats["last20_accepted"] == 20
    assert stats["current_accepted"] == 1
    assert stats["epoch_performance"][0]["epoch_id"] == 24


def test_epoch_totals_include_filtered_participants():
    subs = [_sub("a", "X"), _sub("b", "Y")]
    cons = [_cons("a", "approve", epoch=1), _cons("b", "deny", epoch=1)]
    merged = merge(subs, cons, frozenset({"X"}))

    stats = epoch_stats(
        consensus_frame(merged.consensus_by_hash.values()),
        records_frame(merged.records),
    )
    assert len(stats) == 1
    epoch = stats[0]
    assert epoch["total_leads"] == 2
    assert epoch["accepted"] == 1
    assert epoch["rejected"] == 1
    assert epoch["acceptance_rate"] == 50.0
    assert [m["miner_hotkey"] for m in epoch["miners"]] == ["X"]


def test_lead_inventory_groups_by_first_accepted_utc_date():
    events = [
        _cons("a", "approve", item="L1", ts="2026-01-01T23:30:00-02:00"),  # 2026-01-02 UTC
        _cons("a2", "approve", item="L1", ts="2026-01-03T08:00:00Z"),  # mismo lead, fecha posterior
        _cons("b", "approve", item="L2", ts="2026-01-02T10:00:00Z"),
        _cons("c", "approve", item="L3", ts="2026-01-03T10:00:00Z"),
        _cons("d", "deny", item="L4", ts="2026-01-03T11:00:00Z"),
        _cons("e", "approve", ts="2026-01-03T12:00:00Z"),  # sin item id
    ]
    assert lead_inventory(consensus_frame(events)) == [
        {"date": "2026-01-02", "new_leads": 2, "cumulative_leads": 2},
        {"date": "2026-01-03", "new_leads": 1, "cumulative_leads": 3},
    ]


def test_lead_inventory_keeps_leads_of_inactive_participants():
    subs = [_sub("a", "ACTIVE"), _sub("b", "GONE")]
    cons = [
        _cons("a", "approve", item="L1", ts="2026-01-03T09:00:00Z"),
        _cons("b", "approve", item="L2", ts="2026-01-03T10:00:00Z"),
    ]
    bundle = aggregate(merge(subs, cons, {"ACTIVE"}), cons)

    assert bundle["summary"]["unique_leads"] == 1
    assert bundle["lead_inventory_count"]["accepted"] == 2
    assert bundle["lead_inventory"] == [{"date": "2026-01-03", "new_leads": 2, "cumulative_leads": 2}]


def test_lead_inventory_count_unique_items():
    events = [
        _cons("a", "approve", item="L1"),
        _cons("a2", "approve", item="L1"),
        _cons("b", "deny", item="L2"),
        _cons("c", "weird", item="L3"),
        _cons("d", "approve"),
    ]
    assert lead_inventory_count(consensus_frame(events)) == {"accepted": 1, "rejected": 1, "pending": 1}


def test_incentive_distribution_with_snapshot():
    subs = [_sub("a", "X"), _sub("b", "X"), _sub("c", "Y")]
    cons = [_cons(h, "approve") for h in "abc"]
    snapshot = ParticipantSnapshot(hotkey_to_uid={"X": 3, "Y": 4}, incentives={"3": 0.25})

    shares = incentive_distribution(records_frame(merge(subs, cons).records), snapshot)
    assert shares[0] == {
        "miner_hotkey": "X",
        "accepted_leads": 2,
        "lead_share_pct": 66.67,
        "uid": 3,
        "bt_incentive_pct": 25.0,
    }
    assert shares[1]["bt_incentive_pct"] is None


def test_aggregate_bundle_keys():
    merged = merge([_sub("a")], [_cons("a", "deny", reason="spam")])
    bundle = aggregate(merged, [_cons("a", "deny", reason="spam")])
    assert set(bundle) == {
        "summary",
        "miner_stats",
        "epoch_stats",
        "rejection_reasons",
        "rejection_reason_counts",
        "lead_inventory",
        "lead_inventory_count",
        "incentive_data",
    }
    assert bundle["rejection_reasons"] == [{"reason": "Spam Detected", "count": 1, "percentage": 100.0}]
