"""Tests for global federation insight and its persistence."""

import pytest

from optiloop.federation.insight import (
    InsightRecorder,
    analyze_global_federation,
    average_sync_latency,
    determine_network_health,
)
from optiloop.federation.protocol import AggregatedPriority, FederationSnapshot
from optiloop.types import AgentRole


def _snap(tenant, trust, latency=None, weight=None):
    priorities = []
    if weight is not None:
        priorities = [AggregatedPriority(
            agent=AgentRole.OPTIMIZER, weight=weight, confidence=0.8, rationale="r",
        )]
    return FederationSnapshot(
        tenant_id=tenant, trust_score=trust, sync_latency_ms=latency, priorities=priorities,
    )


@pytest.mark.parametrize("average, deviation, participants, expected", [
    (95, 5, 0, "critical"),
    (85, 10, 3, "healthy"),
    (80, 12, 2, "healthy"),
    (85, 15, 3, "degraded"),
    (65, 5, 3, "degraded"),
    (60, 20, 3, "degraded"),
    (59, 5, 3, "critical"),
    (75, 25, 3, "critical"),
])
def test_network_health_thresholds(average, deviation, participants, expected):
    assert determine_network_health(average, deviation, participants) == expected


def test_average_sync_latency_counts_missing_as_zero():
    assert average_sync_latency([]) is None
    assert average_sync_latency([_snap("a", 80, 100), _snap("b", 90)]) == 50


def test_analyze_empty_federation():
    insight = analyze_global_federation([])
    assert insight.participants == 0
    assert insight.network_health == "critical"
    assert insight.summary == "No federation telemetry received yet."
    assert insight.average_latency_ms is None


def test_analyze_two_tenants():
    insight = analyze_global_federation([
        _snap("a", 90, 120, weight=0.4), _snap("b", 80, 80, weight=0.2),
    ])
    assert insight.participants == 2
    assert insight.average_trust == 85
    assert insight.median_trust == 85
    assert insight.trust_std_deviation == 5
    assert insight.average_latency_ms == 100
    assert insight.highest_tenant.tenant_id == "a"
    assert insight.lowest_tenant.tenant_id == "b"
    assert insight.network_health == "healthy"
    assert insight.aggregated_priorities[0].weight == pytest.approx(0.3)
    assert insight.summary == (
        "Global trust average 85.0 with deviation 5.0. Top priorities: OPTIMIZER 30.0%."
    )


@pytest.mark.asyncio
async def test_recorder_upserts_one_row_per_cycle(db):
    recorder = InsightRecorder(db)
    snapshots = [_snap("a", 90), _snap("b", 40)]

    first = await recorder.record("cycle-1", "a", snapshots)
    assert first.network_health == "critical"
    await recorder.record("cycle-1", "a", snapshots, summary_override="re-run")
    await recorder.record("cycle-2", "a", snapshots[:1])

    rows = await recorder.history()
    assert len(rows) == 2
    by_cycle = {r.cycle_id: r for r in rows}
    assert by_cycle["cycle-1"].summary == "re-run"
    assert by_cycle["cycle-1"].participants == 2
    assert by_cycle["cycle-1"].highest_tenant == "a"
    assert by_cycle["cycle-1"].lowest_trust == 40
    assert by_cycle["cycle-2"].network_health == "healthy"


@pytest.mark.asyncio
async def test_recorder_prefers_explicit_priorities_and_latency(db):
    recorder = InsightRecorder(db)
    explicit = [AggregatedPriority(
        agent=AgentRole.GOVERNANCE, weight=0.5, confidence=0.9, rationale="pinned",
    )]
    insight = await recorder.record(
        "cycle-x", "a", [_snap("a", 85, 10, weight=0.3)],
        aggregated_priorities=explicit, average_latency_ms=42.0,
    )
    assert insight.aggregated_priorities == explicit
    assert insight.average_latency_ms == 42.0

    row = (await recorder.history(limit=1))[0]
    assert row.aggregated_priorities[0]["agent"] == "governance"
    assert row.average_latency_ms == 42.0
