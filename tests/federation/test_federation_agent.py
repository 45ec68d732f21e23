"""Tests for the federation agent: snapshot merging and network evaluation."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from optiloop.autonomy.trust import TrustMetrics, TrustScore, TrustScorer
from optiloop.federation.agent import FederationAgent
from optiloop.federation.bus import FederationBus
from optiloop.federation.insight import InsightRecorder
from optiloop.persistence.models import OutcomeRecord, OutcomeStatus, PriorityRecord
from optiloop.types import AgentRole

SECRET = "agent-test-secret"


def _trust(score=90, success=0.9):
    return TrustScore(score=score, metrics=TrustMetrics(
        success_rate=success,
        rollback_rate=0.0,
        policy_violation_rate=0.05,
        total_recommendations=20,
        applied=18,
        violations=1,
    ))


def _priorities():
    return [
        PriorityRecord(agent=AgentRole.GOVERNANCE, weight=0.3, confidence=0.85, rationale="gov"),
        PriorityRecord(agent=AgentRole.OPTIMIZER, weight=0.7, confidence=0.85, rationale="opt"),
    ]


async def _async_priorities():
    return _priorities()


def _bus(tenant, enabled=True):
    return FederationBus(tenant_id=tenant, secret=SECRET, endpoints=[], enabled=enabled)


def _agent(bus, orchestrator=None, recorder=None, trust=None):
    async def trust_source():
        return trust or _trust()

    async def priority_source():
        return _priorities()

    return FederationAgent(
        bus, trust_source, priority_source,
        orchestrator=orchestrator, insight_recorder=recorder,
    )


async def _remote(tenant, event_type, payload):
    result = await _bus(tenant).publish(event_type, payload)
    return result.event.to_wire()


def _share(tenant, weight=0.5):
    return {
        "tenantId": tenant,
        "cycleId": "remote-cycle",
        "priorities": [
            {"agent": "optimizer", "weight": weight, "confidence": 0.7, "rationale": "remote"},
        ],
    }


# ── Construction ─────────────────────────────────────────────


@pytest.mark.asyncio
async def test_disabled_bus_leaves_agent_inert(orchestrator):
    agent = _agent(_bus("tenant-a", enabled=False), orchestrator=orchestrator)
    assert orchestrator.list_agents() == []
    assert await agent.broadcast_local_snapshot() is None
    assert agent.start_periodic(10) is None


@pytest.mark.asyncio
async def test_registers_with_orchestrator(orchestrator):
    _agent(_bus("tenant-a"), orchestrator=orchestrator)
    [reg] = orchestrator.list_agents()
    assert reg.agent_id == AgentRole.FEDERATION
    assert reg.name == "FederationAgent"
    assert reg.priority == 40
    assert "trust-aggregation" in reg.capabilities


# ── Broadcast and evaluation ─────────────────────────────────


@pytest.mark.asyncio
async def test_broadcast_publishes_and_evaluates(orchestrator, db):
    bus = _bus("tenant-a")
    agent = _agent(bus, orchestrator=orchestrator, recorder=InsightRecorder(db))

    result = await agent.broadcast_local_snapshot()
    await bus.drain()

    assert result.event.type == "telemetry_sync"
    assert result.event.payload.trust_metrics.total_recommendations == 20
    assert [e.type for e in reversed(bus.recent_events())] == [
        "telemetry_sync", "trust_aggregate", "priority_share", "model_update",
    ]

    insight = agent.latest_insight()
    assert insight.participants == 1
    assert insight.network_health == "healthy"
    assert len(agent.trust_history()) == 1
    assert agent.model_history()[0].notes == "Global sync (local-snapshot)"

    rows = await InsightRecorder(db).history()
    assert len(rows) == 1
    assert rows[0].cycle_id.endswith("::local-snapshot")

    snapshot = await orchestrator.get_snapshot()
    [report] = [e for e in snapshot.events if e.source == AgentRole.FEDERATION]
    assert report.target == AgentRole.INSIGHT
    assert report.payload.summary == "FederationAgent synchronized 1 instances (health: healthy)."
    assert len(report.payload.correlations) == 2


@pytest.mark.asyncio
async def test_share_priorities_carry_global_rationale():
    bus = _bus("tenant-a")
    agent = _agent(bus)
    await agent.broadcast_local_snapshot()
    await bus.drain()

    [share] = [e for e in bus.recent_events() if e.type == "priority_share"]
    assert share.payload.priorities[0].rationale == "Global average 30.0%"


@pytest.mark.asyncio
async def test_remote_telemetry_triggers_network_evaluation():
    bus = _bus("tenant-a")
    agent = _agent(bus)
    await agent.broadcast_local_snapshot()
    await bus.drain()

    event = await _remote("tenant-b", "telemetry_sync", {
        "tenantId": "tenant-b", "trustScore": 70, "syncLatencyMs": 200, "priorities": [],
    })
    assert await bus.ingest(event)
    await bus.drain()

    tenants = {s.tenant_id: s for s in agent.snapshots()}
    assert set(tenants) == {"tenant-a", "tenant-b"}
    assert tenants["tenant-b"].trust_score == 70
    insight = agent.latest_insight()
    assert insight.participants == 2
    assert insight.average_trust == 80
    assert len(agent.trust_history()) == 2


@pytest.mark.asyncio
async def test_unchanged_priority_share_does_not_re_evaluate():
    bus = _bus("tenant-a")
    agent = _agent(bus)

    first = await _remote("tenant-b", "priority_share", _share("tenant-b"))
    await bus.ingest(first)
    await bus.drain()
    assert len(agent.trust_history()) == 1

    again = await _remote("tenant-b", "priority_share", _share("tenant-b"))
    await bus.ingest(again)
    await bus.drain()
    assert len(agent.trust_history()) == 1

    changed = await _remote("tenant-b", "priority_share", _share("tenant-b", weight=0.6))
    await bus.ingest(changed)
    await bus.drain()
    assert len(agent.trust_history()) == 2


@pytest.mark.asyncio
async def test_priority_share_keeps_known_trust():
    bus = _bus("tenant-a")
    agent = _agent(bus)
    await bus.ingest(await _remote("tenant-b", "telemetry_sync", {
        "tenantId": "tenant-b", "trustScore": 66,
    }))
    await bus.ingest(await _remote("tenant-b", "priority_share", _share("tenant-b")))
    await bus.drain()

    [snapshot] = [s for s in agent.snapshots() if s.tenant_id == "tenant-b"]
    assert snapshot.trust_score == 66
    assert snapshot.priorities[0].weight == 0.5


@pytest.mark.asyncio
async def test_remote_aggregates_and_model_updates_are_recorded():
    bus = _bus("tenant-a")
    agent = _agent(bus)

    await bus.ingest(await _remote("tenant-b", "trust_aggregate", {
        "tenantId": "tenant-b", "cycleId": "c-7", "participants": 3,
        "averageTrust": 77, "networkHealth": "degraded",
    }))
    await bus.ingest(await _remote("tenant-b", "model_update", {
        "tenantId": "tenant-b", "cycleId": "c-7", "trustScore": 77, "notes": "remote sync",
    }))
    await bus.drain()

    [aggregate] = agent.trust_history()
    assert aggregate.cycle_id == "c-7"
    assert aggregate.network_health == "degraded"
    assert aggregate.received_at
    [update] = agent.model_history()
    assert update.notes == "remote sync"


@pytest.mark.asyncio
async def test_own_aggregate_echo_is_ignored():
    bus = _bus("tenant-a")
    agent = _agent(bus)
    await bus.publish("trust_aggregate", {
        "tenantId": "tenant-a", "cycleId": "c-1", "participants": 1,
        "averageTrust": 90, "networkHealth": "healthy",
    })
    await bus.drain()
    assert agent.trust_history() == []


@pytest.mark.asyncio
async def test_evaluation_without_snapshots_is_a_noop():
    agent = _agent(_bus("tenant-a"))
    assert await agent.evaluate_global_network("manual") is None


@pytest.mark.asyncio
async def test_recorder_failure_falls_back_to_analysis():
    recorder = AsyncMock()
    recorder.record.side_effect = RuntimeError("db locked")
    bus = _bus("tenant-a")
    agent = _agent(bus, recorder=recorder)

    await agent.broadcast_local_snapshot()
    await bus.drain()
    assert agent.latest_insight().participants == 1


@pytest.mark.asyncio
async def test_broadcast_survives_rollbacks_outnumbering_applied(db):
    await db.record_outcome(OutcomeRecord(
        recommendation_id="rec-1", route="/invoices", status=OutcomeStatus.APPLIED,
    ))
    for i in range(2):
        await db.record_outcome(OutcomeRecord(
            recommendation_id=f"rec-rb{i}",
            route="/invoices",
            status=OutcomeStatus.REJECTED,
            rollback=True,
        ))

    bus = _bus("tenant-a")
    agent = FederationAgent(bus, TrustScorer(db).compute, _async_priorities)
    result = await agent.broadcast_local_snapshot()
    await bus.drain()

    assert result.event.payload.trust_metrics.rollback_rate == 1.0


# ── Lifecycle ────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_dispose_unsubscribes():
    bus = _bus("tenant-a")
    agent = _agent(bus)
    agent.dispose()

    await bus.ingest(await _remote("tenant-b", "telemetry_sync", {
        "tenantId": "tenant-b", "trustScore": 70,
    }))
    await bus.drain()
    assert agent.snapshots() == []


@pytest.mark.asyncio
async def test_periodic_broadcast_runs_until_disposed():
    bus = _bus("tenant-a")
    agent = _agent(bus)

    task = agent.start_periodic(3600)
    assert task is not None
    assert agent.start_periodic(3600) is task
    for _ in range(100):
        if agent.snapshots():
            break
        await asyncio.sleep(0.01)
    assert agent.snapshots()[0].tenant_id == "tenant-a"

    agent.dispose()
    await asyncio.gather(task, return_exceptions=True)
    assert task.cancelled()
