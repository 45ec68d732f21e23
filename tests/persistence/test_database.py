"""Tests for the durable store."""

import pytest

from optiloop.persistence.database import Database
from optiloop.persistence.models import (
    EventLogRecord,
    FederationMetricsRecord,
    OutcomeRecord,
    OutcomeStatus,
    PolicyStatus,
    PriorityRecord,
    RecoveryRecord,
)
from optiloop.types import AgentRole


@pytest.mark.asyncio
async def test_uninitialized_database_raises():
    with pytest.raises(RuntimeError):
        Database("unused.db").conn


@pytest.mark.asyncio
async def test_outcome_counts(db, record_outcomes):
    assert (await db.count_outcomes()).total == 0
    await record_outcomes(applied=3, rejected=2, rollbacks=1, blocked=1)
    await db.record_outcome(OutcomeRecord(
        status=OutcomeStatus.PENDING, policy_status=PolicyStatus.REVIEW,
    ))

    counts = await db.count_outcomes()
    assert counts.total == 6
    assert counts.applied == 3
    assert counts.rollback == 1
    assert counts.violations == 2


@pytest.mark.asyncio
async def test_priority_upsert_keeps_one_row_per_agent(db):
    first = await db.upsert_priorities([
        PriorityRecord(agent=AgentRole.OPTIMIZER, weight=0.4, confidence=0.8, rationale="a"),
    ])
    second = await db.upsert_priorities([
        PriorityRecord(agent=AgentRole.OPTIMIZER, weight=0.6, confidence=0.7, rationale="b"),
        PriorityRecord(agent=AgentRole.LEARNING, weight=0.4, confidence=0.7, rationale="c"),
    ])

    stored = await db.list_priorities()
    assert len(stored) == 2
    assert second[0].id == first[0].id
    assert second[0].weight == 0.6
    assert second[0].rationale == "b"
    assert len(await db.list_priorities(limit=1)) == 1


@pytest.mark.asyncio
async def test_recovery_log_is_append_only(db):
    for action in ("noop", "rollback", "reevaluate"):
        await db.append_recovery(RecoveryRecord(agent=AgentRole.OPTIMIZER, action=action))
    rows = await db.list_recovery(limit=10)
    assert len(rows) == 3
    assert {r.action for r in rows} == {"noop", "rollback", "reevaluate"}
    assert len(await db.list_recovery(limit=2)) == 2


@pytest.mark.asyncio
async def test_event_log_lookup_by_recommendation(db):
    await db.append_event_log(EventLogRecord(
        trace_id="t1", event_type="recommendation", source_agent="optimizer",
        priority=75, summary="do it", payload={"route": "/a"}, recommendation_id="rec-1",
    ))
    await db.append_event_log(EventLogRecord(
        trace_id="t1", event_type="evaluation", source_agent="learning",
        priority=60, summary="done", payload={"status": "approved"}, recommendation_id="rec-1",
    ))

    found = await db.latest_event_log("rec-1", "evaluation")
    assert found.payload == {"status": "approved"}
    assert found.source_agent == "learning"
    assert await db.latest_event_log("rec-1", "policy_update") is None
    assert await db.count_event_log() == 2


@pytest.mark.asyncio
async def test_federation_metrics_upsert(db):
    record = FederationMetricsRecord(
        cycle_id="c1", tenant_id="a", participants=2, average_trust=75,
        aggregated_priorities=[{"agent": "optimizer", "weight": 0.5}],
        network_health="degraded",
    )
    await db.upsert_federation_metrics(record)
    await db.upsert_federation_metrics(record.model_copy(update={"summary": "updated"}))

    [row] = await db.list_federation_metrics()
    assert row.summary == "updated"
    assert row.aggregated_priorities == [{"agent": "optimizer", "weight": 0.5}]
    assert row.network_health == "degraded"


@pytest.mark.asyncio
async def test_reset_wipes_everything(db, record_outcomes):
    await record_outcomes(applied=2)
    await db.append_recovery(RecoveryRecord(agent=AgentRole.INSIGHT, action="noop"))
    await db.reset()
    assert (await db.count_outcomes()).total == 0
    assert await db.list_recovery() == []
