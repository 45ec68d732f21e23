"""Tests for the control loop."""

import asyncio
import math
from unittest.mock import AsyncMock

import pytest

from optiloop.autonomy.loop import (
    ControlLoop,
    LoopTelemetry,
    ObservabilityMetric,
    TelemetryOverrides,
    average_latency,
    build_priority_signal,
)
from optiloop.autonomy.priority import PriorityEngine
from optiloop.autonomy.recovery import RecoveryAgent
from optiloop.autonomy.scaler import ScalingState
from optiloop.autonomy.trust import TrustScorer
from optiloop.kernel.orchestrator import Orchestrator
from optiloop.kernel.state_machine import LoopStatus
from optiloop.types import AgentRole


def _make_loop(orchestrator, db, **kw):
    trust = TrustScorer(db)
    return ControlLoop(
        orchestrator,
        PriorityEngine(db),
        trust,
        RecoveryAgent(trust, db),
        **kw,
    )


@pytest.fixture
def loop(orchestrator, db):
    return _make_loop(orchestrator, db)


# ── Cycle ────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_cycle_updates_priorities_and_emits_summary(loop, orchestrator):
    result = await loop.run_cycle(TelemetryOverrides(backlog_size=30, avg_latency_ms=800))

    assert result.enabled
    assert result.telemetry.backlog_size == 30
    assert result.telemetry.avg_latency_ms == 800
    assert result.telemetry.trust_score == 100
    assert len(result.priorities) == 4
    assert math.isclose(sum(p.weight for p in result.priorities), 1.0, abs_tol=1e-9)
    assert "| Priorities: Agent priorities updated -> " in result.summary
    assert result.summary.endswith("| Recovery: NOOP")
    assert loop.cycles == 1

    snapshot = await orchestrator.get_snapshot()
    assert len(snapshot.events) == 1
    event = snapshot.events[0]
    assert event.type == "insight_report"
    assert event.source == AgentRole.INSIGHT
    assert event.target == AgentRole.GOVERNANCE
    assert event.payload.summary == result.summary
    assert event.payload.context["intervalMs"] == result.interval_ms


@pytest.mark.asyncio
async def test_suppressed_event_is_not_dispatched(loop, orchestrator, stream):
    await loop.run_cycle(emit_event=False)
    assert await stream.length(orchestrator.stream_key) == 0


@pytest.mark.asyncio
async def test_busy_cycle_scales_up(loop):
    result = await loop.run_cycle(
        TelemetryOverrides(backlog_size=30, avg_latency_ms=800, trust_score=60, success_rate=0.5),
        scaling=ScalingState(concurrency=1, interval_ms=300_000),
        emit_event=False,
    )
    assert result.scaling.status == "scale_up"
    assert result.concurrency == 2
    assert result.interval_ms == 240_000
    assert loop.scaling_state.interval_ms == 240_000


@pytest.mark.asyncio
async def test_backlog_falls_back_to_snapshot(loop, orchestrator):
    for i in range(3):
        await orchestrator.dispatch_event({
            "type": "insight_report", "source": "insight", "payload": {"summary": f"s{i}"},
        })
    orchestrator.sample_backlog = AsyncMock(return_value=None)
    result = await loop.run_cycle(emit_event=False)
    assert result.telemetry.backlog_size == 3


@pytest.mark.asyncio
async def test_low_trust_pins_governance(loop, record_outcomes):
    await record_outcomes(rejected=10, blocked=10)
    result = await loop.run_cycle(emit_event=False)

    assert result.telemetry.trust_score < 60
    weights = {p.agent: p.weight for p in result.priorities}
    assert max(weights, key=weights.get) == AgentRole.GOVERNANCE
    assert result.recovery.action == "rollback"


@pytest.mark.asyncio
async def test_metrics_source_feeds_latency(orchestrator, db):
    async def metrics():
        return [
            ObservabilityMetric(route="/a", p95_ms=100, sample_size=1),
            ObservabilityMetric(route="/b", p95_ms=400, sample_size=3),
        ]

    loop = _make_loop(orchestrator, db, metrics_source=metrics)
    result = await loop.run_cycle(emit_event=False)
    assert result.telemetry.avg_latency_ms == pytest.approx(325)


@pytest.mark.asyncio
async def test_failing_metrics_source_uses_default(orchestrator, db):
    loop = _make_loop(
        orchestrator, db, metrics_source=AsyncMock(side_effect=RuntimeError("down")),
    )
    result = await loop.run_cycle(emit_event=False)
    assert result.telemetry.avg_latency_ms == 250


def test_average_latency_ignores_empty_routes():
    assert average_latency([]) is None
    assert average_latency([ObservabilityMetric(route="/a", p95_ms=900)]) is None


@pytest.mark.asyncio
async def test_adaptive_interval_is_opt_in(orchestrator, db):
    loop = _make_loop(orchestrator, db, adaptive=True)
    result = await loop.run_cycle(emit_event=False)
    assert result.interval_ms != result.scaling.state.interval_ms


# ── Fallbacks ────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_every_read_is_fallback_safe(stream):
    trust = AsyncMock()
    trust.compute.side_effect = RuntimeError("db gone")
    priorities = AsyncMock()
    priorities.update.side_effect = RuntimeError("db gone")
    priorities.stored.side_effect = RuntimeError("db gone")
    recovery = AsyncMock()
    recovery.run_sweep.side_effect = RuntimeError("db gone")
    recovery.history.side_effect = RuntimeError("db gone")

    orchestrator = Orchestrator(stream)
    orchestrator.get_snapshot = AsyncMock(side_effect=RuntimeError("stream gone"))
    orchestrator.sample_backlog = AsyncMock(side_effect=RuntimeError("stream gone"))

    loop = ControlLoop(orchestrator, priorities, trust, recovery)
    result = await loop.run_cycle()

    assert result.telemetry.trust_score == 100
    assert result.telemetry.backlog_size == 0
    assert len(result.priorities) == 4
    assert math.isclose(sum(p.weight for p in result.priorities), 1.0, abs_tol=1e-9)
    assert result.recovery.action == "noop"

    view = await loop.state()
    assert view.recent_priorities == []
    assert view.recovery_log == []


@pytest.mark.asyncio
async def test_trust_fallback_reuses_last_sample(loop, db):
    loop.record_telemetry(LoopTelemetry(trust_score=42, success_rate=0.4, error_rate=0.05))
    loop._trust = AsyncMock()
    loop._trust.compute.side_effect = RuntimeError("db gone")
    result = await loop.run_cycle(emit_event=False)
    assert result.telemetry.trust_score == 42
    assert result.telemetry.success_rate == pytest.approx(0.4)


@pytest.mark.asyncio
async def test_concurrent_cycles_run_one_at_a_time(loop):
    compute = loop._trust.compute
    active = 0
    peak = 0

    async def slow_compute():
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        await asyncio.sleep(0.02)
        try:
            return await compute()
        finally:
            active -= 1

    loop._trust.compute = slow_compute
    first, second = await asyncio.gather(
        loop.run_cycle(emit_event=False), loop.run_cycle(emit_event=False),
    )

    assert peak == 1
    assert loop.cycles == 2
    assert [s.trust_score for s in loop.history] == [100, 100]
    assert second.history[0] == first.telemetry


# ── History ──────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_history_keeps_newest_fifty(loop):
    for i in range(60):
        loop.record_telemetry(LoopTelemetry(backlog_size=i))
    history = loop.history
    assert len(history) == 50
    assert history[0].backlog_size == 10
    assert history[-1].backlog_size == 59


def test_priority_signal_uses_success_delta():
    prev = LoopTelemetry(success_rate=0.6, trust_score=90)
    cur = LoopTelemetry(success_rate=0.9, trust_score=90)
    assert build_priority_signal(cur, prev).success_delta == pytest.approx(0.3)
    assert build_priority_signal(cur).success_delta == pytest.approx(0.9)
    assert build_priority_signal(cur).governance_override is None
    assert build_priority_signal(LoopTelemetry(trust_score=59)).governance_override == 0.34


# ── Lifecycle ────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_disabled_loop_does_nothing(orchestrator, db, stream):
    loop = _make_loop(orchestrator, db, enabled=False)
    started = await loop.start()
    assert not started.started
    assert loop.status == LoopStatus.DISABLED

    result = await loop.run_cycle()
    assert not result.enabled
    assert result.summary == "Autonomy loop is disabled"
    assert await stream.length(orchestrator.stream_key) == 0


@pytest.mark.asyncio
async def test_stop_cancels_pending_timer(orchestrator, db):
    gate = asyncio.Event()

    async def blocked_sleep(seconds):
        await gate.wait()

    loop = _make_loop(orchestrator, db, sleep=blocked_sleep)
    assert (await loop.start()).started
    assert loop.status == LoopStatus.SCHEDULED
    assert loop.cycles == 1
    assert not (await loop.start()).started

    await loop.stop()
    gate.set()
    await asyncio.sleep(0.05)

    assert loop.cycles == 1
    assert loop.status == LoopStatus.IDLE
    assert not loop.is_running


@pytest.mark.asyncio
async def test_loop_reschedules_with_computed_interval(orchestrator, db):
    sleeps = []

    async def fast_sleep(seconds):
        sleeps.append(seconds)
        await asyncio.sleep(0)

    loop = _make_loop(orchestrator, db, sleep=fast_sleep)
    await loop.start()
    for _ in range(200):
        if loop.cycles >= 3:
            break
        await asyncio.sleep(0.01)
    await loop.stop()

    assert loop.cycles >= 3
    assert all(s >= 60 for s in sleeps)


@pytest.mark.asyncio
async def test_state_view(loop):
    await loop.run_cycle(emit_event=False)
    view = await loop.state()
    assert view.cycles == 1
    assert len(view.recent_priorities) == 4
    assert len(view.recovery_log) == 1
    assert len(view.history) == 1
    assert view.enabled is False  # never started


@pytest.mark.asyncio
async def test_state_view_tracks_status_changes(loop):
    before = await loop.state()
    assert before.status is LoopStatus.IDLE

    await asyncio.sleep(0.005)
    await loop.start()
    try:
        after = await loop.state()
        assert after.status is LoopStatus.SCHEDULED
        assert after.status_since > before.status_since
    finally:
        await loop.stop()
