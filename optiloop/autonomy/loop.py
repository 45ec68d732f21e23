"""Control Loop: samples telemetry, re-weights agents, scales itself.

One ``ControlLoop`` is owned by the process supervisor (see ``serve``)
and handed to whatever needs to query or stop it. A single asyncio task
sleeps for the current interval, runs one cycle, and goes back to sleep
with whatever interval that cycle computed, so cycles never overlap.

Each cycle:
    1. read trust score and orchestrator snapshot
    2. sample backlog (falls back to the snapshot's event count)
    3. record telemetry into the bounded history
    4. derive a priority signal and update agent weights
    5. evaluate scaling against the current state
    6. commit concurrency / interval
    7. run a recovery sweep
    8. compose a summary
    9. dispatch an insight_report event (unless suppressed)

Every external read is individually fallback-safe.
"""

from __future__ import annotations

import asyncio
from collections import deque
from typing import Any, Awaitable, Callable

import structlog
from pydantic import BaseModel, Field

from optiloop.autonomy.priority import (
    PriorityEngine,
    PrioritySignal,
    calculate_weights,
    describe_priorities,
)
from optiloop.autonomy.recovery import RecoveryAgent, RecoveryResult
from optiloop.autonomy.scaler import (
    ScalingDecision,
    ScalingMetrics,
    ScalingState,
    adaptive_interval,
    describe_scaling_decision,
    evaluate_scaling,
)
from optiloop.autonomy.trust import TrustMetrics, TrustScore, TrustScorer
from optiloop.kernel.orchestrator import Orchestrator, OrchestratorSnapshot
from optiloop.kernel.state_machine import LoopStateMachine, LoopStatus
from optiloop.persistence.models import PriorityRecord, RecoveryRecord
from optiloop.types import AgentRole, iso_now

logger = structlog.get_logger()

DEFAULT_INTERVAL_MS = 5 * 60_000
DEFAULT_HISTORY_LIMIT = 50
DEFAULT_AVG_LATENCY_MS = 250.0
GOVERNANCE_TRUST_FLOOR = 60
GOVERNANCE_OVERRIDE_WEIGHT = 0.34


class LoopTelemetry(BaseModel):
    timestamp: str = Field(default_factory=iso_now)
    load: float = 0.0
    backlog_size: int = Field(default=0, alias="backlogSize")
    trust_score: float = Field(default=0.0, alias="trustScore")
    success_rate: float = Field(default=0.0, alias="successRate")
    error_rate: float = Field(default=0.0, alias="errorRate")
    avg_latency_ms: float = Field(default=0.0, alias="avgLatencyMs")

    model_config = {"populate_by_name": True}


class TelemetryOverrides(BaseModel):
    load: float | None = None
    backlog_size: int | None = Field(default=None, alias="backlogSize")
    trust_score: float | None = Field(default=None, alias="trustScore")
    success_rate: float | None = Field(default=None, alias="successRate")
    error_rate: float | None = Field(default=None, alias="errorRate")
    avg_latency_ms: float | None = Field(default=None, alias="avgLatencyMs")

    model_config = {"populate_by_name": True}


class ObservabilityMetric(BaseModel):
    """One externally-produced latency/error sample for a route."""

    route: str
    p50_ms: float = Field(default=0.0, alias="p50Ms")
    p95_ms: float = Field(default=0.0, alias="p95Ms")
    error_rate: float = Field(default=0.0, ge=0, le=1, alias="errorRate")
    sample_size: int = Field(default=0, ge=0, alias="sampleSize")

    model_config = {"populate_by_name": True}


MetricsSource = Callable[[], Awaitable[list[ObservabilityMetric]]]


def average_latency(metrics: list[ObservabilityMetric]) -> float | None:
    """Sample-weighted mean of p95 latency across routes."""
    weighted = [(m.p95_ms, m.sample_size) for m in metrics if m.sample_size > 0]
    total = sum(n for _, n in weighted)
    if not total:
        return None
    return sum(ms * n for ms, n in weighted) / total


class LoopRunResult(BaseModel):
    enabled: bool
    interval_ms: int = Field(alias="intervalMs")
    concurrency: int
    priorities: list[PriorityRecord] = Field(default_factory=list)
    scaling: ScalingDecision | None = None
    recovery: RecoveryResult | None = None
    telemetry: LoopTelemetry
    summary: str
    history: list[LoopTelemetry] = Field(default_factory=list)

    model_config = {"populate_by_name": True}


class LoopStartResult(BaseModel):
    started: bool
    reason: str = ""


class LoopStateView(BaseModel):
    enabled: bool
    status: LoopStatus
    status_since: str = Field(alias="statusSince")
    interval_ms: int = Field(alias="intervalMs")
    concurrency: int
    cycles: int = 0
    history: list[LoopTelemetry] = Field(default_factory=list)
    recent_priorities: list[PriorityRecord] = Field(default_factory=list, alias="recentPriorities")
    recovery_log: list[RecoveryRecord] = Field(default_factory=list, alias="recoveryLog")

    model_config = {"populate_by_name": True}


class ControlLoop:
    """Self-rescheduling optimization loop. At most one cycle at a time."""

    def __init__(
        self,
        orchestrator: Orchestrator,
        priority_engine: PriorityEngine,
        trust_scorer: TrustScorer,
        recovery_agent: RecoveryAgent,
        enabled: bool = True,
        initial_state: ScalingState | None = None,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
        adaptive: bool = False,
        metrics_source: MetricsSource | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._orchestrator = orchestrator
        self._priorities = priority_engine
        self._trust = trust_scorer
        self._recovery = recovery_agent
        self._feature_enabled = enabled
        self._scaling = initial_state or ScalingState(interval_ms=DEFAULT_INTERVAL_MS)
        self._history: deque[LoopTelemetry] = deque(maxlen=history_limit)
        self._adaptive = adaptive
        self._metrics_source = metrics_source
        self._sleep = sleep
        self._running = False
        self._task: asyncio.Task | None = None
        self._cycles = 0
        self._cycle_lock = asyncio.Lock()
        self._machine = LoopStateMachine(
            LoopStatus.IDLE if enabled else LoopStatus.DISABLED
        )
        self._status_since = iso_now()
        self._machine.on_transition(self._on_transition)

    # ── Introspection ─────────────────────────────────────────

    @property
    def status(self) -> LoopStatus:
        return self._machine.state

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def scaling_state(self) -> ScalingState:
        return self._scaling.model_copy()

    @property
    def history(self) -> list[LoopTelemetry]:
        return list(self._history)

    @property
    def cycles(self) -> int:
        return self._cycles

    def record_telemetry(self, telemetry: LoopTelemetry) -> None:
        """Append to the bounded history; the oldest sample falls off."""
        self._history.append(telemetry)

    async def _on_transition(self, old: LoopStatus, new: LoopStatus) -> None:
        self._status_since = iso_now()
        logger.debug("autonomy_loop_transition", old=old.value, new=new.value)

    # ── Lifecycle ─────────────────────────────────────────────

    async def start(self) -> LoopStartResult:
        """Run one cycle now, then keep rescheduling until stopped."""
        if not self._feature_enabled:
            return LoopStartResult(started=False, reason="autonomy loop is disabled")
        if self._running:
            return LoopStartResult(started=False, reason="already running")

        self._running = True
        await self._machine.transition(LoopStatus.RUNNING)
        try:
            await self.run_cycle()
        except Exception as e:
            logger.error("autonomy_loop_cycle_failed", error=str(e))

        if self._running:
            await self._machine.transition(LoopStatus.SCHEDULED)
            self._task = asyncio.create_task(self._run_schedule())
        return LoopStartResult(started=True)

    async def stop(self) -> None:
        """Stop the loop; a pending timer is cancelled and never re-armed."""
        self._running = False
        task, self._task = self._task, None
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if self._machine.state is not LoopStatus.DISABLED:
            await self._machine.transition(LoopStatus.IDLE)

    async def _run_schedule(self) -> None:
        while self._running:
            try:
                await self._sleep(self._scaling.interval_ms / 1000)
            except asyncio.CancelledError:
                break

            # The timer may have fired alongside a stop request
            if not self._running:
                break

            await self._machine.transition(LoopStatus.RUNNING)
            try:
                await self.run_cycle()
            except Exception as e:
                logger.error("autonomy_loop_cycle_failed", error=str(e))

            if self._running:
                await self._machine.transition(LoopStatus.SCHEDULED)

    # ── One cycle ─────────────────────────────────────────────

    async def run_cycle(
        self,
        overrides: TelemetryOverrides | None = None,
        scaling: ScalingState | None = None,
        emit_event: bool = True,
    ) -> LoopRunResult:
        """Run one cycle. Concurrent callers queue behind the one in flight."""
        if not self._feature_enabled:
            return self._disabled_result()

        async with self._cycle_lock:
            return await self._cycle(overrides, scaling, emit_event)

    async def _cycle(
        self,
        overrides: TelemetryOverrides | None,
        scaling: ScalingState | None,
        emit_event: bool,
    ) -> LoopRunResult:
        overrides = overrides or TelemetryOverrides()

        trust = await self._read_trust()
        snapshot = await self._read_snapshot()
        backlog = await self._sample_backlog(overrides, snapshot)
        latency = await self._read_latency(overrides)

        previous = self._history[-1] if self._history else None
        telemetry = LoopTelemetry(
            load=(
                overrides.load if overrides.load is not None
                else min(1.0, len(snapshot.events) / max(len(snapshot.agents), 1) / 10)
            ),
            backlog_size=backlog,
            trust_score=overrides.trust_score if overrides.trust_score is not None else trust.score,
            success_rate=(
                overrides.success_rate if overrides.success_rate is not None
                else trust.metrics.success_rate
            ),
            error_rate=(
                overrides.error_rate if overrides.error_rate is not None
                else trust.metrics.policy_violation_rate
            ),
            avg_latency_ms=latency,
        )
        self.record_telemetry(telemetry)

        signal = build_priority_signal(telemetry, previous)
        priorities, priority_summary = await self._update_priorities(signal)

        current = scaling or self._scaling
        decision = evaluate_scaling(
            ScalingMetrics(
                avg_latency_ms=telemetry.avg_latency_ms,
                backlog_size=telemetry.backlog_size,
                trust_score=telemetry.trust_score,
                success_rate=telemetry.success_rate,
            ),
            current,
        )

        interval = decision.state.interval_ms
        if self._adaptive:
            interval = adaptive_interval(
                telemetry.load, telemetry.trust_score,
                telemetry.success_rate, telemetry.error_rate, interval,
            )
        self._scaling = ScalingState(
            concurrency=decision.state.concurrency, interval_ms=interval,
        )

        recovery = await self._run_recovery(telemetry, trust)

        summary = (
            f"{describe_scaling_decision(decision)} | "
            f"Priorities: {priority_summary} | "
            f"Recovery: {recovery.action.upper()}"
        )

        result = LoopRunResult(
            enabled=True,
            interval_ms=self._scaling.interval_ms,
            concurrency=self._scaling.concurrency,
            priorities=priorities,
            scaling=decision,
            recovery=recovery,
            telemetry=telemetry,
            summary=summary,
            history=self.history,
        )

        if emit_event:
            await self._dispatch_summary(result)

        self._cycles += 1
        logger.info(
            "autonomy_loop_cycle",
            scaling=decision.status,
            pressure=round(decision.pressure, 3),
            interval_ms=result.interval_ms,
            concurrency=result.concurrency,
            recovery=recovery.action,
        )
        return result

    async def _read_trust(self) -> TrustScore:
        try:
            return await self._trust.compute()
        except Exception as e:
            logger.warning("autonomy_loop_trust_unavailable", error=str(e))
            return self._fallback_trust()

    def _fallback_trust(self) -> TrustScore:
        """Last observed values, or a vacuous (empty-history) score."""
        last = self._history[-1] if self._history else None
        if last is not None:
            return TrustScore(
                score=int(round(last.trust_score)),
                metrics=TrustMetrics(
                    success_rate=last.success_rate,
                    rollback_rate=0.0,
                    policy_violation_rate=last.error_rate,
                    total_recommendations=0,
                    applied=0,
                    violations=0,
                ),
            )
        return TrustScore(
            score=100,
            metrics=TrustMetrics(
                success_rate=1.0,
                rollback_rate=0.0,
                policy_violation_rate=0.0,
                total_recommendations=0,
                applied=0,
                violations=0,
            ),
        )

    async def _read_snapshot(self) -> OrchestratorSnapshot:
        try:
            return await self._orchestrator.get_snapshot(limit=40)
        except Exception as e:
            logger.warning("autonomy_loop_snapshot_unavailable", error=str(e))
            return OrchestratorSnapshot()

    async def _sample_backlog(
        self, overrides: TelemetryOverrides, snapshot: OrchestratorSnapshot,
    ) -> int:
        if overrides.backlog_size is not None:
            return overrides.backlog_size
        try:
            sampled = await self._orchestrator.sample_backlog()
        except Exception as e:
            logger.warning("autonomy_loop_backlog_unavailable", error=str(e))
            sampled = None
        return sampled if sampled is not None else len(snapshot.events)

    async def _read_latency(self, overrides: TelemetryOverrides) -> float:
        if overrides.avg_latency_ms is not None:
            return overrides.avg_latency_ms
        if self._metrics_source is not None:
            try:
                observed = average_latency(await self._metrics_source())
                if observed is not None:
                    return observed
            except Exception as e:
                logger.warning("autonomy_loop_metrics_unavailable", error=str(e))
        return DEFAULT_AVG_LATENCY_MS

    async def _update_priorities(
        self, signal: PrioritySignal,
    ) -> tuple[list[PriorityRecord], str]:
        try:
            result = await self._priorities.update(signal)
            return result.weights, result.summary
        except Exception as e:
            logger.warning("autonomy_loop_priority_persist_failed", error=str(e))
            snapshots = calculate_weights(signal)
            records = [
                PriorityRecord(
                    agent=s.agent, weight=s.weight,
                    confidence=s.confidence, rationale=s.rationale,
                )
                for s in snapshots
            ]
            return records, describe_priorities(records)

    async def _run_recovery(self, telemetry: LoopTelemetry, trust: TrustScore) -> RecoveryResult:
        try:
            return await self._recovery.run_sweep(error_rate=telemetry.error_rate)
        except Exception as e:
            logger.warning("autonomy_loop_recovery_failed", error=str(e))
            return RecoveryResult(
                agent=AgentRole.OPTIMIZER,
                action="noop",
                reason=f"Recovery sweep unavailable: {e}",
                trust_score_before=trust.score,
                trust_score_after=trust.score,
            )

    async def _dispatch_summary(self, result: LoopRunResult) -> None:
        if not self._orchestrator.enabled:
            return
        try:
            await self._orchestrator.dispatch_event({
                "type": "insight_report",
                "source": AgentRole.INSIGHT.value,
                "target": AgentRole.GOVERNANCE.value,
                "payload": {
                    "summary": result.summary,
                    "correlations": [],
                    "context": {
                        "priorities": [
                            {"agent": p.agent.value, "weight": p.weight}
                            for p in result.priorities
                        ],
                        "scaling": result.scaling.status if result.scaling else "steady",
                        "intervalMs": result.interval_ms,
                        "concurrency": result.concurrency,
                        "recoveryAction": result.recovery.action if result.recovery else "noop",
                    },
                },
            })
        except Exception as e:
            logger.warning("autonomy_loop_event_dispatch_failed", error=str(e))

    def _disabled_result(self) -> LoopRunResult:
        return LoopRunResult(
            enabled=False,
            interval_ms=self._scaling.interval_ms,
            concurrency=self._scaling.concurrency,
            telemetry=LoopTelemetry(),
            summary="Autonomy loop is disabled",
            history=self.history,
        )

    async def state(self) -> LoopStateView:
        """Runtime state plus recent priorities and recovery decisions."""
        try:
            priorities = await self._priorities.stored(limit=10)
        except Exception as e:
            logger.warning("autonomy_loop_priority_read_failed", error=str(e))
            priorities = []
        try:
            recovery_log = await self._recovery.history(limit=10)
        except Exception as e:
            logger.warning("autonomy_loop_recovery_read_failed", error=str(e))
            recovery_log = []

        return LoopStateView(
            enabled=self._running and self._feature_enabled,
            status=self.status,
            status_since=self._status_since,
            interval_ms=self._scaling.interval_ms,
            concurrency=self._scaling.concurrency,
            cycles=self._cycles,
            history=self.history,
            recent_priorities=priorities,
            recovery_log=recovery_log,
        )


def build_priority_signal(
    telemetry: LoopTelemetry, previous: LoopTelemetry | None = None,
) -> PrioritySignal:
    """Success is measured as a delta against the previous sample."""
    success_delta = (
        telemetry.success_rate - previous.success_rate
        if previous is not None else telemetry.success_rate
    )
    return PrioritySignal(
        success_delta=success_delta,
        load=telemetry.load,
        trust_score=telemetry.trust_score,
        error_rate=telemetry.error_rate,
        governance_override=(
            GOVERNANCE_OVERRIDE_WEIGHT
            if telemetry.trust_score < GOVERNANCE_TRUST_FLOOR else None
        ),
    )
