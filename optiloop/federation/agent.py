"""Federation Agent: converges tenants on a shared view of trust and priority.

Keeps one snapshot per tenant, merged from telemetry_sync and
priority_share events. Whenever a peer's state changes the agent
re-evaluates the network: aggregated priorities, trust statistics and
health are recorded, published back to the federation as
trust_aggregate / priority_share / model_update, and reported to the
local orchestrator as an insight_report.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable

import structlog
from pydantic import Field

from optiloop.autonomy.trust import TrustScore
from optiloop.federation.bus import FederationBus, PublishResult
from optiloop.federation.insight import (
    GlobalFederationInsight,
    InsightRecorder,
    analyze_global_federation,
    average_sync_latency,
)
from optiloop.federation.protocol import (
    AggregatedPriority,
    FederatedTrustMetrics,
    FederationEventType,
    FederationSnapshot,
    ModelUpdateEvent,
    ModelUpdatePayload,
    PriorityShareEvent,
    PrioritySharePayload,
    PrioritySnapshot,
    TelemetrySyncEvent,
    TelemetrySyncPayload,
    TrustAggregateEvent,
    TrustAggregatePayload,
    derive_aggregated_priorities,
)
from optiloop.kernel.orchestrator import Orchestrator
from optiloop.persistence.models import PriorityRecord
from optiloop.types import AGENT_NAMES, AgentRole, iso_now

logger = structlog.get_logger()

MAX_HISTORY = 100
FEDERATION_PRIORITY_OVERRIDE = 40

TrustSource = Callable[[], Awaitable[TrustScore]]
PrioritySource = Callable[[], Awaitable[list[PriorityRecord]]]


class TrustAggregateState(TrustAggregatePayload):
    received_at: str = Field(alias="receivedAt")


class ModelUpdateState(ModelUpdatePayload):
    received_at: str = Field(alias="receivedAt")


def _rounded(priorities: list[PrioritySnapshot] | list[PriorityRecord]) -> list[AggregatedPriority]:
    return [
        AggregatedPriority(
            agent=p.agent,
            weight=round(p.weight, 4),
            confidence=round(p.confidence, 4),
            rationale=p.rationale or f"{p.agent.value} weight",
        )
        for p in priorities
    ]


class FederationAgent:
    """Per-process federation participant. Subscribes on construction."""

    def __init__(
        self,
        bus: FederationBus,
        trust_source: TrustSource,
        priority_source: PrioritySource,
        orchestrator: Orchestrator | None = None,
        insight_recorder: InsightRecorder | None = None,
        tenant_id: str | None = None,
    ) -> None:
        self._bus = bus
        self._trust_source = trust_source
        self._priority_source = priority_source
        self._orchestrator = orchestrator
        self._recorder = insight_recorder
        self._tenant_id = tenant_id or bus.tenant_id

        self._snapshots: dict[str, FederationSnapshot] = {}
        self._trust_history: list[TrustAggregateState] = []
        self._model_history: list[ModelUpdateState] = []
        self._latest_insight: GlobalFederationInsight | None = None
        self._unsubscribers: list[Callable[[], None]] = []
        self._periodic: asyncio.Task | None = None

        if not bus.is_enabled:
            return

        if orchestrator is not None and orchestrator.enabled:
            orchestrator.register_agent({
                "agentId": AgentRole.FEDERATION.value,
                "name": AGENT_NAMES[AgentRole.FEDERATION],
                "description": "Coordinates federated learning and cross-tenant trust.",
                "capabilities": ["federated-learning", "trust-aggregation", "global-insight"],
                "priorityOverride": FEDERATION_PRIORITY_OVERRIDE,
            })

        self._unsubscribers = [
            bus.subscribe(FederationEventType.TELEMETRY_SYNC, self._on_telemetry),
            bus.subscribe(FederationEventType.PRIORITY_SHARE, self._on_priority_share),
            bus.subscribe(FederationEventType.TRUST_AGGREGATE, self._on_trust_aggregate),
            bus.subscribe(FederationEventType.MODEL_UPDATE, self._on_model_update),
        ]

    @property
    def tenant_id(self) -> str:
        return self._tenant_id

    def dispose(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()
        if self._periodic and not self._periodic.done():
            self._periodic.cancel()
        self._periodic = None

    # ── State ─────────────────────────────────────────────────

    def snapshots(self) -> list[FederationSnapshot]:
        return list(self._snapshots.values())

    def trust_history(self) -> list[TrustAggregateState]:
        return list(self._trust_history)

    def model_history(self) -> list[ModelUpdateState]:
        return list(self._model_history)

    def latest_insight(self) -> GlobalFederationInsight | None:
        return self._latest_insight

    def _upsert_snapshot(self, snapshot: FederationSnapshot) -> bool:
        """Merge into the tenant's snapshot. Returns True if anything changed."""
        previous = self._snapshots.get(snapshot.tenant_id)
        merged = previous.merge(snapshot) if previous else snapshot
        self._snapshots[snapshot.tenant_id] = merged
        if previous is None:
            return True
        return (
            merged.trust_score != previous.trust_score
            or merged.sync_latency_ms != previous.sync_latency_ms
            or merged.priorities != previous.priorities
        )

    @staticmethod
    def _push(history: list, entry) -> None:
        history.insert(0, entry)
        del history[MAX_HISTORY:]

    # ── Handlers ──────────────────────────────────────────────

    async def _on_telemetry(self, event: TelemetrySyncEvent) -> None:
        payload = event.payload
        self._upsert_snapshot(FederationSnapshot(
            tenant_id=payload.tenant_id,
            trust_score=payload.trust_score,
            sync_latency_ms=payload.sync_latency_ms,
            priorities=_rounded(payload.priorities),
            updated_at=event.timestamp,
        ))
        if payload.tenant_id != self._tenant_id:
            await self.evaluate_global_network("telemetry")

    async def _on_priority_share(self, event: PriorityShareEvent) -> None:
        payload = event.payload
        existing = self._snapshots.get(payload.tenant_id)
        changed = self._upsert_snapshot(FederationSnapshot(
            tenant_id=payload.tenant_id,
            trust_score=existing.trust_score if existing else 0.0,
            priorities=_rounded(payload.priorities),
            updated_at=event.timestamp,
        ))
        # An unchanged share would only bounce the same aggregate back and forth
        if payload.tenant_id != self._tenant_id and changed:
            await self.evaluate_global_network("priority")

    async def _on_trust_aggregate(self, event: TrustAggregateEvent) -> None:
        if event.payload.tenant_id == self._tenant_id:
            return
        self._push(self._trust_history, TrustAggregateState(
            **event.payload.model_dump(), received_at=event.timestamp,
        ))
        self._latest_insight = analyze_global_federation(self.snapshots())

    async def _on_model_update(self, event: ModelUpdateEvent) -> None:
        if event.payload.tenant_id == self._tenant_id:
            return
        self._push(self._model_history, ModelUpdateState(
            **event.payload.model_dump(), received_at=event.timestamp,
        ))

    # ── Evaluation ────────────────────────────────────────────

    async def evaluate_global_network(self, reason: str) -> GlobalFederationInsight | None:
        """Aggregate every known tenant and publish the result."""
        snapshots = [s for s in self._snapshots.values() if s.trust_score > 0 or s.priorities]
        if not snapshots:
            return None

        aggregated = derive_aggregated_priorities(snapshots)
        average_latency = average_sync_latency(snapshots)
        cycle_id = f"{iso_now()}::{reason}"

        insight = await self._record_insight(cycle_id, snapshots, aggregated, average_latency)
        self._latest_insight = insight

        trust_payload = TrustAggregatePayload(
            tenant_id=self._tenant_id,
            cycle_id=cycle_id,
            participants=len(snapshots),
            average_trust=insight.average_trust,
            highest_trust=insight.highest_tenant,
            lowest_trust=insight.lowest_tenant,
            network_health=insight.network_health,
            average_latency_ms=insight.average_latency_ms,
            aggregated_priorities=aggregated,
            summary=insight.summary,
        )
        self._push(self._trust_history, TrustAggregateState(
            **trust_payload.model_dump(), received_at=iso_now(),
        ))
        await self._bus.publish(FederationEventType.TRUST_AGGREGATE, trust_payload)

        if aggregated:
            await self._bus.publish(FederationEventType.PRIORITY_SHARE, PrioritySharePayload(
                tenant_id=self._tenant_id,
                cycle_id=cycle_id,
                priorities=[
                    p.model_copy(update={"rationale": f"Global average {p.weight * 100:.1f}%"})
                    for p in aggregated
                ],
                rationale=insight.summary,
            ))

        model_payload = ModelUpdatePayload(
            tenant_id=self._tenant_id,
            cycle_id=cycle_id,
            priorities=aggregated,
            trust_score=insight.average_trust,
            applied_at=iso_now(),
            notes=f"Global sync ({reason})",
        )
        self._push(self._model_history, ModelUpdateState(
            **model_payload.model_dump(), received_at=iso_now(),
        ))
        await self._bus.publish(FederationEventType.MODEL_UPDATE, model_payload)

        await self._report(cycle_id, reason, snapshots, insight, aggregated)

        logger.info(
            "federation_network_evaluated",
            reason=reason,
            participants=len(snapshots),
            health=insight.network_health,
            average_trust=insight.average_trust,
        )
        return insight

    async def _record_insight(
        self,
        cycle_id: str,
        snapshots: list[FederationSnapshot],
        aggregated: list[AggregatedPriority],
        average_latency: float | None,
    ) -> GlobalFederationInsight:
        if self._recorder is not None:
            try:
                return await self._recorder.record(
                    cycle_id=cycle_id,
                    tenant_id=self._tenant_id,
                    snapshots=snapshots,
                    aggregated_priorities=aggregated,
                    average_latency_ms=average_latency,
                )
            except Exception as e:
                logger.warning("federation_metrics_persist_failed", cycle_id=cycle_id, error=str(e))
        return analyze_global_federation(snapshots)

    async def _report(
        self,
        cycle_id: str,
        reason: str,
        snapshots: list[FederationSnapshot],
        insight: GlobalFederationInsight,
        aggregated: list[AggregatedPriority],
    ) -> None:
        if self._orchestrator is None or not self._orchestrator.enabled:
            return
        try:
            await self._orchestrator.dispatch_event({
                "type": "insight_report",
                "source": AgentRole.FEDERATION.value,
                "target": AgentRole.INSIGHT.value,
                "payload": {
                    "summary": (
                        f"FederationAgent synchronized {len(snapshots)} instances "
                        f"(health: {insight.network_health})."
                    ),
                    "correlations": [
                        {
                            "route": p.agent.value,
                            "compositeImpact": round(p.weight * 100 - 50, 2),
                            "confidenceShift": round(p.confidence - 0.5, 2),
                            "rollbackTriggered": False,
                        }
                        for p in aggregated
                    ],
                    "context": {
                        "cycleId": cycle_id,
                        "reason": reason,
                        "networkHealth": insight.network_health,
                        "averageTrust": insight.average_trust,
                    },
                },
            })
        except Exception as e:
            logger.warning("federation_insight_dispatch_failed", cycle_id=cycle_id, error=str(e))

    # ── Broadcast ─────────────────────────────────────────────

    async def broadcast_local_snapshot(self) -> PublishResult | None:
        """Publish local trust and priorities, then re-evaluate the network."""
        if not self._bus.is_enabled:
            return None

        trust, priorities = await asyncio.gather(self._trust_source(), self._priority_source())
        rounded = _rounded(priorities)

        payload = TelemetrySyncPayload(
            tenant_id=self._tenant_id,
            trust_score=trust.score,
            trust_metrics=FederatedTrustMetrics(
                success_rate=trust.metrics.success_rate,
                rollback_rate=trust.metrics.rollback_rate,
                policy_violation_rate=trust.metrics.policy_violation_rate,
                total_recommendations=trust.metrics.total_recommendations,
            ),
            priorities=rounded,
            sanitized=True,
        )
        self._upsert_snapshot(FederationSnapshot(
            tenant_id=self._tenant_id,
            trust_score=trust.score,
            priorities=rounded,
        ))

        result = await self._bus.publish(FederationEventType.TELEMETRY_SYNC, payload)
        await self.evaluate_global_network("local-snapshot")
        return result

    async def run_periodic(self, interval_s: float) -> None:
        """Re-broadcast local state every ``interval_s`` seconds until cancelled."""
        while True:
            try:
                await self.broadcast_local_snapshot()
            except Exception as e:
                logger.error("federation_broadcast_failed", error=str(e))
            await asyncio.sleep(interval_s)

    def start_periodic(self, interval_s: float) -> asyncio.Task | None:
        if interval_s <= 0 or not self._bus.is_enabled:
            return None
        if self._periodic is None or self._periodic.done():
            self._periodic = asyncio.create_task(self.run_periodic(interval_s))
        return self._periodic
