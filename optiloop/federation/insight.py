"""Global insight: classifies the health of the whole federation."""

from __future__ import annotations

from pydantic import BaseModel, Field

from optiloop.federation.protocol import (
    AggregatedPriority,
    FederationSnapshot,
    NetworkHealth,
    TenantTrust,
    aggregate_trust_scores,
    derive_aggregated_priorities,
)
from optiloop.persistence.database import Database
from optiloop.persistence.models import FederationMetricsRecord

HEALTHY_MIN_TRUST = 80
HEALTHY_MAX_DEVIATION = 12
DEGRADED_MIN_TRUST = 60
DEGRADED_MAX_DEVIATION = 20


class GlobalFederationInsight(BaseModel):
    average_trust: float = Field(alias="averageTrust")
    median_trust: float = Field(alias="medianTrust")
    trust_std_deviation: float = Field(alias="trustStdDeviation")
    participants: int
    average_latency_ms: float | None = Field(default=None, alias="averageLatencyMs")
    highest_tenant: TenantTrust | None = Field(default=None, alias="highestTenant")
    lowest_tenant: TenantTrust | None = Field(default=None, alias="lowestTenant")
    aggregated_priorities: list[AggregatedPriority] = Field(
        default_factory=list, alias="aggregatedPriorities",
    )
    network_health: NetworkHealth = Field(alias="networkHealth")
    summary: str

    model_config = {"populate_by_name": True}


def determine_network_health(
    average_trust: float, std_deviation: float, participants: int,
) -> NetworkHealth:
    if participants == 0:
        return "critical"
    if average_trust >= HEALTHY_MIN_TRUST and std_deviation <= HEALTHY_MAX_DEVIATION:
        return "healthy"
    if average_trust >= DEGRADED_MIN_TRUST and std_deviation <= DEGRADED_MAX_DEVIATION:
        return "degraded"
    return "critical"


def average_sync_latency(snapshots: list[FederationSnapshot]) -> float | None:
    """Mean sync latency; tenants that never reported one count as zero."""
    if not snapshots:
        return None
    return sum(s.sync_latency_ms or 0.0 for s in snapshots) / len(snapshots)


def analyze_global_federation(snapshots: list[FederationSnapshot]) -> GlobalFederationInsight:
    trust = aggregate_trust_scores(snapshots)
    priorities = derive_aggregated_priorities(snapshots)
    latency = average_sync_latency(snapshots)

    if not snapshots:
        summary = "No federation telemetry received yet."
    else:
        top = ", ".join(
            f"{p.agent.value.upper()} {p.weight * 100:.1f}%" for p in priorities[:3]
        ) or "-"
        summary = (
            f"Global trust average {trust.average_trust:.1f} with deviation "
            f"{trust.std_deviation:.1f}. Top priorities: {top}."
        )

    return GlobalFederationInsight(
        average_trust=round(trust.average_trust, 2),
        median_trust=round(trust.median, 2),
        trust_std_deviation=round(trust.std_deviation, 2),
        participants=len(snapshots),
        average_latency_ms=round(latency, 2) if latency else None,
        highest_tenant=trust.highest,
        lowest_tenant=trust.lowest,
        aggregated_priorities=priorities,
        network_health=determine_network_health(
            trust.average_trust, trust.std_deviation, len(snapshots),
        ),
        summary=summary,
    )


class InsightRecorder:
    """Analyzes a federation cycle and upserts its metrics row."""

    def __init__(self, database: Database) -> None:
        self._db = database

    async def record(
        self,
        cycle_id: str,
        tenant_id: str,
        snapshots: list[FederationSnapshot],
        aggregated_priorities: list[AggregatedPriority] | None = None,
        average_latency_ms: float | None = None,
        summary_override: str | None = None,
    ) -> GlobalFederationInsight:
        analysis = analyze_global_federation(snapshots)
        priorities = (
            aggregated_priorities if aggregated_priorities is not None
            else analysis.aggregated_priorities
        )
        latency = average_latency_ms if average_latency_ms is not None else analysis.average_latency_ms
        summary = summary_override or analysis.summary

        await self._db.upsert_federation_metrics(FederationMetricsRecord(
            cycle_id=cycle_id,
            tenant_id=tenant_id,
            participants=analysis.participants,
            average_trust=analysis.average_trust,
            median_trust=analysis.median_trust,
            trust_std_deviation=analysis.trust_std_deviation,
            highest_tenant=analysis.highest_tenant.tenant_id if analysis.highest_tenant else None,
            highest_trust=analysis.highest_tenant.trust_score if analysis.highest_tenant else None,
            lowest_tenant=analysis.lowest_tenant.tenant_id if analysis.lowest_tenant else None,
            lowest_trust=analysis.lowest_tenant.trust_score if analysis.lowest_tenant else None,
            average_latency_ms=latency,
            aggregated_priorities=[p.model_dump(mode="json") for p in priorities],
            summary=summary,
            network_health=analysis.network_health,
        ))

        return analysis.model_copy(update={
            "aggregated_priorities": priorities,
            "average_latency_ms": latency,
            "summary": summary,
        })

    async def history(self, limit: int = 20) -> list[FederationMetricsRecord]:
        return await self._db.list_federation_metrics(limit=limit)
