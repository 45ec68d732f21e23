"""Trust Scorer: historical outcome counts in, one 0-100 score out.

Never cached: every call re-reads the durable counters so the score
always reflects the latest persisted history.
"""

from __future__ import annotations

from pydantic import BaseModel, Field

from optiloop.persistence.database import Database
from optiloop.persistence.models import OutcomeCounts
from optiloop.types import clamp01


class TrustMetrics(BaseModel):
    success_rate: float = Field(alias="successRate")
    rollback_rate: float = Field(alias="rollbackRate")
    policy_violation_rate: float = Field(alias="policyViolationRate")
    total_recommendations: int = Field(alias="totalRecommendations")
    applied: int
    rollbacks: int = 0
    violations: int

    model_config = {"populate_by_name": True}


class TrustScore(BaseModel):
    score: int = Field(ge=0, le=100)
    metrics: TrustMetrics


def calculate_trust_score(
    success_rate: float, rollback_rate: float, policy_violation_rate: float,
) -> int:
    weighted = (
        clamp01(success_rate) * 0.5
        + (1 - clamp01(rollback_rate)) * 0.3
        + (1 - clamp01(policy_violation_rate)) * 0.2
    )
    return int(round(weighted * 100))


def metrics_from_counts(counts: OutcomeCounts) -> TrustMetrics:
    return TrustMetrics(
        success_rate=counts.applied / counts.total if counts.total > 0 else 1.0,
        # Rolled-back rows are stored as REJECTED, so they can outnumber APPLIED
        rollback_rate=clamp01(counts.rollback / counts.applied) if counts.applied > 0 else 0.0,
        policy_violation_rate=counts.violations / counts.total if counts.total > 0 else 0.0,
        total_recommendations=counts.total,
        applied=counts.applied,
        rollbacks=counts.rollback,
        violations=counts.violations,
    )


class TrustScorer:
    """Reads outcome counters and derives the trust score."""

    def __init__(self, database: Database) -> None:
        self._db = database

    async def metrics(self) -> TrustMetrics:
        return metrics_from_counts(await self._db.count_outcomes())

    async def compute(self) -> TrustScore:
        metrics = await self.metrics()
        score = calculate_trust_score(
            metrics.success_rate, metrics.rollback_rate, metrics.policy_violation_rate,
        )
        return TrustScore(score=score, metrics=metrics)
