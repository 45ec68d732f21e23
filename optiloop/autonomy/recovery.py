"""Recovery Agent: reacts to trust regressions with rollback or re-evaluation.

Every sweep writes an audit row, including the no-op ones, so the
recovery log is a complete record of what was considered.
"""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from optiloop.autonomy.trust import TrustScorer
from optiloop.persistence.database import Database
from optiloop.persistence.models import RecoveryRecord
from optiloop.types import AgentRole, utcnow

RECOVERY_REGRESSION_THRESHOLD = 0.10
ROLLBACK_ERROR_RATE = 0.15
REEVALUATE_ERROR_RATE = 0.08

RecoveryActionKind = Literal["noop", "rollback", "reevaluate"]


class RecoverySignal(BaseModel):
    agent: AgentRole | None = None
    trust_score_before: float = Field(alias="trustScoreBefore")
    trust_score_after: float = Field(alias="trustScoreAfter")
    error_rate: float = Field(default=0.0, alias="errorRate")
    regression_threshold: float = Field(
        default=RECOVERY_REGRESSION_THRESHOLD, alias="regressionThreshold",
    )
    trace_id: str | None = Field(default=None, alias="traceId")

    model_config = {"populate_by_name": True}


class RecoveryAction(BaseModel):
    agent: AgentRole
    action: RecoveryActionKind
    reason: str
    delta: float = 0.0
    trust_score_before: float = Field(alias="trustScoreBefore")
    trust_score_after: float = Field(alias="trustScoreAfter")
    trace_id: str | None = Field(default=None, alias="traceId")

    model_config = {"populate_by_name": True}


class RecoveryResult(RecoveryAction):
    created_at: datetime = Field(default_factory=utcnow, alias="createdAt")


def regression_delta(before: float, after: float) -> float:
    if before == 0:
        return 0.0
    return (before - after) / max(before, 1)


def analyze_recovery(signal: RecoverySignal) -> RecoveryAction:
    """Decide rollback / reevaluate / noop. Pure."""
    delta = regression_delta(signal.trust_score_before, signal.trust_score_after)
    threshold = signal.regression_threshold

    if delta >= threshold or signal.error_rate >= ROLLBACK_ERROR_RATE:
        action: RecoveryActionKind = "rollback"
        reason = f"Regression of {delta * 100:.1f}% detected, triggering rollback and re-evaluation"
    elif delta >= threshold / 2 or signal.error_rate >= REEVALUATE_ERROR_RATE:
        action = "reevaluate"
        reason = "Quality trend is declining, asking agents to re-learn"
    else:
        action = "noop"
        reason = "Performance is stable, no recovery needed"

    return RecoveryAction(
        agent=signal.agent or AgentRole.OPTIMIZER,
        action=action,
        reason=reason,
        delta=delta,
        trust_score_before=signal.trust_score_before,
        trust_score_after=signal.trust_score_after,
        trace_id=signal.trace_id,
    )


class RecoveryAgent:
    """Runs recovery sweeps against the current trust score."""

    def __init__(self, trust_scorer: TrustScorer, database: Database) -> None:
        self._trust = trust_scorer
        self._db = database

    async def run_sweep(
        self,
        error_rate: float | None = None,
        agent: AgentRole | None = None,
        trace_id: str | None = None,
        regression_threshold: float = RECOVERY_REGRESSION_THRESHOLD,
    ) -> RecoveryResult:
        trust = await self._trust.compute()
        observed = error_rate if error_rate is not None else trust.metrics.policy_violation_rate

        action = analyze_recovery(RecoverySignal(
            agent=agent,
            trust_score_before=trust.score,
            trust_score_after=trust.score * (1 - (error_rate or 0.0)),
            error_rate=observed,
            regression_threshold=regression_threshold,
            trace_id=trace_id,
        ))

        record = await self._db.append_recovery(RecoveryRecord(
            agent=action.agent,
            action=action.action,
            reason=action.reason,
            trust_score_before=action.trust_score_before,
            trust_score_after=action.trust_score_after,
            trace_id=action.trace_id,
        ))
        return RecoveryResult(**action.model_dump(), created_at=record.created_at)

    async def history(self, limit: int = 20) -> list[RecoveryRecord]:
        return await self._db.list_recovery(limit=limit)
