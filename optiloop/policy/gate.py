"""Policy Gate: wraps the external policy oracle.

The oracle decides; the gate only enforces. A BLOCKED or REVIEW
decision is an ordinary result, except when a caller explicitly asks
to auto-apply, which raises PolicyViolationError.
"""

from __future__ import annotations

import logging
from typing import Protocol

from pydantic import BaseModel, Field

from optiloop.autonomy.trust import TrustScorer
from optiloop.exceptions import PolicyViolationError
from optiloop.kernel.orchestrator import Orchestrator
from optiloop.persistence.database import Database
from optiloop.persistence.models import OutcomeRecord, OutcomeStatus, PolicyStatus
from optiloop.types import AgentRole

_logger = logging.getLogger(__name__)


class PolicyDecision(BaseModel):
    status: PolicyStatus
    reasons: list[str] = Field(default_factory=list)
    minimum_confidence: float = Field(default=0.0, ge=0, le=1, alias="minimumConfidence")
    allow_auto_apply: bool = Field(default=False, alias="allowAutoApply")

    model_config = {"populate_by_name": True}


class PolicyOracle(Protocol):
    async def evaluate(self, route: str, confidence: float, action: str) -> PolicyDecision: ...


class StaticPolicyOracle:
    """Returns the same decision for every request."""

    def __init__(self, decision: PolicyDecision | None = None) -> None:
        self._decision = decision or PolicyDecision(
            status=PolicyStatus.ALLOWED, minimum_confidence=0.6, allow_auto_apply=True,
        )

    async def evaluate(self, route: str, confidence: float, action: str) -> PolicyDecision:
        return self._decision.model_copy()


class PolicyGate:
    """Consults the oracle, announces decisions, and feeds the trust counters."""

    def __init__(
        self,
        oracle: PolicyOracle,
        database: Database,
        trust_scorer: TrustScorer | None = None,
        orchestrator: Orchestrator | None = None,
    ) -> None:
        self._oracle = oracle
        self._db = database
        self._trust = trust_scorer
        self._orchestrator = orchestrator

    async def check(
        self,
        route: str,
        confidence: float,
        action: str = "recommend",
        recommendation_id: str | None = None,
    ) -> PolicyDecision:
        """Ask the oracle. BLOCKED and REVIEW decisions count as policy violations."""
        decision = await self._oracle.evaluate(route, confidence, action)
        if decision.status is not PolicyStatus.ALLOWED:
            _logger.info(
                "Policy %s for %s on %s: %s",
                decision.status.value, action, route, "; ".join(decision.reasons) or "-",
            )
            await self.record_outcome(
                recommendation_id or "",
                route,
                OutcomeStatus.REJECTED
                if decision.status is PolicyStatus.BLOCKED else OutcomeStatus.PENDING,
                policy_status=decision.status,
            )
        await self._announce(route, decision, recommendation_id)
        return decision

    async def ensure_auto_apply(
        self, route: str, confidence: float, recommendation_id: str | None = None,
    ) -> PolicyDecision:
        """Check and raise unless the change may be applied without review."""
        decision = await self.check(route, confidence, "auto_apply", recommendation_id)
        if decision.status is PolicyStatus.BLOCKED:
            raise PolicyViolationError(
                f"Auto-apply on '{route}' is blocked: {'; '.join(decision.reasons) or 'no reason given'}"
            )
        if not decision.allow_auto_apply:
            raise PolicyViolationError(f"Auto-apply on '{route}' is not permitted by policy")
        if confidence < decision.minimum_confidence:
            raise PolicyViolationError(
                f"Confidence {confidence:.2f} on '{route}' is below the "
                f"required {decision.minimum_confidence:.2f}"
            )
        return decision

    async def record_outcome(
        self,
        recommendation_id: str,
        route: str,
        status: OutcomeStatus,
        rollback: bool = False,
        policy_status: PolicyStatus = PolicyStatus.ALLOWED,
    ) -> OutcomeRecord:
        """Log a recommendation lifecycle transition for the trust score."""
        return await self._db.record_outcome(OutcomeRecord(
            recommendation_id=recommendation_id,
            route=route,
            status=status,
            rollback=rollback,
            policy_status=policy_status,
        ))

    async def _announce(
        self, route: str, decision: PolicyDecision, recommendation_id: str | None,
    ) -> None:
        if self._orchestrator is None or not self._orchestrator.enabled:
            return
        try:
            payload = {
                "summary": f"Policy {decision.status.value} for {route}",
                "route": route,
                "status": decision.status.value,
                "minimumConfidence": decision.minimum_confidence,
                "allowAutoApply": decision.allow_auto_apply,
                "trustScore": 100,
            }
            if recommendation_id:
                payload["recommendationId"] = recommendation_id
            if self._trust is not None:
                trust = await self._trust.compute()
                payload["trustScore"] = trust.score
                payload["trustMetrics"] = {
                    "successRate": trust.metrics.success_rate,
                    "rollbackRate": trust.metrics.rollback_rate,
                    "policyViolationRate": trust.metrics.policy_violation_rate,
                }
            if decision.reasons:
                payload["context"] = {"reasons": decision.reasons}
            await self._orchestrator.dispatch_event({
                "type": "policy_update",
                "source": AgentRole.GOVERNANCE.value,
                "payload": payload,
            })
        except Exception as e:
            _logger.warning("Failed to announce policy decision for %s: %s", route, e)
