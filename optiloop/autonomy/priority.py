"""Priority Engine: live signals in, normalized per-agent weights out.

Each weighted role starts from a fixed base weight which is then shaped
by trust, recent success, load and error rate. Governance can be pinned
to an explicit value (``governance_override``) so that a degraded trust
score forcibly raises its share. Weights always sum to 1.
"""

from __future__ import annotations

from pydantic import BaseModel, Field

from optiloop.persistence.database import Database
from optiloop.persistence.models import PriorityRecord
from optiloop.types import AgentRole, clamp01

WEIGHTED_ROLES: tuple[AgentRole, ...] = (
    AgentRole.GOVERNANCE,
    AgentRole.OPTIMIZER,
    AgentRole.LEARNING,
    AgentRole.INSIGHT,
)

BASE_WEIGHTS: dict[AgentRole, float] = {
    AgentRole.GOVERNANCE: 0.30,
    AgentRole.OPTIMIZER: 0.28,
    AgentRole.LEARNING: 0.24,
    AgentRole.INSIGHT: 0.18,
}

RATIONALES: dict[AgentRole, str] = {
    AgentRole.GOVERNANCE: "Governance keeps changes compliant while trust is under pressure.",
    AgentRole.OPTIMIZER: "Optimizer is prioritized on the strength of recent loop successes.",
    AgentRole.LEARNING: "Learning is reinforced to compensate for areas that are not yet optimal.",
    AgentRole.INSIGHT: "Insight helps detect anomalous patterns and new opportunities.",
}


class PrioritySignal(BaseModel):
    success_delta: float = Field(alias="successDelta")
    load: float
    trust_score: float = Field(alias="trustScore")
    error_rate: float | None = Field(default=None, alias="errorRate")
    governance_override: float | None = Field(default=None, alias="governanceOverride")

    model_config = {"populate_by_name": True}


class AgentPrioritySnapshot(BaseModel):
    agent: AgentRole
    weight: float
    confidence: float
    rationale: str


class PriorityUpdateResult(BaseModel):
    weights: list[PriorityRecord]
    summary: str


def normalize_weights(weights: dict[AgentRole, float]) -> dict[AgentRole, float]:
    total = sum(weights.values())
    if total == 0:
        return dict(BASE_WEIGHTS)
    return {agent: weights[agent] / total for agent in WEIGHTED_ROLES}


def calculate_weights(signal: PrioritySignal) -> list[AgentPrioritySnapshot]:
    """Turn one signal into a normalized weight per role. Pure."""
    trust = clamp01(signal.trust_score / 100)
    success = clamp01(0.5 + signal.success_delta / 2)
    load = clamp01(signal.load)
    error = clamp01(signal.error_rate or 0.0)

    raw: dict[AgentRole, float] = {}
    for agent in WEIGHTED_ROLES:
        base = BASE_WEIGHTS[agent]
        if agent is AgentRole.GOVERNANCE:
            if signal.governance_override is not None:
                raw[agent] = clamp01(signal.governance_override)
            else:
                raw[agent] = base * (0.5 * trust + 0.5 * (1 - error))
        elif agent is AgentRole.OPTIMIZER:
            raw[agent] = base * (0.7 * success + 0.3 * trust)
        elif agent is AgentRole.LEARNING:
            raw[agent] = base * (0.6 * (1 - success) + 0.4 * trust)
        else:
            raw[agent] = base * (0.5 * (1 - load) + 0.5 * trust)

    normalized = normalize_weights(raw)
    confidence = clamp01(0.4 + 0.4 * trust + 0.2 * (1 - error))

    return [
        AgentPrioritySnapshot(
            agent=agent,
            weight=normalized[agent],
            confidence=confidence,
            rationale=RATIONALES[agent],
        )
        for agent in WEIGHTED_ROLES
    ]


def describe_priorities(records: list[PriorityRecord] | list[AgentPrioritySnapshot]) -> str:
    formatted = ", ".join(
        f"{r.agent.value.upper()}: {r.weight * 100:.1f}% (c={r.confidence:.2f})"
        for r in records
    )
    return f"Agent priorities updated -> {formatted}"


class PriorityEngine:
    """Calculates weights and upserts them, one row per agent."""

    def __init__(self, database: Database) -> None:
        self._db = database

    async def update(self, signal: PrioritySignal) -> PriorityUpdateResult:
        snapshots = calculate_weights(signal)
        saved = await self._db.upsert_priorities([
            PriorityRecord(
                agent=s.agent,
                weight=s.weight,
                confidence=s.confidence,
                rationale=s.rationale,
            )
            for s in snapshots
        ])
        return PriorityUpdateResult(weights=saved, summary=describe_priorities(saved))

    async def stored(self, limit: int = 0) -> list[PriorityRecord]:
        return await self._db.list_priorities(limit=limit)
