"""Core types shared across all optiloop subsystems."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import TypeAlias

TraceId: TypeAlias = str
TenantId: TypeAlias = str
StreamKey: TypeAlias = str


def new_id() -> str:
    return uuid.uuid4().hex[:12]


def new_trace_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def iso_now() -> str:
    """ISO-8601 UTC timestamp with millisecond precision and a Z suffix."""
    return utcnow().isoformat(timespec="milliseconds").replace("+00:00", "Z")


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def clamp01(value: float) -> float:
    return clamp(value, 0.0, 1.0)


# ── Agent Roles ──────────────────────────────────────────────────────────────


class AgentRole(str, Enum):
    GOVERNANCE = "governance"
    OPTIMIZER = "optimizer"
    LEARNING = "learning"
    INSIGHT = "insight"
    FEDERATION = "federation"


# Static governance priorities, the order in which conflicts are settled
AGENT_PRIORITY: dict[AgentRole, int] = {
    AgentRole.GOVERNANCE: 90,
    AgentRole.OPTIMIZER: 75,
    AgentRole.LEARNING: 60,
    AgentRole.INSIGHT: 45,
    AgentRole.FEDERATION: 35,
}

AGENT_NAMES: dict[AgentRole, str] = {
    AgentRole.GOVERNANCE: "GovernanceAgent",
    AgentRole.OPTIMIZER: "OptimizerAgent",
    AgentRole.LEARNING: "LearningAgent",
    AgentRole.INSIGHT: "InsightAgent",
    AgentRole.FEDERATION: "FederationAgent",
}
