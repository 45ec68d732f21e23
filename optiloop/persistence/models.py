"""Row models for the durable store."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from optiloop.types import AgentRole, new_id, utcnow


class OutcomeStatus(str, Enum):
    PENDING = "PENDING"
    APPLIED = "APPLIED"
    REJECTED = "REJECTED"


class PolicyStatus(str, Enum):
    ALLOWED = "ALLOWED"
    REVIEW = "REVIEW"
    BLOCKED = "BLOCKED"


class OutcomeRecord(BaseModel):
    """One recommendation outcome, the raw material of the trust score."""

    id: str = Field(default_factory=new_id)
    recommendation_id: str = ""
    route: str = ""
    status: OutcomeStatus = OutcomeStatus.PENDING
    rollback: bool = False
    policy_status: PolicyStatus = PolicyStatus.ALLOWED
    created_at: datetime = Field(default_factory=utcnow)


class OutcomeCounts(BaseModel):
    total: int = 0
    applied: int = 0
    rollback: int = 0
    violations: int = 0


class PriorityRecord(BaseModel):
    """A persisted agent weight. One row per agent, overwritten each cycle."""

    id: str = Field(default_factory=new_id)
    agent: AgentRole
    weight: float = Field(ge=0, le=1)
    confidence: float = Field(ge=0, le=1)
    rationale: str = ""
    updated_at: datetime = Field(default_factory=utcnow)


class RecoveryRecord(BaseModel):
    """Immutable audit row for one recovery sweep."""

    id: str = Field(default_factory=new_id)
    agent: AgentRole
    action: str
    reason: str = ""
    trust_score_before: float = 0.0
    trust_score_after: float = 0.0
    trace_id: str | None = None
    created_at: datetime = Field(default_factory=utcnow)


class EventLogRecord(BaseModel):
    """Durable audit copy of an orchestrator event."""

    id: str = Field(default_factory=new_id)
    trace_id: str
    event_type: str
    source_agent: str
    target_agent: str | None = None
    priority: int
    summary: str
    payload: dict[str, Any] = Field(default_factory=dict)
    recommendation_id: str | None = None
    created_at: datetime = Field(default_factory=utcnow)


class FederationMetricsRecord(BaseModel):
    cycle_id: str
    tenant_id: str
    participants: int = 0
    average_trust: float = 0.0
    median_trust: float = 0.0
    trust_std_deviation: float = 0.0
    highest_tenant: str | None = None
    highest_trust: float | None = None
    lowest_tenant: str | None = None
    lowest_trust: float | None = None
    average_latency_ms: float | None = None
    aggregated_priorities: list[dict[str, Any]] = Field(default_factory=list)
    summary: str = ""
    network_health: str = "critical"
    updated_at: datetime = Field(default_factory=utcnow)
