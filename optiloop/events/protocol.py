"""Event protocol: the shared vocabulary of the orchestrator bus.

Every message that crosses the bus is one variant of a tagged union keyed
on ``type``. Each variant carries its own payload model, so a
``recommendation`` can never be written with an ``evaluation`` payload.
Field names on the wire are camelCase; Python attributes are snake_case.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError, field_validator

from optiloop.exceptions import EventValidationError
from optiloop.types import AGENT_PRIORITY, AgentRole, iso_now


class EventType(str, Enum):
    RECOMMENDATION = "recommendation"
    EVALUATION = "evaluation"
    POLICY_UPDATE = "policy_update"
    INSIGHT_REPORT = "insight_report"


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO timestamp; naive values are taken as UTC."""
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def ensure_priority(agent: AgentRole | str, override: float | None = None) -> int:
    """Resolve an event/agent priority: clamp an override, else the static one."""
    if override is not None:
        return max(1, min(100, round(override)))
    return AGENT_PRIORITY[AgentRole(agent)]


# ── Payloads ─────────────────────────────────────────────────


class EventPayload(BaseModel):
    """Fields every payload carries."""

    summary: str = Field(min_length=1)
    context: dict[str, Any] | None = None

    model_config = {"populate_by_name": True}


class RecommendationMetrics(BaseModel):
    lcp_p95: float | None = Field(default=None, ge=0, alias="lcpP95")
    inp_p95: float | None = Field(default=None, ge=0, alias="inpP95")
    api_latency_p95: float | None = Field(default=None, ge=0, alias="apiLatencyP95")
    error_rate: float | None = Field(default=None, ge=0, le=1, alias="errorRate")

    model_config = {"populate_by_name": True}


class RecommendationPayload(EventPayload):
    recommendation_id: str = Field(min_length=1, alias="recommendationId")
    route: str = Field(min_length=1)
    confidence: float = Field(ge=0, le=1)
    impact: str = Field(min_length=1)
    metrics: RecommendationMetrics | None = None


class EvaluationMetrics(BaseModel):
    delta_lcp: float | None = Field(default=None, alias="deltaLcp")
    delta_inp: float | None = Field(default=None, alias="deltaInp")
    delta_latency: float | None = Field(default=None, alias="deltaLatency")
    delta_error_rate: float | None = Field(default=None, alias="deltaErrorRate")

    model_config = {"populate_by_name": True}


class EvaluationPayload(EventPayload):
    recommendation_id: str = Field(min_length=1, alias="recommendationId")
    status: Literal["approved", "needs_review", "rejected"]
    composite_impact: float = Field(alias="compositeImpact")
    rollback_triggered: bool = Field(alias="rollbackTriggered")
    confidence: float = Field(ge=0, le=1)
    notes: str | None = None
    metrics: EvaluationMetrics | None = None


class TrustMetricsSummary(BaseModel):
    success_rate: float = Field(ge=0, le=1, alias="successRate")
    rollback_rate: float = Field(ge=0, le=1, alias="rollbackRate")
    policy_violation_rate: float = Field(ge=0, le=1, alias="policyViolationRate")

    model_config = {"populate_by_name": True}


class PolicyUpdatePayload(EventPayload):
    recommendation_id: str | None = Field(default=None, alias="recommendationId")
    route: str = Field(min_length=1)
    status: Literal["ALLOWED", "REVIEW", "BLOCKED"]
    minimum_confidence: float = Field(ge=0, le=1, alias="minimumConfidence")
    allow_auto_apply: bool = Field(alias="allowAutoApply")
    trust_score: float = Field(ge=0, le=100, alias="trustScore")
    trust_metrics: TrustMetricsSummary | None = Field(default=None, alias="trustMetrics")


class InsightCorrelation(BaseModel):
    route: str
    composite_impact: float = Field(alias="compositeImpact")
    confidence_shift: float = Field(alias="confidenceShift")
    rollback_triggered: bool = Field(alias="rollbackTriggered")

    model_config = {"populate_by_name": True}


class InsightReportPayload(EventPayload):
    correlations: list[InsightCorrelation] = Field(default_factory=list)
    month: str | None = None


# ── Events ───────────────────────────────────────────────────


class BaseEvent(BaseModel):
    trace_id: str = Field(min_length=1, alias="traceId")
    source: AgentRole
    target: AgentRole | None = None
    priority: int = Field(default=50, ge=1, le=100)
    timestamp: str = Field(default_factory=iso_now)

    model_config = {"populate_by_name": True}

    @field_validator("timestamp")
    @classmethod
    def _iso_timestamp(cls, value: str) -> str:
        try:
            parse_timestamp(value)
        except ValueError as e:
            raise ValueError(f"timestamp is not ISO-8601: {value!r}") from e
        return value

    @property
    def occurred_at(self) -> datetime:
        return parse_timestamp(self.timestamp)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)


class RecommendationEvent(BaseEvent):
    type: Literal["recommendation"] = "recommendation"
    payload: RecommendationPayload


class EvaluationEvent(BaseEvent):
    type: Literal["evaluation"] = "evaluation"
    payload: EvaluationPayload


class PolicyUpdateEvent(BaseEvent):
    type: Literal["policy_update"] = "policy_update"
    payload: PolicyUpdatePayload


class InsightReportEvent(BaseEvent):
    type: Literal["insight_report"] = "insight_report"
    payload: InsightReportPayload


Event = Annotated[
    Union[RecommendationEvent, EvaluationEvent, PolicyUpdateEvent, InsightReportEvent],
    Field(discriminator="type"),
]

_event_adapter: TypeAdapter[Event] = TypeAdapter(Event)


class EventInput(BaseModel):
    """What callers hand to the orchestrator, before defaults are resolved."""

    type: EventType
    source: AgentRole
    target: AgentRole | None = None
    payload: dict[str, Any]
    trace_id: str | None = Field(default=None, alias="traceId")
    timestamp: str | None = None
    priority: float | None = None

    model_config = {"populate_by_name": True}


def validate_event(data: dict[str, Any]) -> Event:
    """Validate raw event data against its type's schema.

    Raises EventValidationError for unknown types, out-of-range priority,
    or a payload missing required fields.
    """
    try:
        return _event_adapter.validate_python(data)
    except ValidationError as e:
        kind = data.get("type", "<missing>") if isinstance(data, dict) else "<invalid>"
        raise EventValidationError(
            f"Invalid '{kind}' event: {e.error_count()} schema error(s)",
            errors=e.errors(include_url=False, include_context=False, include_input=False),
        ) from e


def sort_events_by_governance(events: list[Event]) -> list[Event]:
    """Order events by source governance priority, own priority, recency."""
    return sorted(
        events,
        key=lambda e: (
            -AGENT_PRIORITY.get(e.source, 0),
            -e.priority,
            -e.occurred_at.timestamp(),
        ),
    )


# ── Agent registration ───────────────────────────────────────


class AgentRegistrationInput(BaseModel):
    agent_id: AgentRole = Field(alias="agentId")
    name: str
    description: str | None = None
    capabilities: list[str] = Field(default_factory=list)
    priority_override: float | None = Field(default=None, alias="priorityOverride")

    model_config = {"populate_by_name": True}


class AgentRegistration(BaseModel):
    agent_id: AgentRole = Field(alias="agentId")
    name: str
    description: str | None = None
    capabilities: list[str] = Field(default_factory=list)
    priority: int
    stream_key: str = Field(alias="streamKey")
    registered_at: str = Field(default_factory=iso_now, alias="registeredAt")

    model_config = {"populate_by_name": True}
