"""Federation protocol: signed state exchanged between tenants.

Four event types cross tenant boundaries. Each carries a typed payload
and an HMAC-SHA256 signature over the canonical JSON form of
``{type, tenantId, timestamp, payload}``. Keys are sorted and the payload
is dumped from its validated model, so sender and receiver always sign
the same bytes.
"""

from __future__ import annotations

import hashlib
import hmac
import math
from enum import Enum
from typing import Annotated, Any, Literal, Union

import orjson
from pydantic import BaseModel, Field, TypeAdapter, ValidationError, field_validator

from optiloop.events.protocol import parse_timestamp
from optiloop.exceptions import EventValidationError
from optiloop.types import AgentRole, iso_now

FORBIDDEN_METADATA_KEYS = frozenset({
    "rawEvents",
    "pii",
    "secrets",
    "authToken",
    "accessToken",
    "session",
})

NetworkHealth = Literal["healthy", "degraded", "critical"]


class FederationEventType(str, Enum):
    TELEMETRY_SYNC = "telemetry_sync"
    PRIORITY_SHARE = "priority_share"
    TRUST_AGGREGATE = "trust_aggregate"
    MODEL_UPDATE = "model_update"


# ── Payloads ─────────────────────────────────────────────────


class PrioritySnapshot(BaseModel):
    agent: AgentRole
    weight: float = Field(ge=0, le=1)
    confidence: float = Field(ge=0, le=1)
    rationale: str = Field(min_length=1)


class AggregatedPriority(PrioritySnapshot):
    """Mean weight and confidence of one agent across tenants."""


class FederatedTrustMetrics(BaseModel):
    success_rate: float = Field(ge=0, le=1, alias="successRate")
    rollback_rate: float = Field(ge=0, le=1, alias="rollbackRate")
    policy_violation_rate: float = Field(ge=0, le=1, alias="policyViolationRate")
    total_recommendations: int = Field(ge=0, alias="totalRecommendations")

    model_config = {"populate_by_name": True}


class TenantTrust(BaseModel):
    tenant_id: str = Field(min_length=1, alias="tenantId")
    trust_score: float = Field(ge=0, le=100, alias="trustScore")

    model_config = {"populate_by_name": True}


class TelemetrySyncPayload(BaseModel):
    tenant_id: str = Field(min_length=1, alias="tenantId")
    trust_score: float = Field(ge=0, le=100, alias="trustScore")
    trust_metrics: FederatedTrustMetrics | None = Field(default=None, alias="trustMetrics")
    sync_latency_ms: float | None = Field(default=None, ge=0, alias="syncLatencyMs")
    priorities: list[PrioritySnapshot] = Field(default_factory=list)
    insight_summary: str | None = Field(default=None, alias="insightSummary")
    metadata: dict[str, Any] | None = None
    sanitized: bool = True

    model_config = {"populate_by_name": True}


class PrioritySharePayload(BaseModel):
    tenant_id: str = Field(min_length=1, alias="tenantId")
    cycle_id: str = Field(min_length=1, alias="cycleId")
    priorities: list[PrioritySnapshot] = Field(min_length=1)
    rationale: str | None = None

    model_config = {"populate_by_name": True}


class TrustAggregatePayload(BaseModel):
    tenant_id: str = Field(min_length=1, alias="tenantId")
    cycle_id: str = Field(min_length=1, alias="cycleId")
    participants: int = Field(ge=1)
    average_trust: float = Field(ge=0, le=100, alias="averageTrust")
    highest_trust: TenantTrust | None = Field(default=None, alias="highestTrust")
    lowest_trust: TenantTrust | None = Field(default=None, alias="lowestTrust")
    network_health: NetworkHealth = Field(alias="networkHealth")
    average_latency_ms: float | None = Field(default=None, ge=0, alias="averageLatencyMs")
    aggregated_priorities: list[PrioritySnapshot] = Field(
        default_factory=list, alias="aggregatedPriorities",
    )
    summary: str | None = None

    model_config = {"populate_by_name": True}


class ModelUpdatePayload(BaseModel):
    tenant_id: str = Field(min_length=1, alias="tenantId")
    cycle_id: str = Field(min_length=1, alias="cycleId")
    priorities: list[PrioritySnapshot] = Field(default_factory=list)
    trust_score: float = Field(ge=0, le=100, alias="trustScore")
    applied_at: str | None = Field(default=None, alias="appliedAt")
    notes: str | None = None

    model_config = {"populate_by_name": True}


FederationPayload = Union[
    TelemetrySyncPayload, PrioritySharePayload, TrustAggregatePayload, ModelUpdatePayload,
]

PAYLOAD_MODELS: dict[FederationEventType, type[BaseModel]] = {
    FederationEventType.TELEMETRY_SYNC: TelemetrySyncPayload,
    FederationEventType.PRIORITY_SHARE: PrioritySharePayload,
    FederationEventType.TRUST_AGGREGATE: TrustAggregatePayload,
    FederationEventType.MODEL_UPDATE: ModelUpdatePayload,
}


# ── Events ───────────────────────────────────────────────────


class _FederationEventBase(BaseModel):
    id: str = Field(min_length=1)
    tenant_id: str = Field(min_length=1, alias="tenantId")
    timestamp: str
    signature: str = Field(min_length=10)

    model_config = {"populate_by_name": True}

    @field_validator("timestamp")
    @classmethod
    def _iso_timestamp(cls, value: str) -> str:
        try:
            parse_timestamp(value)
        except ValueError as e:
            raise ValueError(f"timestamp is not ISO-8601: {value!r}") from e
        return value

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)


class TelemetrySyncEvent(_FederationEventBase):
    type: Literal["telemetry_sync"] = "telemetry_sync"
    payload: TelemetrySyncPayload


class PriorityShareEvent(_FederationEventBase):
    type: Literal["priority_share"] = "priority_share"
    payload: PrioritySharePayload


class TrustAggregateEvent(_FederationEventBase):
    type: Literal["trust_aggregate"] = "trust_aggregate"
    payload: TrustAggregatePayload


class ModelUpdateEvent(_FederationEventBase):
    type: Literal["model_update"] = "model_update"
    payload: ModelUpdatePayload


FederationEvent = Annotated[
    Union[TelemetrySyncEvent, PriorityShareEvent, TrustAggregateEvent, ModelUpdateEvent],
    Field(discriminator="type"),
]

_federation_adapter: TypeAdapter[FederationEvent] = TypeAdapter(FederationEvent)


class PreparedFederationEvent(BaseModel):
    """A validated, sanitized event that has not been signed yet."""

    type: FederationEventType
    tenant_id: str
    timestamp: str
    payload: FederationPayload


class FederationEndpointStatus(BaseModel):
    endpoint: str
    healthy: bool = False
    last_attempt: str | None = Field(default=None, alias="lastAttempt")
    last_latency_ms: float | None = Field(default=None, alias="lastLatencyMs")
    error: str | None = None

    model_config = {"populate_by_name": True}


# ── Validation ───────────────────────────────────────────────


def sanitize_metadata(payload: dict[str, Any]) -> dict[str, Any]:
    """Drop credential/raw-data keys at any depth. Returns a copy."""
    clean: dict[str, Any] = {}
    for key, value in payload.items():
        if key in FORBIDDEN_METADATA_KEYS:
            continue
        if isinstance(value, dict):
            clean[key] = sanitize_metadata(value)
        elif isinstance(value, list):
            clean[key] = [sanitize_metadata(v) if isinstance(v, dict) else v for v in value]
        else:
            clean[key] = value
    return clean


def payload_to_wire(payload: BaseModel) -> dict[str, Any]:
    return payload.model_dump(by_alias=True, mode="json", exclude_none=True)


def validate_federation_event(
    event_type: FederationEventType | str,
    payload: BaseModel | dict[str, Any],
    tenant_id: str | None = None,
    timestamp: str | None = None,
) -> PreparedFederationEvent:
    """Sanitize and validate an outgoing payload against its type's schema.

    The tenant defaults to the payload's own tenantId.
    """
    try:
        kind = FederationEventType(event_type)
    except ValueError as e:
        raise EventValidationError(f"Unknown federation event type: {event_type!r}") from e

    raw = payload_to_wire(payload) if isinstance(payload, BaseModel) else payload
    try:
        parsed = PAYLOAD_MODELS[kind].model_validate(sanitize_metadata(raw))
    except ValidationError as e:
        raise EventValidationError(
            f"Invalid '{kind.value}' payload: {e.error_count()} schema error(s)",
            errors=e.errors(include_url=False, include_context=False, include_input=False),
        ) from e

    return PreparedFederationEvent(
        type=kind,
        tenant_id=tenant_id or parsed.tenant_id,
        timestamp=timestamp or iso_now(),
        payload=parsed,
    )


def parse_federation_event(data: Any) -> FederationEvent:
    """Validate a complete (signed) event received from a peer."""
    try:
        return _federation_adapter.validate_python(data)
    except ValidationError as e:
        kind = data.get("type", "<missing>") if isinstance(data, dict) else "<invalid>"
        raise EventValidationError(
            f"Invalid '{kind}' federation event: {e.error_count()} schema error(s)",
            errors=e.errors(include_url=False, include_context=False, include_input=False),
        ) from e


# ── Signing ──────────────────────────────────────────────────


def canonical_signing_bytes(
    event_type: FederationEventType | str,
    tenant_id: str,
    timestamp: str,
    payload: BaseModel,
) -> bytes:
    return orjson.dumps(
        {
            "type": FederationEventType(event_type).value,
            "tenantId": tenant_id,
            "timestamp": timestamp,
            "payload": payload_to_wire(payload),
        },
        option=orjson.OPT_SORT_KEYS,
    )


def compute_signature(secret: str, prepared: PreparedFederationEvent) -> str:
    message = canonical_signing_bytes(
        prepared.type, prepared.tenant_id, prepared.timestamp, prepared.payload,
    )
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def verify_signature(secret: str, event: FederationEvent) -> bool:
    """Constant-time check of an event's signature."""
    if not secret:
        return False
    message = canonical_signing_bytes(event.type, event.tenant_id, event.timestamp, event.payload)
    expected = hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, event.signature)


# ── Aggregation ──────────────────────────────────────────────


class FederationSnapshot(BaseModel):
    """Latest known trust and priorities for one tenant."""

    tenant_id: str = Field(alias="tenantId")
    trust_score: float = Field(default=0.0, alias="trustScore")
    sync_latency_ms: float | None = Field(default=None, alias="syncLatencyMs")
    priorities: list[AggregatedPriority] = Field(default_factory=list)
    updated_at: str = Field(default_factory=iso_now, alias="updatedAt")

    model_config = {"populate_by_name": True}

    def merge(self, incoming: FederationSnapshot) -> FederationSnapshot:
        """Overlay a newer partial snapshot; zero/empty fields keep old values."""
        return FederationSnapshot(
            tenant_id=incoming.tenant_id,
            trust_score=incoming.trust_score or self.trust_score,
            sync_latency_ms=(
                incoming.sync_latency_ms
                if incoming.sync_latency_ms is not None else self.sync_latency_ms
            ),
            priorities=incoming.priorities or self.priorities,
            updated_at=incoming.updated_at,
        )


class TrustAggregation(BaseModel):
    average_trust: float = 0.0
    highest: TenantTrust | None = None
    lowest: TenantTrust | None = None
    median: float = 0.0
    std_deviation: float = 0.0


def derive_aggregated_priorities(snapshots: list[FederationSnapshot]) -> list[AggregatedPriority]:
    """Mean weight/confidence per agent, in first-seen agent order."""
    totals: dict[AgentRole, list[float]] = {}
    for snapshot in snapshots:
        for priority in snapshot.priorities:
            acc = totals.setdefault(priority.agent, [0.0, 0.0, 0])
            acc[0] += priority.weight
            acc[1] += priority.confidence
            acc[2] += 1

    aggregated = []
    for agent, (weight_sum, confidence_sum, count) in totals.items():
        weight = round(weight_sum / count, 4)
        confidence = round(confidence_sum / count, 4)
        aggregated.append(AggregatedPriority(
            agent=agent,
            weight=weight,
            confidence=confidence,
            rationale=f"Federated average weight {weight * 100:.1f}% (c={confidence:.2f})",
        ))
    return aggregated


def aggregate_trust_scores(snapshots: list[FederationSnapshot]) -> TrustAggregation:
    if not snapshots:
        return TrustAggregation()

    values = sorted(s.trust_score for s in snapshots)
    average = sum(values) / len(values)

    highest = lowest = snapshots[0]
    for snapshot in snapshots[1:]:
        if snapshot.trust_score > highest.trust_score:
            highest = snapshot
        if snapshot.trust_score < lowest.trust_score:
            lowest = snapshot

    middle = len(values) // 2
    if len(values) % 2 == 0:
        median = (values[middle - 1] + values[middle]) / 2
    else:
        median = values[middle]

    variance = sum((v - average) ** 2 for v in values) / len(values)

    return TrustAggregation(
        average_trust=average,
        highest=TenantTrust(tenant_id=highest.tenant_id, trust_score=highest.trust_score),
        lowest=TenantTrust(tenant_id=lowest.tenant_id, trust_score=lowest.trust_score),
        median=median,
        std_deviation=math.sqrt(variance),
    )
