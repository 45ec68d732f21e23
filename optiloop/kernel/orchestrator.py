"""Orchestrator: agent registry plus governance-ordered event dispatch.

Events are validated, appended to the durable stream, opportunistically
trimmed, and (when a database is attached) copied to the audit log.
Read paths never raise on backend trouble; they log and return what
they can.
"""

from __future__ import annotations

import logging
from typing import Any

import orjson
from pydantic import BaseModel, Field

from optiloop.events.protocol import (
    AgentRegistration,
    AgentRegistrationInput,
    Event,
    EventInput,
    EventType,
    ensure_priority,
    sort_events_by_governance,
    validate_event,
)
from optiloop.events.stream import DEFAULT_STREAM_LENGTH, StreamBackend
from optiloop.exceptions import EventValidationError
from optiloop.persistence.database import Database
from optiloop.persistence.models import EventLogRecord
from optiloop.types import AGENT_NAMES, AgentRole, iso_now, new_trace_id

_logger = logging.getLogger(__name__)

DEFAULT_STREAM_KEY = "ai:orchestrator:events"


class OrchestratorSnapshot(BaseModel):
    agents: list[AgentRegistration] = Field(default_factory=list)
    events: list[Any] = Field(default_factory=list)


class ConflictResolution(BaseModel):
    trace_id: str
    candidates: int
    winning_event: Any = None


def resolve_conflict(events: list[Event]) -> Event | None:
    """Pick the single winning event. Pure and deterministic."""
    if not events:
        return None
    return sort_events_by_governance(events)[0]


class Orchestrator:
    """Registry of agents and the gateway onto the event stream."""

    def __init__(
        self,
        stream: StreamBackend,
        database: Database | None = None,
        enabled: bool = True,
        stream_key: str = DEFAULT_STREAM_KEY,
        max_length: int = DEFAULT_STREAM_LENGTH,
    ) -> None:
        self._stream = stream
        self._db = database
        self._enabled = enabled
        self._stream_key = stream_key
        self._max_length = max_length
        self._registry: dict[AgentRole, AgentRegistration] = {}

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def stream_key(self) -> str:
        return self._stream_key

    # ── Registry ──────────────────────────────────────────────

    def register_agent(
        self, registration: AgentRegistrationInput | dict[str, Any],
    ) -> AgentRegistration:
        """Upsert an agent into the registry, keyed by its role."""
        if isinstance(registration, dict):
            registration = AgentRegistrationInput.model_validate(registration)

        resolved = AgentRegistration(
            agent_id=registration.agent_id,
            name=registration.name,
            description=registration.description,
            capabilities=list(registration.capabilities),
            priority=ensure_priority(registration.agent_id, registration.priority_override),
            stream_key=f"{self._stream_key}:{registration.agent_id.value}",
        )
        self._registry[registration.agent_id] = resolved
        return resolved

    def list_agents(self) -> list[AgentRegistration]:
        return list(self._registry.values())

    @staticmethod
    def agent_name(agent: AgentRole | str) -> str:
        return AGENT_NAMES[AgentRole(agent)]

    # ── Dispatch ──────────────────────────────────────────────

    async def dispatch_event(self, event_input: EventInput | dict[str, Any]) -> Event | None:
        """Validate, append, trim, and audit one event.

        Returns None when orchestration is disabled. Raises
        EventValidationError before anything is written.
        """
        if not self._enabled:
            return None

        if isinstance(event_input, dict):
            try:
                event_input = EventInput.model_validate(event_input)
            except ValueError as e:
                raise EventValidationError(f"Invalid event input: {e}") from e

        event = validate_event({
            "traceId": event_input.trace_id or new_trace_id(),
            "type": event_input.type.value,
            "source": event_input.source.value,
            "target": event_input.target.value if event_input.target else None,
            "priority": ensure_priority(event_input.source, event_input.priority),
            "timestamp": event_input.timestamp or iso_now(),
            "payload": event_input.payload,
        })

        await self._stream.append(self._stream_key, event.to_wire())
        await self._trim_if_needed()
        await self._persist(event)
        return event

    async def _trim_if_needed(self) -> None:
        try:
            length = await self._stream.length(self._stream_key)
            if length > self._max_length:
                await self._stream.trim(self._stream_key, self._max_length)
        except Exception as e:
            _logger.warning("Failed to trim orchestrator stream: %s", e)

    async def _persist(self, event: Event) -> None:
        if self._db is None:
            return
        try:
            await self._db.append_event_log(EventLogRecord(
                trace_id=event.trace_id,
                event_type=event.type,
                source_agent=event.source.value,
                target_agent=event.target.value if event.target else None,
                priority=event.priority,
                summary=event.payload.summary,
                payload=event.payload.model_dump(by_alias=True, mode="json", exclude_none=True),
                recommendation_id=getattr(event.payload, "recommendation_id", None),
            ))
        except Exception as e:
            _logger.warning("Failed to persist event %s to audit log: %s", event.trace_id, e)

    # ── Reads ─────────────────────────────────────────────────

    async def get_snapshot(self, limit: int = 25) -> OrchestratorSnapshot:
        """Registry plus the newest ``limit`` events that still parse."""
        agents = self.list_agents()
        if not self._enabled:
            return OrchestratorSnapshot(agents=agents, events=[])

        try:
            entries = await self._stream.range(self._stream_key, "-", "+", limit=limit)
        except Exception as e:
            _logger.warning("Failed to read orchestrator events: %s", e)
            entries = []

        events: list[Event] = []
        for entry in entries:
            try:
                events.append(validate_event(orjson.loads(entry.data)))
            except (EventValidationError, orjson.JSONDecodeError) as e:
                _logger.warning("Skipping invalid event payload %s: %s", entry.id, e)

        return OrchestratorSnapshot(agents=agents, events=events[-limit:])

    async def sample_backlog(self) -> int | None:
        """Current stream length, or None when the backend can't say."""
        try:
            return await self._stream.length(self._stream_key)
        except Exception as e:
            _logger.warning("Failed to sample stream backlog: %s", e)
            return None

    def resolve_conflict(self, events: list[Event]) -> Event | None:
        return resolve_conflict(events)

    def find_conflicts(self, events: list[Event]) -> list[ConflictResolution]:
        """Group events by trace id; resolve every group with competitors."""
        groups: dict[str, list[Event]] = {}
        for event in events:
            groups.setdefault(event.trace_id, []).append(event)
        return [
            ConflictResolution(
                trace_id=trace_id,
                candidates=len(group),
                winning_event=resolve_conflict(group),
            )
            for trace_id, group in groups.items()
            if len(group) > 1
        ]

    async def latest_evaluation(self, recommendation_id: str) -> Event | None:
        """Most recent evaluation event recorded for a recommendation."""
        if not self._enabled or self._db is None:
            return None
        record = await self._db.latest_event_log(recommendation_id, EventType.EVALUATION.value)
        if record is None:
            return None
        return validate_event({
            "traceId": record.trace_id,
            "type": record.event_type,
            "source": record.source_agent,
            "target": record.target_agent,
            "priority": record.priority,
            "timestamp": record.created_at.isoformat(),
            "payload": record.payload,
        })

    async def reset(self) -> None:
        """Clear registry and stream. Tests only."""
        self._registry.clear()
        await self._stream.delete(self._stream_key)
