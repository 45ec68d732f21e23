"""Federation Bus: signs, delivers and ingests cross-tenant events.

Publishing emits to local subscribers first, then POSTs the signed event
to every peer concurrently. Each peer delivery is individually time-boxed
and only affects that peer's recorded health.

Usage:
    bus = FederationBus(tenant_id="acme", secret="s3cret",
                        endpoints=["https://peer.example.com"])
    unsubscribe = bus.subscribe("trust_aggregate", on_aggregate)
    result = await bus.publish("telemetry_sync", {...})
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import defaultdict
from typing import Any, Awaitable, Callable

import httpx
from pydantic import BaseModel, Field

from optiloop.config import settings
from optiloop.exceptions import FederationSignatureError
from optiloop.federation.protocol import (
    FederationEndpointStatus,
    FederationEvent,
    FederationEventType,
    compute_signature,
    parse_federation_event,
    validate_federation_event,
    verify_signature,
)
from optiloop.types import iso_now, new_trace_id

_logger = logging.getLogger(__name__)

DEFAULT_RECENT_LIMIT = 25

FederationListener = Callable[[FederationEvent], Awaitable[None] | None]


class DeliveryResult(BaseModel):
    endpoint: str
    ok: bool
    latency_ms: float | None = Field(default=None, alias="latencyMs")
    error: str | None = None

    model_config = {"populate_by_name": True}


class PublishResult(BaseModel):
    event: Any = None
    deliveries: list[DeliveryResult] = Field(default_factory=list)


class FederationBusStatus(BaseModel):
    enabled: bool
    tenant_id: str = Field(alias="tenantId")
    endpoints: list[str]
    recent_events: list[dict[str, Any]] = Field(alias="recentEvents")
    connections: list[FederationEndpointStatus]

    model_config = {"populate_by_name": True}


class FederationBus:
    """Signed pub/sub between tenants over HTTP."""

    def __init__(
        self,
        tenant_id: str | None = None,
        secret: str | None = None,
        endpoints: list[str] | None = None,
        enabled: bool | None = None,
        recent_limit: int | None = None,
        timeout: float | None = None,
    ) -> None:
        self._tenant_id = tenant_id or settings.federation_tenant_id
        self._secret = secret if secret is not None else settings.federation_secret
        self._endpoints = list(endpoints if endpoints is not None else settings.endpoint_list)
        self._enabled = enabled if enabled is not None else settings.federation_enabled
        self._recent_limit = recent_limit or settings.federation_recent_limit or DEFAULT_RECENT_LIMIT
        self._timeout = timeout or settings.federation_timeout_seconds

        self._listeners: dict[FederationEventType, list[FederationListener]] = defaultdict(list)
        self._recent: list[FederationEvent] = []
        self._statuses: dict[str, FederationEndpointStatus] = {
            endpoint: FederationEndpointStatus(endpoint=endpoint) for endpoint in self._endpoints
        }
        self._pending: set[asyncio.Task] = set()

    @property
    def is_enabled(self) -> bool:
        return self._enabled and bool(self._secret)

    @property
    def tenant_id(self) -> str:
        return self._tenant_id

    @property
    def secret(self) -> str:
        return self._secret

    @property
    def endpoints(self) -> list[str]:
        return list(self._endpoints)

    def recent_events(self) -> list[FederationEvent]:
        """Newest first."""
        return list(self._recent)

    def connection_statuses(self) -> list[FederationEndpointStatus]:
        return [s.model_copy() for s in self._statuses.values()]

    def _record_event(self, event: FederationEvent) -> None:
        self._recent.insert(0, event)
        del self._recent[self._recent_limit:]

    # ── Subscribers ───────────────────────────────────────────

    def subscribe(
        self, event_type: FederationEventType | str, listener: FederationListener,
    ) -> Callable[[], None]:
        """Register a listener for one event type. Returns an unsubscribe callable."""
        kind = FederationEventType(event_type)
        self._listeners[kind].append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners[kind]:
                self._listeners[kind].remove(listener)

        return unsubscribe

    def _emit(self, event: FederationEvent) -> None:
        for listener in list(self._listeners[FederationEventType(event.type)]):
            task = asyncio.create_task(self._notify(listener, event))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

    async def _notify(self, listener: FederationListener, event: FederationEvent) -> None:
        try:
            result = listener(event)
            if asyncio.iscoroutine(result):
                await result
        except Exception as e:
            _logger.warning("Federation listener failed on %s %s: %s", event.type, event.id, e)

    async def drain(self) -> None:
        """Wait until every in-flight listener task has finished."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    # ── Publish ───────────────────────────────────────────────

    async def publish(
        self,
        event_type: FederationEventType | str,
        payload: BaseModel | dict[str, Any],
        tenant_id: str | None = None,
        timestamp: str | None = None,
    ) -> PublishResult:
        """Sign, emit locally, and deliver to every peer.

        Returns an empty result when federation is disabled or unsigned.
        Raises EventValidationError if the payload does not match its type.
        """
        if not self.is_enabled:
            return PublishResult()

        prepared = validate_federation_event(
            event_type, payload, tenant_id=tenant_id or self._tenant_id, timestamp=timestamp,
        )
        event = parse_federation_event({
            "id": new_trace_id(),
            "type": prepared.type.value,
            "tenantId": prepared.tenant_id,
            "timestamp": prepared.timestamp,
            "signature": compute_signature(self._secret, prepared),
            "payload": prepared.payload,
        })

        self._record_event(event)
        # Local reactions must not depend on network delivery
        self._emit(event)

        deliveries = await asyncio.gather(
            *(self._deliver(endpoint, event) for endpoint in self._endpoints)
        )
        return PublishResult(event=event, deliveries=list(deliveries))

    async def _deliver(self, endpoint: str, event: FederationEvent) -> DeliveryResult:
        url = f"{endpoint.rstrip('/')}/api/federation/events"
        result = await self._request("POST", endpoint, url, json=event.to_wire())
        self._update_status(result)
        return result

    async def _request(
        self, method: str, endpoint: str, url: str, json: dict[str, Any] | None = None,
    ) -> DeliveryResult:
        started = time.monotonic()
        headers = {"Authorization": f"Bearer {self._secret}"}
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await asyncio.wait_for(
                    client.request(method, url, json=json, headers=headers),
                    timeout=self._timeout,
                )
        except asyncio.TimeoutError:
            return DeliveryResult(
                endpoint=endpoint, ok=False, error=f"Timed out after {self._timeout}s",
            )
        except Exception as e:
            return DeliveryResult(endpoint=endpoint, ok=False, error=str(e) or type(e).__name__)

        latency_ms = (time.monotonic() - started) * 1000
        ok = 200 <= resp.status_code < 300
        return DeliveryResult(
            endpoint=endpoint,
            ok=ok,
            latency_ms=latency_ms,
            error=None if ok else f"HTTP {resp.status_code}",
        )

    def _update_status(self, result: DeliveryResult) -> None:
        self._statuses[result.endpoint] = FederationEndpointStatus(
            endpoint=result.endpoint,
            healthy=result.ok,
            last_attempt=iso_now(),
            last_latency_ms=result.latency_ms,
            error=result.error,
        )
        if not result.ok:
            _logger.warning("Federation peer %s unhealthy: %s", result.endpoint, result.error)

    # ── Ingest ────────────────────────────────────────────────

    async def ingest(self, data: dict[str, Any] | FederationEvent) -> bool:
        """Accept a peer event.

        Returns False when disabled or for an echo of our own event.
        Raises EventValidationError on a schema mismatch and
        FederationSignatureError when the signature does not verify.
        """
        if not self.is_enabled:
            return False

        event = parse_federation_event(data if isinstance(data, dict) else data.to_wire())
        if not verify_signature(self._secret, event):
            raise FederationSignatureError(
                f"Invalid signature on federation event {event.id} from {event.tenant_id}"
            )

        if event.tenant_id == self._tenant_id:
            return False

        self._record_event(event)
        self._emit(event)
        return True

    # ── Health ────────────────────────────────────────────────

    async def check_connections(self) -> list[FederationEndpointStatus]:
        """Probe every peer's status endpoint and refresh its health."""
        if not self.is_enabled:
            return self.connection_statuses()

        results = await asyncio.gather(*(
            self._request(
                "GET", endpoint, f"{endpoint.rstrip('/')}/api/federation/status?probe=false",
            )
            for endpoint in self._endpoints
        ))
        for result in results:
            self._update_status(result)
        return self.connection_statuses()

    def status(self) -> FederationBusStatus:
        return FederationBusStatus(
            enabled=self.is_enabled,
            tenant_id=self._tenant_id,
            endpoints=self.endpoints,
            recent_events=[e.to_wire() for e in self._recent],
            connections=self.connection_statuses(),
        )
