"""Federation routes: the HTTP side of the Federation Bus.

  GET  /api/federation/status  bus status plus agent snapshots and histories
  POST /api/federation/status  broadcast the local snapshot now
  POST /api/federation/events  ingest a signed peer event
"""

from __future__ import annotations

import hmac
import logging
from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from optiloop.exceptions import EventValidationError, FederationSignatureError
from optiloop.federation.agent import FederationAgent
from optiloop.federation.bus import FederationBus
from optiloop.types import iso_now

_logger = logging.getLogger(__name__)

router = APIRouter()

_NO_STORE = {"Cache-Control": "no-store"}


# ── Module-level state (injected by api configure) ───────────

_bus: FederationBus | None = None
_agent: FederationAgent | None = None


def set_federation(bus: FederationBus | None, agent: FederationAgent | None = None) -> None:
    global _bus, _agent
    _bus = bus
    _agent = agent


def _authorised(request: Request) -> bool:
    """Open when no secret is configured; otherwise the bearer must match."""
    if _bus is None or not _bus.secret:
        return True
    header = request.headers.get("authorization", "")
    if not header.lower().startswith("bearer"):
        return False
    token = header[len("bearer"):].strip()
    return hmac.compare_digest(token.encode(), _bus.secret.encode())


def _status_body() -> dict[str, Any]:
    return {
        "status": _bus.status().model_dump(by_alias=True, mode="json"),
        "snapshots": [
            s.model_dump(by_alias=True, mode="json") for s in (_agent.snapshots() if _agent else [])
        ],
        "trustHistory": [
            h.model_dump(by_alias=True, mode="json", exclude_none=True)
            for h in (_agent.trust_history() if _agent else [])
        ],
        "modelHistory": [
            h.model_dump(by_alias=True, mode="json", exclude_none=True)
            for h in (_agent.model_history() if _agent else [])
        ],
        "timestamp": iso_now(),
    }


def _unauthorised() -> JSONResponse:
    return JSONResponse({"error": "Unauthorised"}, status_code=401)


def _not_ready() -> JSONResponse:
    return JSONResponse({"error": "Federation not initialized"}, status_code=503)


# ── Routes ────────────────────────────────────────────────────


@router.get("/api/federation/status")
async def federation_status(request: Request, probe: bool = True) -> JSONResponse:
    """Current bus state. Peers probing us pass probe=false so checks never bounce."""
    if _bus is None:
        return _not_ready()
    if not _authorised(request):
        return _unauthorised()
    if probe and _bus.is_enabled:
        await _bus.check_connections()
    return JSONResponse(_status_body(), headers=_NO_STORE)


@router.post("/api/federation/status")
async def federation_broadcast(request: Request) -> JSONResponse:
    if _bus is None:
        return _not_ready()
    if not _authorised(request):
        return _unauthorised()
    if _agent is not None:
        await _agent.broadcast_local_snapshot()
    return JSONResponse(_status_body(), headers=_NO_STORE)


@router.post("/api/federation/events")
async def federation_ingest(request: Request) -> JSONResponse:
    if _bus is None:
        return _not_ready()
    if not _authorised(request):
        return _unauthorised()

    try:
        body = await request.json()
    except ValueError:
        return JSONResponse({"error": "Body is not valid JSON"}, status_code=400)
    if not isinstance(body, dict):
        return JSONResponse({"error": "Body must be a JSON object"}, status_code=400)

    try:
        accepted = await _bus.ingest(body)
    except EventValidationError as e:
        return JSONResponse({"error": str(e), "details": e.errors}, status_code=400)
    except FederationSignatureError as e:
        _logger.warning("Rejected federation event: %s", e)
        return JSONResponse({"error": "Invalid federation signature"}, status_code=403)

    return JSONResponse({"accepted": accepted})
