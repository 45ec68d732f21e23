"""HTTP surface: orchestrator, autonomy loop and federation routes."""

from __future__ import annotations

import time
from typing import Literal

from fastapi import FastAPI, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from optiloop import __version__
from optiloop.autonomy.loop import ControlLoop
from optiloop.federation import server as federation_server
from optiloop.federation.agent import FederationAgent
from optiloop.federation.bus import FederationBus
from optiloop.kernel.orchestrator import Orchestrator

api_app = FastAPI(title="optiloop", version=__version__)
api_app.include_router(federation_server.router)

_orchestrator: Orchestrator | None = None
_loop: ControlLoop | None = None
_start_time = time.time()


def configure(
    orchestrator: Orchestrator | None = None,
    control_loop: ControlLoop | None = None,
    federation_bus: FederationBus | None = None,
    federation_agent: FederationAgent | None = None,
) -> None:
    global _orchestrator, _loop
    _orchestrator = orchestrator
    _loop = control_loop
    federation_server.set_federation(federation_bus, federation_agent)


class AutonomyCommand(BaseModel):
    action: Literal["pause", "resume", "run"]


@api_app.get("/api/status")
async def status() -> dict:
    return {
        "version": __version__,
        "uptime_s": round(time.time() - _start_time, 1),
        "orchestration": bool(_orchestrator and _orchestrator.enabled),
        "autonomy": _loop.status.value if _loop else "disabled",
    }


# ── Orchestrator ─────────────────────────────────────────────


@api_app.get("/api/orchestrator")
async def orchestrator_snapshot(limit: int = Query(default=25)) -> JSONResponse:
    if _orchestrator is None:
        return JSONResponse({"error": "Orchestrator not initialized"}, status_code=503)

    limit = max(5, min(100, limit))
    snapshot = await _orchestrator.get_snapshot(limit=limit)
    conflicts = _orchestrator.find_conflicts(snapshot.events)

    return JSONResponse({
        "enabled": _orchestrator.enabled,
        "agents": [a.model_dump(by_alias=True, mode="json") for a in snapshot.agents],
        "events": [e.to_wire() for e in snapshot.events],
        "conflicts": [
            {
                "traceId": c.trace_id,
                "candidates": c.candidates,
                "winningEvent": c.winning_event.to_wire() if c.winning_event else None,
            }
            for c in conflicts
        ],
    }, headers={"Cache-Control": "no-store"})


@api_app.get("/api/orchestrator/evaluations/{recommendation_id}")
async def latest_evaluation(recommendation_id: str) -> JSONResponse:
    """Most recent evaluation event for one recommendation."""
    if _orchestrator is None:
        return JSONResponse({"error": "Orchestrator not initialized"}, status_code=503)
    event = await _orchestrator.latest_evaluation(recommendation_id)
    if event is None:
        return JSONResponse({"error": "No evaluation recorded"}, status_code=404)
    return JSONResponse(event.to_wire(), headers={"Cache-Control": "no-store"})


# ── Autonomy loop ────────────────────────────────────────────


async def _loop_state() -> dict:
    state = await _loop.state()
    return state.model_dump(by_alias=True, mode="json")


@api_app.get("/api/autonomy")
async def autonomy_state() -> JSONResponse:
    if _loop is None:
        return JSONResponse({"error": "Autonomy loop not initialized"}, status_code=503)
    return JSONResponse(await _loop_state(), headers={"Cache-Control": "no-store"})


@api_app.post("/api/autonomy")
async def autonomy_command(command: AutonomyCommand) -> JSONResponse:
    if _loop is None:
        return JSONResponse({"error": "Autonomy loop not initialized"}, status_code=503)

    body: dict = {"action": command.action}
    if command.action == "pause":
        await _loop.stop()
    elif command.action == "resume":
        started = await _loop.start()
        body["started"] = started.started
        if started.reason:
            body["reason"] = started.reason
    else:
        result = await _loop.run_cycle()
        body["result"] = result.model_dump(by_alias=True, mode="json")

    body["state"] = await _loop_state()
    return JSONResponse(body)
