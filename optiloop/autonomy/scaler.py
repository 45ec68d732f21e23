"""Adaptive Scaler: turns load pressure into loop concurrency and cadence."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field

from optiloop.types import clamp, clamp01

MIN_INTERVAL_MS = 60_000
MAX_INTERVAL_MS = 15 * 60_000
MIN_CONCURRENCY = 1
MAX_CONCURRENCY = 6

SCALE_UP_PRESSURE = 0.35
SCALE_DOWN_PRESSURE = -0.15

ScalingStatus = Literal["scale_up", "scale_down", "steady"]


class ScalingMetrics(BaseModel):
    avg_latency_ms: float = Field(alias="avgLatencyMs")
    backlog_size: float = Field(alias="backlogSize")
    trust_score: float = Field(alias="trustScore")
    success_rate: float = Field(alias="successRate")

    model_config = {"populate_by_name": True}


class ScalingState(BaseModel):
    concurrency: int = Field(default=1, ge=MIN_CONCURRENCY, le=MAX_CONCURRENCY)
    interval_ms: int = Field(
        default=300_000, ge=MIN_INTERVAL_MS, le=MAX_INTERVAL_MS, alias="intervalMs",
    )

    model_config = {"populate_by_name": True}


class ScalingDecision(BaseModel):
    state: ScalingState
    status: ScalingStatus
    reason: str
    pressure: float
    backlog_size: float = Field(alias="backlogSize")
    avg_latency_ms: float = Field(alias="avgLatencyMs")

    model_config = {"populate_by_name": True}


def clamp_interval(value: float) -> int:
    return int(round(clamp(value, MIN_INTERVAL_MS, MAX_INTERVAL_MS)))


def compute_pressure(metrics: ScalingMetrics) -> float:
    latency_score = clamp01(metrics.avg_latency_ms / 1_000)
    backlog_score = clamp01(metrics.backlog_size / 50)
    trust_penalty = 1 - clamp01(metrics.trust_score / 100)
    success_boost = clamp01(metrics.success_rate)
    return (
        latency_score * 0.35
        + backlog_score * 0.40
        + trust_penalty * 0.15
        - success_boost * 0.20
    )


def evaluate_scaling(metrics: ScalingMetrics, current: ScalingState) -> ScalingDecision:
    """Decide scale_up / scale_down / steady. Pure."""
    pressure = compute_pressure(metrics)

    status: ScalingStatus = "steady"
    concurrency = current.concurrency
    interval = current.interval_ms
    reason = "Load is stable"

    if pressure > SCALE_UP_PRESSURE:
        status = "scale_up"
        concurrency = int(clamp(current.concurrency + 1, MIN_CONCURRENCY, MAX_CONCURRENCY))
        interval = clamp_interval(current.interval_ms * 0.8)
        reason = "Backlog and latency are high, running the loop more often"
    elif pressure < SCALE_DOWN_PRESSURE:
        status = "scale_down"
        concurrency = int(clamp(current.concurrency - 1, MIN_CONCURRENCY, MAX_CONCURRENCY))
        interval = clamp_interval(current.interval_ms * 1.2)
        reason = "System is idle, running the loop less often to save resources"

    return ScalingDecision(
        state=ScalingState(concurrency=concurrency, interval_ms=interval),
        status=status,
        reason=reason,
        pressure=pressure,
        backlog_size=metrics.backlog_size,
        avg_latency_ms=metrics.avg_latency_ms,
    )


def describe_scaling_decision(decision: ScalingDecision) -> str:
    minutes = decision.state.interval_ms / 60_000
    return (
        f"{decision.status.upper()} · interval {minutes:.2f}m · "
        f"concurrency {decision.state.concurrency} -> {decision.reason}"
    )


def adaptive_interval(
    load: float,
    trust_score: float,
    success_rate: float,
    error_rate: float,
    base_interval_ms: float = 300_000,
) -> int:
    """Refine an interval from telemetry: busy or failing systems wait longer."""
    load_factor = 1 + clamp01(load) * 0.5
    trust_factor = 1 - clamp01(trust_score / 100) * 0.3
    success_factor = 1 - clamp01(success_rate) * 0.25
    error_factor = 1 + clamp01(error_rate) * 0.6
    raw = base_interval_ms * load_factor * trust_factor * success_factor * error_factor
    return clamp_interval(raw)
