"""Tests for the adaptive scaler."""

import pytest
from pydantic import ValidationError

from optiloop.autonomy.scaler import (
    MAX_CONCURRENCY,
    MAX_INTERVAL_MS,
    MIN_CONCURRENCY,
    MIN_INTERVAL_MS,
    ScalingMetrics,
    ScalingState,
    adaptive_interval,
    compute_pressure,
    describe_scaling_decision,
    evaluate_scaling,
)


def _metrics(latency=250.0, backlog=0.0, trust=100.0, success=1.0):
    return ScalingMetrics(
        avg_latency_ms=latency, backlog_size=backlog, trust_score=trust, success_rate=success,
    )


def test_busy_system_scales_up():
    decision = evaluate_scaling(
        _metrics(latency=800, backlog=30, trust=60, success=0.5),
        ScalingState(concurrency=1, interval_ms=300_000),
    )
    assert decision.status == "scale_up"
    assert decision.state.concurrency == 2
    assert decision.state.interval_ms == 240_000
    assert decision.pressure == pytest.approx(0.48)


def test_idle_system_scales_down():
    decision = evaluate_scaling(
        _metrics(latency=0, backlog=0, trust=100, success=1.0),
        ScalingState(concurrency=3, interval_ms=300_000),
    )
    assert decision.status == "scale_down"
    assert decision.state.concurrency == 2
    assert decision.state.interval_ms == 360_000


def test_middling_pressure_is_steady():
    current = ScalingState(concurrency=2, interval_ms=200_000)
    decision = evaluate_scaling(_metrics(latency=500, backlog=10, trust=80, success=0.6), current)
    assert decision.status == "steady"
    assert decision.state == current


def test_bounds_hold_at_the_edges():
    hot = evaluate_scaling(
        _metrics(latency=5_000, backlog=500, trust=0, success=0),
        ScalingState(concurrency=MAX_CONCURRENCY, interval_ms=MIN_INTERVAL_MS),
    )
    assert hot.state.concurrency == MAX_CONCURRENCY
    assert hot.state.interval_ms == MIN_INTERVAL_MS

    cold = evaluate_scaling(
        _metrics(latency=0, backlog=0, trust=100, success=1.0),
        ScalingState(concurrency=MIN_CONCURRENCY, interval_ms=MAX_INTERVAL_MS),
    )
    assert cold.state.concurrency == MIN_CONCURRENCY
    assert cold.state.interval_ms == MAX_INTERVAL_MS


def test_pressure_inputs_are_clamped():
    assert compute_pressure(_metrics(latency=10_000, backlog=1_000, trust=-50, success=-1)) == (
        pytest.approx(0.35 + 0.40 + 0.15)
    )


def test_state_rejects_out_of_range_values():
    with pytest.raises(ValidationError):
        ScalingState(concurrency=0)
    with pytest.raises(ValidationError):
        ScalingState(interval_ms=1_000)


def test_describe_decision():
    decision = evaluate_scaling(
        _metrics(latency=800, backlog=30, trust=60, success=0.5), ScalingState(),
    )
    text = describe_scaling_decision(decision)
    assert text.startswith("SCALE_UP · interval 4.00m · concurrency 2 -> ")


def test_adaptive_interval_stays_in_bounds():
    assert MIN_INTERVAL_MS <= adaptive_interval(0, 100, 1, 0) <= MAX_INTERVAL_MS
    assert adaptive_interval(1, 0, 0, 1, base_interval_ms=900_000) == MAX_INTERVAL_MS
    assert adaptive_interval(1, 0, 0, 1) > adaptive_interval(0, 100, 1, 0)
