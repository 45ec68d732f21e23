"""Tests for the control loop state machine."""

import pytest

from optiloop.exceptions import LoopStateError
from optiloop.kernel.state_machine import LoopStateMachine, LoopStatus


@pytest.mark.asyncio
async def test_initial_state():
    assert LoopStateMachine().state == LoopStatus.IDLE
    assert LoopStateMachine(LoopStatus.DISABLED).state == LoopStatus.DISABLED


@pytest.mark.asyncio
async def test_run_schedule_cycle():
    sm = LoopStateMachine()
    await sm.transition(LoopStatus.RUNNING)
    await sm.transition(LoopStatus.SCHEDULED)
    await sm.transition(LoopStatus.RUNNING)
    await sm.transition(LoopStatus.SCHEDULED)
    assert sm.state == LoopStatus.SCHEDULED


@pytest.mark.asyncio
async def test_stop_from_anywhere_lands_idle():
    for path in (
        [LoopStatus.RUNNING],
        [LoopStatus.RUNNING, LoopStatus.SCHEDULED],
    ):
        sm = LoopStateMachine()
        for state in path:
            await sm.transition(state)
        await sm.transition(LoopStatus.IDLE)
        assert sm.state == LoopStatus.IDLE


@pytest.mark.asyncio
async def test_invalid_transition_raises():
    sm = LoopStateMachine()
    with pytest.raises(LoopStateError):
        await sm.transition(LoopStatus.SCHEDULED)  # Can't schedule without running


@pytest.mark.asyncio
async def test_same_state_is_noop():
    sm = LoopStateMachine()
    await sm.transition(LoopStatus.IDLE)
    assert sm.state == LoopStatus.IDLE


@pytest.mark.asyncio
async def test_listeners_notified():
    sm = LoopStateMachine()
    seen = []

    async def listener(old, new):
        seen.append((old, new))

    sm.on_transition(listener)
    await sm.transition(LoopStatus.RUNNING)
    await sm.transition(LoopStatus.SCHEDULED)
    assert seen == [
        (LoopStatus.IDLE, LoopStatus.RUNNING),
        (LoopStatus.RUNNING, LoopStatus.SCHEDULED),
    ]
