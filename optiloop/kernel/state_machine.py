"""Control loop state machine: enforces valid lifecycle transitions."""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Awaitable, Callable

from optiloop.exceptions import LoopStateError


class LoopStatus(str, Enum):
    DISABLED = "disabled"
    IDLE = "idle"
    RUNNING = "running"
    SCHEDULED = "scheduled"


TransitionCallback = Callable[[LoopStatus, LoopStatus], Awaitable[None]]

# stop() may land in IDLE from anywhere; only start() and the timer run cycles
VALID_TRANSITIONS: dict[LoopStatus, set[LoopStatus]] = {
    LoopStatus.DISABLED: {LoopStatus.RUNNING, LoopStatus.IDLE},
    LoopStatus.IDLE: {LoopStatus.RUNNING, LoopStatus.DISABLED},
    LoopStatus.RUNNING: {LoopStatus.SCHEDULED, LoopStatus.IDLE},
    LoopStatus.SCHEDULED: {LoopStatus.RUNNING, LoopStatus.IDLE},
}


class LoopStateMachine:
    """Tracks where the control loop is in its run/schedule cycle.

    Enforces that only valid transitions occur and notifies listeners
    on every state change.
    """

    def __init__(self, initial: LoopStatus = LoopStatus.IDLE) -> None:
        self._state = initial
        self._listeners: list[TransitionCallback] = []
        self._lock = asyncio.Lock()

    @property
    def state(self) -> LoopStatus:
        return self._state

    async def transition(self, target: LoopStatus) -> None:
        async with self._lock:
            if target == self._state:
                return
            valid = VALID_TRANSITIONS.get(self._state, set())
            if target not in valid:
                raise LoopStateError(
                    f"Cannot move control loop from {self._state.value} to {target.value}"
                )
            old = self._state
            self._state = target
        # Notify listeners outside the lock
        for listener in self._listeners:
            await listener(old, target)

    def on_transition(self, callback: TransitionCallback) -> None:
        self._listeners.append(callback)
