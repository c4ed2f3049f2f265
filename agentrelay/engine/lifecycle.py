"""Run state machine.

Defines valid transitions and enforces them. Invalid transitions
raise InvalidTransitionError rather than silently proceeding.

State Diagram:

    IDLE ──> STARTING ──> RUNNING ──┬──> IDLE
               │                     │
               │                     ├──> STARTING   (fast path: next
               │                     │                 item already queued)
               │                     └──> STOPPING ──> IDLE
               │
               └──> IDLE (backend finished without content)

    Any non-IDLE state ──> STOPPING  (abort)
    Any state ──> ERROR ──> IDLE | STARTING
"""
from __future__ import annotations

from .errors import InvalidTransitionError
from .models import RunPhase

VALID_TRANSITIONS: dict[RunPhase, set[RunPhase]] = {
    RunPhase.IDLE: {
        RunPhase.STARTING,
        RunPhase.ERROR,
    },
    RunPhase.STARTING: {
        RunPhase.RUNNING,
        RunPhase.IDLE,
        RunPhase.STARTING,  # fast path re-entry
        RunPhase.STOPPING,
        RunPhase.ERROR,
    },
    RunPhase.RUNNING: {
        RunPhase.IDLE,
        RunPhase.STARTING,  # fast path re-entry
        RunPhase.STOPPING,
        RunPhase.ERROR,
    },
    RunPhase.STOPPING: {
        RunPhase.IDLE,
        RunPhase.ERROR,
    },
    RunPhase.ERROR: {
        RunPhase.IDLE,
        RunPhase.STARTING,
    },
}


def validate_transition(current: RunPhase, target: RunPhase) -> None:
    """Validate a run phase transition. Raises if invalid."""
    allowed = VALID_TRANSITIONS.get(current, set())
    if target not in allowed:
        raise InvalidTransitionError(
            current.value,
            target.value,
            sorted(p.value for p in allowed),
        )
