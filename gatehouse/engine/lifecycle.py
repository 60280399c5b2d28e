"""Session lifecycle state machine.

Defines valid transitions and enforces them. Invalid transitions
raise InvalidTransitionError rather than silently proceeding.

State Diagram:

    STARTING ──> RUNNING ──┬──> CLOSED
        │                  │
        │                  └──> ERRORED
        │
        └──> ERRORED  (spawn failure)

    CLOSED and ERRORED are absorbing.
"""
from __future__ import annotations

from .errors import InvalidTransitionError
from .models import SessionState

VALID_TRANSITIONS: dict[SessionState, set[SessionState]] = {
    SessionState.STARTING: {
        SessionState.RUNNING,
        SessionState.ERRORED,
    },
    SessionState.RUNNING: {
        SessionState.CLOSED,
        SessionState.ERRORED,
    },
    SessionState.CLOSED: set(),
    SessionState.ERRORED: set(),
}


def validate_transition(current: SessionState, target: SessionState) -> None:
    """Validate a state transition. Raises InvalidTransitionError if invalid."""
    allowed = VALID_TRANSITIONS.get(current, set())
    if target not in allowed:
        raise InvalidTransitionError(
            current.value,
            target.value,
            sorted(s.value for s in allowed),
        )
