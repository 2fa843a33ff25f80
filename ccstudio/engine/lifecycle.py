"""Session lifecycle state machine.

Defines valid transitions and enforces them. Invalid transitions
raise SessionNotReady rather than silently proceeding.

State Diagram:

    IDLE ──> CONNECTING ──┬──> STREAMING <──> WAITING_FOR_INPUT
                          │         │                 │
                          │         └──> ERROR <──────┤
                          │                 │         │
                          └──> IDLE         v         v
                                        STOPPED <─────┘
                                           │
    STOPPED / ERROR ──> CONNECTING  (resume)
    IDLE / STOPPED / ERROR ──> DISPOSED
"""
from __future__ import annotations

from .errors import SessionNotReady
from .models import SessionState

VALID_TRANSITIONS: dict[SessionState, set[SessionState]] = {
    SessionState.IDLE: {
        SessionState.CONNECTING,
        SessionState.DISPOSED,
    },
    SessionState.CONNECTING: {
        SessionState.STREAMING,
        SessionState.WAITING_FOR_INPUT,
        SessionState.ERROR,
        SessionState.STOPPED,
        SessionState.IDLE,  # connect failed on first start
    },
    SessionState.STREAMING: {
        SessionState.WAITING_FOR_INPUT,
        SessionState.ERROR,
        SessionState.STOPPED,
    },
    SessionState.WAITING_FOR_INPUT: {
        SessionState.STREAMING,
        SessionState.ERROR,
        SessionState.STOPPED,
    },
    SessionState.STOPPED: {
        SessionState.CONNECTING,  # resume
        SessionState.DISPOSED,
    },
    SessionState.ERROR: {
        SessionState.CONNECTING,  # resume
        SessionState.STOPPED,
        SessionState.DISPOSED,
    },
    SessionState.DISPOSED: set(),
}


def can_transition(current: SessionState, target: SessionState) -> bool:
    return target in VALID_TRANSITIONS.get(current, set())


def validate_transition(
    current: SessionState,
    target: SessionState,
    session_id: str = "",
) -> None:
    """Validate a state transition. Raises SessionNotReady if invalid."""
    if not can_transition(current, target):
        raise SessionNotReady(
            session_id or "<unknown>",
            current.value,
            f"move to {target.value}",
        )
