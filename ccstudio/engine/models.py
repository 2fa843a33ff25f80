"""Core data models for the session engine.

Enums and small records shared by the session, registry and backend
layers. Kept free of engine imports to avoid cycles.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any


class SessionState(str, Enum):
    """Session lifecycle states. See lifecycle.py for transition rules."""
    IDLE = "idle"
    CONNECTING = "connecting"
    STREAMING = "streaming"
    WAITING_FOR_INPUT = "waiting_for_input"
    STOPPED = "stopped"
    ERROR = "error"
    DISPOSED = "disposed"


# States in which a session holds (or is acquiring) a backend connection.
LIVE_STATES = frozenset({
    SessionState.CONNECTING,
    SessionState.STREAMING,
    SessionState.WAITING_FOR_INPUT,
})


class PermissionMode(str, Enum):
    """Maps to claude_agent_sdk permission modes, in display order."""
    DEFAULT = "default"
    PLAN = "plan"
    ACCEPT_EDITS = "acceptEdits"
    BYPASS = "bypassPermissions"
    DELEGATE = "delegate"
    DONT_ASK = "dontAsk"


@dataclass
class SessionFailure:
    """Structured reason a session entered the error state."""
    kind: str
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "message": self.message}
