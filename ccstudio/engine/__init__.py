"""Session engine: drives Claude Code conversations for a desktop frontend."""
from .models import PermissionMode, SessionFailure, SessionState
from .config import EngineConfig
from .errors import (
    AlreadyActive,
    BackendProtocolError,
    BackendUnavailable,
    ForcedStopTimeout,
    InvalidRequest,
    SessionError,
    SessionNotReady,
    TurnFailed,
    UnknownSession,
)
from .session import ChatSession
from .registry import SessionRegistry

__all__ = [
    "AlreadyActive",
    "BackendProtocolError",
    "BackendUnavailable",
    "ChatSession",
    "EngineConfig",
    "ForcedStopTimeout",
    "InvalidRequest",
    "PermissionMode",
    "SessionError",
    "SessionFailure",
    "SessionNotReady",
    "SessionRegistry",
    "SessionState",
    "TurnFailed",
    "UnknownSession",
]
