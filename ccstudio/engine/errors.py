"""Exception hierarchy for the session engine.

One exception per failure mode. Every error carries a ``kind`` that is
sent to the UI unchanged, so frontends can branch without parsing
message text.
"""
from __future__ import annotations


class SessionError(Exception):
    """Base exception for all session errors."""
    kind = "SessionError"

    def to_dict(self) -> dict[str, str]:
        return {"kind": self.kind, "message": str(self)}


class BackendUnavailable(SessionError):
    """The agent backend could not be located or did not connect in time."""
    kind = "BackendUnavailable"

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Claude backend unavailable: {reason}")


class AlreadyActive(SessionError):
    """A live backend connection already exists for the session."""
    kind = "AlreadyActive"

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session {session_id} already has an active connection")


class UnknownSession(SessionError):
    """No session with the given id is known."""
    kind = "UnknownSession"

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Unknown session: {session_id}")


class SessionNotReady(SessionError):
    """The command is not valid in the session's current state."""
    kind = "SessionNotReady"

    def __init__(self, session_id: str, state: str, operation: str):
        self.session_id = session_id
        self.state = state
        self.operation = operation
        super().__init__(
            f"Cannot {operation} session {session_id} in state {state}"
        )


class ForcedStopTimeout(SessionError):
    """The backend did not shut down within the stop timeout."""
    kind = "ForcedStopTimeout"

    def __init__(self, session_id: str, timeout_seconds: float):
        self.session_id = session_id
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Session {session_id} did not stop within {timeout_seconds}s; "
            f"connection was detached"
        )


class BackendProtocolError(SessionError):
    """The backend sent something that cannot be decoded, or its stream broke."""
    kind = "BackendProtocolError"

    def __init__(self, detail: str):
        self.detail = detail
        super().__init__(f"Backend protocol error: {detail}")


class TurnFailed(SessionError):
    """The backend reported the turn itself as failed (result with is_error)."""
    kind = "TurnFailed"

    def __init__(self, subtype: str, detail: str):
        self.subtype = subtype
        self.detail = detail
        super().__init__(f"Turn failed ({subtype}): {detail}")


class InvalidRequest(SessionError):
    """A command was called with missing or malformed arguments."""
    kind = "InvalidRequest"

    def __init__(self, detail: str):
        self.detail = detail
        super().__init__(detail)
