"""Command surface: the request/response API the UI calls.

Validates input, forwards to the SessionRegistry and returns plain
JSON-ready results with camelCase keys. Failures raise SessionError
subclasses; ``error_payload`` turns them into the kind-tagged shape
sent back to the UI.
"""
from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any

from ccstudio.engine.errors import InvalidRequest, SessionError, UnknownSession
from ccstudio.engine.models import PermissionMode
from ccstudio.engine.registry import SessionRegistry
from ccstudio.shared.models.message import message_to_dict
from ccstudio.shared.services import transcripts

logger = logging.getLogger(__name__)

CommandHandler = Callable[[dict[str, Any]], Awaitable[Any]]


def error_payload(exc: SessionError) -> dict[str, Any]:
    return {"error": exc.to_dict()}


def _require_str(payload: dict[str, Any], key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value.strip():
        raise InvalidRequest(f"'{key}' is required and must be a non-empty string")
    return value


def _optional_str(payload: dict[str, Any], key: str) -> str | None:
    value = payload.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise InvalidRequest(f"'{key}' must be a string")
    return value or None


def _permission_mode(payload: dict[str, Any], required: bool = False) -> PermissionMode | None:
    value = payload.get("permissionMode")
    if value is None:
        if required:
            raise InvalidRequest("'permissionMode' is required")
        return None
    try:
        return PermissionMode(value)
    except ValueError:
        valid = ", ".join(m.value for m in PermissionMode)
        raise InvalidRequest(
            f"Invalid permissionMode {value!r} (expected one of: {valid})"
        ) from None


def _optional_int(payload: dict[str, Any], key: str) -> int | None:
    value = payload.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise InvalidRequest(f"'{key}' must be a positive integer")
    return value


class CommandSurface:
    """Named operations over a SessionRegistry."""

    def __init__(self, registry: SessionRegistry) -> None:
        self._registry = registry
        self._handlers: dict[str, CommandHandler] = {
            "start": self.start,
            "sendMessage": self.send_message,
            "stop": self.stop,
            "resume": self.resume,
            "setPermissionMode": self.set_permission_mode,
            "listActive": self.list_active,
            "getSession": self.get_session,
            "dispose": self.dispose,
            "getPermissionModes": self.get_permission_modes,
            "checkBackend": self.check_backend,
            "queryOnce": self.query_once,
            "listProjectSessions": self.list_project_sessions,
            "getSessionHistory": self.get_session_history,
        }

    @property
    def operations(self) -> list[str]:
        return sorted(self._handlers)

    async def dispatch(self, operation: str, payload: dict[str, Any] | None = None) -> Any:
        handler = self._handlers.get(operation)
        if handler is None:
            raise InvalidRequest(f"Unknown operation: {operation}")
        if payload is not None and not isinstance(payload, dict):
            raise InvalidRequest("Request body must be a JSON object")
        return await handler(payload or {})

    async def invoke(self, operation: str, payload: dict[str, Any] | None = None) -> dict[str, Any]:
        """Like dispatch, but reports failures as a kind-tagged payload."""
        try:
            return {"result": await self.dispatch(operation, payload)}
        except SessionError as exc:
            logger.info("Command %s failed: %s", operation, exc)
            return error_payload(exc)

    # ── Operations ──

    async def start(self, payload: dict[str, Any]) -> dict[str, Any]:
        prompt = _optional_str(payload, "prompt")
        session = await self._registry.start(
            prompt,
            _permission_mode(payload),
            session_id=_optional_str(payload, "sessionId"),
            cwd=_optional_str(payload, "cwd"),
        )
        return {"sessionId": session.session_id, "state": session.state.value}

    async def send_message(self, payload: dict[str, Any]) -> dict[str, Any]:
        session_id = _require_str(payload, "sessionId")
        await self._registry.send(session_id, _require_str(payload, "text"))
        return {"sessionId": session_id, "accepted": True}

    async def stop(self, payload: dict[str, Any]) -> dict[str, Any]:
        session = await self._registry.stop(_require_str(payload, "sessionId"))
        return {"sessionId": session.session_id, "state": session.state.value}

    async def resume(self, payload: dict[str, Any]) -> dict[str, Any]:
        session = await self._registry.resume(
            _require_str(payload, "sessionId"),
            _permission_mode(payload),
            cwd=_optional_str(payload, "cwd"),
        )
        return {"sessionId": session.session_id, "state": session.state.value}

    async def set_permission_mode(self, payload: dict[str, Any]) -> dict[str, Any]:
        session = await self._registry.set_permission_mode(
            _require_str(payload, "sessionId"),
            _permission_mode(payload, required=True),
        )
        return {"sessionId": session.session_id, "permissionMode": session.permission_mode.value}

    async def list_active(self, payload: dict[str, Any]) -> list[dict[str, Any]]:
        return self._registry.list_active()

    async def get_session(self, payload: dict[str, Any]) -> dict[str, Any]:
        return self._registry.snapshot(_require_str(payload, "sessionId"))

    async def dispose(self, payload: dict[str, Any]) -> dict[str, Any]:
        session_id = _require_str(payload, "sessionId")
        await self._registry.dispose(session_id)
        return {"sessionId": session_id, "state": "disposed"}

    async def get_permission_modes(self, payload: dict[str, Any]) -> dict[str, Any]:
        return {"modes": self._registry.get_permission_modes()}

    async def check_backend(self, payload: dict[str, Any]) -> dict[str, Any]:
        status = await self._registry.check_backend()
        return status.to_dict()

    async def query_once(self, payload: dict[str, Any]) -> dict[str, Any]:
        return await self._registry.query_once(
            _require_str(payload, "prompt"),
            _permission_mode(payload),
            cwd=_optional_str(payload, "cwd"),
            max_turns=_optional_int(payload, "maxTurns"),
        )

    async def list_project_sessions(self, payload: dict[str, Any]) -> dict[str, Any]:
        project_path = _require_str(payload, "projectPath")
        return {"sessions": transcripts.list_project_sessions(project_path)}

    async def get_session_history(self, payload: dict[str, Any]) -> dict[str, Any]:
        project_path = _require_str(payload, "projectPath")
        session_id = _require_str(payload, "sessionId")
        if not transcripts.transcript_exists(project_path, session_id):
            raise UnknownSession(session_id)
        messages = transcripts.load_transcript(project_path, session_id)
        return {
            "sessionId": session_id,
            "messages": [message_to_dict(m) for m in messages],
        }
