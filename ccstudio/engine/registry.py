"""Session registry: the process-wide map of session id -> ChatSession.

The registry is constructed once by the server and handed to whoever
needs it; there is no module-level instance. It guarantees at most one
live backend connection per session id and owns ephemeral sessions
created for one-shot queries.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any

from ccstudio.shared.services import transcripts

from .config import EngineConfig
from .errors import BackendUnavailable, SessionError, UnknownSession
from .models import PermissionMode, SessionState
from .providers.base import Backend, BackendStatus
from .session import ChatSession, SessionEventCallback

logger = logging.getLogger(__name__)

_INACTIVE_STATES = frozenset({SessionState.IDLE, SessionState.DISPOSED})


class SessionRegistry:
    """Owns every ChatSession in the process."""

    def __init__(
        self,
        backend: Backend,
        config: EngineConfig | None = None,
        event_callback: SessionEventCallback | None = None,
    ) -> None:
        self._backend = backend
        self._config = config or EngineConfig()
        self._event_callback = event_callback
        self._sessions: dict[str, ChatSession] = {}

    @property
    def config(self) -> EngineConfig:
        return self._config

    def _create(
        self,
        session_id: str | None = None,
        **kwargs: Any,
    ) -> ChatSession:
        session = ChatSession(
            self._backend,
            self._config,
            session_id=session_id,
            event_callback=self._event_callback,
            **kwargs,
        )
        self._sessions[session.session_id] = session
        return session

    def get(self, session_id: str) -> ChatSession:
        try:
            return self._sessions[session_id]
        except KeyError:
            raise UnknownSession(session_id) from None

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    # ── Commands ──

    async def start(
        self,
        prompt: str | None = None,
        permission_mode: PermissionMode | None = None,
        *,
        session_id: str | None = None,
        cwd: str | None = None,
    ) -> ChatSession:
        """Start a session, creating it unless *session_id* is already known."""
        existing = self._sessions.get(session_id) if session_id else None
        if existing is not None:
            await existing.start(prompt, permission_mode)
            return existing

        session = self._create(session_id, permission_mode=permission_mode, cwd=cwd)
        try:
            await session.start(prompt, permission_mode)
        except BackendUnavailable:
            self._sessions.pop(session.session_id, None)
            raise
        return session

    async def send(self, session_id: str, text: str) -> ChatSession:
        session = self.get(session_id)
        await session.send(text)
        return session

    async def stop(self, session_id: str) -> ChatSession:
        session = self.get(session_id)
        await session.stop()
        return session

    async def resume(
        self,
        session_id: str,
        permission_mode: PermissionMode | None = None,
        *,
        cwd: str | None = None,
    ) -> ChatSession:
        """Reattach a stopped/errored session.

        A session unknown in memory is rebuilt from its on-disk
        transcript when one exists for *cwd*.
        """
        session = self._sessions.get(session_id)
        if session is None:
            session = self._load_from_transcript(session_id, cwd or self._config.default_cwd)
        await session.resume(permission_mode)
        return session

    async def set_permission_mode(self, session_id: str, mode: PermissionMode) -> ChatSession:
        session = self.get(session_id)
        await session.set_permission_mode(mode)
        return session

    def list_active(self) -> list[dict[str, Any]]:
        """Point-in-time summaries of sessions that are neither idle nor disposed."""
        return [
            s.summary()
            for s in self._sessions.values()
            if s.state not in _INACTIVE_STATES and not s.ephemeral
        ]

    def snapshot(self, session_id: str) -> dict[str, Any]:
        return self.get(session_id).snapshot()

    async def query_once(
        self,
        prompt: str,
        permission_mode: PermissionMode | None = None,
        *,
        cwd: str | None = None,
        max_turns: int | None = None,
    ) -> dict[str, Any]:
        """Run one prompt in a throwaway session and return its outcome.

        The ephemeral session is always disposed and evicted, whatever
        happens to the turn.
        """
        session = self._create(
            permission_mode=permission_mode,
            cwd=cwd,
            ephemeral=True,
            max_turns=max_turns or self._config.query_max_turns,
        )
        timeout = self._config.query_timeout_seconds
        try:
            await session.start(prompt, permission_mode)
            timed_out = False
            try:
                await session.wait_for_turn(timeout=timeout)
            except asyncio.TimeoutError:
                timed_out = True
                logger.warning("query_once %s timed out after %.1fs", session.session_id[:8], timeout)
            return self._query_outcome(session, timed_out, timeout)
        finally:
            try:
                await session.dispose()
            except SessionError:
                logger.warning("query_once %s dispose failed", session.session_id[:8], exc_info=True)
            self._sessions.pop(session.session_id, None)

    @staticmethod
    def _query_outcome(session: ChatSession, timed_out: bool, timeout: float) -> dict[str, Any]:
        result = session.last_result
        if timed_out:
            text, is_error = f"Query timed out after {timeout}s", True
        elif session.failure is not None:
            text, is_error = session.failure.message, True
        elif result is not None:
            text, is_error = result.result, result.is_error
        else:
            text, is_error = "", True
        return {
            "sessionId": session.session_id,
            "message": session.last_assistant_message(),
            "result": text,
            "totalCostUsd": result.total_cost_usd if result is not None else None,
            "isError": is_error,
        }

    async def dispose(self, session_id: str) -> None:
        session = self.get(session_id)
        try:
            await session.dispose()
        finally:
            self._sessions.pop(session_id, None)

    async def shutdown(self) -> None:
        """Dispose every session. Used on server exit."""
        sessions = list(self._sessions.values())
        if sessions:
            logger.info("Shutting down %d session(s)", len(sessions))
        results = await asyncio.gather(
            *(s.dispose() for s in sessions), return_exceptions=True,
        )
        for session, outcome in zip(sessions, results):
            if isinstance(outcome, Exception):
                logger.warning("Session %s dispose failed: %s", session.session_id[:8], outcome)
        self._sessions.clear()
        await self._backend.shutdown()

    @staticmethod
    def get_permission_modes() -> list[str]:
        return [mode.value for mode in PermissionMode]

    async def check_backend(self) -> BackendStatus:
        return await self._backend.check()

    # ── Internals ──

    def _load_from_transcript(self, session_id: str, cwd: str) -> ChatSession:
        if not transcripts.transcript_exists(cwd, session_id):
            raise UnknownSession(session_id)
        history = transcripts.load_transcript(cwd, session_id)
        logger.info("Restoring session %s from transcript (%d messages)", session_id[:8], len(history))
        return self._create(
            session_id,
            cwd=cwd,
            state=SessionState.STOPPED,
            history=history,
        )
