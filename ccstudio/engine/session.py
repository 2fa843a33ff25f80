"""Chat session: one conversation with the agent backend.

A ChatSession owns its Conversation, its StreamDecoder and, while
connected, exactly one BackendConnection. Commands (start, send, stop,
resume, ...) are serialized by a per-session lock. Backend envelopes are
consumed by a pump task; each envelope is decoded synchronously and its
mutations published before the next one is read.

Events are emitted as plain dicts through ``event_callback`` and carry
an ``event`` key, like:

    {"event": "state_changed", "session_id": "...",
     "old_state": "connecting", "new_state": "streaming"}
"""
from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Callable
from typing import Any

from ccstudio.shared.models.message import Message, MessageRole, message_to_dict
from ccstudio.shared.models.session import Conversation

from .config import EngineConfig
from .decoder import Decoded, StreamDecoder
from .errors import (
    AlreadyActive,
    BackendProtocolError,
    BackendUnavailable,
    ForcedStopTimeout,
    SessionError,
    SessionNotReady,
    TurnFailed,
)
from .lifecycle import can_transition, validate_transition
from .models import LIVE_STATES, PermissionMode, SessionFailure, SessionState
from .protocol import ResultEnvelope
from .providers.base import Backend, BackendConnection

logger = logging.getLogger(__name__)

# Synchronous sink for session events. Must not block.
SessionEventCallback = Callable[[dict[str, Any]], None]


class ChatSession:
    """State machine around one backend conversation."""

    def __init__(
        self,
        backend: Backend,
        config: EngineConfig,
        *,
        session_id: str | None = None,
        permission_mode: PermissionMode | None = None,
        cwd: str | None = None,
        event_callback: SessionEventCallback | None = None,
        ephemeral: bool = False,
        max_turns: int | None = None,
        state: SessionState = SessionState.IDLE,
        history: list[Message] | None = None,
    ) -> None:
        self.session_id = session_id or str(uuid.uuid4())
        self.state = state
        self.permission_mode = permission_mode or config.default_permission_mode
        self.cwd = cwd or config.default_cwd
        self.ephemeral = ephemeral
        self.max_turns = max_turns
        self.failure: SessionFailure | None = None
        self.last_result: ResultEnvelope | None = None
        self.backend_session_id: str | None = None
        self.last_activity = time.time()

        self._backend = backend
        self._config = config
        self._event_callback = event_callback
        self._conversation = Conversation(messages=list(history or []))
        self._decoder = StreamDecoder(self._conversation, config.max_text_block_chars)
        self._lock = asyncio.Lock()
        self._connection: BackendConnection | None = None
        self._pump_task: asyncio.Task | None = None
        self._connect_task: asyncio.Task | None = None
        self._connect_aborted = False
        self._closing: set[asyncio.Task] = set()
        self._turn_idle = asyncio.Event()
        self._turn_idle.set()

    # ── Introspection ──

    @property
    def conversation(self) -> Conversation:
        return self._conversation

    @property
    def connected(self) -> bool:
        return self._connection is not None

    def summary(self) -> dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "state": self.state.value,
            "lastActivity": self.last_activity,
            "permissionMode": self.permission_mode.value,
            "messageCount": len(self._conversation.messages),
        }

    def snapshot(self) -> dict[str, Any]:
        """Deep copy of everything the UI needs to render the session."""
        snap = self.summary()
        snap.update(self._conversation.snapshot())
        snap["cwd"] = self.cwd
        snap["failure"] = self.failure.to_dict() if self.failure else None
        snap["backendSessionId"] = self.backend_session_id
        return snap

    # ── Commands ──

    async def start(
        self,
        prompt: str | None = None,
        permission_mode: PermissionMode | None = None,
    ) -> None:
        """Open the backend connection and optionally send a first prompt."""
        async with self._lock:
            if self._connection is not None:
                raise AlreadyActive(self.session_id)
            if self.state is not SessionState.IDLE:
                raise SessionNotReady(self.session_id, self.state.value, "start")
            if permission_mode is not None:
                self.permission_mode = permission_mode
            await self._connect(resume=False, fallback=SessionState.IDLE)
            if prompt:
                await self._begin_turn(prompt)
            else:
                self._transition(SessionState.WAITING_FOR_INPUT)

    async def send(self, text: str) -> None:
        """Send a follow-up prompt. Only valid while waiting for input."""
        async with self._lock:
            if self.state is not SessionState.WAITING_FOR_INPUT or self._connection is None:
                raise SessionNotReady(self.session_id, self.state.value, "send to")
            await self._begin_turn(text)

    async def resume(self, permission_mode: PermissionMode | None = None) -> None:
        """Reattach to the backend conversation after stop or error."""
        async with self._lock:
            if self._connection is not None:
                raise AlreadyActive(self.session_id)
            if self.state not in (SessionState.STOPPED, SessionState.ERROR):
                raise SessionNotReady(self.session_id, self.state.value, "resume")
            if permission_mode is not None:
                self.permission_mode = permission_mode
            await self._connect(resume=True, fallback=self.state)
            self.failure = None
            self._transition(SessionState.WAITING_FOR_INPUT)

    async def stop(self) -> None:
        """Cancel the current turn and release the backend connection.

        Partial assistant output is kept as one ``error`` message marked
        cancelled. If the backend does not shut down within the stop
        timeout the connection is detached anyway and ForcedStopTimeout
        is raised after the session reached ``stopped``.

        A connection attempt still in flight is aborted first, so stop
        does not wait out the connect timeout.
        """
        connecting = self._connect_task
        if connecting is not None and connecting.cancel():
            self._connect_aborted = True
            logger.info("Session %s: aborting connection attempt", self.session_id[:8])
        async with self._lock:
            if self.state is SessionState.STOPPED:
                return
            if self.state in (SessionState.IDLE, SessionState.DISPOSED):
                raise SessionNotReady(self.session_id, self.state.value, "stop")

            was_streaming = self.state is SessionState.STREAMING
            connection, pump = self._connection, self._pump_task
            self._connection = None
            self._pump_task = None
            if pump is not None:
                pump.cancel()

            forced = False
            timeout = self._config.stop_timeout_seconds
            try:
                await asyncio.wait_for(
                    self._shutdown(connection, pump, interrupt=was_streaming),
                    timeout=timeout,
                )
            except asyncio.TimeoutError:
                forced = True
                logger.warning(
                    "Session %s did not stop within %.1fs; detaching connection",
                    self.session_id[:8], timeout,
                )
                if connection is not None:
                    self._close_in_background(connection)

            self._publish(self._decoder.cancel_turn())
            self._transition(SessionState.STOPPED)
            self._turn_idle.set()
            if forced:
                raise ForcedStopTimeout(self.session_id, timeout)

    async def set_permission_mode(self, mode: PermissionMode) -> None:
        async with self._lock:
            if self.state is SessionState.DISPOSED:
                raise SessionNotReady(self.session_id, self.state.value, "change permission mode of")
            if self._connection is not None:
                await self._connection.set_permission_mode(mode.value)
            self.permission_mode = mode
            self.last_activity = time.time()
            logger.info("Session %s permission mode -> %s", self.session_id[:8], mode.value)

    async def dispose(self) -> None:
        """Stop if needed and release everything. Terminal."""
        if self.state is SessionState.DISPOSED:
            return
        if self.state in LIVE_STATES:
            try:
                await self.stop()
            except ForcedStopTimeout:
                logger.warning("Session %s force-stopped during dispose", self.session_id[:8])
        async with self._lock:
            if self.state is not SessionState.DISPOSED:
                self._transition(SessionState.DISPOSED)
        if self._closing:
            await asyncio.gather(*self._closing, return_exceptions=True)

    async def wait_for_turn(self, timeout: float | None = None) -> None:
        """Wait until the in-flight turn finished, failed or was stopped."""
        await asyncio.wait_for(self._turn_idle.wait(), timeout=timeout)

    # ── Internals ──

    async def _connect(self, *, resume: bool, fallback: SessionState) -> None:
        self._transition(SessionState.CONNECTING)
        timeout = self._config.connect_timeout_seconds
        self._connect_aborted = False
        self._connect_task = asyncio.create_task(
            self._backend.connect(
                self.session_id,
                resume=resume,
                permission_mode=self.permission_mode.value,
                cwd=self.cwd,
                max_turns=self.max_turns,
            ),
            name=f"session-connect-{self.session_id[:8]}",
        )
        try:
            connection = await asyncio.wait_for(self._connect_task, timeout=timeout)
        except asyncio.CancelledError:
            if not self._connect_aborted:
                self._transition(fallback)
                raise
            # stop() cancelled the attempt; the caller is not cancelled.
            self._transition(SessionState.STOPPED)
            self._turn_idle.set()
            raise SessionNotReady(
                self.session_id, self.state.value, "resume" if resume else "start",
            ) from None
        except asyncio.TimeoutError:
            self._transition(fallback)
            raise BackendUnavailable(f"connection did not open within {timeout}s") from None
        except BackendUnavailable:
            self._transition(fallback)
            raise
        except Exception as exc:
            logger.warning(
                "Session %s connect failed: %s", self.session_id[:8], exc, exc_info=True,
            )
            self._transition(fallback)
            raise BackendUnavailable(str(exc) or type(exc).__name__) from exc
        finally:
            self._connect_task = None
            self._connect_aborted = False
        self._decoder.reset()
        self._connection = connection
        self._pump_task = asyncio.create_task(
            self._pump(connection), name=f"session-pump-{self.session_id[:8]}",
        )
        logger.info(
            "Session %s connected (resume=%s mode=%s)",
            self.session_id[:8], resume, self.permission_mode.value,
        )

    async def _begin_turn(self, text: str) -> None:
        connection = self._connection
        if connection is None:
            raise SessionNotReady(self.session_id, self.state.value, "send to")
        self._publish(self._decoder.user_prompt(text))
        self._turn_idle.clear()
        self._transition(SessionState.STREAMING)
        try:
            await connection.send(text)
        except SessionError as exc:
            self._fail(exc)
            raise

    async def _pump(self, connection: BackendConnection) -> None:
        try:
            async for raw in connection.events():
                try:
                    decoded = self._decoder.feed(raw)
                except BackendProtocolError as exc:
                    logger.warning("Session %s: %s", self.session_id[:8], exc)
                    self._fail(exc)
                    return
                self._on_decoded(decoded)
                if self._connection is not connection:
                    return
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if self.state is SessionState.WAITING_FOR_INPUT:
                # The CLI may exit non-zero after a completed turn.
                logger.warning(
                    "Session %s backend stream ended with %s between turns",
                    self.session_id[:8], exc,
                )
                self._on_stream_closed()
                return
            logger.exception("Session %s backend stream failed", self.session_id[:8])
            self._fail(BackendProtocolError(f"backend stream failed: {exc}"))
            return
        if self._connection is connection:
            self._on_stream_closed()

    def _on_decoded(self, decoded: Decoded) -> None:
        if decoded.backend_session_id:
            self.backend_session_id = decoded.backend_session_id
        self._publish(decoded)
        result = decoded.result
        if result is None:
            return
        self.last_result = result
        if result.is_error:
            self._fail(TurnFailed(result.subtype, result.error_text))
            return
        if self.state is SessionState.STREAMING:
            self._transition(SessionState.WAITING_FOR_INPUT)
        self._turn_idle.set()

    def _on_stream_closed(self) -> None:
        if self.state in (SessionState.STREAMING, SessionState.CONNECTING):
            self._fail(BackendProtocolError("backend stream ended mid-turn"))
            return
        logger.info("Session %s backend closed between turns", self.session_id[:8])
        self._detach()
        if can_transition(self.state, SessionState.STOPPED):
            self._transition(SessionState.STOPPED)
        self._turn_idle.set()

    def _fail(self, error: SessionError) -> None:
        """Finalize the turn as failed, enter ``error`` and drop the connection."""
        self._publish(self._decoder.fail_turn(str(error)))
        self.failure = SessionFailure(kind=error.kind, message=str(error))
        self._detach()
        if can_transition(self.state, SessionState.ERROR):
            self._transition(SessionState.ERROR)
        self._emit({"event": "error", **self.failure.to_dict()})
        self._turn_idle.set()

    def _detach(self) -> None:
        connection, self._connection = self._connection, None
        pump, self._pump_task = self._pump_task, None
        if pump is not None and pump is not asyncio.current_task():
            pump.cancel()
        if connection is not None:
            self._close_in_background(connection)

    def _close_in_background(self, connection: BackendConnection) -> None:
        task = asyncio.create_task(self._close_quietly(connection))
        self._closing.add(task)
        task.add_done_callback(self._closing.discard)

    async def _shutdown(
        self,
        connection: BackendConnection | None,
        pump: asyncio.Task | None,
        *,
        interrupt: bool,
    ) -> None:
        if pump is not None:
            await asyncio.gather(pump, return_exceptions=True)
        if connection is None:
            return
        if interrupt:
            try:
                await connection.interrupt()
            except Exception as exc:
                logger.warning("Session %s interrupt failed: %s", self.session_id[:8], exc)
        await connection.close()

    async def _close_quietly(self, connection: BackendConnection) -> None:
        try:
            await asyncio.wait_for(connection.close(), timeout=self._config.stop_timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning("Session %s connection close timed out", self.session_id[:8])
        except Exception:
            logger.warning("Session %s connection close failed", self.session_id[:8], exc_info=True)

    def _transition(self, target: SessionState) -> None:
        validate_transition(self.state, target, self.session_id)
        old = self.state
        self.state = target
        self.last_activity = time.time()
        logger.info("Session %s: %s -> %s", self.session_id[:8], old.value, target.value)
        event: dict[str, Any] = {
            "event": "state_changed",
            "old_state": old.value,
            "new_state": target.value,
        }
        if target is SessionState.ERROR and self.failure is not None:
            event["failure"] = self.failure.to_dict()
        self._emit(event)

    def _publish(self, decoded: Decoded) -> None:
        for mutation in decoded.mutations:
            self._emit(mutation.to_event(self.session_id))
        if decoded.mutations:
            self.last_activity = time.time()

    def _emit(self, event: dict[str, Any]) -> None:
        if self._event_callback is None:
            return
        event.setdefault("session_id", self.session_id)
        try:
            self._event_callback(event)
        except Exception:
            logger.exception("Session %s event callback failed", self.session_id[:8])

    def last_assistant_message(self) -> dict[str, Any] | None:
        for message in reversed(self._conversation.messages):
            if message.role is MessageRole.ASSISTANT:
                return message_to_dict(message)
        return None
