"""Stream decoder: backend envelopes -> conversation mutations.

The decoder owns the rules that keep the message log consistent while
a turn streams in:

- partial text deltas grow the streaming slot;
- an authoritative assistant message replaces the slot's content and is
  finalized, appended and the slot cleared in the same call;
- each backend message id enters the log at most once;
- consecutive identical system notices collapse into one.

Every call is synchronous. Callers publish the returned mutations in
order before yielding to the event loop.
"""
from __future__ import annotations

import logging
import uuid
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ccstudio.shared.models.message import (
    DEFAULT_MAX_TEXT_BLOCK_CHARS,
    Message,
    MessageRole,
    MessageStatus,
    append_block,
    append_text,
    block_to_dict,
    finalize,
    message_to_dict,
)
from ccstudio.shared.models.session import Conversation

from .protocol import (
    AssistantEnvelope,
    Envelope,
    PartialDelta,
    ResultEnvelope,
    StreamSignal,
    SystemEnvelope,
    ToolUseStarted,
    UserEnvelope,
    parse_envelope,
)

logger = logging.getLogger(__name__)


class MutationKind(str, Enum):
    APPENDED = "message_appended"
    UPDATED = "message_updated"
    FINALIZED = "message_finalized"


@dataclass
class Mutation:
    """One observable change to the log or the streaming slot.

    ``message`` is a serialized copy taken when the mutation happened.
    """
    kind: MutationKind
    message_id: str
    message: dict[str, Any] | None = None
    # APPENDED: True when the message went into the streaming slot.
    streaming: bool = False
    # FINALIZED: True when the finalized message came out of the slot.
    from_slot: bool = False
    block_index: int | None = None
    delta: str | None = None
    block: dict[str, Any] | None = None

    def to_event(self, session_id: str) -> dict[str, Any]:
        event: dict[str, Any] = {"event": self.kind.value, "session_id": session_id}
        if self.kind is MutationKind.UPDATED:
            event.update(
                message_id=self.message_id,
                block_index=self.block_index,
                delta=self.delta,
                block=self.block,
            )
        elif self.kind is MutationKind.APPENDED:
            event.update(message=self.message, streaming=self.streaming)
        else:
            event.update(message=self.message, from_slot=self.from_slot)
        return event


@dataclass
class Decoded:
    """Outcome of feeding one envelope (or a local turn event)."""
    mutations: list[Mutation] = field(default_factory=list)
    turn_finished: bool = False
    result: ResultEnvelope | None = None
    backend_session_id: str | None = None


class StreamDecoder:
    """Applies envelopes to one session's Conversation."""

    def __init__(
        self,
        conversation: Conversation,
        max_text_block_chars: int = DEFAULT_MAX_TEXT_BLOCK_CHARS,
    ) -> None:
        self._conversation = conversation
        self._max_text_block_chars = max_text_block_chars
        self._pending_echoes: deque[str] = deque()
        self._next_slot_id: str | None = None

    @property
    def conversation(self) -> Conversation:
        return self._conversation

    def expect_echo(self, text: str) -> None:
        """Note a prompt already appended locally so its echo is dropped."""
        self._pending_echoes.append(text)

    def reset(self) -> None:
        """Forget per-connection state (echo buffer, pending slot id)."""
        self._pending_echoes.clear()
        self._next_slot_id = None

    # ── Entry points ──

    def feed(self, raw: Any) -> Decoded:
        """Parse and apply one raw envelope. Raises BackendProtocolError."""
        return self.apply(parse_envelope(raw))

    def apply(self, envelope: Envelope) -> Decoded:
        out = Decoded()
        if isinstance(envelope, PartialDelta):
            self._on_delta(envelope, out)
        elif isinstance(envelope, ToolUseStarted):
            self._on_tool_use_started(envelope, out)
        elif isinstance(envelope, StreamSignal):
            if envelope.event_type == "message_start" and envelope.message_id:
                self._next_slot_id = envelope.message_id
        elif isinstance(envelope, AssistantEnvelope):
            self._on_assistant(envelope, out)
        elif isinstance(envelope, UserEnvelope):
            self._on_user(envelope, out)
        elif isinstance(envelope, SystemEnvelope):
            self._on_system(envelope, out)
        elif isinstance(envelope, ResultEnvelope):
            self._on_result(envelope, out)
        return out

    def user_prompt(self, text: str) -> Decoded:
        """Append a prompt typed by the user and expect its echo."""
        out = Decoded()
        message = Message(role=MessageRole.USER, content=text)
        finalize(message)
        self._append(message, out)
        self.expect_echo(text)
        return out

    def fail_turn(self, error: str) -> Decoded:
        """Close the current turn as failed: slot finalized as error plus a notice."""
        out = Decoded()
        self._finalize_slot(out, MessageStatus.ERROR, error=error)
        notice = Message(role=MessageRole.SYSTEM, content=error, metadata={"subtype": "error"})
        finalize(notice, MessageStatus.ERROR, error=error)
        self._append_system(notice, out)
        self.reset()
        return out

    def cancel_turn(self) -> Decoded:
        """Close the current turn after an explicit stop.

        A non-empty slot is kept as a single ``error`` message marked
        cancelled; nothing else is appended.
        """
        out = Decoded()
        slot = self._conversation.streaming
        if slot is not None:
            slot.cancelled = True
        self._finalize_slot(out, MessageStatus.ERROR, error="Stopped by user")
        self.reset()
        return out

    # ── Envelope handlers ──

    def _ensure_slot(self, out: Decoded) -> Message:
        slot = self._conversation.streaming
        if slot is not None:
            return slot
        slot_id = self._next_slot_id
        self._next_slot_id = None
        if not slot_id or self._conversation.has_message_id(slot_id):
            slot_id = str(uuid.uuid4())
        slot = self._conversation.open_slot(
            Message(role=MessageRole.ASSISTANT, content=[], id=slot_id)
        )
        out.mutations.append(Mutation(
            kind=MutationKind.APPENDED,
            message_id=slot.id,
            message=message_to_dict(slot),
            streaming=True,
        ))
        return slot

    def _on_delta(self, envelope: PartialDelta, out: Decoded) -> None:
        if not envelope.text:
            return
        slot = self._ensure_slot(out)
        index = append_text(slot, envelope.text, self._max_text_block_chars)
        out.mutations.append(Mutation(
            kind=MutationKind.UPDATED,
            message_id=slot.id,
            block_index=index,
            delta=envelope.text,
        ))

    def _on_tool_use_started(self, envelope: ToolUseStarted, out: Decoded) -> None:
        slot = self._ensure_slot(out)
        index = append_block(slot, envelope.block)
        out.mutations.append(Mutation(
            kind=MutationKind.UPDATED,
            message_id=slot.id,
            block_index=index,
            block=block_to_dict(envelope.block),
        ))

    def _on_assistant(self, envelope: AssistantEnvelope, out: Decoded) -> None:
        out.backend_session_id = envelope.backend_session_id
        message_id = envelope.message_id
        if message_id and self._conversation.has_message_id(message_id):
            logger.debug("Dropping duplicate assistant message %s", message_id)
            return

        slot = self._conversation.take_slot()
        if slot is None:
            if not envelope.content:
                logger.debug("Skipping assistant message with no renderable content")
                return
            message = Message(role=MessageRole.ASSISTANT, content=list(envelope.content))
        else:
            message = slot
            if envelope.content:
                message.content = list(envelope.content)
        if message_id:
            message.id = message_id
        if envelope.model:
            message.metadata["model"] = envelope.model
        finalize(message)
        self._conversation.append(message)
        out.mutations.append(Mutation(
            kind=MutationKind.FINALIZED,
            message_id=message.id,
            message=message_to_dict(message),
            from_slot=slot is not None,
        ))

    def _on_user(self, envelope: UserEnvelope, out: Decoded) -> None:
        out.backend_session_id = envelope.backend_session_id
        if envelope.message_id and self._conversation.has_message_id(envelope.message_id):
            return
        if not envelope.is_tool_result:
            text = envelope.text
            if self._pending_echoes and self._pending_echoes[0] == text:
                self._pending_echoes.popleft()
                return
        message = Message(role=MessageRole.USER, content=envelope.content)
        if envelope.message_id:
            message.id = envelope.message_id
        if envelope.is_tool_result:
            message.metadata["tool_result"] = True
        finalize(message)
        self._append(message, out)

    def _on_system(self, envelope: SystemEnvelope, out: Decoded) -> None:
        out.backend_session_id = envelope.backend_session_id
        metadata: dict[str, Any] = {"subtype": envelope.subtype}
        if envelope.subtype == "init":
            for key in ("model", "cwd", "permissionMode", "tools"):
                if key in envelope.data:
                    metadata[key] = envelope.data[key]
        message = Message(role=MessageRole.SYSTEM, content=envelope.text, metadata=metadata)
        finalize(message)
        self._append_system(message, out)

    def _on_result(self, envelope: ResultEnvelope, out: Decoded) -> None:
        out.backend_session_id = envelope.backend_session_id
        out.result = envelope
        out.turn_finished = True
        if envelope.is_error:
            # The session reports the failure through fail_turn().
            return
        self._finalize_slot(out, MessageStatus.COMPLETE)
        summary = Message(
            role=MessageRole.SYSTEM,
            content=_result_summary(envelope),
            metadata={
                "subtype": "result",
                "numTurns": envelope.num_turns,
                "durationMs": envelope.duration_ms,
                "totalCostUsd": envelope.total_cost_usd,
                "usage": envelope.usage,
            },
        )
        finalize(summary)
        self._append_system(summary, out)
        self._pending_echoes.clear()

    # ── Helpers ──

    def _append(self, message: Message, out: Decoded) -> None:
        self._conversation.append(message)
        out.mutations.append(Mutation(
            kind=MutationKind.APPENDED,
            message_id=message.id,
            message=message_to_dict(message),
        ))

    def _append_system(self, message: Message, out: Decoded) -> None:
        last = self._conversation.last()
        if (
            last is not None
            and last.role is MessageRole.SYSTEM
            and last.status == message.status
            and last.content == message.content
        ):
            logger.debug("Collapsing repeated system notice: %s", message.content)
            return
        self._append(message, out)

    def _finalize_slot(
        self,
        out: Decoded,
        status: MessageStatus,
        error: str | None = None,
    ) -> None:
        slot = self._conversation.take_slot()
        if slot is None:
            return
        finalize(slot, status, error=error)
        self._conversation.append(slot)
        out.mutations.append(Mutation(
            kind=MutationKind.FINALIZED,
            message_id=slot.id,
            message=message_to_dict(slot),
            from_slot=True,
        ))


def _result_summary(envelope: ResultEnvelope) -> str:
    parts = [f"{envelope.num_turns} turn{'s' if envelope.num_turns != 1 else ''}"]
    if envelope.duration_ms:
        parts.append(f"{envelope.duration_ms / 1000:.1f}s")
    if envelope.total_cost_usd is not None:
        parts.append(f"${envelope.total_cost_usd:.4f}")
    return "Completed: " + ", ".join(parts)
