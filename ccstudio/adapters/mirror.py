"""UI-side conversation mirror.

Rebuilds each session's message log and streaming slot from the event
stream, so a frontend can render ``messages`` followed by the in-flight
slot without ever talking to the engine directly. A gap in sequence
numbers or a ``resync`` event marks the session stale; the frontend
then loads a fresh snapshot with ``load_snapshot``.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from ccstudio.shared.models.message import (
    Message,
    TextBlock,
    block_from_dict,
    message_from_dict,
)
from ccstudio.adapters.events import (
    ErrorEvent,
    MessageAppended,
    MessageFinalized,
    MessageUpdated,
    Resync,
    SessionEvent,
    StateChanged,
)

logger = logging.getLogger(__name__)


@dataclass
class MirroredSession:
    session_id: str
    messages: list[Message] = field(default_factory=list)
    streaming: Message | None = None
    state: str = "idle"
    last_error: dict[str, str] | None = None
    last_seq: int = 0
    stale: bool = False

    def rendered(self) -> list[Message]:
        """What the UI draws: the log followed by the streaming slot."""
        if self.streaming is None:
            return list(self.messages)
        return [*self.messages, self.streaming]


class ConversationMirror:
    """Applies SessionEvents to per-session MirroredSession records."""

    def __init__(self) -> None:
        self._sessions: dict[str, MirroredSession] = {}

    def session(self, session_id: str) -> MirroredSession:
        if session_id not in self._sessions:
            self._sessions[session_id] = MirroredSession(session_id=session_id)
        return self._sessions[session_id]

    def load_snapshot(self, snapshot: dict[str, Any], seq: int = 0) -> MirroredSession:
        """Replace a session's state with a snapshot from the engine."""
        mirrored = MirroredSession(
            session_id=snapshot["sessionId"],
            messages=[message_from_dict(m) for m in snapshot.get("messages", [])],
            streaming=(
                message_from_dict(snapshot["streaming"]) if snapshot.get("streaming") else None
            ),
            state=snapshot.get("state", "idle"),
            last_error=snapshot.get("failure"),
            last_seq=seq,
        )
        self._sessions[mirrored.session_id] = mirrored
        return mirrored

    def apply(self, event: SessionEvent) -> None:
        if isinstance(event, Resync):
            if event.session_id:
                self.session(event.session_id).stale = True
            else:
                for mirrored in self._sessions.values():
                    mirrored.stale = True
            return

        mirrored = self.session(event.session_id)
        expected = mirrored.last_seq + 1
        if isinstance(event, MessageUpdated):
            expected += event.coalesced
        if mirrored.last_seq and event.seq != expected:
            logger.warning(
                "Sequence gap for session %s: expected %d, got %d",
                event.session_id[:8], expected, event.seq,
            )
            mirrored.stale = True
        mirrored.last_seq = event.seq

        if isinstance(event, MessageAppended):
            message = message_from_dict(event.message)
            if event.streaming:
                mirrored.streaming = message
            else:
                mirrored.messages.append(message)
        elif isinstance(event, MessageUpdated):
            self._apply_update(mirrored, event)
        elif isinstance(event, MessageFinalized):
            if event.from_slot:
                mirrored.streaming = None
            mirrored.messages.append(message_from_dict(event.message))
        elif isinstance(event, StateChanged):
            mirrored.state = event.new_state
            if event.failure:
                mirrored.last_error = event.failure
        elif isinstance(event, ErrorEvent):
            mirrored.last_error = {"kind": event.kind, "message": event.message}

    @staticmethod
    def _apply_update(mirrored: MirroredSession, event: MessageUpdated) -> None:
        slot = mirrored.streaming
        if slot is None or slot.id != event.message_id:
            logger.debug("Update for unknown slot %s", event.message_id)
            mirrored.stale = True
            return
        blocks = slot.blocks
        if event.block is not None:
            block = block_from_dict(event.block)
            if block is not None:
                blocks.insert(event.block_index, block)
        elif event.delta is not None:
            if event.block_index < len(blocks) and isinstance(blocks[event.block_index], TextBlock):
                blocks[event.block_index].text += event.delta
            else:
                blocks.append(TextBlock(event.delta))
        slot.content = blocks
