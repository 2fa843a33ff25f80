"""Conversation log plus the single in-flight streaming slot."""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any

from ccstudio.shared.models.message import Message, MessageStatus, message_to_dict


@dataclass
class Conversation:
    """Append-only message log for one session.

    ``messages`` only ever holds finalized messages. The message being
    streamed lives in ``streaming`` until the decoder finalizes it.
    """

    messages: list[Message] = field(default_factory=list)
    streaming: Message | None = None
    _ids: set[str] = field(default_factory=set, init=False, repr=False)
    _last_timestamp: float = field(default=0.0, init=False, repr=False)

    def __post_init__(self) -> None:
        for message in self.messages:
            self._ids.add(message.id)
            self._last_timestamp = max(self._last_timestamp, message.timestamp)

    def next_timestamp(self) -> float:
        """Wall-clock time, bumped so timestamps never go backwards."""
        now = time.time()
        if now <= self._last_timestamp:
            now = self._last_timestamp + 1e-6
        self._last_timestamp = now
        return now

    def has_message_id(self, message_id: str) -> bool:
        return message_id in self._ids

    def last(self) -> Message | None:
        return self.messages[-1] if self.messages else None

    def append(self, message: Message) -> None:
        if not message.is_final:
            raise ValueError(
                f"Only finalized messages can enter the log "
                f"(message {message.id} is {message.status.value})"
            )
        if message.id in self._ids:
            raise ValueError(f"Message {message.id} is already in the log")
        # Keep the creation time unless it would break log order.
        floor = self.messages[-1].timestamp if self.messages else 0.0
        if message.timestamp <= floor:
            message.timestamp = self.next_timestamp()
        else:
            self._last_timestamp = max(self._last_timestamp, message.timestamp)
        self.messages.append(message)
        self._ids.add(message.id)

    def open_slot(self, message: Message) -> Message:
        if self.streaming is not None:
            raise ValueError("A message is already streaming")
        message.status = MessageStatus.STREAMING
        message.timestamp = self.next_timestamp()
        self.streaming = message
        return message

    def take_slot(self) -> Message | None:
        message, self.streaming = self.streaming, None
        return message

    def snapshot(self) -> dict[str, Any]:
        """Point-in-time copy of the log and slot as plain dicts."""
        return {
            "messages": [message_to_dict(m) for m in self.messages],
            "streaming": message_to_dict(self.streaming) if self.streaming else None,
        }
