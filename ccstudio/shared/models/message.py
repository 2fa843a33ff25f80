"""Message and content block models.

A message's content is either a plain string or an ordered list of
content blocks. Blocks are only ever appended; once a message reaches
``complete`` or ``error`` it is frozen.
"""
from __future__ import annotations

import copy
import json
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Union

# Size at which a streamed text block is closed and a new one opened.
DEFAULT_MAX_TEXT_BLOCK_CHARS = 65_536


def _gen_id() -> str:
    return str(uuid.uuid4())


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class MessageStatus(str, Enum):
    PENDING = "pending"
    STREAMING = "streaming"
    COMPLETE = "complete"
    ERROR = "error"


FINAL_STATUSES = frozenset({MessageStatus.COMPLETE, MessageStatus.ERROR})


@dataclass
class TextBlock:
    type: ClassVar[str] = "text"
    text: str = ""


@dataclass
class ToolUseBlock:
    type: ClassVar[str] = "tool_use"
    id: str = ""
    name: str = ""
    input: Any = field(default_factory=dict)


@dataclass
class ToolResultBlock:
    type: ClassVar[str] = "tool_result"
    tool_use_id: str = ""
    content: Any = ""
    is_error: bool = False


@dataclass
class ImageBlock:
    type: ClassVar[str] = "image"
    id: str = ""


ContentBlock = Union[TextBlock, ToolUseBlock, ToolResultBlock, ImageBlock]


@dataclass
class Message:
    role: MessageRole
    content: str | list[ContentBlock] = ""
    id: str = field(default_factory=_gen_id)
    status: MessageStatus = MessageStatus.PENDING
    timestamp: float = field(default_factory=time.time)
    # Set when the message was cut short by an explicit stop.
    cancelled: bool = False
    error: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def is_final(self) -> bool:
        return self.status in FINAL_STATUSES

    @property
    def blocks(self) -> list[ContentBlock]:
        """Content as a block list, coercing plain strings."""
        if isinstance(self.content, str):
            return [TextBlock(self.content)] if self.content else []
        return list(self.content)


def append_block(message: Message, block: ContentBlock) -> int:
    """Append a block to a message and return its index.

    Plain-string content is coerced to a single text block first.
    Raises ValueError if the message is already finalized.
    """
    if message.is_final:
        raise ValueError(
            f"Cannot append to finalized message {message.id} "
            f"(status={message.status.value})"
        )
    if isinstance(message.content, str):
        message.content = message.blocks
    message.content.append(block)
    return len(message.content) - 1


def append_text(
    message: Message,
    text: str,
    max_block_chars: int = DEFAULT_MAX_TEXT_BLOCK_CHARS,
) -> int:
    """Merge a text delta into the trailing text block.

    A new text block is opened when the trailing block is not text or
    already holds ``max_block_chars`` characters. Returns the index of
    the block that received the delta.
    """
    if message.is_final:
        raise ValueError(
            f"Cannot append to finalized message {message.id} "
            f"(status={message.status.value})"
        )
    if isinstance(message.content, str):
        message.content = message.blocks
    if message.content:
        last = message.content[-1]
        if isinstance(last, TextBlock) and len(last.text) < max_block_chars:
            last.text += text
            return len(message.content) - 1
    message.content.append(TextBlock(text))
    return len(message.content) - 1


def finalize(
    message: Message,
    status: MessageStatus = MessageStatus.COMPLETE,
    error: str | None = None,
) -> bool:
    """Move a message to a terminal status.

    Idempotent: returns False without touching the message when it is
    already ``complete`` or ``error``.
    """
    if status not in FINAL_STATUSES:
        raise ValueError(f"{status.value} is not a terminal message status")
    if message.is_final:
        return False
    message.status = status
    if error is not None:
        message.error = error
    return True


def stable_json(value: Any) -> str:
    """Deterministic JSON rendering for non-string block values."""
    return json.dumps(value, sort_keys=True, indent=2, ensure_ascii=False, default=str)


def block_text(block: ContentBlock) -> str:
    if isinstance(block, TextBlock):
        return block.text
    if isinstance(block, ToolUseBlock):
        body = stable_json({"id": block.id, "name": block.name, "input": block.input})
        return f"```tool_use\n{body}\n```"
    if isinstance(block, ToolResultBlock):
        content = block.content if isinstance(block.content, str) else stable_json(block.content)
        body = stable_json({
            "tool_use_id": block.tool_use_id,
            "content": content,
            "is_error": block.is_error,
        })
        return f"```tool_result\n{body}\n```"
    return f"[image {block.id}]"


def render_text(message: Message) -> str:
    """Plain-text fallback rendering of a message."""
    if isinstance(message.content, str):
        return message.content
    return "\n\n".join(block_text(b) for b in message.content)


# ── Wire form ──


def block_to_dict(block: ContentBlock) -> dict[str, Any]:
    if isinstance(block, TextBlock):
        return {"type": "text", "text": block.text}
    if isinstance(block, ToolUseBlock):
        return {"type": "tool_use", "id": block.id, "name": block.name, "input": copy.deepcopy(block.input)}
    if isinstance(block, ToolResultBlock):
        return {
            "type": "tool_result",
            "tool_use_id": block.tool_use_id,
            "content": copy.deepcopy(block.content),
            "is_error": block.is_error,
        }
    return {"type": "image", "id": block.id}


def block_from_dict(data: dict[str, Any]) -> ContentBlock | None:
    """Parse a content block dict. Returns None for unknown block types."""
    kind = data.get("type")
    if kind == "text":
        return TextBlock(str(data.get("text") or ""))
    if kind == "tool_use":
        return ToolUseBlock(
            id=str(data.get("id") or ""),
            name=str(data.get("name") or ""),
            input=data.get("input") if data.get("input") is not None else {},
        )
    if kind == "tool_result":
        return ToolResultBlock(
            tool_use_id=str(data.get("tool_use_id") or ""),
            content=data.get("content") if data.get("content") is not None else "",
            is_error=bool(data.get("is_error", False)),
        )
    if kind == "image":
        source = data.get("source") or {}
        return ImageBlock(id=str(data.get("id") or source.get("media_type") or ""))
    return None


def message_to_dict(message: Message) -> dict[str, Any]:
    if isinstance(message.content, str):
        content: str | list[dict[str, Any]] = message.content
    else:
        content = [block_to_dict(b) for b in message.content]
    d: dict[str, Any] = {
        "id": message.id,
        "role": message.role.value,
        "content": content,
        "status": message.status.value,
        "timestamp": message.timestamp,
    }
    if message.cancelled:
        d["cancelled"] = True
    if message.error is not None:
        d["error"] = message.error
    if message.metadata:
        d["metadata"] = json.loads(json.dumps(message.metadata, default=str))
    return d


def message_from_dict(data: dict[str, Any]) -> Message:
    raw_content = data.get("content", "")
    if isinstance(raw_content, list):
        content: str | list[ContentBlock] = [
            b for b in (block_from_dict(item) for item in raw_content if isinstance(item, dict))
            if b is not None
        ]
    else:
        content = str(raw_content or "")
    return Message(
        role=MessageRole(data.get("role", "assistant")),
        content=content,
        id=str(data.get("id") or _gen_id()),
        status=MessageStatus(data.get("status", MessageStatus.COMPLETE.value)),
        timestamp=float(data.get("timestamp") or time.time()),
        cancelled=bool(data.get("cancelled", False)),
        error=data.get("error"),
        metadata=dict(data.get("metadata") or {}),
    )
