"""Backend stream envelopes.

The Claude CLI speaks newline-delimited JSON ("stream-json"). Each
envelope is parsed here, at the boundary, into one of a closed set of
typed variants so the decoder never touches raw dicts. Unknown envelope
types and malformed payloads raise BackendProtocolError; unknown content
block types (e.g. ``thinking``) are skipped.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Union

from ccstudio.shared.models.message import (
    ContentBlock,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
    block_from_dict,
)

from .errors import BackendProtocolError

logger = logging.getLogger(__name__)


@dataclass
class PartialDelta:
    """Token-level text from a partial stream event."""
    text: str


@dataclass
class ToolUseStarted:
    """A tool_use content block opened in the partial stream."""
    block: ToolUseBlock


@dataclass
class StreamSignal:
    """Any other partial stream event (message_start, block stop, ...)."""
    event_type: str
    message_id: str | None = None


@dataclass
class AssistantEnvelope:
    """Authoritative, complete assistant message."""
    message_id: str | None
    content: list[ContentBlock]
    model: str | None = None
    backend_session_id: str | None = None


@dataclass
class UserEnvelope:
    message_id: str | None
    content: str | list[ContentBlock]
    backend_session_id: str | None = None

    @property
    def is_tool_result(self) -> bool:
        return isinstance(self.content, list) and any(
            isinstance(b, ToolResultBlock) for b in self.content
        )

    @property
    def text(self) -> str:
        if isinstance(self.content, str):
            return self.content
        return "".join(b.text for b in self.content if isinstance(b, TextBlock))


@dataclass
class SystemEnvelope:
    subtype: str
    text: str
    data: dict[str, Any] = field(default_factory=dict)
    backend_session_id: str | None = None


@dataclass
class ResultEnvelope:
    subtype: str
    is_error: bool
    result: str = ""
    num_turns: int = 0
    duration_ms: int = 0
    total_cost_usd: float | None = None
    usage: dict[str, Any] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)
    backend_session_id: str | None = None

    @property
    def error_text(self) -> str:
        if self.errors:
            return "; ".join(self.errors)
        return self.result or self.subtype


Envelope = Union[
    PartialDelta,
    ToolUseStarted,
    StreamSignal,
    AssistantEnvelope,
    UserEnvelope,
    SystemEnvelope,
    ResultEnvelope,
]


def _require_dict(raw: dict[str, Any], key: str, envelope_type: str) -> dict[str, Any]:
    value = raw.get(key)
    if not isinstance(value, dict):
        raise BackendProtocolError(
            f"{envelope_type} envelope has no '{key}' object"
        )
    return value


def _opt_str(value: Any) -> str | None:
    return str(value) if value else None


def parse_blocks(items: list[Any], envelope_type: str) -> list[ContentBlock]:
    blocks: list[ContentBlock] = []
    for item in items:
        if not isinstance(item, dict):
            raise BackendProtocolError(
                f"{envelope_type} content block is not an object: {item!r}"
            )
        block = block_from_dict(item)
        if block is None:
            logger.debug("Skipping %s content block type=%s", envelope_type, item.get("type"))
            continue
        blocks.append(block)
    return blocks


def _parse_stream_event(raw: dict[str, Any]) -> Envelope:
    event = _require_dict(raw, "event", "stream_event")
    etype = str(event.get("type") or "")
    if etype == "content_block_delta":
        delta = event.get("delta") or {}
        if delta.get("type") == "text_delta":
            return PartialDelta(text=str(delta.get("text") or ""))
        return StreamSignal(event_type=f"content_block_delta:{delta.get('type', '')}")
    if etype == "content_block_start":
        block = event.get("content_block") or {}
        if block.get("type") == "tool_use":
            return ToolUseStarted(ToolUseBlock(
                id=str(block.get("id") or ""),
                name=str(block.get("name") or ""),
                input=block.get("input") or {},
            ))
        return StreamSignal(event_type=f"content_block_start:{block.get('type', '')}")
    if etype == "message_start":
        message = event.get("message") or {}
        return StreamSignal(event_type=etype, message_id=_opt_str(message.get("id")))
    return StreamSignal(event_type=etype)


def _parse_assistant(raw: dict[str, Any]) -> Envelope:
    message = _require_dict(raw, "message", "assistant")
    content = message.get("content")
    if not isinstance(content, list):
        raise BackendProtocolError("assistant message content is not a list")
    return AssistantEnvelope(
        message_id=_opt_str(raw.get("uuid")) or _opt_str(message.get("id")),
        content=parse_blocks(content, "assistant"),
        model=_opt_str(message.get("model")),
        backend_session_id=_opt_str(raw.get("session_id")),
    )


def _parse_user(raw: dict[str, Any]) -> Envelope:
    message = _require_dict(raw, "message", "user")
    content = message.get("content")
    if isinstance(content, str):
        parsed: str | list[ContentBlock] = content
    elif isinstance(content, list):
        parsed = parse_blocks(content, "user")
    else:
        raise BackendProtocolError("user message content is neither text nor a list")
    return UserEnvelope(
        message_id=_opt_str(raw.get("uuid")),
        content=parsed,
        backend_session_id=_opt_str(raw.get("session_id")),
    )


def _system_text(subtype: str, raw: dict[str, Any]) -> str:
    if subtype == "init":
        return (
            f"Session initialized (model: {raw.get('model', 'unknown')}, "
            f"permission mode: {raw.get('permissionMode', 'default')})"
        )
    for key in ("message", "content", "text"):
        if isinstance(raw.get(key), str) and raw[key]:
            return raw[key]
    return subtype or "system"


def _parse_system(raw: dict[str, Any]) -> Envelope:
    subtype = str(raw.get("subtype") or "")
    data = {k: v for k, v in raw.items() if k not in ("type", "subtype")}
    return SystemEnvelope(
        subtype=subtype,
        text=_system_text(subtype, raw),
        data=data,
        backend_session_id=_opt_str(raw.get("session_id")),
    )


def _parse_result(raw: dict[str, Any]) -> Envelope:
    subtype = str(raw.get("subtype") or "")
    errors = raw.get("errors") or []
    if not isinstance(errors, list):
        errors = [errors]
    cost = raw.get("total_cost_usd")
    return ResultEnvelope(
        subtype=subtype,
        is_error=bool(raw.get("is_error", False)) or subtype.startswith("error"),
        result=str(raw.get("result") or ""),
        num_turns=int(raw.get("num_turns") or 0),
        duration_ms=int(raw.get("duration_ms") or 0),
        total_cost_usd=float(cost) if cost is not None else None,
        usage=dict(raw.get("usage") or {}),
        errors=[str(e) for e in errors],
        backend_session_id=_opt_str(raw.get("session_id")),
    )


_ENVELOPE_MAP: dict[str, Callable[[dict[str, Any]], Envelope]] = {
    "stream_event": _parse_stream_event,
    "assistant": _parse_assistant,
    "user": _parse_user,
    "system": _parse_system,
    "result": _parse_result,
}


def parse_envelope(raw: Any) -> Envelope:
    """Parse one stream-json envelope into its typed variant."""
    if not isinstance(raw, dict):
        raise BackendProtocolError(f"envelope is not an object: {type(raw).__name__}")
    envelope_type = raw.get("type")
    parser = _ENVELOPE_MAP.get(envelope_type) if isinstance(envelope_type, str) else None
    if parser is None:
        raise BackendProtocolError(f"unknown envelope type {envelope_type!r}")
    try:
        return parser(raw)
    except (TypeError, ValueError) as exc:
        raise BackendProtocolError(f"malformed {envelope_type} envelope: {exc}") from exc
