"""Event types pushed from the session engine to the UI.

Each event corresponds to an engine callback dict, parsed into a typed
dataclass. Every event carries the session it belongs to and a
per-session sequence number assigned by the EventBridge.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class SessionEvent:
    """Base event from the session engine."""
    event_type: str = ""
    session_id: str = ""
    seq: int = 0


@dataclass
class MessageAppended(SessionEvent):
    event_type: str = "message_appended"
    message: dict[str, Any] = field(default_factory=dict)
    # True when the message is the new streaming slot, not a log entry.
    streaming: bool = False


@dataclass
class MessageUpdated(SessionEvent):
    """Incremental change to the streaming slot."""
    event_type: str = "message_updated"
    message_id: str = ""
    block_index: int = 0
    # Text merged into block ``block_index``, or a whole new ``block``.
    delta: str | None = None
    block: dict[str, Any] | None = None
    # Number of later deltas merged into this one by a subscriber.
    coalesced: int = 0


@dataclass
class MessageFinalized(SessionEvent):
    event_type: str = "message_finalized"
    message: dict[str, Any] = field(default_factory=dict)
    # True when the streaming slot was cleared by this event.
    from_slot: bool = False


@dataclass
class StateChanged(SessionEvent):
    event_type: str = "state_changed"
    old_state: str = ""
    new_state: str = ""
    failure: dict[str, str] | None = None


@dataclass
class ErrorEvent(SessionEvent):
    event_type: str = "error"
    kind: str = ""
    message: str = ""


@dataclass
class Resync(SessionEvent):
    """Events were dropped; the UI must refetch the session snapshot."""
    event_type: str = "resync"
    dropped: int = 0


_EVENT_MAP: dict[str, type[SessionEvent]] = {
    "message_appended": MessageAppended,
    "message_updated": MessageUpdated,
    "message_finalized": MessageFinalized,
    "state_changed": StateChanged,
    "error": ErrorEvent,
    "resync": Resync,
}


def event_to_dict(event: SessionEvent) -> dict[str, Any]:
    """Convert a typed event dataclass to a plain dict for JSON serialization."""
    d: dict[str, Any] = {}
    for f in event.__dataclass_fields__:
        val = getattr(event, f)
        if val is not None:
            d[f] = val
    # "event" key instead of "event_type", matching the engine callbacks
    if "event_type" in d:
        d["event"] = d.pop("event_type")
    return d


def dict_to_event(data: dict[str, Any]) -> SessionEvent:
    """Convert an engine callback dict to a typed event dataclass."""
    event_type = data.get("event", "")
    cls = _EVENT_MAP.get(event_type, SessionEvent)
    valid_fields = {f.name for f in cls.__dataclass_fields__.values()}
    filtered = {k: v for k, v in data.items() if k in valid_fields}
    if "event" in data and "event_type" not in filtered:
        filtered["event_type"] = data["event"]
    return cls(**filtered)
