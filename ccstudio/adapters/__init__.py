"""Adapters package - bridge between the session engine and UI frontends.

Holds the event bridge, the typed event model, the UI-side conversation
mirror and the command surface.
"""
from __future__ import annotations

__all__ = [
    "CommandSurface",
    "ConversationMirror",
    "EventBridge",
]

from ccstudio.adapters.commands import CommandSurface
from ccstudio.adapters.event_bus import EventBridge
from ccstudio.adapters.mirror import ConversationMirror
