"""Agent backends the session engine can drive."""
from __future__ import annotations

from .base import Backend, BackendConnection, BackendStatus
from .claude_provider import ClaudeBackend

__all__ = ["Backend", "BackendConnection", "BackendStatus", "ClaudeBackend"]
