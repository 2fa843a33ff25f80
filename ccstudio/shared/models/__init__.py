"""Conversation data models."""
from __future__ import annotations

from .message import (
    ContentBlock,
    ImageBlock,
    Message,
    MessageRole,
    MessageStatus,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
)
from .session import Conversation

__all__ = [
    "ContentBlock",
    "Conversation",
    "ImageBlock",
    "Message",
    "MessageRole",
    "MessageStatus",
    "TextBlock",
    "ToolResultBlock",
    "ToolUseBlock",
]
