"""Read Claude CLI session transcripts from disk.

The Claude CLI keeps one JSONL file per conversation under
``~/.claude/projects/<sanitized project path>/<session id>.jsonl``.
These helpers locate those files, turn them back into finalized
Messages, and summarize a project's sessions for a history picker.

Sub-agent ("sidechain") entries and CLI bookkeeping lines are skipped.
"""
from __future__ import annotations

import json
import logging
import re
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator

from ccstudio.shared.models.message import (
    Message,
    MessageRole,
    MessageStatus,
    TextBlock,
    block_from_dict,
    render_text,
)

logger = logging.getLogger(__name__)

_PREVIEW_CHARS = 200


def claude_projects_dir() -> Path:
    return Path.home() / ".claude" / "projects"


def sanitize_project_path(project_path: str) -> str:
    """Directory name the CLI uses for a project path."""
    return re.sub(r"[/\\]", "-", project_path)


def transcript_path(project_path: str, session_id: str) -> Path:
    return claude_projects_dir() / sanitize_project_path(project_path) / f"{session_id}.jsonl"


def transcript_exists(project_path: str, session_id: str) -> bool:
    return transcript_path(project_path, session_id).is_file()


def _parse_timestamp(value: Any) -> float | None:
    if not isinstance(value, str) or not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00")).timestamp()
    except ValueError:
        return None


def _iter_entries(path: Path) -> Iterator[dict[str, Any]]:
    with open(path, encoding="utf-8") as f:
        for lineno, line in enumerate(f, 1):
            line = line.strip()
            if not line:
                continue
            try:
                entry = json.loads(line)
            except json.JSONDecodeError:
                logger.debug("Skipping invalid JSON at %s:%d", path.name, lineno)
                continue
            if isinstance(entry, dict):
                yield entry


def _is_conversation_entry(entry: dict[str, Any]) -> bool:
    if entry.get("isSidechain") or entry.get("isMeta"):
        return False
    return entry.get("type") in ("user", "assistant") and isinstance(entry.get("message"), dict)


def _entry_to_message(entry: dict[str, Any]) -> Message | None:
    raw = entry["message"]
    content = raw.get("content")
    if isinstance(content, list):
        blocks = [
            b for b in (block_from_dict(item) for item in content if isinstance(item, dict))
            if b is not None
        ]
        if not blocks:
            return None
        parsed: str | list = blocks
    elif isinstance(content, str):
        if not content:
            return None
        parsed = content
    else:
        return None
    message = Message(
        role=MessageRole.ASSISTANT if entry["type"] == "assistant" else MessageRole.USER,
        content=parsed,
        status=MessageStatus.COMPLETE,
    )
    if entry.get("uuid"):
        message.id = str(entry["uuid"])
    timestamp = _parse_timestamp(entry.get("timestamp"))
    if timestamp is not None:
        message.timestamp = timestamp
    return message


def load_transcript(project_path: str, session_id: str) -> list[Message]:
    """Load a stored conversation as finalized messages, oldest first."""
    path = transcript_path(project_path, session_id)
    messages: list[Message] = []
    seen: set[str] = set()
    for entry in _iter_entries(path):
        if not _is_conversation_entry(entry):
            continue
        message = _entry_to_message(entry)
        if message is None or message.id in seen:
            continue
        seen.add(message.id)
        messages.append(message)
    logger.info(
        "Loaded transcript %s (%d messages) from %s",
        session_id[:8], len(messages), path.parent.name,
    )
    return messages


def _preview(message: Message) -> str:
    if isinstance(message.content, str):
        text = message.content
    else:
        text = " ".join(b.text for b in message.content if isinstance(b, TextBlock))
        if not text:
            text = render_text(message)
    text = " ".join(text.split())
    return text[:_PREVIEW_CHARS]


def summarize_transcript(path: Path) -> dict[str, Any] | None:
    """Summary of one transcript file, or None if it holds no conversation."""
    created_at: float | None = None
    last_at: float | None = None
    count = 0
    git_branch: str | None = None
    preview: str | None = None
    for entry in _iter_entries(path):
        if not _is_conversation_entry(entry):
            continue
        message = _entry_to_message(entry)
        if message is None:
            continue
        count += 1
        timestamp = _parse_timestamp(entry.get("timestamp"))
        if timestamp is not None:
            created_at = timestamp if created_at is None else min(created_at, timestamp)
            last_at = timestamp if last_at is None else max(last_at, timestamp)
        if git_branch is None and entry.get("gitBranch"):
            git_branch = str(entry["gitBranch"])
        if (
            preview is None
            and message.role is MessageRole.USER
            and not any(not isinstance(b, TextBlock) for b in message.blocks)
        ):
            preview = _preview(message)
    if count == 0:
        return None
    mtime = path.stat().st_mtime
    summary: dict[str, Any] = {
        "sessionId": path.stem,
        "createdAt": created_at if created_at is not None else mtime,
        "lastMessageAt": last_at if last_at is not None else mtime,
        "messageCount": count,
    }
    if git_branch:
        summary["gitBranch"] = git_branch
    if preview:
        summary["previewMessage"] = preview
    return summary


def list_project_sessions(project_path: str) -> list[dict[str, Any]]:
    """Summaries of a project's stored sessions, newest first."""
    session_dir = claude_projects_dir() / sanitize_project_path(project_path)
    if not session_dir.is_dir():
        return []
    summaries: list[dict[str, Any]] = []
    # Sub-agent transcripts are stored as agent-<id>.jsonl.
    for path in session_dir.glob("*.jsonl"):
        if path.name.startswith("agent-"):
            continue
        try:
            summary = summarize_transcript(path)
        except OSError as exc:
            logger.warning("Cannot read transcript %s: %s", path, exc)
            continue
        if summary is not None:
            summary["projectPath"] = project_path
            summaries.append(summary)
    summaries.sort(key=lambda s: s["lastMessageAt"], reverse=True)
    return summaries
