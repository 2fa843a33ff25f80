"""Claude Agent SDK backend.

Wraps claude_agent_sdk.ClaudeSDKClient for long-lived interactive
sessions. SDK message objects are flattened back into stream-json
envelope dicts so the decoder sees one wire shape regardless of source.

Auth: works with whatever the Claude CLI is logged into (OAuth or
ANTHROPIC_API_KEY in the environment).
"""
from __future__ import annotations

import asyncio
import logging
import os
import re
import shutil
from pathlib import Path
from typing import Any, AsyncIterator

from ccstudio.engine.config import EngineConfig
from ccstudio.engine.errors import BackendProtocolError, BackendUnavailable

from .base import Backend, BackendConnection, BackendStatus

logger = logging.getLogger(__name__)

VERSION_TIMEOUT_SECONDS = 10.0


def candidate_cli_paths() -> list[Path]:
    """Well-known Claude CLI install locations, in lookup order."""
    home = Path.home()
    return [
        home / ".local" / "bin" / "claude",
        Path("/usr/local/bin/claude"),
        Path("/opt/homebrew/bin/claude"),
        Path("/usr/bin/claude"),
        home / ".npm-global" / "bin" / "claude",
        home / ".volta" / "bin" / "claude",
        home / ".nvm" / "versions" / "node" / "current" / "bin" / "claude",
    ]


def build_cli_env(cli_path: str | None = None) -> dict[str, str]:
    """Environment for the CLI subprocess.

    GUI-launched processes often get a minimal PATH, so the usual install
    directories (and the CLI's own directory) are prepended.
    """
    home = str(Path.home())
    extra = [str(p.parent) for p in candidate_cli_paths()]
    if cli_path:
        extra.insert(0, str(Path(cli_path).parent))
    current = os.environ.get("PATH", "")
    seen: set[str] = set()
    parts: list[str] = []
    for part in extra + current.split(os.pathsep):
        if part and part not in seen:
            seen.add(part)
            parts.append(part)
    return {"PATH": os.pathsep.join(parts), "HOME": home}


def _block_to_dict(block: Any) -> dict[str, Any] | None:
    if hasattr(block, "thinking"):
        return {"type": "thinking", "thinking": str(block.thinking or "")}
    if hasattr(block, "text"):
        return {"type": "text", "text": block.text}
    if hasattr(block, "name") and hasattr(block, "input"):
        return {
            "type": "tool_use",
            "id": getattr(block, "id", ""),
            "name": block.name,
            "input": block.input,
        }
    if hasattr(block, "tool_use_id"):
        return {
            "type": "tool_result",
            "tool_use_id": block.tool_use_id,
            "content": getattr(block, "content", ""),
            "is_error": bool(getattr(block, "is_error", False)),
        }
    if isinstance(block, dict):
        return block
    logger.debug("Unrecognized SDK content block %s", type(block).__name__)
    return None


def envelope_from_sdk(message: Any) -> dict[str, Any]:
    """Convert a claude_agent_sdk message object into a stream-json dict."""
    if isinstance(message, dict):
        return message
    if hasattr(message, "event") and hasattr(message, "uuid"):
        return {
            "type": "stream_event",
            "uuid": message.uuid,
            "session_id": getattr(message, "session_id", None),
            "event": message.event,
        }
    if hasattr(message, "num_turns") and hasattr(message, "is_error"):
        return {
            "type": "result",
            "subtype": getattr(message, "subtype", ""),
            "is_error": message.is_error,
            "num_turns": message.num_turns,
            "duration_ms": getattr(message, "duration_ms", 0),
            "total_cost_usd": getattr(message, "total_cost_usd", None),
            "usage": getattr(message, "usage", None) or {},
            "result": getattr(message, "result", None) or "",
            "session_id": getattr(message, "session_id", None),
        }
    if hasattr(message, "subtype") and hasattr(message, "data"):
        data = dict(message.data or {})
        data["type"] = "system"
        data["subtype"] = message.subtype
        return data
    if hasattr(message, "content"):
        content = message.content
        if not isinstance(content, str):
            content = [b for b in (_block_to_dict(x) for x in content) if b is not None]
        if hasattr(message, "model"):
            return {
                "type": "assistant",
                "message": {"role": "assistant", "model": message.model, "content": content},
            }
        envelope: dict[str, Any] = {
            "type": "user",
            "message": {"role": "user", "content": content},
        }
        if getattr(message, "uuid", None):
            envelope["uuid"] = message.uuid
        return envelope
    raise BackendProtocolError(f"unrecognized SDK message {type(message).__name__}")


class ClaudeConnection(BackendConnection):
    """A live ClaudeSDKClient bound to one session."""

    def __init__(self, client: Any, session_id: str) -> None:
        self._client = client
        self._session_id = session_id
        self._closed = False

    async def send(self, text: str) -> None:
        try:
            await self._client.query(text)
        except Exception as exc:
            raise BackendProtocolError(f"failed to send prompt: {exc}") from exc

    async def events(self) -> AsyncIterator[dict[str, Any]]:
        async for message in self._client.receive_messages():
            yield envelope_from_sdk(message)

    async def interrupt(self) -> None:
        await self._client.interrupt()

    async def set_permission_mode(self, mode: str) -> None:
        await self._client.set_permission_mode(mode)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        logger.info("Closing Claude connection session=%s", self._session_id[:8])
        await self._client.disconnect()


class ClaudeBackend(Backend):
    """Backend backed by the Claude Agent SDK and the Claude CLI."""

    def __init__(self, config: EngineConfig | None = None) -> None:
        self._config = config or EngineConfig()
        self._cli_path: str | None = None

    @property
    def name(self) -> str:
        return "claude"

    def locate_cli(self, refresh: bool = False) -> str | None:
        """Find the Claude CLI: configured path, PATH, then install locations."""
        if self._cli_path and not refresh:
            return self._cli_path
        found: str | None = None
        configured = self._config.claude_cli_path
        if configured:
            resolved = shutil.which(configured) or (
                configured if os.access(configured, os.X_OK) else None
            )
            if resolved:
                found = resolved
            else:
                logger.warning("Configured Claude CLI not found: %s", configured)
        if found is None:
            found = shutil.which("claude")
        if found is None:
            for candidate in candidate_cli_paths():
                if candidate.is_file() and os.access(candidate, os.X_OK):
                    found = str(candidate)
                    break
        if found:
            logger.debug("Claude CLI located at %s", found)
        self._cli_path = found
        return found

    def is_available(self) -> bool:
        return self.locate_cli() is not None

    async def check(self) -> BackendStatus:
        cli_path = self.locate_cli(refresh=True)
        if cli_path is None:
            return BackendStatus(
                available=False,
                error="Claude CLI not found. Install it with: npm install -g @anthropic-ai/claude-code",
            )
        try:
            proc = await asyncio.create_subprocess_exec(
                cli_path, "--version",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                env={**os.environ, **build_cli_env(cli_path)},
            )
        except OSError as exc:
            return BackendStatus(available=False, executable_path=cli_path, error=str(exc))
        try:
            stdout, _ = await asyncio.wait_for(
                proc.communicate(), timeout=VERSION_TIMEOUT_SECONDS,
            )
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            return BackendStatus(
                available=False,
                executable_path=cli_path,
                error=f"'claude --version' timed out after {VERSION_TIMEOUT_SECONDS}s",
            )
        output = stdout.decode("utf-8", errors="replace").strip()
        if proc.returncode != 0:
            return BackendStatus(
                available=False,
                executable_path=cli_path,
                error=output or f"'claude --version' exited with code {proc.returncode}",
            )
        match = re.search(r"(\d+\.\d+\.\d+)", output)
        return BackendStatus(
            available=True,
            version=match.group(1) if match else output,
            executable_path=cli_path,
        )

    def build_options(
        self,
        session_id: str,
        *,
        resume: bool,
        permission_mode: str,
        cwd: str | None,
        max_turns: int | None,
        cli_path: str | None,
    ) -> dict[str, Any]:
        """Keyword arguments for ClaudeAgentOptions."""

        def _capture_stderr(line: str) -> None:
            logger.debug("claude stderr session=%s: %s", session_id[:8], line.rstrip())

        options_kwargs: dict[str, Any] = dict(
            model=self._config.default_model,
            permission_mode=permission_mode,
            cwd=cwd or self._config.default_cwd,
            setting_sources=list(self._config.setting_sources),
            include_partial_messages=True,
            env=build_cli_env(cli_path),
            stderr=_capture_stderr,
        )
        if cli_path:
            options_kwargs["cli_path"] = cli_path
        if max_turns:
            options_kwargs["max_turns"] = max_turns
        if resume:
            options_kwargs["resume"] = session_id
        else:
            # Pin the CLI's session id to ours so resume can find it later.
            options_kwargs["extra_args"] = {"session-id": session_id}
        return options_kwargs

    async def connect(
        self,
        session_id: str,
        *,
        resume: bool = False,
        permission_mode: str = "default",
        cwd: str | None = None,
        max_turns: int | None = None,
    ) -> BackendConnection:
        try:
            from claude_agent_sdk import ClaudeAgentOptions, ClaudeSDKClient
        except ImportError as exc:
            raise BackendUnavailable(f"claude-agent-sdk is not installed: {exc}") from exc

        cli_path = self.locate_cli()
        if cli_path is None:
            raise BackendUnavailable("Claude CLI not found on PATH or in the usual install locations")

        options_kwargs = self.build_options(
            session_id,
            resume=resume,
            permission_mode=permission_mode,
            cwd=cwd,
            max_turns=max_turns,
            cli_path=cli_path,
        )
        # A CLAUDECODE var inherited from a parent Claude Code process
        # makes the CLI refuse to start as a nested session.
        os.environ.pop("CLAUDECODE", None)
        logger.info(
            "Connecting Claude session=%s resume=%s mode=%s cwd=%s cli=%s",
            session_id[:8], resume, permission_mode, options_kwargs["cwd"], cli_path,
        )
        try:
            client = ClaudeSDKClient(options=ClaudeAgentOptions(**options_kwargs))
            await client.connect()
        except Exception as exc:
            logger.warning("Claude connect failed session=%s: %s", session_id[:8], exc)
            raise BackendUnavailable(str(exc)) from exc
        return ClaudeConnection(client, session_id)
