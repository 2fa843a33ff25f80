"""Claude backend: SDK message flattening, options and CLI discovery."""
from __future__ import annotations

import os
import stat
from types import SimpleNamespace

import pytest

from ccstudio.engine.config import EngineConfig
from ccstudio.engine.decoder import StreamDecoder
from ccstudio.engine.errors import BackendProtocolError, BackendUnavailable
from ccstudio.engine.providers.claude_provider import (
    ClaudeBackend,
    ClaudeConnection,
    build_cli_env,
    envelope_from_sdk,
)
from ccstudio.shared.models.message import TextBlock, ToolUseBlock
from ccstudio.shared.models.session import Conversation


def test_stream_event_is_flattened() -> None:
    msg = SimpleNamespace(
        uuid="ev-1",
        session_id="s",
        event={"type": "content_block_delta", "delta": {"type": "text_delta", "text": "hi"}},
    )
    env = envelope_from_sdk(msg)
    assert env["type"] == "stream_event"
    assert env["event"]["delta"]["text"] == "hi"


def test_assistant_message_blocks_are_converted() -> None:
    msg = SimpleNamespace(
        model="claude-sonnet-4-20250514",
        content=[
            SimpleNamespace(thinking="pondering", signature="sig"),
            SimpleNamespace(text="Reading the file."),
            SimpleNamespace(id="tool-1", name="Read", input={"file_path": "a.py"}),
        ],
    )
    env = envelope_from_sdk(msg)

    assert env["type"] == "assistant"
    assert [b["type"] for b in env["message"]["content"]] == ["thinking", "text", "tool_use"]

    decoder = StreamDecoder(Conversation())
    decoder.feed(env)
    message = decoder.conversation.messages[0]
    assert message.content == [
        TextBlock("Reading the file."),
        ToolUseBlock(id="tool-1", name="Read", input={"file_path": "a.py"}),
    ]
    assert message.metadata["model"] == "claude-sonnet-4-20250514"


def test_user_tool_result_is_converted() -> None:
    msg = SimpleNamespace(
        uuid="u-9",
        content=[SimpleNamespace(tool_use_id="tool-1", content="ok", is_error=False)],
    )
    env = envelope_from_sdk(msg)
    assert env["type"] == "user"
    assert env["uuid"] == "u-9"
    assert env["message"]["content"][0] == {
        "type": "tool_result", "tool_use_id": "tool-1", "content": "ok", "is_error": False,
    }


def test_result_and_system_messages() -> None:
    result = envelope_from_sdk(SimpleNamespace(
        subtype="success", is_error=False, num_turns=2, duration_ms=900,
        total_cost_usd=0.01, usage={"output_tokens": 4}, result="fine", session_id="s",
    ))
    assert result["type"] == "result"
    assert result["num_turns"] == 2

    system = envelope_from_sdk(SimpleNamespace(subtype="init", data={"model": "m", "cwd": "/p"}))
    assert system == {"type": "system", "subtype": "init", "model": "m", "cwd": "/p"}


def test_unknown_sdk_message_raises() -> None:
    with pytest.raises(BackendProtocolError):
        envelope_from_sdk(SimpleNamespace(something="else"))


def test_build_options_pins_session_id_for_new_sessions() -> None:
    backend = ClaudeBackend(EngineConfig(default_model="claude-test", setting_sources=["project"]))

    new = backend.build_options(
        "sid-1", resume=False, permission_mode="plan", cwd="/work",
        max_turns=None, cli_path="/opt/claude/bin/claude",
    )
    assert new["extra_args"] == {"session-id": "sid-1"}
    assert "resume" not in new
    assert new["model"] == "claude-test"
    assert new["permission_mode"] == "plan"
    assert new["cwd"] == "/work"
    assert new["setting_sources"] == ["project"]
    assert new["include_partial_messages"] is True
    assert new["cli_path"] == "/opt/claude/bin/claude"
    assert "max_turns" not in new

    resumed = backend.build_options(
        "sid-1", resume=True, permission_mode="default", cwd=None,
        max_turns=4, cli_path=None,
    )
    assert resumed["resume"] == "sid-1"
    assert "extra_args" not in resumed
    assert resumed["cwd"] == "."
    assert resumed["max_turns"] == 4


def test_build_cli_env_prepends_cli_directory(monkeypatch) -> None:
    monkeypatch.setenv("PATH", "/usr/bin")
    env = build_cli_env("/opt/claude/bin/claude")
    parts = env["PATH"].split(os.pathsep)
    assert parts[0] == "/opt/claude/bin"
    assert "/usr/bin" in parts
    assert len(parts) == len(set(parts))


def _fake_cli(path) -> str:
    path.write_text("#!/bin/sh\necho '1.0.42 (Claude Code)'\n")
    path.chmod(path.stat().st_mode | stat.S_IXUSR)
    return str(path)


def test_locate_cli_prefers_configured_path(tmp_path) -> None:
    cli = _fake_cli(tmp_path / "claude")
    backend = ClaudeBackend(EngineConfig(claude_cli_path=cli))
    assert backend.locate_cli() == cli
    assert backend.is_available()


def test_locate_cli_reports_missing(tmp_path, monkeypatch) -> None:
    monkeypatch.setenv("PATH", str(tmp_path))
    monkeypatch.setenv("HOME", str(tmp_path))
    monkeypatch.setattr(
        "ccstudio.engine.providers.claude_provider.candidate_cli_paths", lambda: [],
    )
    backend = ClaudeBackend(EngineConfig(claude_cli_path=str(tmp_path / "nope")))
    assert backend.locate_cli() is None


@pytest.mark.asyncio
async def test_check_reads_cli_version(tmp_path) -> None:
    cli = _fake_cli(tmp_path / "claude")
    status = await ClaudeBackend(EngineConfig(claude_cli_path=cli)).check()
    assert status.available is True
    assert status.version == "1.0.42"
    assert status.to_dict()["executablePath"] == cli


@pytest.mark.asyncio
async def test_check_without_cli(tmp_path, monkeypatch) -> None:
    monkeypatch.setenv("PATH", str(tmp_path))
    monkeypatch.setattr(
        "ccstudio.engine.providers.claude_provider.candidate_cli_paths", lambda: [],
    )
    status = await ClaudeBackend(EngineConfig()).check()
    assert status.available is False
    assert "not found" in status.error


class _FakeSDKClient:
    def __init__(self, messages=(), fail_query: bool = False):
        self._messages = list(messages)
        self.fail_query = fail_query
        self.queries: list[str] = []
        self.disconnects = 0

    async def query(self, text):
        if self.fail_query:
            raise RuntimeError("pipe closed")
        self.queries.append(text)

    async def receive_messages(self):
        for message in self._messages:
            yield message

    async def interrupt(self):
        pass

    async def set_permission_mode(self, mode):
        pass

    async def disconnect(self):
        self.disconnects += 1


@pytest.mark.asyncio
async def test_connection_wraps_sdk_client() -> None:
    client = _FakeSDKClient([SimpleNamespace(model="m", content=[SimpleNamespace(text="hey")])])
    connection = ClaudeConnection(client, "session-1")

    await connection.send("hello")
    envelopes = [env async for env in connection.events()]
    await connection.close()
    await connection.close()

    assert client.queries == ["hello"]
    assert envelopes[0]["message"]["content"] == [{"type": "text", "text": "hey"}]
    assert client.disconnects == 1


@pytest.mark.asyncio
async def test_connection_send_failure_is_protocol_error() -> None:
    connection = ClaudeConnection(_FakeSDKClient(fail_query=True), "session-1")
    with pytest.raises(BackendProtocolError):
        await connection.send("hello")


@pytest.mark.asyncio
async def test_connect_reports_rejected_options_as_unavailable(tmp_path, monkeypatch) -> None:
    def reject(**kwargs):
        raise TypeError("unexpected keyword argument 'setting_sources'")

    monkeypatch.setattr("claude_agent_sdk.ClaudeAgentOptions", reject)
    backend = ClaudeBackend(EngineConfig(claude_cli_path=_fake_cli(tmp_path / "claude")))

    with pytest.raises(BackendUnavailable, match="setting_sources"):
        await backend.connect("11111111-2222-3333-4444-555555555555")
