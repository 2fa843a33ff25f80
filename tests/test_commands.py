from __future__ import annotations

import json

import pytest

from ccstudio.adapters.commands import CommandSurface
from ccstudio.engine.config import EngineConfig
from ccstudio.engine.errors import InvalidRequest, UnknownSession
from ccstudio.engine.registry import SessionRegistry

from tests.fakes import FakeBackend, wait_until


def _surface(backend: FakeBackend | None = None) -> CommandSurface:
    return CommandSurface(SessionRegistry(backend or FakeBackend(), EngineConfig()))


def test_operations_cover_the_ui_api() -> None:
    assert _surface().operations == sorted([
        "checkBackend", "dispose", "getPermissionModes", "getSession",
        "getSessionHistory", "listActive", "listProjectSessions", "queryOnce",
        "resume", "sendMessage", "setPermissionMode", "start", "stop",
    ])


@pytest.mark.asyncio
async def test_unknown_operation_is_invalid_request() -> None:
    with pytest.raises(InvalidRequest):
        await _surface().dispatch("rm -rf", {})


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("operation", "payload"),
    [
        ("sendMessage", {"sessionId": "s"}),
        ("sendMessage", {"sessionId": "s", "text": "   "}),
        ("start", {"permissionMode": "everything"}),
        ("start", {"prompt": 42}),
        ("setPermissionMode", {"sessionId": "s"}),
        ("queryOnce", {"prompt": "hi", "maxTurns": 0}),
        ("queryOnce", {"prompt": "hi", "maxTurns": True}),
        ("listProjectSessions", {}),
    ],
)
async def test_payload_validation(operation, payload) -> None:
    result = await _surface().invoke(operation, payload)
    assert result["error"]["kind"] == "InvalidRequest"


@pytest.mark.asyncio
async def test_invoke_reports_kind_tagged_errors() -> None:
    result = await _surface().invoke("stop", {"sessionId": "ghost"})
    assert result == {
        "error": {"kind": "UnknownSession", "message": "Unknown session: ghost"},
    }


@pytest.mark.asyncio
async def test_start_and_snapshot() -> None:
    backend = FakeBackend()
    registry = SessionRegistry(backend, EngineConfig())
    surface = CommandSurface(registry)

    started = await surface.dispatch("start", {"prompt": "hi", "cwd": "/repo"})
    session_id = started["sessionId"]
    assert started["state"] == "streaming"
    assert backend.connect_calls[0]["cwd"] == "/repo"

    session = registry.get(session_id)
    await wait_until(lambda: session.state.value == "waiting_for_input")
    snap = await surface.dispatch("getSession", {"sessionId": session_id})
    assert snap["cwd"] == "/repo"
    assert [m["role"] for m in snap["messages"]] == ["user", "assistant", "system"]
    json.dumps(snap)

    listing = await surface.dispatch("listActive")
    assert [s["sessionId"] for s in listing] == [session_id]


@pytest.mark.asyncio
async def test_get_session_history_unknown(tmp_path, monkeypatch) -> None:
    monkeypatch.setenv("HOME", str(tmp_path))
    with pytest.raises(UnknownSession):
        await _surface().dispatch(
            "getSessionHistory", {"projectPath": "/p", "sessionId": "missing"},
        )


@pytest.mark.asyncio
async def test_get_session_history_returns_messages(tmp_path, monkeypatch) -> None:
    monkeypatch.setenv("HOME", str(tmp_path))
    directory = tmp_path / ".claude" / "projects" / "-p"
    directory.mkdir(parents=True)
    (directory / "abc.jsonl").write_text(json.dumps({
        "type": "user", "uuid": "u1", "timestamp": "2026-01-01T00:00:00Z",
        "message": {"role": "user", "content": "hello"},
    }) + "\n", encoding="utf-8")

    history = await _surface().dispatch(
        "getSessionHistory", {"projectPath": "/p", "sessionId": "abc"},
    )

    assert history["sessionId"] == "abc"
    assert [m["id"] for m in history["messages"]] == ["u1"]

    listing = await _surface().dispatch("listProjectSessions", {"projectPath": "/p"})
    assert listing["sessions"][0]["sessionId"] == "abc"
