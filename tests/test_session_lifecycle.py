"""ChatSession state machine driven by an in-memory backend."""
from __future__ import annotations

import asyncio

import pytest

from ccstudio.engine.config import EngineConfig
from ccstudio.engine.errors import (
    AlreadyActive,
    BackendUnavailable,
    ForcedStopTimeout,
    SessionNotReady,
)
from ccstudio.engine.lifecycle import VALID_TRANSITIONS, can_transition
from ccstudio.engine.models import PermissionMode, SessionState
from ccstudio.engine.session import ChatSession
from ccstudio.shared.models.message import MessageRole, MessageStatus, TextBlock

from tests.fakes import FakeBackend, assistant, delta, result, wait_until


def _config(**overrides) -> EngineConfig:
    overrides.setdefault("stop_timeout_seconds", 0.2)
    overrides.setdefault("connect_timeout_seconds", 0.5)
    return EngineConfig(**overrides)


def _session(backend: FakeBackend, events: list | None = None, **kwargs) -> ChatSession:
    return ChatSession(
        backend,
        _config(),
        event_callback=events.append if events is not None else None,
        **kwargs,
    )


def test_disposed_is_terminal() -> None:
    assert VALID_TRANSITIONS[SessionState.DISPOSED] == set()
    assert not can_transition(SessionState.STREAMING, SessionState.IDLE)
    assert can_transition(SessionState.ERROR, SessionState.CONNECTING)


@pytest.mark.asyncio
async def test_start_with_prompt_streams_then_waits_for_input() -> None:
    events: list[dict] = []
    backend = FakeBackend()
    session = _session(backend, events)

    await session.start("hello")
    assert session.state is SessionState.STREAMING

    await wait_until(lambda: session.state is SessionState.WAITING_FOR_INPUT)

    states = [(e["old_state"], e["new_state"]) for e in events if e["event"] == "state_changed"]
    assert states == [
        ("idle", "connecting"),
        ("connecting", "streaming"),
        ("streaming", "waiting_for_input"),
    ]
    roles = [m.role for m in session.conversation.messages]
    assert roles == [MessageRole.USER, MessageRole.ASSISTANT, MessageRole.SYSTEM]
    assert session.conversation.messages[1].content == [TextBlock("echo: hello")]
    assert backend.connections[0].sent == ["hello"]
    assert all(e["session_id"] == session.session_id for e in events)


@pytest.mark.asyncio
async def test_start_without_prompt_waits_for_input() -> None:
    session = _session(FakeBackend())
    await session.start()
    assert session.state is SessionState.WAITING_FOR_INPUT


@pytest.mark.asyncio
async def test_start_twice_raises_already_active() -> None:
    session = _session(FakeBackend())
    await session.start()

    with pytest.raises(AlreadyActive):
        await session.start("again")


@pytest.mark.asyncio
async def test_send_while_streaming_is_rejected_without_side_effects() -> None:
    backend = FakeBackend(reply=None)
    session = _session(backend)
    await session.start("first")
    before = len(session.conversation.messages)

    with pytest.raises(SessionNotReady):
        await session.send("second")

    assert session.state is SessionState.STREAMING
    assert len(session.conversation.messages) == before
    assert backend.connections[0].sent == ["first"]


@pytest.mark.asyncio
async def test_follow_up_turn_after_result() -> None:
    backend = FakeBackend()
    session = _session(backend)
    await session.start("one")
    await session.wait_for_turn(timeout=1.0)

    await session.send("two")
    await session.wait_for_turn(timeout=1.0)

    assert session.state is SessionState.WAITING_FOR_INPUT
    assert backend.connections[0].sent == ["one", "two"]
    assert session.last_assistant_message()["content"] == [{"type": "text", "text": "echo: two"}]


@pytest.mark.asyncio
async def test_stop_keeps_partial_output_as_one_cancelled_message() -> None:
    backend = FakeBackend(reply=None)
    session = _session(backend)
    await session.start("write a poem")
    connection = backend.connections[0]
    connection.push(delta("Roses "), delta("are"))
    await wait_until(lambda: session.conversation.streaming is not None
                     and session.conversation.streaming.content == [TextBlock("Roses are")])

    await session.stop()

    assert session.state is SessionState.STOPPED
    assert session.conversation.streaming is None
    assistants = [m for m in session.conversation.messages if m.role is MessageRole.ASSISTANT]
    assert len(assistants) == 1
    assert assistants[0].status is MessageStatus.ERROR
    assert assistants[0].cancelled is True
    assert assistants[0].content == [TextBlock("Roses are")]
    assert connection.interrupts == 1
    assert connection.close_calls == 1
    assert not session.connected


@pytest.mark.asyncio
async def test_stop_is_idempotent_and_rejected_before_start() -> None:
    session = _session(FakeBackend())
    with pytest.raises(SessionNotReady):
        await session.stop()

    await session.start()
    await session.stop()
    await session.stop()
    assert session.state is SessionState.STOPPED


@pytest.mark.asyncio
async def test_forced_stop_detaches_hung_backend() -> None:
    backend = FakeBackend(reply=None)
    session = _session(backend)
    await session.start("hang")
    backend.connections[0].hang_on_close = True

    with pytest.raises(ForcedStopTimeout):
        await session.stop()

    assert session.state is SessionState.STOPPED
    assert not session.connected
    await session.dispose()
    assert session.state is SessionState.DISPOSED


@pytest.mark.asyncio
async def test_unavailable_backend_reverts_to_idle() -> None:
    events: list[dict] = []
    session = _session(FakeBackend(available=False), events)

    with pytest.raises(BackendUnavailable):
        await session.start("hi")

    assert session.state is SessionState.IDLE
    assert session.conversation.messages == []
    assert [e["new_state"] for e in events if e["event"] == "state_changed"] == [
        "connecting", "idle",
    ]


@pytest.mark.asyncio
async def test_connect_timeout_is_backend_unavailable() -> None:
    backend = FakeBackend(connect_delay=5.0)
    session = ChatSession(backend, _config(connect_timeout_seconds=0.05))

    with pytest.raises(BackendUnavailable):
        await session.start()
    assert session.state is SessionState.IDLE


@pytest.mark.asyncio
async def test_stop_aborts_slow_connect() -> None:
    events: list[dict] = []
    backend = FakeBackend(connect_delay=10.0)
    session = ChatSession(
        backend,
        _config(connect_timeout_seconds=5.0, stop_timeout_seconds=0.1),
        event_callback=events.append,
    )
    starting = asyncio.create_task(session.start("hi"))
    await wait_until(lambda: session.state is SessionState.CONNECTING)

    loop = asyncio.get_running_loop()
    began = loop.time()
    await session.stop()

    assert loop.time() - began < 1.0
    assert session.state is SessionState.STOPPED
    assert not session.connected
    with pytest.raises(SessionNotReady):
        await starting
    assert backend.connections == []
    assert [e["new_state"] for e in events if e["event"] == "state_changed"] == [
        "connecting", "stopped",
    ]

    # The stopped session can be resumed.
    backend.connect_delay = 0.0
    await session.resume()
    assert session.state is SessionState.WAITING_FOR_INPUT
    await session.dispose()


@pytest.mark.asyncio
async def test_unexpected_connect_failure_is_backend_unavailable() -> None:
    session = _session(FakeBackend(connect_error=RuntimeError("sdk exploded")))

    with pytest.raises(BackendUnavailable, match="sdk exploded"):
        await session.start("hi")

    assert session.state is SessionState.IDLE
    assert not session.connected


@pytest.mark.asyncio
async def test_malformed_envelope_fails_session_and_detaches() -> None:
    events: list[dict] = []
    backend = FakeBackend(reply=None)
    session = _session(backend, events)
    await session.start("go")
    connection = backend.connections[0]
    connection.push(delta("partial"), {"type": "mystery"})

    await wait_until(lambda: session.state is SessionState.ERROR)

    assert session.failure.kind == "BackendProtocolError"
    assert not session.connected
    assert session.conversation.streaming is None
    last = session.conversation.messages[-1]
    assert last.role is MessageRole.SYSTEM
    assert last.status is MessageStatus.ERROR
    errors = [e for e in events if e["event"] == "error"]
    assert errors and errors[0]["kind"] == "BackendProtocolError"
    error_transition = [e for e in events if e.get("new_state") == "error"][0]
    assert error_transition["failure"]["kind"] == "BackendProtocolError"
    await wait_until(lambda: connection.close_calls == 1)


@pytest.mark.asyncio
async def test_error_result_fails_turn() -> None:
    backend = FakeBackend(reply=lambda text: [
        delta("work"),
        result(is_error=True, errors=["Reached maximum number of turns"]),
    ])
    session = _session(backend)
    await session.start("loop forever")

    await wait_until(lambda: session.state is SessionState.ERROR)

    assert session.failure.kind == "TurnFailed"
    assert "maximum number of turns" in session.failure.message


@pytest.mark.asyncio
async def test_stream_end_mid_turn_is_protocol_error() -> None:
    backend = FakeBackend(reply=None)
    session = _session(backend)
    await session.start("go")
    backend.connections[0].end()

    await wait_until(lambda: session.state is SessionState.ERROR)
    assert session.failure.kind == "BackendProtocolError"


@pytest.mark.asyncio
async def test_stream_end_between_turns_stops_session() -> None:
    backend = FakeBackend()
    session = _session(backend)
    await session.start("hi")
    await session.wait_for_turn(timeout=1.0)

    backend.connections[0].end()

    await wait_until(lambda: session.state is SessionState.STOPPED)
    assert session.failure is None
    assert not session.connected


@pytest.mark.asyncio
async def test_backend_exception_between_turns_stops_session() -> None:
    backend = FakeBackend()
    session = _session(backend)
    await session.start("hi")
    await session.wait_for_turn(timeout=1.0)

    backend.connections[0].fail(RuntimeError("exit code 1"))

    await wait_until(lambda: session.state is SessionState.STOPPED)


@pytest.mark.asyncio
async def test_resume_after_error_reconnects_with_same_id() -> None:
    backend = FakeBackend(reply=None)
    session = _session(backend)
    await session.start("go")
    backend.connections[0].push({"type": "mystery"})
    await wait_until(lambda: session.state is SessionState.ERROR)

    await session.resume(PermissionMode.PLAN)

    assert session.state is SessionState.WAITING_FOR_INPUT
    assert session.failure is None
    assert session.permission_mode is PermissionMode.PLAN
    assert backend.connect_calls[-1] == {
        "session_id": session.session_id,
        "resume": True,
        "permission_mode": "plan",
        "cwd": ".",
        "max_turns": None,
    }
    assert len(backend.connections) == 2


@pytest.mark.asyncio
async def test_resume_rejected_while_live() -> None:
    session = _session(FakeBackend())
    await session.start()
    with pytest.raises(AlreadyActive):
        await session.resume()


@pytest.mark.asyncio
async def test_set_permission_mode_reaches_live_connection() -> None:
    backend = FakeBackend()
    session = _session(backend)
    await session.set_permission_mode(PermissionMode.ACCEPT_EDITS)
    assert session.permission_mode is PermissionMode.ACCEPT_EDITS

    await session.start()
    await session.set_permission_mode(PermissionMode.BYPASS)

    assert backend.connect_calls[0]["permission_mode"] == "acceptEdits"
    assert backend.connections[0].permission_modes == ["bypassPermissions"]


@pytest.mark.asyncio
async def test_duplicate_assistant_echo_from_backend_is_ignored() -> None:
    backend = FakeBackend(reply=lambda text: [
        assistant("same", uuid_="a-1"),
        assistant("same", uuid_="a-1"),
        result(),
    ])
    session = _session(backend)
    await session.start("x")
    await session.wait_for_turn(timeout=1.0)

    ids = [m.id for m in session.conversation.messages]
    assert ids.count("a-1") == 1


@pytest.mark.asyncio
async def test_dispose_stops_live_session() -> None:
    backend = FakeBackend(reply=None)
    session = _session(backend)
    await session.start("go")

    await session.dispose()

    assert session.state is SessionState.DISPOSED
    assert backend.connections[0].close_calls == 1
    with pytest.raises(SessionNotReady):
        await session.send("more")


@pytest.mark.asyncio
async def test_snapshot_is_a_copy() -> None:
    session = _session(FakeBackend())
    await session.start("hi")
    await session.wait_for_turn(timeout=1.0)

    snap = session.snapshot()
    snap["messages"].clear()

    assert session.snapshot()["messages"]
    assert snap["state"] == "waiting_for_input"
    assert snap["streaming"] is None


@pytest.mark.asyncio
async def test_event_callback_failure_does_not_break_session() -> None:
    def explode(event):
        raise RuntimeError("subscriber bug")

    session = ChatSession(FakeBackend(), _config(), event_callback=explode)
    await session.start("hi")
    await asyncio.wait_for(session.wait_for_turn(), timeout=1.0)
    assert session.state is SessionState.WAITING_FOR_INPUT
