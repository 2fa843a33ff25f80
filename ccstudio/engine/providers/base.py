"""Abstract base for agent backends.

A Backend knows how to locate its runtime and open connections. A
BackendConnection is one live conversation: it accepts prompts and
yields stream-json envelopes (plain dicts) until the backend closes.
"""
from __future__ import annotations

import abc
from dataclasses import dataclass
from typing import Any, AsyncIterator


@dataclass
class BackendStatus:
    """Result of a backend availability check."""
    available: bool
    version: str | None = None
    executable_path: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"available": self.available}
        if self.version is not None:
            d["version"] = self.version
        if self.executable_path is not None:
            d["executablePath"] = self.executable_path
        if self.error is not None:
            d["error"] = self.error
        return d


class BackendConnection(abc.ABC):
    """One live, exclusively owned backend conversation."""

    @abc.abstractmethod
    async def send(self, text: str) -> None:
        """Send a user prompt. Raises BackendProtocolError on transport failure."""

    @abc.abstractmethod
    def events(self) -> AsyncIterator[dict[str, Any]]:
        """Yield envelopes in backend order until the stream closes."""

    @abc.abstractmethod
    async def interrupt(self) -> None:
        """Ask the backend to abandon the current turn."""

    async def set_permission_mode(self, mode: str) -> None:
        """Change the permission mode of the live conversation.

        Default no-op for backends that only read it at connect time.
        """
        return None

    @abc.abstractmethod
    async def close(self) -> None:
        """Tear the connection down. Must be safe to call twice."""


class Backend(abc.ABC):
    """Abstract backend interface."""

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Short backend name (e.g. 'claude')."""

    @abc.abstractmethod
    def is_available(self) -> bool:
        """Cheap check that the runtime can be located."""

    @abc.abstractmethod
    async def check(self) -> BackendStatus:
        """Probe the runtime (version, path) without opening a session."""

    @abc.abstractmethod
    async def connect(
        self,
        session_id: str,
        *,
        resume: bool = False,
        permission_mode: str = "default",
        cwd: str | None = None,
        max_turns: int | None = None,
    ) -> BackendConnection:
        """Open a connection for *session_id*.

        With ``resume=True`` the backend reattaches to the conversation
        it already stored under that id. Raises BackendUnavailable when
        the runtime cannot be started.
        """

    async def shutdown(self) -> None:
        """Clean up backend-wide resources. Default no-op."""
        return None
