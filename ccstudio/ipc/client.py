"""Async client for the ccstudio server, used by the UI process.

Wraps the REST routes in methods that return the decoded JSON result
and raise StudioClientError with the server's error kind. ``events()``
parses the SSE stream back into typed SessionEvents.
"""
from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from typing import Any

import aiohttp

from ccstudio.adapters.events import SessionEvent, dict_to_event

logger = logging.getLogger(__name__)


class StudioClientError(Exception):
    """A command failed on the server."""
    def __init__(self, kind: str, message: str, status: int):
        self.kind = kind
        self.message = message
        self.status = status
        super().__init__(f"{kind} ({status}): {message}")


async def parse_sse(lines: AsyncIterator[bytes]) -> AsyncIterator[tuple[str, str]]:
    """Yield (event, data) pairs from raw SSE lines. Comments are skipped."""
    event_name = "message"
    data_lines: list[str] = []
    async for raw in lines:
        line = raw.decode("utf-8").rstrip("\r\n")
        if not line:
            if data_lines:
                yield event_name, "\n".join(data_lines)
            event_name, data_lines = "message", []
            continue
        if line.startswith(":"):
            continue
        field, _, value = line.partition(":")
        value = value[1:] if value.startswith(" ") else value
        if field == "event":
            event_name = value
        elif field == "data":
            data_lines.append(value)


class StudioClient:
    """HTTP client for one ccstudio server."""

    def __init__(
        self,
        base_url: str,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self) -> StudioClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    def _http(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession()
        return self._session

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json_body: dict[str, Any] | None = None,
        params: dict[str, str] | None = None,
    ) -> Any:
        async with self._http().request(
            method, f"{self._base_url}{path}", json=json_body, params=params,
        ) as resp:
            data = await resp.json()
            if resp.status >= 400:
                error = data.get("error") if isinstance(data, dict) else None
                if isinstance(error, dict):
                    raise StudioClientError(
                        str(error.get("kind", "Unknown")),
                        str(error.get("message", "")),
                        resp.status,
                    )
                raise StudioClientError("Unknown", str(data), resp.status)
            return data

    # ── Commands ──

    async def start(
        self,
        prompt: str | None = None,
        permission_mode: str | None = None,
        *,
        session_id: str | None = None,
        cwd: str | None = None,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {}
        if prompt is not None:
            body["prompt"] = prompt
        if permission_mode is not None:
            body["permissionMode"] = permission_mode
        if session_id is not None:
            body["sessionId"] = session_id
        if cwd is not None:
            body["cwd"] = cwd
        return await self._request("POST", "/sessions", json_body=body)

    async def send_message(self, session_id: str, text: str) -> dict[str, Any]:
        return await self._request(
            "POST", f"/sessions/{session_id}/messages", json_body={"text": text},
        )

    async def stop(self, session_id: str) -> dict[str, Any]:
        return await self._request("POST", f"/sessions/{session_id}/stop")

    async def resume(
        self,
        session_id: str,
        permission_mode: str | None = None,
        cwd: str | None = None,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {}
        if permission_mode is not None:
            body["permissionMode"] = permission_mode
        if cwd is not None:
            body["cwd"] = cwd
        return await self._request("POST", f"/sessions/{session_id}/resume", json_body=body)

    async def set_permission_mode(self, session_id: str, permission_mode: str) -> dict[str, Any]:
        return await self._request(
            "PUT", f"/sessions/{session_id}/permission-mode",
            json_body={"permissionMode": permission_mode},
        )

    async def list_active(self) -> list[dict[str, Any]]:
        data = await self._request("GET", "/sessions")
        return data["sessions"]

    async def get_session(self, session_id: str) -> dict[str, Any]:
        return await self._request("GET", f"/sessions/{session_id}")

    async def dispose(self, session_id: str) -> dict[str, Any]:
        return await self._request("DELETE", f"/sessions/{session_id}")

    async def get_permission_modes(self) -> list[str]:
        data = await self._request("GET", "/permission-modes")
        return data["modes"]

    async def check_backend(self) -> dict[str, Any]:
        return await self._request("GET", "/backend")

    async def query_once(
        self,
        prompt: str,
        permission_mode: str | None = None,
        *,
        cwd: str | None = None,
        max_turns: int | None = None,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {"prompt": prompt}
        if permission_mode is not None:
            body["permissionMode"] = permission_mode
        if cwd is not None:
            body["cwd"] = cwd
        if max_turns is not None:
            body["maxTurns"] = max_turns
        return await self._request("POST", "/query", json_body=body)

    # ── Events ──

    async def events(self, session_id: str | None = None) -> AsyncIterator[SessionEvent]:
        """Yield typed events from the server's SSE stream until it closes."""
        params = {"session_id": session_id} if session_id else None
        timeout = aiohttp.ClientTimeout(total=None, sock_read=None)
        async with self._http().get(
            f"{self._base_url}/events", params=params, timeout=timeout,
        ) as resp:
            async for name, data in parse_sse(resp.content):
                if name == "connected":
                    continue
                try:
                    payload = json.loads(data)
                except json.JSONDecodeError:
                    logger.warning("Discarding malformed SSE payload for %s", name)
                    continue
                payload["event"] = name
                yield dict_to_event(payload)
