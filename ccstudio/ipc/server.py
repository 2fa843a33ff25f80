"""HTTP + SSE server for the ccstudio session engine.

Exposes the command surface as a small REST API and pushes session
events to the UI process over Server-Sent Events. Each SSE client gets
its own EventBridge subscription, optionally filtered to one session.

Usage:
    ccstudio [--host HOST] [--port PORT] [--config PATH]
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
import time
import uuid
from typing import Any

from aiohttp import web

from ccstudio.adapters.commands import CommandSurface, error_payload
from ccstudio.adapters.event_bus import EventBridge
from ccstudio.adapters.events import event_to_dict
from ccstudio.engine.config import EngineConfig
from ccstudio.engine.errors import InvalidRequest, SessionError
from ccstudio.engine.providers.base import Backend
from ccstudio.engine.providers.claude_provider import ClaudeBackend
from ccstudio.engine.registry import SessionRegistry

logger = logging.getLogger(__name__)

SSE_KEEPALIVE_SECONDS = 30.0

_STATUS_BY_KIND: dict[str, int] = {
    "InvalidRequest": 400,
    "UnknownSession": 404,
    "AlreadyActive": 409,
    "SessionNotReady": 409,
    "BackendProtocolError": 502,
    "TurnFailed": 502,
    "BackendUnavailable": 503,
    "ForcedStopTimeout": 504,
}


class StudioServer:
    """HTTP+SSE server wrapping one SessionRegistry.

    Thin adapter: all session state lives in the registry. This class
    only handles HTTP routing, SSE fan-out and error mapping.
    """

    def __init__(
        self,
        host: str = "127.0.0.1",
        port: int = 0,
        config: EngineConfig | None = None,
        backend: Backend | None = None,
    ) -> None:
        self._host = host
        self._port = port
        self._config = config or EngineConfig.from_env()
        self._bridge = EventBridge(maxsize=self._config.event_queue_size)
        self._registry = SessionRegistry(
            backend or ClaudeBackend(self._config),
            self._config,
            event_callback=self._bridge.make_callback(),
        )
        self._commands = CommandSurface(self._registry)
        self._started_at = time.time()
        self._app = web.Application(middlewares=[self._request_logging_middleware])
        self._app.on_shutdown.append(self._on_shutdown)
        self._setup_routes()

    @property
    def app(self) -> web.Application:
        return self._app

    @property
    def registry(self) -> SessionRegistry:
        return self._registry

    @property
    def bridge(self) -> EventBridge:
        return self._bridge

    # ── Middleware ──

    @web.middleware
    async def _request_logging_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        req_id = request.headers.get("x-ccstudio-request-id", str(uuid.uuid4())[:8])
        request["req_id"] = req_id
        start = time.monotonic()
        logger.info("HTTP %s %s req=%s", request.method, request.path_qs, req_id)
        try:
            response = await handler(request)
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.info(
                "HTTP %s %s req=%s status=%s duration_ms=%.1f",
                request.method, request.path_qs, req_id,
                getattr(response, "status", "?"), elapsed_ms,
            )
            return response
        except Exception:
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.exception(
                "HTTP %s %s req=%s failed duration_ms=%.1f",
                request.method, request.path_qs, req_id, elapsed_ms,
            )
            raise

    # ── Route setup ──

    def _setup_routes(self) -> None:
        r = self._app.router
        r.add_get("/health", self._handle_health)
        r.add_get("/events", self._handle_sse)
        r.add_get("/backend", self._handle_check_backend)
        r.add_get("/permission-modes", self._handle_permission_modes)

        r.add_get("/sessions", self._handle_list_sessions)
        r.add_post("/sessions", self._handle_start_session)
        r.add_get("/sessions/{id}", self._handle_get_session)
        r.add_delete("/sessions/{id}", self._handle_dispose_session)
        r.add_post("/sessions/{id}/messages", self._handle_send_message)
        r.add_post("/sessions/{id}/stop", self._handle_stop_session)
        r.add_post("/sessions/{id}/resume", self._handle_resume_session)
        r.add_put("/sessions/{id}/permission-mode", self._handle_set_permission_mode)

        r.add_post("/query", self._handle_query_once)
        r.add_get("/projects/sessions", self._handle_list_project_sessions)
        r.add_get("/projects/sessions/{id}", self._handle_get_session_history)
        r.add_post("/commands/{operation}", self._handle_command)

    # ── Lifecycle ──

    async def start(self) -> None:
        """Start the server and print the port to stdout."""
        runner = web.AppRunner(self._app)
        await runner.setup()
        site = web.TCPSite(runner, self._host, self._port)
        await site.start()

        actual_port = self._resolve_port(site, runner)
        if actual_port is None:
            raise RuntimeError("ccstudio server started but no listening socket was reported.")
        self._port = actual_port

        sys.stdout.write(json.dumps({"port": actual_port}) + "\n")
        sys.stdout.flush()
        logger.info("ccstudio server listening on %s:%d", self._host, actual_port)

        try:
            await asyncio.Event().wait()
        except (KeyboardInterrupt, asyncio.CancelledError):
            logger.info("Server shutting down")
        finally:
            await runner.cleanup()

    async def _on_shutdown(self, app: web.Application) -> None:
        await self._registry.shutdown()
        self._bridge.close()

    @staticmethod
    def _resolve_port(site, runner) -> int | None:
        sockets = getattr(getattr(site, "_server", None), "sockets", None) or ()
        if sockets:
            return sockets[0].getsockname()[1]
        addresses = getattr(runner, "addresses", None) or ()
        if addresses:
            first = addresses[0]
            if isinstance(first, tuple) and len(first) >= 2:
                return int(first[1])
        return None

    # ── Helpers ──

    @staticmethod
    def _error_response(exc: SessionError) -> web.Response:
        return web.json_response(error_payload(exc), status=_STATUS_BY_KIND.get(exc.kind, 500))

    @staticmethod
    async def _read_json(request: web.Request) -> dict[str, Any]:
        if not request.can_read_body:
            return {}
        try:
            body = await request.json()
        except json.JSONDecodeError as exc:
            raise InvalidRequest(f"Request body is not valid JSON: {exc}") from exc
        if not isinstance(body, dict):
            raise InvalidRequest("Request body must be a JSON object")
        return body

    async def _invoke(
        self,
        operation: str,
        request: web.Request,
        extra: dict[str, Any] | None = None,
        status: int = 200,
    ) -> web.Response:
        try:
            payload = await self._read_json(request)
            if extra:
                payload.update(extra)
            result = await self._commands.dispatch(operation, payload)
        except SessionError as exc:
            logger.info(
                "Command %s failed req=%s kind=%s: %s",
                operation, request.get("req_id", "unknown"), exc.kind, exc,
            )
            return self._error_response(exc)
        return web.json_response(result, status=status)

    # ── Handlers ──

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({
            "status": "ok",
            "pid": os.getpid(),
            "uptime_seconds": round(max(0.0, time.time() - self._started_at), 3),
            "active_sessions": len(self._registry.list_active()),
            "sse_clients": self._bridge.subscriber_count,
        })

    async def _handle_sse(self, request: web.Request) -> web.StreamResponse:
        session_id = request.query.get("session_id") or None
        response = web.StreamResponse(
            status=200,
            headers={
                "Content-Type": "text/event-stream",
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "Access-Control-Allow-Origin": "*",
            },
        )
        await response.prepare(request)

        subscription = self._bridge.subscribe(session_id)
        logger.info(
            "SSE client connected req=%s session=%s active_clients=%d",
            request.get("req_id", "unknown"), session_id or "*", self._bridge.subscriber_count,
        )
        try:
            sessions = [s["sessionId"] for s in self._registry.list_active()]
            await response.write(
                f"event: connected\ndata: {json.dumps({'sessions': sessions})}\n\n".encode()
            )
            while True:
                try:
                    event = await asyncio.wait_for(subscription.get(), timeout=SSE_KEEPALIVE_SECONDS)
                except asyncio.TimeoutError:
                    await response.write(b": keepalive\n\n")
                    continue
                if event is None:
                    break
                data = event_to_dict(event)
                name = data.pop("event")
                await response.write(f"event: {name}\ndata: {json.dumps(data)}\n\n".encode())
        except (ConnectionResetError, asyncio.CancelledError):
            pass
        finally:
            subscription.close()
            logger.info(
                "SSE client disconnected req=%s dropped=%d active_clients=%d",
                request.get("req_id", "unknown"), subscription.dropped, self._bridge.subscriber_count,
            )
        return response

    async def _handle_check_backend(self, request: web.Request) -> web.Response:
        return await self._invoke("checkBackend", request)

    async def _handle_permission_modes(self, request: web.Request) -> web.Response:
        return await self._invoke("getPermissionModes", request)

    async def _handle_list_sessions(self, request: web.Request) -> web.Response:
        try:
            sessions = await self._commands.dispatch("listActive")
        except SessionError as exc:
            return self._error_response(exc)
        return web.json_response({"sessions": sessions})

    async def _handle_start_session(self, request: web.Request) -> web.Response:
        return await self._invoke("start", request, status=201)

    async def _handle_get_session(self, request: web.Request) -> web.Response:
        return await self._invoke("getSession", request, {"sessionId": request.match_info["id"]})

    async def _handle_dispose_session(self, request: web.Request) -> web.Response:
        return await self._invoke("dispose", request, {"sessionId": request.match_info["id"]})

    async def _handle_send_message(self, request: web.Request) -> web.Response:
        return await self._invoke(
            "sendMessage", request, {"sessionId": request.match_info["id"]}, status=202,
        )

    async def _handle_stop_session(self, request: web.Request) -> web.Response:
        return await self._invoke("stop", request, {"sessionId": request.match_info["id"]})

    async def _handle_resume_session(self, request: web.Request) -> web.Response:
        return await self._invoke("resume", request, {"sessionId": request.match_info["id"]})

    async def _handle_set_permission_mode(self, request: web.Request) -> web.Response:
        return await self._invoke(
            "setPermissionMode", request, {"sessionId": request.match_info["id"]},
        )

    async def _handle_query_once(self, request: web.Request) -> web.Response:
        return await self._invoke("queryOnce", request)

    async def _handle_list_project_sessions(self, request: web.Request) -> web.Response:
        return await self._invoke(
            "listProjectSessions", request,
            {"projectPath": request.query.get("project_path", "")},
        )

    async def _handle_get_session_history(self, request: web.Request) -> web.Response:
        return await self._invoke(
            "getSessionHistory", request,
            {
                "projectPath": request.query.get("project_path", ""),
                "sessionId": request.match_info["id"],
            },
        )

    async def _handle_command(self, request: web.Request) -> web.Response:
        """Generic IPC entry point: POST /commands/<operation> with a JSON payload."""
        return await self._invoke(request.match_info["operation"], request)
