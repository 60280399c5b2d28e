"""HTTP + NDJSON streaming server for gatehouse.

Thin aiohttp surface over the SessionOrchestrator: start and stop
agent sessions, stream a session's events, relay approval calls from
the agent's MCP proxy, and record human decisions.

Routes:
    GET  /health
    GET  /api/sessions                       active sessions
    POST /api/sessions                       start a session
    POST /api/sessions/{id}/stop
    GET  /api/stream/{id}                    one JSON event per line
    POST /api/permissions/approval           used by the approval proxy
    GET  /api/permissions                    ?sessionId=&status=
    POST /api/permissions/{id}/decision      {"action": "approve"|"deny", ...}

Usage:
    gatehouse [--host HOST] [--port PORT] [--config FILE]
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

from gatehouse.adapters.orchestrator import SessionOrchestrator
from gatehouse.engine.config import GatehouseConfig
from gatehouse.engine.errors import GatehouseError
from gatehouse.engine.models import AgentOptions, PermissionStatus

logger = logging.getLogger(__name__)

# Longest an idle stream goes before checking whether its client left.
DISCONNECT_CHECK_SECONDS = 1.0


def _error(code: str, message: str, status: int) -> web.Response:
    return web.json_response({"error": {"code": code, "message": message}}, status=status)


class RequestError(Exception):
    """Malformed request body or query; answered with a 400."""

    def __init__(self, code: str, message: str) -> None:
        self.code = code
        self.message = message
        super().__init__(message)


class GatehouseServer:
    """aiohttp application wrapping one SessionOrchestrator."""

    def __init__(
        self,
        config: GatehouseConfig | None = None,
        orchestrator: SessionOrchestrator | None = None,
    ) -> None:
        self._config = config or GatehouseConfig()
        self._orchestrator = orchestrator or SessionOrchestrator(self._config)
        self._started_at = time.time()
        middlewares = [self._error_middleware]
        if self._config.log_requests:
            middlewares.insert(0, self._request_logging_middleware)
        self._app = web.Application(middlewares=middlewares)
        self._setup_routes()
        logger.info(
            "GatehouseServer init host=%s port=%s agent=%s pid=%s",
            self._config.host, self._config.port,
            self._config.agent_command, os.getpid(),
        )

    @property
    def app(self) -> web.Application:
        return self._app

    @property
    def orchestrator(self) -> SessionOrchestrator:
        return self._orchestrator

    # ── Middleware ──

    @web.middleware
    async def _request_logging_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        req_id = request.headers.get("x-gatehouse-request-id", str(uuid.uuid4())[:8])
        request["req_id"] = req_id
        start = time.monotonic()
        logger.info("HTTP %s %s req=%s from=%s", request.method, request.path_qs, req_id, request.remote)
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
            logger.exception("HTTP %s %s req=%s failed duration_ms=%.1f", request.method, request.path_qs, req_id, elapsed_ms)
            raise

    @web.middleware
    async def _error_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        try:
            return await handler(request)
        except RequestError as exc:
            return _error(exc.code, exc.message, 400)
        except GatehouseError as exc:
            logger.info("HTTP %s %s -> %s: %s", request.method, request.path, exc.code, exc)
            return _error(exc.code, str(exc), exc.status)

    # ── Route setup ──

    def _setup_routes(self) -> None:
        r = self._app.router
        r.add_get("/health", self._handle_health)
        r.add_get("/api/sessions", self._handle_list_sessions)
        r.add_post("/api/sessions", self._handle_start_session)
        r.add_post("/api/sessions/{id}/stop", self._handle_stop_session)
        r.add_get("/api/stream/{id}", self._handle_stream)
        r.add_post("/api/permissions/approval", self._handle_approval)
        r.add_get("/api/permissions", self._handle_list_permissions)
        r.add_post("/api/permissions/{id}/decision", self._handle_decision)

    # ── Lifecycle ──

    async def start(self) -> None:
        """Start the server, print the port to stdout, run until cancelled."""
        runner = web.AppRunner(self._app)
        await runner.setup()
        site = web.TCPSite(runner, self._config.host, self._config.port)
        await site.start()

        actual_port = self._resolve_port(site, runner)
        if actual_port is None:
            raise RuntimeError("gatehouse started but no listening socket was reported.")
        # The approval proxy is pointed at the real port
        self._config.port = actual_port
        await self._orchestrator.start()

        sys.stdout.write(json.dumps({"port": actual_port}) + "\n")
        sys.stdout.flush()
        logger.info("gatehouse listening on %s:%d", self._config.host, actual_port)

        try:
            await asyncio.Event().wait()
        except (KeyboardInterrupt, asyncio.CancelledError):
            logger.info("Server shutting down")
        finally:
            await self._orchestrator.shutdown()
            await runner.cleanup()

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
    async def _read_json(request: web.Request) -> dict[str, Any]:
        try:
            body = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise RequestError("INVALID_JSON", f"Request body is not valid JSON: {exc}") from exc
        if not isinstance(body, dict):
            raise RequestError("INVALID_JSON", "Request body must be a JSON object")
        return body

    @staticmethod
    def _str_list(body: dict[str, Any], key: str) -> list[str]:
        value = body.get(key) or []
        if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
            raise RequestError("INVALID_FIELD", f"{key} must be a list of strings")
        return value

    # ── Handlers ──

    async def _handle_health(self, request: web.Request) -> web.Response:
        payload = self._orchestrator.health()
        payload.update({
            "pid": os.getpid(),
            "uptime_seconds": round(max(0.0, time.time() - self._started_at), 3),
        })
        return web.json_response(payload)

    async def _handle_list_sessions(self, request: web.Request) -> web.Response:
        sessions = self._orchestrator.get_active_sessions()
        return web.json_response({"sessions": [s.to_dict() for s in sessions]})

    async def _handle_start_session(self, request: web.Request) -> web.Response:
        body = await self._read_json(request)
        working_directory = body.get("workingDirectory")
        initial_prompt = body.get("initialPrompt")
        if not isinstance(working_directory, str) or not working_directory:
            raise RequestError("MISSING_WORKING_DIRECTORY", "workingDirectory is required")
        if not isinstance(initial_prompt, str) or not initial_prompt:
            raise RequestError("MISSING_PROMPT", "initialPrompt is required")
        env = body.get("env") or {}
        if not isinstance(env, dict):
            raise RequestError("INVALID_FIELD", "env must be an object")
        session_id = body.get("sessionId")
        if session_id is not None and (not isinstance(session_id, str) or not session_id):
            raise RequestError("INVALID_FIELD", "sessionId must be a non-empty string")
        resume_id = body.get("resumeSessionId")
        if resume_id is not None and (not isinstance(resume_id, str) or not resume_id):
            raise RequestError("INVALID_FIELD", "resumeSessionId must be a non-empty string")

        options = AgentOptions(
            model=body.get("model") or None,
            allowed_tools=self._str_list(body, "allowedTools"),
            disallowed_tools=self._str_list(body, "disallowedTools"),
            system_prompt=body.get("systemPrompt") or None,
            resume_session_id=resume_id,
        )
        descriptor = await self._orchestrator.start_session(
            working_directory,
            initial_prompt,
            session_id=session_id,
            env_overrides={str(k): str(v) for k, v in env.items()},
            options=options,
        )
        payload = descriptor.to_dict()
        payload["streamingId"] = descriptor.session_id
        payload["streamUrl"] = f"/api/stream/{descriptor.session_id}"
        return web.json_response(payload, status=201)

    async def _handle_stop_session(self, request: web.Request) -> web.Response:
        session_id = request.match_info["id"]
        stopped = await self._orchestrator.stop_session(session_id)
        return web.json_response({"success": stopped, "sessionId": session_id})

    async def _handle_stream(self, request: web.Request) -> web.StreamResponse:
        session_id = request.match_info["id"]
        channel = self._orchestrator.subscribe(session_id)
        response = web.StreamResponse(
            status=200,
            headers={
                "Content-Type": "application/x-ndjson",
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",
            },
        )
        heartbeat = self._config.heartbeat_interval_seconds
        # Short waits so a dropped client is noticed between heartbeats
        check = min(heartbeat, DISCONNECT_CHECK_SECONDS) if heartbeat > 0 else DISCONNECT_CHECK_SECONDS
        req_id = request.get("req_id", "unknown")
        logger.info("Stream client %s connected to session %s req=%s",
                    channel.channel_id, session_id[:12], req_id)
        try:
            await response.prepare(request)
            idle = 0.0
            while True:
                transport = request.transport
                if transport is None or transport.is_closing():
                    logger.info("Stream client %s disconnected (session %s)",
                                channel.channel_id, session_id[:12])
                    break
                try:
                    event = await channel.get(timeout=check)
                except asyncio.TimeoutError:
                    idle += check
                    if heartbeat > 0 and idle >= heartbeat:
                        # Bare newline keeps proxies from closing an idle stream
                        await response.write(b"\n")
                        idle = 0.0
                    continue
                if event is None:
                    break
                idle = 0.0
                await response.write(json.dumps(event.to_dict()).encode("utf-8") + b"\n")
        except ConnectionResetError:
            logger.info("Stream client %s went away (session %s)",
                        channel.channel_id, session_id[:12])
        finally:
            self._orchestrator.unsubscribe(session_id, channel)
        return response

    async def _handle_approval(self, request: web.Request) -> web.Response:
        body = await self._read_json(request)
        session_id = body.get("sessionId") or body.get("streamingId")
        if not isinstance(session_id, str) or not session_id:
            raise RequestError("MISSING_SESSION_ID", "sessionId is required")
        verdict = await self._orchestrator.request_approval(
            session_id, body.get("toolName", ""), body.get("toolInput"),
        )
        payload = verdict.to_dict()
        if verdict.request_id:
            payload["requestId"] = verdict.request_id
        if verdict.timed_out:
            payload["timedOut"] = True
        return web.json_response(payload)

    async def _handle_list_permissions(self, request: web.Request) -> web.Response:
        session_id = request.query.get("sessionId") or request.query.get("streamingId") or None
        status = request.query.get("status") or None
        if status is not None:
            try:
                status = PermissionStatus(status)
            except ValueError:
                raise RequestError(
                    "INVALID_STATUS", "status must be one of: pending, approved, denied",
                ) from None
        records = self._orchestrator.list_permissions(session_id=session_id, status=status)
        return web.json_response({"permissions": [r.to_dict() for r in records]})

    async def _handle_decision(self, request: web.Request) -> web.Response:
        request_id = request.match_info["id"]
        body = await self._read_json(request)
        deny_reason = body.get("denyReason")
        if deny_reason is not None and not isinstance(deny_reason, str):
            raise RequestError("INVALID_FIELD", "denyReason must be a string")
        record = self._orchestrator.decide(
            request_id,
            body.get("action"),
            modified_input=body.get("modifiedInput"),
            deny_reason=deny_reason,
        )
        return web.json_response({"success": True, "permission": record.to_dict()})
