"""Glue between the agent supervisor, approval bridge and broadcaster.

Each started session gets its own EventBus wired to the supervisor's
event callback and one consumer task that turns supervisor
notifications into stream events:

    agent_output   -> agent-message
    process_failed -> cancel pending approvals, error
    process_closed -> cancel pending approvals, closed, close observers,
                      release the session

Permission requests recorded by the bridge are broadcast as
``permission-request`` events through the bridge's request callback.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any

from gatehouse.adapters.broadcaster import EventBroadcaster, ObserverChannel
from gatehouse.adapters.event_bus import EventBus
from gatehouse.adapters.events import (
    AgentMessage,
    AgentOutput,
    PermissionPrompt,
    ProcessClosed,
    ProcessFailed,
    SessionClosed,
    SessionError,
    SupervisorEvent,
)
from gatehouse.engine.config import GatehouseConfig
from gatehouse.engine.errors import SessionNotFoundError, SpawnError
from gatehouse.engine.mcp_config import McpConfigGenerator
from gatehouse.engine.mcp_server.approval_bridge import ApprovalBridge
from gatehouse.engine.models import (
    AgentOptions,
    ApprovalVerdict,
    PermissionRequest,
    PermissionStatus,
    SessionDescriptor,
)
from gatehouse.engine.permission_ledger import PermissionLedger
from gatehouse.engine.supervisor import AgentSupervisor

logger = logging.getLogger(__name__)


class SessionOrchestrator:
    """Owns the per-process stores and wires them together."""

    def __init__(
        self,
        config: GatehouseConfig | None = None,
        *,
        supervisor: AgentSupervisor | None = None,
        broadcaster: EventBroadcaster | None = None,
        ledger: PermissionLedger | None = None,
        bridge: ApprovalBridge | None = None,
        mcp_config: McpConfigGenerator | None = None,
    ) -> None:
        self.config = config or GatehouseConfig()
        self.supervisor = supervisor or AgentSupervisor(self.config)
        self.broadcaster = broadcaster or EventBroadcaster(self.config.observer_queue_size)
        self.ledger = ledger or PermissionLedger()
        self.bridge = bridge or ApprovalBridge(
            self.ledger,
            timeout_seconds=self.config.permission_timeout_seconds,
            poll_interval_seconds=self.config.permission_poll_interval_seconds,
        )
        self.bridge.set_request_callback(self._on_permission_request)
        self.mcp_config = mcp_config
        self._consumers: dict[str, asyncio.Task] = {}

    async def start(self) -> None:
        """Write the agent's MCP config so sessions get the approval gate."""
        if self.mcp_config is None:
            self.mcp_config = McpConfigGenerator(
                self.config.mcp_server_name, self.config.server_url,
            )
        path = self.mcp_config.generate()
        self.supervisor.set_mcp_config_path(path)

    async def shutdown(self) -> None:
        """Stop all agents, flush their final events, close every observer."""
        await self.supervisor.shutdown()
        consumers = list(self._consumers.values())
        if consumers:
            _, pending = await asyncio.wait(consumers, timeout=5.0)
            for task in pending:
                task.cancel()
        self.broadcaster.close_all()
        if self.mcp_config is not None:
            self.mcp_config.cleanup()
        logger.info("Session orchestrator shut down")

    # ── Sessions ──────────────────────────────────────────────────

    async def start_session(
        self,
        working_directory: str,
        initial_prompt: str,
        *,
        session_id: str | None = None,
        env_overrides: dict[str, str] | None = None,
        options: AgentOptions | None = None,
    ) -> SessionDescriptor:
        """Spawn an agent and start forwarding its events.

        Raises SpawnError (AgentInitError when the agent fails to
        initialise; its closing events are still delivered).
        """
        session_id = session_id or str(uuid.uuid4())
        if self.supervisor.is_active(session_id) or session_id in self._consumers:
            raise SpawnError(session_id, "session is already active")
        self.bridge.forget_session(session_id)
        bus = EventBus()
        # The consumer runs before start() returns so output that arrives
        # while waiting for the agent's init line is forwarded in order.
        self._consumers[session_id] = asyncio.create_task(
            self._consume_session_events(session_id, bus),
            name=f"session-consumer-{session_id[:12]}",
        )
        try:
            return await self.supervisor.start(
                session_id,
                working_directory,
                initial_prompt,
                env_overrides=env_overrides,
                options=options,
                event_callback=bus.make_callback(),
            )
        except Exception:
            # Everything the process emitted is already queued.
            bus.close()
            raise

    async def stop_session(self, session_id: str) -> bool:
        if not self.supervisor.is_active(session_id):
            raise SessionNotFoundError(session_id)
        return await self.supervisor.stop(session_id)

    def get_active_sessions(self) -> list[SessionDescriptor]:
        return self.supervisor.get_active_sessions()

    async def wait_closed(self, session_id: str) -> None:
        """Wait until a session's final events have been delivered."""
        task = self._consumers.get(session_id)
        if task is not None:
            await asyncio.shield(task)

    # ── Observers ─────────────────────────────────────────────────

    def subscribe(self, session_id: str) -> ObserverChannel:
        """Register a new observer on an active session."""
        if not self.supervisor.is_active(session_id):
            raise SessionNotFoundError(session_id)
        return self.broadcaster.subscribe(session_id)

    def unsubscribe(self, session_id: str, channel: ObserverChannel) -> None:
        self.broadcaster.remove_observer(session_id, channel)

    # ── Permissions ───────────────────────────────────────────────

    async def request_approval(
        self,
        session_id: str,
        tool_name: str,
        tool_input: Any,
    ) -> ApprovalVerdict:
        """Entry point for the agent's approval proxy."""
        if not self.supervisor.is_active(session_id):
            logger.warning(
                "Approval for %s requested by unknown session %s, denying",
                tool_name, session_id[:12],
            )
            return ApprovalVerdict.deny(f"Session {session_id} is not active")
        return await self.bridge.request_approval(session_id, tool_name, tool_input)

    def decide(
        self,
        request_id: str,
        action: str,
        modified_input: Any = None,
        deny_reason: str | None = None,
    ) -> PermissionRequest:
        return self.ledger.decide(
            request_id, action,
            modified_input=modified_input, deny_reason=deny_reason,
        )

    def list_permissions(
        self,
        session_id: str | None = None,
        status: PermissionStatus | str | None = None,
    ) -> list[PermissionRequest]:
        return self.ledger.get_permission_requests(session_id=session_id, status=status)

    async def _on_permission_request(self, record: PermissionRequest) -> None:
        self.broadcaster.broadcast(
            record.session_id,
            PermissionPrompt(session_id=record.session_id, request=record.to_dict()),
        )

    # ── Event consumption ─────────────────────────────────────────

    async def _consume_session_events(self, session_id: str, bus: EventBus) -> None:
        """Drain one session's bus until the process has closed."""
        try:
            async for event in bus.consume():
                try:
                    finished = self._dispatch(event)
                except Exception:
                    logger.exception(
                        "Error dispatching %s for session %s",
                        event.event_type, session_id[:12],
                    )
                    continue
                if finished:
                    break
        finally:
            bus.close()
            self._consumers.pop(session_id, None)
            logger.debug("Consumer for session %s finished", session_id[:12])

    def _dispatch(self, event: SupervisorEvent) -> bool:
        """Forward one notification. True once the session is over."""
        sid = event.session_id
        if isinstance(event, AgentOutput):
            self.broadcaster.broadcast(sid, AgentMessage(session_id=sid, message=event.message))
            return False

        if isinstance(event, ProcessFailed):
            self.bridge.cancel_session(sid)
            self.broadcaster.broadcast(sid, SessionError(
                session_id=sid,
                error=event.error,
                exit_code=event.exit_code,
                stderr_tail=event.stderr_tail,
            ))
            return False

        if isinstance(event, ProcessClosed):
            self.bridge.cancel_session(sid)
            self.broadcaster.broadcast(sid, SessionClosed(
                session_id=sid, exit_code=event.exit_code, state=event.state,
            ))
            self.broadcaster.close_session(sid)
            self.supervisor.release(sid)
            # Inactive sessions are refused before reaching the bridge.
            self.bridge.forget_session(sid)
            return True

        logger.warning("Unhandled supervisor event %r for session %s", event.event_type, sid[:12])
        return False

    def health(self) -> dict[str, Any]:
        return {
            "status": "ok",
            "activeSessions": len(self.supervisor.get_active_sessions()),
            "observers": self.broadcaster.get_total_observer_count(),
            "pendingPermissions": self.ledger.pending_count(),
            "agentAvailable": self.supervisor.cli.is_available(),
        }
