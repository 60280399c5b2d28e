"""Core data models for sessions, permission requests, and verdicts."""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


def utc_timestamp() -> str:
    """ISO-8601 UTC timestamp with millisecond precision."""
    now = datetime.now(timezone.utc)
    return now.isoformat(timespec="milliseconds").replace("+00:00", "Z")


class SessionState(str, Enum):
    STARTING = "starting"
    RUNNING = "running"
    CLOSED = "closed"
    ERRORED = "errored"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionState.CLOSED, SessionState.ERRORED)


class PermissionStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"


class DecisionAction(str, Enum):
    APPROVE = "approve"
    DENY = "deny"


@dataclass
class AgentOptions:
    """Per-session knobs forwarded to the agent command line."""
    model: str | None = None
    allowed_tools: list[str] = field(default_factory=list)
    disallowed_tools: list[str] = field(default_factory=list)
    system_prompt: str | None = None
    # Agent-side conversation id to continue (``--resume``).
    resume_session_id: str | None = None


@dataclass
class SessionDescriptor:
    """Snapshot of one session, safe to hand out to API callers."""
    session_id: str
    state: SessionState
    working_directory: str = ""
    pid: int | None = None
    started_at: str = ""
    exit_code: int | None = None
    agent_session_id: str | None = None
    # The agent's opening system/init message, once seen.
    system_init: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "sessionId": self.session_id,
            "state": self.state.value,
            "workingDirectory": self.working_directory,
            "pid": self.pid,
            "startedAt": self.started_at,
        }
        if self.exit_code is not None:
            d["exitCode"] = self.exit_code
        if self.agent_session_id:
            d["agentSessionId"] = self.agent_session_id
        if self.system_init is not None:
            d["systemInit"] = self.system_init
        return d


@dataclass
class PermissionRequest:
    """One approval decision, pending or resolved.

    ``status`` only ever moves out of ``pending`` once. ``sealed`` is set
    when the approval bridge has already answered the agent without a
    human decision (timeout or session cancellation); a sealed request
    keeps its ``pending`` status for audit but accepts no decision.
    """
    tool_name: str
    tool_input: Any
    session_id: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: PermissionStatus = PermissionStatus.PENDING
    created_at: str = field(default_factory=utc_timestamp)
    modified_input: Any = None
    deny_reason: str | None = None
    decided_at: str | None = None
    sealed: bool = False

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "id": self.id,
            "sessionId": self.session_id,
            "streamingId": self.session_id,
            "toolName": self.tool_name,
            "toolInput": self.tool_input,
            "status": self.status.value,
            "createdAt": self.created_at,
            "timestamp": self.created_at,
            "verdictDelivered": self.sealed,
        }
        if self.modified_input is not None:
            d["modifiedInput"] = self.modified_input
        if self.deny_reason is not None:
            d["denyReason"] = self.deny_reason
        if self.decided_at is not None:
            d["decidedAt"] = self.decided_at
        return d


@dataclass
class ApprovalVerdict:
    """Answer returned to the agent for one intercepted tool call."""
    behavior: str  # "allow" or "deny"
    updated_input: Any = None
    message: str | None = None
    request_id: str | None = None
    timed_out: bool = False

    @property
    def allowed(self) -> bool:
        return self.behavior == "allow"

    @classmethod
    def allow(cls, updated_input: Any, request_id: str | None = None) -> ApprovalVerdict:
        return cls(behavior="allow", updated_input=updated_input, request_id=request_id)

    @classmethod
    def deny(
        cls,
        message: str,
        request_id: str | None = None,
        timed_out: bool = False,
    ) -> ApprovalVerdict:
        return cls(
            behavior="deny", message=message,
            request_id=request_id, timed_out=timed_out,
        )

    def to_dict(self) -> dict[str, Any]:
        """Wire shape the agent's permission-prompt tool expects."""
        if self.allowed:
            return {"behavior": "allow", "updatedInput": self.updated_input}
        return {"behavior": "deny", "message": self.message or "Permission denied"}
