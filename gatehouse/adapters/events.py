"""Event types flowing from the supervisor to stream observers.

Two families live here:

- Supervisor notifications (``SupervisorEvent``), parsed from the dicts
  the supervisor fires per session. Internal only.
- Stream events (``StreamEvent``), the closed set of records observers
  receive, serialized as ``{type, sessionId, timestamp, data}``.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from gatehouse.engine.models import utc_timestamp


# ── Supervisor notifications ──────────────────────────────────────

@dataclass
class SupervisorEvent:
    """Base notification from the agent supervisor."""
    event_type: str = ""
    session_id: str = ""


@dataclass
class AgentOutput(SupervisorEvent):
    event_type: str = "agent_output"
    message: dict[str, Any] = field(default_factory=dict)


@dataclass
class ProcessFailed(SupervisorEvent):
    event_type: str = "process_failed"
    error: str = ""
    exit_code: int | None = None
    stderr_tail: str = ""


@dataclass
class ProcessClosed(SupervisorEvent):
    event_type: str = "process_closed"
    exit_code: int | None = None
    state: str = ""


_EVENT_MAP: dict[str, type[SupervisorEvent]] = {
    "agent_output": AgentOutput,
    "process_failed": ProcessFailed,
    "process_closed": ProcessClosed,
}


def dict_to_event(data: dict[str, Any]) -> SupervisorEvent:
    """Convert a supervisor notification dict to a typed dataclass."""
    event_type = data.get("event", "")
    cls = _EVENT_MAP.get(event_type, SupervisorEvent)
    # Filter dict keys to only those the dataclass accepts
    valid_fields = {f.name for f in cls.__dataclass_fields__.values()}
    filtered = {k: v for k, v in data.items() if k in valid_fields}
    if "event" in data and "event_type" not in filtered:
        filtered["event_type"] = data["event"]
    return cls(**filtered)


# ── Stream events ─────────────────────────────────────────────────

@dataclass(frozen=True)
class StreamEvent:
    """Immutable record delivered to every observer of a session."""
    event_type: str = ""
    session_id: str = ""
    timestamp: str = field(default_factory=utc_timestamp)

    @property
    def data(self) -> Any:
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.event_type,
            "sessionId": self.session_id,
            "timestamp": self.timestamp,
            "data": self.data,
        }


@dataclass(frozen=True)
class AgentMessage(StreamEvent):
    """One structured line of agent output."""
    event_type: str = "agent-message"
    message: dict[str, Any] = field(default_factory=dict)

    @property
    def data(self) -> dict[str, Any]:
        return self.message


@dataclass(frozen=True)
class SessionClosed(StreamEvent):
    """The agent process exited; no further events follow."""
    event_type: str = "closed"
    exit_code: int | None = None
    state: str = "closed"

    @property
    def data(self) -> dict[str, Any]:
        return {"exitCode": self.exit_code, "state": self.state}


@dataclass(frozen=True)
class SessionError(StreamEvent):
    """The agent process failed."""
    event_type: str = "error"
    error: str = ""
    exit_code: int | None = None
    stderr_tail: str = ""

    @property
    def data(self) -> dict[str, Any]:
        d: dict[str, Any] = {"error": self.error, "exitCode": self.exit_code}
        if self.stderr_tail:
            d["stderr"] = self.stderr_tail
        return d


@dataclass(frozen=True)
class PermissionPrompt(StreamEvent):
    """A tool call is waiting for a human decision."""
    event_type: str = "permission-request"
    request: dict[str, Any] = field(default_factory=dict)

    @property
    def data(self) -> dict[str, Any]:
        return self.request
