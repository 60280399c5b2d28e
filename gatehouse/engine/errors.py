"""Exception hierarchy for the session bridge.

Specific exceptions for each failure mode. Every class carries a
stable ``code`` and the HTTP ``status`` the web layer answers with,
so API callers see the same taxonomy the engine raises.
"""
from __future__ import annotations


class GatehouseError(Exception):
    """Base exception for all gatehouse errors."""

    code = "INTERNAL_ERROR"
    status = 500


class SpawnError(GatehouseError):
    """The agent executable could not be launched for a session."""

    code = "SPAWN_FAILED"
    status = 500

    def __init__(self, session_id: str, reason: str):
        self.session_id = session_id
        self.reason = reason
        super().__init__(f"Failed to start session {session_id}: {reason}")


class AgentInitError(SpawnError):
    """The agent was launched but did not open with a system/init message.

    ``code`` is one of SYSTEM_INIT_TIMEOUT, PROCESS_EXITED_EARLY or
    INVALID_SYSTEM_INIT.
    """

    code = "SYSTEM_INIT_FAILED"

    def __init__(self, session_id: str, reason: str, code: str | None = None):
        super().__init__(session_id, reason)
        if code:
            self.code = code


class ProcessRuntimeError(GatehouseError):
    """The agent process crashed or exited with an error after starting."""

    code = "PROCESS_FAILED"

    def __init__(
        self,
        session_id: str,
        exit_code: int | None,
        detail: str = "",
    ):
        self.session_id = session_id
        self.exit_code = exit_code
        self.detail = detail
        if exit_code is not None and exit_code < 0:
            how = f"killed by signal {-exit_code}"
        else:
            how = f"exited with code {exit_code}"
        message = f"Agent process for session {session_id} {how}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class MalformedEventError(GatehouseError):
    """One line of agent output could not be parsed into an event."""

    code = "MALFORMED_EVENT"
    status = 422

    def __init__(self, line: str, reason: str):
        self.line = line
        self.reason = reason
        preview = line if len(line) <= 120 else line[:117] + "..."
        super().__init__(f"Malformed agent output ({reason}): {preview!r}")


class SessionNotFoundError(GatehouseError):
    """No active session with the given id."""

    code = "SESSION_NOT_FOUND"
    status = 404

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session not found: {session_id}")


class InvalidToolNameError(GatehouseError):
    """A permission request was made without a tool name."""

    code = "MISSING_TOOL_NAME"
    status = 400

    def __init__(self, tool_name: object = ""):
        self.tool_name = tool_name
        super().__init__("toolName is required")


class RequestNotFoundError(GatehouseError):
    """No permission request with the given id."""

    code = "PERMISSION_NOT_FOUND"
    status = 404

    def __init__(self, request_id: str):
        self.request_id = request_id
        super().__init__(f"Permission request not found: {request_id}")


class InvalidActionError(GatehouseError):
    """A decision carried an action other than approve or deny."""

    code = "INVALID_ACTION"
    status = 400

    def __init__(self, action: object):
        self.action = action
        super().__init__(
            f"Action must be either 'approve' or 'deny', got {action!r}"
        )


class DecisionConflictError(GatehouseError):
    """A decision arrived for a request that can no longer change."""

    code = "DECISION_CONFLICT"
    status = 409

    def __init__(self, request_id: str, reason: str):
        self.request_id = request_id
        self.reason = reason
        super().__init__(
            f"Permission request {request_id} cannot be decided: {reason}"
        )


class ApprovalTimeout(GatehouseError):
    """No decision arrived before the approval wait expired."""

    code = "APPROVAL_TIMEOUT"
    status = 408

    def __init__(self, request_id: str, tool_name: str, timeout_seconds: float):
        self.request_id = request_id
        self.tool_name = tool_name
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Permission request {request_id} for '{tool_name}' "
            f"timed out after {timeout_seconds:g}s"
        )


class InvalidTransitionError(GatehouseError):
    """A session lifecycle transition that the state machine forbids."""

    code = "INVALID_TRANSITION"
    status = 409

    def __init__(self, current: str, target: str, allowed: list[str]):
        self.current = current
        self.target = target
        self.allowed = allowed
        allowed_str = ", ".join(allowed) or "none (terminal)"
        super().__init__(
            f"Invalid state transition: {current} -> {target}. "
            f"Allowed from {current}: {allowed_str}"
        )


class ConfigError(GatehouseError):
    """The configuration file is present but unusable."""

    code = "CONFIG_ERROR"

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Invalid configuration in {path}: {reason}")
