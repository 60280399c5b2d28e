"""Session engine: agent supervision, permission ledger, approval bridge."""
from .config import GatehouseConfig
from .errors import (
    ApprovalTimeout,
    ConfigError,
    DecisionConflictError,
    GatehouseError,
    InvalidActionError,
    InvalidToolNameError,
    InvalidTransitionError,
    MalformedEventError,
    ProcessRuntimeError,
    RequestNotFoundError,
    SessionNotFoundError,
    SpawnError,
)
from .models import (
    AgentOptions,
    ApprovalVerdict,
    DecisionAction,
    PermissionRequest,
    PermissionStatus,
    SessionDescriptor,
    SessionState,
)
from .permission_ledger import PermissionLedger
from .supervisor import AgentSupervisor

__all__ = [
    "AgentOptions",
    "AgentSupervisor",
    "ApprovalTimeout",
    "ApprovalVerdict",
    "ConfigError",
    "DecisionAction",
    "DecisionConflictError",
    "GatehouseConfig",
    "GatehouseError",
    "InvalidActionError",
    "InvalidToolNameError",
    "InvalidTransitionError",
    "MalformedEventError",
    "PermissionLedger",
    "PermissionRequest",
    "PermissionStatus",
    "ProcessRuntimeError",
    "RequestNotFoundError",
    "SessionDescriptor",
    "SessionNotFoundError",
    "SessionState",
    "SpawnError",
]
