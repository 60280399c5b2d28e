"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via GATEHOUSE_* env vars,
or with a YAML file (see yaml_config.py); CLI flags win over both.
"""
from __future__ import annotations

import logging
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)


# Async callback receiving supervisor notifications for one session.
# Receives dicts like {"event": "agent_output", "session_id": "...", ...}
EventCallback = Callable[[dict[str, Any]], Awaitable[None]]

# Async callback invoked once a permission request has been recorded,
# before the approval bridge starts waiting on it.
# Signature: async def callback(request: PermissionRequest) -> None
ApprovalRequestCallback = Callable[[Any], Awaitable[None]]


async def fire_callback(
    callback: Callable[..., Awaitable[None]] | None,
    *args: Any,
) -> None:
    """Fire a callback if set; errors are logged, never propagated."""
    if callback is None:
        return
    try:
        await callback(*args)
    except Exception:
        logger.exception("Callback %r failed", callback)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.lower() in {"1", "true", "yes"}


@dataclass
class GatehouseConfig:
    """Session bridge configuration."""

    # HTTP surface
    host: str = "127.0.0.1"
    port: int = 3001
    # URL the approval proxy uses to reach this server. Derived from
    # host/port when unset.
    public_url: str | None = None

    # Agent process
    agent_command: str = "claude"
    default_model: str | None = None
    # Extra variables merged into every agent process environment,
    # below per-session overrides.
    agent_env: dict[str, str] = field(default_factory=dict)
    # Seconds between SIGTERM and SIGKILL when stopping a session.
    stop_grace_seconds: float = 5.0
    # Output lines longer than this are dropped as malformed.
    max_line_bytes: int = 10 * 1024 * 1024
    read_chunk_size: int = 64 * 1024
    # How much of the agent's stderr is kept for error reports.
    stderr_tail_bytes: int = 8 * 1024
    # Hold session start until the agent's system/init line arrives,
    # so the caller learns the agent session id, model and tools.
    wait_for_init: bool = True
    init_timeout_seconds: float = 15.0

    # Permission gate
    # Max wait for a human decision before the bridge denies.
    # Set to 0 (or a negative value) to wait until the session ends.
    permission_timeout_seconds: float = 60.0
    permission_poll_interval_seconds: float = 0.25
    mcp_server_name: str = "gatehouse-permissions"

    # Streams
    observer_queue_size: int = 1000
    heartbeat_interval_seconds: float = 30.0

    # Logging
    log_level: str = "INFO"
    log_requests: bool = True

    @property
    def server_url(self) -> str:
        if self.public_url:
            return self.public_url.rstrip("/")
        host = "127.0.0.1" if self.host in ("0.0.0.0", "::", "") else self.host
        return f"http://{host}:{self.port}"

    @property
    def approval_tool_name(self) -> str:
        """Fully qualified MCP tool name the agent is told to call."""
        return f"mcp__{self.mcp_server_name}__approval_prompt"

    @classmethod
    def from_env(cls) -> GatehouseConfig:
        """Load configuration from GATEHOUSE_* environment variables."""
        gh_vars = {
            k: v for k, v in os.environ.items() if k.startswith("GATEHOUSE_")
        }
        if gh_vars:
            logger.info(
                "GatehouseConfig.from_env: GATEHOUSE_* env overrides: %s",
                ", ".join(f"{k}={v}" for k, v in sorted(gh_vars.items())),
            )
        else:
            logger.debug("GatehouseConfig.from_env: no GATEHOUSE_* env vars set, using defaults")
        config = cls(
            host=os.getenv("GATEHOUSE_HOST", cls.host),
            port=int(os.getenv("GATEHOUSE_PORT", str(cls.port))),
            public_url=os.getenv("GATEHOUSE_PUBLIC_URL") or None,
            agent_command=os.getenv(
                "GATEHOUSE_AGENT_COMMAND", cls.agent_command
            ),
            default_model=os.getenv("GATEHOUSE_DEFAULT_MODEL") or None,
            stop_grace_seconds=float(os.getenv(
                "GATEHOUSE_STOP_GRACE", str(cls.stop_grace_seconds)
            )),
            max_line_bytes=int(os.getenv(
                "GATEHOUSE_MAX_LINE_BYTES", str(cls.max_line_bytes)
            )),
            stderr_tail_bytes=int(os.getenv(
                "GATEHOUSE_STDERR_TAIL_BYTES", str(cls.stderr_tail_bytes)
            )),
            wait_for_init=_env_bool("GATEHOUSE_WAIT_FOR_INIT", cls.wait_for_init),
            init_timeout_seconds=float(os.getenv(
                "GATEHOUSE_INIT_TIMEOUT", str(cls.init_timeout_seconds)
            )),
            permission_timeout_seconds=float(os.getenv(
                "GATEHOUSE_PERMISSION_TIMEOUT",
                str(cls.permission_timeout_seconds),
            )),
            permission_poll_interval_seconds=float(os.getenv(
                "GATEHOUSE_PERMISSION_POLL_INTERVAL",
                str(cls.permission_poll_interval_seconds),
            )),
            observer_queue_size=int(os.getenv(
                "GATEHOUSE_OBSERVER_QUEUE_SIZE", str(cls.observer_queue_size)
            )),
            heartbeat_interval_seconds=float(os.getenv(
                "GATEHOUSE_HEARTBEAT_INTERVAL",
                str(cls.heartbeat_interval_seconds),
            )),
            log_level=os.getenv("GATEHOUSE_LOG_LEVEL", cls.log_level),
            log_requests=_env_bool("GATEHOUSE_LOG_REQUESTS", cls.log_requests),
        )
        logger.info(
            "GatehouseConfig.from_env: host=%s port=%d agent=%s permission_timeout=%.1fs",
            config.host, config.port, config.agent_command,
            config.permission_timeout_seconds,
        )
        return config
