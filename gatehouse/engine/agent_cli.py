"""Command-line construction for the external coding agent.

The agent runs in print mode with ``stream-json`` output, so every
stdout line is one JSON event. The initial instruction is written to
stdin by the supervisor rather than passed as an argument, which keeps
large prompts off the process table.

Tool approvals are routed through the MCP server named in the
generated config: ``--permission-prompt-tool`` points the agent at
``mcp__<server>__approval_prompt`` and the same tool is whitelisted so
the agent never asks permission to ask permission.
"""
from __future__ import annotations

import logging
import shutil

from .models import AgentOptions

logger = logging.getLogger(__name__)


class ClaudeCli:
    """Builds argv for the ``claude`` CLI."""

    def __init__(self, command: str = "claude", default_model: str | None = None) -> None:
        self._command = command
        self._default_model = default_model

    @property
    def command(self) -> str:
        return self._command

    def resolve_command(self) -> str:
        """Resolve the binary on PATH; keep the raw value when missing.

        A missing binary is reported by the spawn itself so the error
        names the configured command.
        """
        resolved = shutil.which(self._command)
        if resolved:
            return resolved
        logger.debug("Agent command %s not found on PATH", self._command)
        return self._command

    def is_available(self) -> bool:
        return shutil.which(self._command) is not None

    def build_command(
        self,
        *,
        mcp_config_path: str | None,
        approval_tool: str | None,
        options: AgentOptions | None = None,
    ) -> list[str]:
        opts = options or AgentOptions()
        cmd = [
            self.resolve_command(),
            "-p",
            "--output-format", "stream-json",
            "--verbose",
        ]
        if opts.resume_session_id:
            cmd.extend(["--resume", opts.resume_session_id])
        model = opts.model or self._default_model
        if model:
            cmd.extend(["--model", model])

        allowed = list(opts.allowed_tools)
        if approval_tool and approval_tool not in allowed:
            allowed.append(approval_tool)
        if allowed:
            cmd.extend(["--allowedTools", ",".join(allowed)])
        if opts.disallowed_tools:
            cmd.extend(["--disallowedTools", ",".join(opts.disallowed_tools)])
        if opts.system_prompt:
            cmd.extend(["--system-prompt", opts.system_prompt])

        if mcp_config_path:
            cmd.extend(["--mcp-config", mcp_config_path])
            if approval_tool:
                cmd.extend(["--permission-prompt-tool", approval_tool])
        return cmd
