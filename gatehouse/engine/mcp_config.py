"""Temporary MCP config pointing the agent at the approval proxy.

The agent reads a JSON file of the form::

    {"mcpServers": {"gatehouse-permissions": {
        "command": "/usr/bin/python3",
        "args": ["-m", "gatehouse.engine.mcp_server.approval_proxy",
                 "--url", "http://127.0.0.1:3001"],
        "env": {"GATEHOUSE_SERVER_URL": "http://127.0.0.1:3001"}}}}

One file is written per server process and removed on shutdown. The
session id reaches the proxy through the agent's own environment
(``GATEHOUSE_SESSION_ID``), which MCP stdio servers inherit.
"""
from __future__ import annotations

import json
import logging
import os
import sys
import tempfile
from typing import Any

logger = logging.getLogger(__name__)

PROXY_MODULE = "gatehouse.engine.mcp_server.approval_proxy"


class McpConfigGenerator:
    """Writes and cleans up the agent's MCP config file."""

    def __init__(self, server_name: str, server_url: str) -> None:
        self._server_name = server_name
        self._server_url = server_url
        self._path: str | None = None

    @property
    def path(self) -> str | None:
        return self._path

    def build_config(self) -> dict[str, Any]:
        return {
            "mcpServers": {
                self._server_name: {
                    "command": sys.executable,
                    "args": ["-m", PROXY_MODULE, "--url", self._server_url],
                    "env": {
                        "GATEHOUSE_SERVER_URL": self._server_url,
                        "GATEHOUSE_MCP_SERVER_NAME": self._server_name,
                    },
                }
            }
        }

    def generate(self) -> str:
        """Write the config once and return its path."""
        if self._path and os.path.exists(self._path):
            return self._path
        fd, path = tempfile.mkstemp(prefix="gatehouse-mcp-", suffix=".json")
        with os.fdopen(fd, "w") as f:
            json.dump(self.build_config(), f, indent=2)
        self._path = path
        logger.info("MCP config written to %s (server=%s url=%s)",
                    path, self._server_name, self._server_url)
        return path

    def cleanup(self) -> None:
        if not self._path:
            return
        try:
            os.unlink(self._path)
            logger.debug("Removed MCP config %s", self._path)
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.warning("Failed to remove MCP config %s: %s", self._path, exc)
        self._path = None
