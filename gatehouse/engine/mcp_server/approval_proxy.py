"""MCP approval proxy launched by the agent.

Standalone FastMCP server the agent starts from the generated MCP
config. Speaks MCP on stdin/stdout and relays each ``approval_prompt``
call to the gatehouse server over HTTP, where the ApprovalBridge holds
the request open until a human decides.

Usage:
    python -m gatehouse.engine.mcp_server.approval_proxy --url http://127.0.0.1:3001

Tool call flow:
    agent → MCP stdin/stdout → approval_proxy → HTTP → ApprovalBridge → PermissionLedger

The session id comes from ``GATEHOUSE_SESSION_ID``, which the
supervisor sets on the agent and the agent passes down to us.
Anything that goes wrong on the way is answered with a deny verdict so
the agent never proceeds on an error.
"""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from contextlib import asynccontextmanager
from typing import Any

import aiohttp
from mcp.server.fastmcp import Context, FastMCP

logger = logging.getLogger(__name__)

APPROVAL_PATH = "/api/permissions/approval"

# Server URL, set from CLI args before the server starts
_server_url: str = os.getenv("GATEHOUSE_SERVER_URL", "http://127.0.0.1:3001")


class ServerClient:
    """HTTP client for the gatehouse approval endpoint."""

    def __init__(self, base_url: str, session: aiohttp.ClientSession | None = None) -> None:
        self._base_url = base_url.rstrip("/")
        self._session = session
        self._owns_session = session is None

    async def open(self) -> None:
        if self._session is None:
            # No total timeout: the server bounds the wait for a decision.
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=None, sock_connect=10),
            )

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None

    async def request_approval(
        self,
        session_id: str,
        tool_name: str,
        tool_input: Any,
    ) -> dict[str, Any]:
        """POST the tool call and return the verdict dict.

        Connection failures are retried with exponential backoff
        (0.2s → 0.4s → 0.8s, capped at 2s); the server may still be
        starting when the agent launches us.
        """
        if self._session is None:
            await self.open()
        session = self._session
        if session is None:
            raise RuntimeError("approval client is closed")
        payload = {
            "sessionId": session_id,
            "toolName": tool_name,
            "toolInput": tool_input,
        }
        url = f"{self._base_url}{APPROVAL_PATH}"
        max_attempts = 5
        delay = 0.2
        for attempt in range(1, max_attempts + 1):
            try:
                async with session.post(url, json=payload) as resp:
                    body = await resp.json(content_type=None)
                    if resp.status >= 400:
                        error = body.get("error") if isinstance(body, dict) else body
                        if isinstance(error, dict):
                            error = error.get("message", error)
                        raise ValueError(f"server returned {resp.status}: {error}")
                    if not isinstance(body, dict) or "behavior" not in body:
                        raise ValueError(f"unexpected response: {body!r}")
                    return body
            except aiohttp.ClientConnectionError as exc:
                if attempt == max_attempts:
                    logger.error(
                        "Failed to reach gatehouse at %s after %d attempts: %s",
                        url, max_attempts, exc,
                    )
                    raise
                logger.debug(
                    "Approval relay attempt %d/%d failed: %s, retrying in %.1fs",
                    attempt, max_attempts, exc, delay,
                )
                await asyncio.sleep(delay)
                delay = min(delay * 2, 2.0)
        raise RuntimeError("unreachable")


async def relay_approval(
    client: ServerClient,
    session_id: str | None,
    tool_name: str,
    tool_input: Any,
) -> str:
    """Relay one approval call and return the verdict as JSON text."""
    if not session_id:
        logger.error("GATEHOUSE_SESSION_ID is not set; denying %s", tool_name)
        return json.dumps({
            "behavior": "deny",
            "message": "Approval proxy is not bound to a session",
        })
    logger.info("Approval requested: session=%s tool=%s", session_id[:12], tool_name)
    try:
        verdict = await client.request_approval(session_id, tool_name, tool_input)
    except (aiohttp.ClientError, ValueError, json.JSONDecodeError) as exc:
        logger.error("Approval relay failed for %s: %s", tool_name, exc)
        return json.dumps({
            "behavior": "deny",
            "message": f"Permission request failed: {exc}",
        })
    if verdict.get("behavior") == "allow":
        result = {"behavior": "allow", "updatedInput": verdict.get("updatedInput", tool_input)}
    else:
        result = {"behavior": "deny", "message": verdict.get("message") or "Permission denied"}
    logger.info("Approval verdict for %s: %s", tool_name, result["behavior"])
    return json.dumps(result)


# ── FastMCP lifespan ──────────────────────────────────────────────

@asynccontextmanager
async def proxy_lifespan(server: FastMCP):
    """Open the HTTP session on startup, close it on shutdown."""
    client = ServerClient(_server_url)
    await client.open()
    try:
        yield {"client": client}
    finally:
        await client.close()


# ── FastMCP server ────────────────────────────────────────────────

mcp = FastMCP(
    name=os.getenv("GATEHOUSE_MCP_SERVER_NAME", "gatehouse-permissions"),
    instructions=(
        "Permission gate for tool calls. The agent runtime calls "
        "approval_prompt before running a tool that needs approval; "
        "the call returns once a human has approved or denied it."
    ),
    lifespan=proxy_lifespan,
)


def _client(ctx: Context) -> ServerClient:
    """Get the ServerClient from the lifespan context."""
    return ctx.request_context.lifespan_context["client"]


@mcp.tool(
    name="approval_prompt",
    description=(
        "Request approval for a tool call. Blocks until a human "
        "approves or denies it, then returns a JSON verdict: "
        '{"behavior": "allow", "updatedInput": {...}} or '
        '{"behavior": "deny", "message": "..."}.'
    ),
)
async def approval_prompt(
    tool_name: str,
    input: dict[str, Any],
    tool_use_id: str | None = None,
    ctx: Context = None,
) -> str:
    return await relay_approval(
        _client(ctx), os.getenv("GATEHOUSE_SESSION_ID"), tool_name, input,
    )


def main() -> None:
    """Entry point when launched by the agent as an MCP subprocess."""
    global _server_url

    parser = argparse.ArgumentParser(
        prog="gatehouse-approval-proxy",
        description="MCP approval proxy relaying tool calls to gatehouse",
    )
    parser.add_argument(
        "--url", default=_server_url,
        help="Base URL of the gatehouse server",
    )
    parser.add_argument(
        "--verbose", "-v", action="store_true",
        help="Enable debug logging",
    )
    args = parser.parse_args()
    _server_url = args.url

    # Logging goes to stderr (stdout is the MCP transport)
    level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
        datefmt="%H:%M:%S",
        stream=sys.stderr,
    )
    logger.info(
        "Starting approval_proxy (url=%s, session=%s, pid=%d)",
        _server_url, os.getenv("GATEHOUSE_SESSION_ID", "?"), os.getpid(),
    )

    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
