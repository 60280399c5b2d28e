from __future__ import annotations

import asyncio
import json
import sys
import tempfile
import textwrap
from dataclasses import dataclass, field
from pathlib import Path

import pytest
from aiohttp.test_utils import TestClient, TestServer

from gatehouse.adapters.orchestrator import SessionOrchestrator
from gatehouse.engine.agent_cli import ClaudeCli
from gatehouse.engine.config import GatehouseConfig
from gatehouse.engine.supervisor import AgentSupervisor
from gatehouse.web.server import GatehouseServer

GATED_SCRIPT = textwrap.dedent("""
    import json, os, sys, time
    sys.stdin.read()
    print(json.dumps({"type": "system", "subtype": "init", "session_id": "agent-s1",
                      "model": "sonnet", "tools": ["Read"]}), flush=True)
    path = os.environ["GO_FILE"]
    deadline = time.time() + 10
    while not os.path.exists(path) and time.time() < deadline:
        time.sleep(0.02)
    print(json.dumps({"type": "assistant", "text": "done"}), flush=True)
""")


class _ScriptCli(ClaudeCli):
    def __init__(self) -> None:
        super().__init__(sys.executable)
        self.calls: list[dict] = []

    def build_command(self, **kwargs) -> list[str]:
        self.calls.append(kwargs)
        return [sys.executable, "-c", GATED_SCRIPT]


@dataclass
class _Request:
    match_info: dict[str, str]
    query: dict[str, str] = field(default_factory=dict)
    body: dict | None = None

    async def json(self) -> dict:
        return self.body or {}


def _json_payload(resp) -> dict:
    return json.loads(resp.text)


def _build_server(**config_kwargs) -> GatehouseServer:
    config_kwargs.setdefault("heartbeat_interval_seconds", 0.2)
    config = GatehouseConfig(log_requests=False, **config_kwargs)
    supervisor = AgentSupervisor(config, cli=_ScriptCli())
    return GatehouseServer(config, SessionOrchestrator(config, supervisor=supervisor))


async def _wait_for_pending(server: GatehouseServer, session_id: str):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + 5.0
    while True:
        records = server.orchestrator.list_permissions(session_id=session_id)
        if records:
            return records[0]
        assert loop.time() < deadline, "no permission request recorded"
        await asyncio.sleep(0.01)


@pytest.mark.asyncio
async def test_health() -> None:
    server = _build_server()
    async with TestClient(TestServer(server.app)) as client:
        resp = await client.get("/health")
        assert resp.status == 200
        payload = await resp.json()
        assert payload["status"] == "ok"
        assert payload["activeSessions"] == 0
        assert payload["pendingPermissions"] == 0


@pytest.mark.asyncio
async def test_start_session_validation_errors() -> None:
    server = _build_server()
    async with TestClient(TestServer(server.app)) as client:
        resp = await client.post("/api/sessions", json={"initialPrompt": "hi"})
        assert resp.status == 400
        assert (await resp.json())["error"]["code"] == "MISSING_WORKING_DIRECTORY"

        resp = await client.post("/api/sessions", json={
            "workingDirectory": "/tmp", "initialPrompt": "hi", "resumeSessionId": 5,
        })
        assert resp.status == 400
        assert (await resp.json())["error"]["code"] == "INVALID_FIELD"

        resp = await client.post("/api/sessions", data=b"{nope")
        assert resp.status == 400
        assert (await resp.json())["error"]["code"] == "INVALID_JSON"

        resp = await client.post("/api/sessions", json={
            "workingDirectory": "/definitely/not/here", "initialPrompt": "hi",
        })
        assert resp.status == 500
        assert (await resp.json())["error"]["code"] == "SPAWN_FAILED"

        resp = await client.get("/api/stream/ghost")
        assert resp.status == 404
        assert (await resp.json())["error"]["code"] == "SESSION_NOT_FOUND"


@pytest.mark.asyncio
async def test_session_stream_and_gated_tool_call_end_to_end() -> None:
    server = _build_server(permission_timeout_seconds=30.0)
    with tempfile.TemporaryDirectory() as tmpdir:
        go_file = Path(tmpdir) / "go"
        async with TestClient(TestServer(server.app)) as client:
            resp = await client.post("/api/sessions", json={
                "sessionId": "s1",
                "workingDirectory": tmpdir,
                "initialPrompt": "list files",
                "env": {"GO_FILE": str(go_file)},
                "allowedTools": ["Read"],
                "resumeSessionId": "agent-prev",
            })
            assert resp.status == 201
            started = await resp.json()
            assert started["sessionId"] == "s1"
            assert started["state"] == "running"
            assert started["streamUrl"] == "/api/stream/s1"
            assert started["agentSessionId"] == "agent-s1"
            assert started["systemInit"]["tools"] == ["Read"]
            options = server.orchestrator.supervisor.cli.calls[0]["options"]
            assert options.resume_session_id == "agent-prev"
            assert options.allowed_tools == ["Read"]

            listing = await (await client.get("/api/sessions")).json()
            assert [s["sessionId"] for s in listing["sessions"]] == ["s1"]

            stream = await client.get("/api/stream/s1")
            assert stream.status == 200
            assert stream.headers["Content-Type"].startswith("application/x-ndjson")

            approval = asyncio.create_task(client.post("/api/permissions/approval", json={
                "sessionId": "s1", "toolName": "Bash", "toolInput": {"command": "rm -rf /"},
            }))
            record = await _wait_for_pending(server, "s1")

            pending = await (await client.get(
                "/api/permissions", params={"streamingId": "s1", "status": "pending"},
            )).json()
            assert [p["id"] for p in pending["permissions"]] == [record.id]

            resp = await client.post(f"/api/permissions/{record.id}/decision", json={
                "action": "approve", "modifiedInput": {"command": "ls"},
            })
            assert resp.status == 200
            decided = await resp.json()
            assert decided["permission"]["status"] == "approved"

            verdict_resp = await asyncio.wait_for(approval, timeout=5.0)
            verdict = await verdict_resp.json()
            assert verdict["behavior"] == "allow"
            assert verdict["updatedInput"] == {"command": "ls"}
            assert verdict["requestId"] == record.id

            resp = await client.post(f"/api/permissions/{record.id}/decision", json={"action": "deny"})
            assert resp.status == 409
            assert (await resp.json())["error"]["code"] == "DECISION_CONFLICT"

            go_file.touch()
            events = []
            while True:
                line = await asyncio.wait_for(stream.content.readline(), timeout=10.0)
                if not line:
                    break
                if not line.strip():
                    continue  # keepalive
                event = json.loads(line)
                # The init line may be forwarded after this observer joined
                if event["data"].get("type") != "system":
                    events.append(event)
            stream.close()

            assert [e["type"] for e in events] == ["permission-request", "agent-message", "closed"]
            assert events[0]["data"]["id"] == record.id
            assert events[1]["data"]["text"] == "done"

            await server.orchestrator.wait_closed("s1")
            listing = await (await client.get("/api/sessions")).json()
            assert listing["sessions"] == []
        await server.orchestrator.shutdown()


@pytest.mark.asyncio
async def test_permission_api_errors() -> None:
    server = _build_server()
    ledger = server.orchestrator.ledger
    record = ledger.add_permission_request("Bash", {"command": "ls"}, "s1")
    async with TestClient(TestServer(server.app)) as client:
        resp = await client.get("/api/permissions", params={"status": "bogus"})
        assert resp.status == 400
        assert (await resp.json())["error"]["code"] == "INVALID_STATUS"

        resp = await client.post(f"/api/permissions/{record.id}/decision", json={"action": "maybe"})
        assert resp.status == 400
        assert (await resp.json())["error"]["code"] == "INVALID_ACTION"

        resp = await client.post("/api/permissions/missing/decision", json={"action": "approve"})
        assert resp.status == 404
        assert (await resp.json())["error"]["code"] == "PERMISSION_NOT_FOUND"

        resp = await client.post(f"/api/permissions/{record.id}/decision", json={
            "action": "deny", "denyReason": "no",
        })
        assert resp.status == 200
        assert (await resp.json())["permission"]["denyReason"] == "no"

        resp = await client.post("/api/permissions/approval", json={"toolName": "Bash"})
        assert resp.status == 400
        assert (await resp.json())["error"]["code"] == "MISSING_SESSION_ID"

        resp = await client.post("/api/permissions/approval", json={
            "sessionId": "ghost", "toolName": "Bash", "toolInput": {},
        })
        assert resp.status == 200
        assert (await resp.json())["behavior"] == "deny"


@pytest.mark.asyncio
async def test_list_permissions_handler_filters_by_session() -> None:
    server = _build_server()
    ledger = server.orchestrator.ledger
    mine = ledger.add_permission_request("Bash", {}, "s1")
    ledger.add_permission_request("Bash", {}, "s2")

    resp = await server._handle_list_permissions(_Request(match_info={}, query={"sessionId": "s1"}))
    payload = _json_payload(resp)
    assert [p["id"] for p in payload["permissions"]] == [mine.id]
    assert payload["permissions"][0]["streamingId"] == "s1"


@pytest.mark.asyncio
async def test_idle_stream_client_that_disconnects_is_unsubscribed_promptly() -> None:
    server = _build_server(heartbeat_interval_seconds=30.0)
    with tempfile.TemporaryDirectory() as tmpdir:
        go_file = Path(tmpdir) / "go"
        async with TestClient(TestServer(server.app)) as client:
            resp = await client.post("/api/sessions", json={
                "sessionId": "s1", "workingDirectory": tmpdir,
                "initialPrompt": "wait", "env": {"GO_FILE": str(go_file)},
            })
            assert resp.status == 201

            stream = await client.get("/api/stream/s1")
            assert stream.status == 200
            broadcaster = server.orchestrator.broadcaster
            assert broadcaster.get_observer_count("s1") == 1

            stream.close()
            loop = asyncio.get_running_loop()
            deadline = loop.time() + 5.0
            while broadcaster.get_observer_count("s1"):
                assert loop.time() < deadline, "observer outlived its client"
                await asyncio.sleep(0.05)

            go_file.touch()
            await server.orchestrator.wait_closed("s1")
        await server.orchestrator.shutdown()
