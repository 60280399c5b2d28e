"""Agent process supervisor.

Spawns one agent process per session and owns it until exit. Each
session gets a single runner task that reads stdout in chunks through
a JsonLinesParser, drains stderr into a bounded tail, waits for the
process, and finally reports the terminal state. Because one task
produces every notification for a session, notifications arrive in
the order the process produced them.

Notifications are plain dicts delivered to the session's
``event_callback``:

    {"event": "agent_output", "session_id": ..., "message": {...}}
    {"event": "process_failed", "session_id": ..., "error": ..., "exit_code": ...,
     "stderr_tail": ...}
    {"event": "process_closed", "session_id": ..., "exit_code": ..., "state": ...}

``process_failed`` always precedes ``process_closed``. A crashed
session is never restarted.
"""
from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass, field
from typing import Any

from .agent_cli import ClaudeCli
from .config import EventCallback, GatehouseConfig, fire_callback
from .errors import AgentInitError, ProcessRuntimeError, SpawnError
from .jsonl import JsonLinesParser
from .lifecycle import validate_transition
from .models import AgentOptions, SessionDescriptor, SessionState, utc_timestamp

logger = logging.getLogger(__name__)

# Exported to the agent so the approval proxy it launches can tell the
# server which session a tool call belongs to.
SESSION_ENV_VAR = "GATEHOUSE_SESSION_ID"


@dataclass
class _Session:
    session_id: str
    working_directory: str
    event_callback: EventCallback | None
    state: SessionState = SessionState.STARTING
    process: asyncio.subprocess.Process | None = None
    runner: asyncio.Task | None = None
    started_at: str = field(default_factory=utc_timestamp)
    exit_code: int | None = None
    stop_requested: bool = False
    agent_session_id: str | None = None
    stderr_tail: bytearray = field(default_factory=bytearray)
    # Reader-side failure that is not visible in the exit code.
    read_error: str | None = None
    first_message: dict[str, Any] | None = None
    system_init: dict[str, Any] | None = None
    # Set on the first parsed output line, or when the process ends.
    first_output: asyncio.Event = field(default_factory=asyncio.Event)

    def describe(self) -> SessionDescriptor:
        return SessionDescriptor(
            session_id=self.session_id,
            state=self.state,
            working_directory=self.working_directory,
            pid=self.process.pid if self.process else None,
            started_at=self.started_at,
            exit_code=self.exit_code,
            agent_session_id=self.agent_session_id,
            system_init=self.system_init,
        )


def _is_system_init(message: dict[str, Any]) -> bool:
    return message.get("type") == "system" and message.get("subtype") == "init"


class AgentSupervisor:
    """Starts, watches and stops agent processes."""

    def __init__(
        self,
        config: GatehouseConfig | None = None,
        cli: ClaudeCli | None = None,
        mcp_config_path: str | None = None,
    ) -> None:
        self._config = config or GatehouseConfig()
        self._cli = cli or ClaudeCli(
            self._config.agent_command, self._config.default_model,
        )
        self._mcp_config_path = mcp_config_path
        self._sessions: dict[str, _Session] = {}

    @property
    def cli(self) -> ClaudeCli:
        return self._cli

    def set_mcp_config_path(self, path: str | None) -> None:
        self._mcp_config_path = path

    async def start(
        self,
        session_id: str,
        working_directory: str,
        initial_instruction: str,
        env_overrides: dict[str, str] | None = None,
        options: AgentOptions | None = None,
        event_callback: EventCallback | None = None,
        wait_for_init: bool | None = None,
    ) -> SessionDescriptor:
        """Spawn the agent for *session_id* and hand it the instruction.

        Raises SpawnError when the session id is taken, the working
        directory is missing, or the executable cannot be launched.

        With *wait_for_init* (default: ``config.wait_for_init``) the call
        returns only after the agent's opening ``system/init`` message,
        bounded by ``config.init_timeout_seconds``, and the descriptor
        carries it. AgentInitError is raised if the agent exits first,
        opens with something else, or stays silent; in the last two
        cases the process is stopped.
        """
        existing = self._sessions.get(session_id)
        if existing is not None and not existing.state.is_terminal:
            raise SpawnError(session_id, "session is already active")
        if not os.path.isdir(working_directory):
            raise SpawnError(
                session_id, f"working directory does not exist: {working_directory}",
            )

        session = _Session(
            session_id=session_id,
            working_directory=working_directory,
            event_callback=event_callback,
        )
        self._sessions[session_id] = session

        cmd = self._cli.build_command(
            mcp_config_path=self._mcp_config_path,
            approval_tool=self._config.approval_tool_name if self._mcp_config_path else None,
            options=options,
        )
        env = {
            **os.environ,
            **self._config.agent_env,
            **(env_overrides or {}),
            SESSION_ENV_VAR: session_id,
        }
        logger.info(
            "Starting agent session=%s cwd=%s cmd=%s",
            session_id[:12], working_directory, " ".join(cmd[:4]),
        )

        try:
            # create_subprocess_exec passes args as array, no shell
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
                cwd=working_directory,
            )
        except FileNotFoundError as exc:
            self._abort(session)
            raise SpawnError(
                session_id, f"'{self._cli.command}' executable not found",
            ) from exc
        except OSError as exc:
            self._abort(session)
            raise SpawnError(session_id, str(exc)) from exc

        session.process = proc
        await self._write_instruction(session, initial_instruction)
        self._transition(session, SessionState.RUNNING)
        session.runner = asyncio.create_task(
            self._run(session), name=f"agent-session-{session_id[:12]}",
        )
        logger.info("Agent session %s running (pid=%d)", session_id[:12], proc.pid)
        if self._config.wait_for_init if wait_for_init is None else wait_for_init:
            await self._await_system_init(session)
        return session.describe()

    def get_active_sessions(self) -> list[SessionDescriptor]:
        """Snapshot of every non-terminal session."""
        return [
            s.describe() for s in self._sessions.values()
            if not s.state.is_terminal
        ]

    def get_session(self, session_id: str) -> SessionDescriptor | None:
        session = self._sessions.get(session_id)
        return session.describe() if session else None

    def is_active(self, session_id: str) -> bool:
        session = self._sessions.get(session_id)
        return session is not None and not session.state.is_terminal

    async def stop(self, session_id: str, grace_seconds: float | None = None) -> bool:
        """Terminate a session's process; SIGKILL after the grace period.

        Returns False when there is no running process to stop. The
        session ends ``closed``: a requested stop is not an error.
        """
        session = self._sessions.get(session_id)
        if session is None or session.state.is_terminal or session.process is None:
            return False
        session.stop_requested = True
        proc = session.process
        grace = self._config.stop_grace_seconds if grace_seconds is None else grace_seconds
        logger.info("Stopping agent session %s (pid=%d)", session_id[:12], proc.pid)
        try:
            proc.terminate()
            try:
                await asyncio.wait_for(proc.wait(), timeout=grace)
            except asyncio.TimeoutError:
                logger.warning(
                    "Agent session %s ignored SIGTERM for %.1fs, killing",
                    session_id[:12], grace,
                )
                proc.kill()
                await proc.wait()
        except ProcessLookupError:
            pass
        if session.runner is not None:
            await asyncio.shield(session.runner)
        return True

    def release(self, session_id: str) -> bool:
        """Forget a terminal session once its observers were notified."""
        session = self._sessions.get(session_id)
        if session is None or not session.state.is_terminal:
            return False
        del self._sessions[session_id]
        logger.debug("Released session %s", session_id[:12])
        return True

    async def shutdown(self) -> None:
        """Stop every running session and wait for the runners."""
        active = [s.session_id for s in self._sessions.values() if not s.state.is_terminal]
        if active:
            logger.info("Shutting down %d agent session(s)", len(active))
        await asyncio.gather(
            *(self.stop(sid) for sid in active), return_exceptions=True,
        )

    async def _await_system_init(self, session: _Session) -> None:
        sid = session.session_id
        timeout = self._config.init_timeout_seconds
        try:
            await asyncio.wait_for(
                session.first_output.wait(), timeout=timeout if timeout > 0 else None,
            )
        except asyncio.TimeoutError:
            logger.error("Agent session %s sent no system/init within %gs", sid[:12], timeout)
            await self.stop(sid)
            raise AgentInitError(
                sid, f"no system/init message within {timeout:g}s",
                code="SYSTEM_INIT_TIMEOUT",
            ) from None

        first = session.first_message
        if first is None:
            if session.runner is not None:
                await asyncio.shield(session.runner)
            reason = f"agent exited before sending system/init (exit code {session.exit_code})"
            stderr_tail = session.stderr_tail.decode("utf-8", errors="replace").strip()
            if stderr_tail:
                reason = f"{reason}: {stderr_tail.splitlines()[-1]}"
            raise AgentInitError(sid, reason, code="PROCESS_EXITED_EARLY")

        if not _is_system_init(first):
            got = f"{first.get('type')}/{first.get('subtype')}"
            logger.error("Agent session %s opened with %s instead of system/init", sid[:12], got)
            await self.stop(sid)
            raise AgentInitError(
                sid, f"expected system/init as first message, got {got}",
                code="INVALID_SYSTEM_INIT",
            )
        logger.info(
            "Agent session %s initialised (agent session=%s model=%s tools=%d)",
            sid[:12], session.agent_session_id, first.get("model"),
            len(first.get("tools") or ()),
        )

    # ── Process I/O ──────────────────────────────────────────────

    async def _write_instruction(self, session: _Session, instruction: str) -> None:
        proc = session.process
        if proc is None or proc.stdin is None:
            return
        try:
            proc.stdin.write(instruction.encode("utf-8"))
            await proc.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            # The process died before reading; the runner reports the exit.
            logger.warning(
                "Agent session %s closed stdin early: %s", session.session_id[:12], exc,
            )
        finally:
            proc.stdin.close()

    async def _run(self, session: _Session) -> None:
        proc = session.process
        if proc is None:
            return
        try:
            await asyncio.gather(
                self._read_stdout(session),
                self._drain_stderr(session),
            )
        except Exception as exc:
            session.read_error = f"output reader failed: {exc}"
            logger.exception("Agent session %s reader failed", session.session_id[:12])
            try:
                proc.kill()
            except ProcessLookupError:
                pass
        await proc.wait()
        await self._finish(session, proc.returncode)

    async def _read_stdout(self, session: _Session) -> None:
        proc = session.process
        if proc is None or proc.stdout is None:
            return
        parser = JsonLinesParser(
            max_line_bytes=self._config.max_line_bytes,
            label=session.session_id[:12],
        )
        while True:
            chunk = await proc.stdout.read(self._config.read_chunk_size)
            if not chunk:
                break
            for message in parser.feed(chunk):
                await self._publish_output(session, message)
        for message in parser.flush():
            await self._publish_output(session, message)
        if parser.malformed_count:
            logger.info(
                "Agent session %s: dropped %d malformed line(s)",
                session.session_id[:12], parser.malformed_count,
            )

    async def _drain_stderr(self, session: _Session) -> None:
        proc = session.process
        if proc is None or proc.stderr is None:
            return
        limit = self._config.stderr_tail_bytes
        while True:
            line = await proc.stderr.readline()
            if not line:
                break
            session.stderr_tail.extend(line)
            if len(session.stderr_tail) > limit:
                del session.stderr_tail[: len(session.stderr_tail) - limit]
            logger.debug(
                "agent[%s] stderr: %s",
                session.session_id[:12], line.decode("utf-8", errors="replace").rstrip(),
            )

    async def _publish_output(self, session: _Session, message: dict[str, Any]) -> None:
        if _is_system_init(message):
            session.agent_session_id = message.get("session_id") or session.agent_session_id
            if session.system_init is None:
                session.system_init = message
        await self._emit(session, {
            "event": "agent_output",
            "session_id": session.session_id,
            "message": message,
        })
        if session.first_message is None:
            session.first_message = message
            session.first_output.set()

    async def _finish(self, session: _Session, exit_code: int | None) -> None:
        session.exit_code = exit_code
        failed = session.read_error is not None or (
            exit_code != 0 and not session.stop_requested
        )
        if failed:
            stderr_tail = session.stderr_tail.decode("utf-8", errors="replace").strip()
            detail = session.read_error or ""
            if not detail and stderr_tail:
                detail = stderr_tail.splitlines()[-1]
            error = ProcessRuntimeError(session.session_id, exit_code, detail)
            self._transition(session, SessionState.ERRORED)
            logger.error("%s", error)
            await self._emit(session, {
                "event": "process_failed",
                "session_id": session.session_id,
                "error": str(error),
                "exit_code": exit_code,
                "stderr_tail": stderr_tail,
            })
        else:
            self._transition(session, SessionState.CLOSED)
            logger.info(
                "Agent session %s closed (code=%s%s)",
                session.session_id[:12], exit_code,
                ", stopped" if session.stop_requested else "",
            )
        await self._emit(session, {
            "event": "process_closed",
            "session_id": session.session_id,
            "exit_code": exit_code,
            "state": session.state.value,
        })
        session.first_output.set()

    async def _emit(self, session: _Session, data: dict[str, Any]) -> None:
        await fire_callback(session.event_callback, data)

    # ── State ────────────────────────────────────────────────────

    def _transition(self, session: _Session, target: SessionState) -> None:
        validate_transition(session.state, target)
        logger.debug(
            "Session %s: %s -> %s",
            session.session_id[:12], session.state.value, target.value,
        )
        session.state = target

    def _abort(self, session: _Session) -> None:
        self._transition(session, SessionState.ERRORED)
        if self._sessions.get(session.session_id) is session:
            del self._sessions[session.session_id]
