"""Suspension logic behind the agent's approval tool.

Every intercepted tool call becomes a PermissionRequest in the ledger.
The calling coroutine then waits until one of three things happens:

1. A human decides. The ledger's watcher wakes the wait immediately;
   a bounded poll interval covers watchers that never fire.
2. The configured timeout elapses. The request is sealed and left
   ``pending`` for audit; the agent is denied.
3. The owning session ends. ``cancel_session()`` wakes every wait for
   it and each returns a deny verdict at once.

Sealing and deciding race through the ledger lock, so whichever lands
first is what the agent is told, and the loser is refused.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any

from ..config import ApprovalRequestCallback, fire_callback
from ..errors import ApprovalTimeout
from ..models import ApprovalVerdict, PermissionRequest, PermissionStatus
from ..permission_ledger import DEFAULT_DENY_REASON, PermissionLedger

logger = logging.getLogger(__name__)

SESSION_ENDED_REASON = "Session ended before a decision was made"


class ApprovalBridge:
    """Blocks tool calls until the ledger records a decision."""

    def __init__(
        self,
        ledger: PermissionLedger,
        timeout_seconds: float = 60.0,
        poll_interval_seconds: float = 0.25,
        on_request: ApprovalRequestCallback | None = None,
    ) -> None:
        self._ledger = ledger
        self._timeout = timeout_seconds
        self._poll_interval = max(poll_interval_seconds, 0.01)
        self._on_request = on_request
        self._waiters: dict[str, set[asyncio.Event]] = {}
        self._cancelled: set[str] = set()
        # Forgotten sessions whose woken waits have not returned yet.
        self._forget_on_drain: set[str] = set()

    @property
    def ledger(self) -> PermissionLedger:
        return self._ledger

    def set_request_callback(self, callback: ApprovalRequestCallback | None) -> None:
        self._on_request = callback

    async def request_approval(
        self,
        session_id: str,
        tool_name: str,
        tool_input: Any,
    ) -> ApprovalVerdict:
        """Record a request and wait for its verdict.

        Raises InvalidToolNameError for an empty tool name; every other
        outcome, including timeout, is a verdict.
        """
        if session_id in self._cancelled:
            logger.info(
                "Denying %s for ended session %s", tool_name, session_id[:12],
            )
            return ApprovalVerdict.deny(SESSION_ENDED_REASON)

        record = self._ledger.add_permission_request(tool_name, tool_input, session_id)
        await fire_callback(self._on_request, record)

        loop = asyncio.get_running_loop()
        wake = asyncio.Event()
        unsubscribe = self._ledger.watch(
            record.id, lambda _r: loop.call_soon_threadsafe(wake.set),
        )
        self._waiters.setdefault(session_id, set()).add(wake)
        deadline = loop.time() + self._timeout if self._timeout > 0 else None

        try:
            while True:
                wake.clear()
                current = self._ledger.get_permission_request(record.id)
                if current is not None and current.status is not PermissionStatus.PENDING:
                    return self._decided(current, tool_input)

                if session_id in self._cancelled:
                    if not self._ledger.seal(record.id):
                        continue
                    logger.info(
                        "Permission request %s abandoned: session %s ended",
                        record.id[:8], session_id[:12],
                    )
                    return ApprovalVerdict.deny(SESSION_ENDED_REASON, request_id=record.id)

                wait = self._poll_interval
                if deadline is not None:
                    remaining = deadline - loop.time()
                    if remaining <= 0:
                        if not self._ledger.seal(record.id):
                            continue
                        timeout = ApprovalTimeout(record.id, tool_name, self._timeout)
                        logger.warning("%s", timeout)
                        return ApprovalVerdict.deny(
                            f"Permission request timed out after {self._timeout:g}s "
                            f"without a decision",
                            request_id=record.id,
                            timed_out=True,
                        )
                    wait = min(wait, remaining)

                try:
                    await asyncio.wait_for(wake.wait(), timeout=wait)
                except asyncio.TimeoutError:
                    pass
        except asyncio.CancelledError:
            # The caller went away; nobody can deliver a later decision.
            self._ledger.seal(record.id)
            raise
        finally:
            unsubscribe()
            waiters = self._waiters.get(session_id)
            if waiters is not None:
                waiters.discard(wake)
                if not waiters:
                    del self._waiters[session_id]
                    if session_id in self._forget_on_drain:
                        self._forget_on_drain.discard(session_id)
                        self._cancelled.discard(session_id)

    def cancel_session(self, session_id: str) -> int:
        """Deny every pending and future wait for *session_id*.

        Returns how many in-flight waits were woken.
        """
        self._cancelled.add(session_id)
        waiters = list(self._waiters.get(session_id, ()))
        for wake in waiters:
            wake.set()
        if waiters:
            logger.info(
                "Cancelled %d pending approval(s) for session %s",
                len(waiters), session_id[:12],
            )
        return len(waiters)

    def forget_session(self, session_id: str) -> None:
        """Drop the cancellation mark for *session_id*.

        Called once the session is released, and before an id is reused.
        Waits already woken by ``cancel_session()`` still return a deny;
        the mark goes away when the last of them has.
        """
        if self._waiters.get(session_id):
            self._forget_on_drain.add(session_id)
            return
        self._forget_on_drain.discard(session_id)
        self._cancelled.discard(session_id)

    def cancelled_sessions(self) -> int:
        return len(self._cancelled)

    def pending_waits(self, session_id: str | None = None) -> int:
        if session_id is not None:
            return len(self._waiters.get(session_id, ()))
        return sum(len(w) for w in self._waiters.values())

    @staticmethod
    def _decided(record: PermissionRequest, original_input: Any) -> ApprovalVerdict:
        if record.status is PermissionStatus.APPROVED:
            updated = record.modified_input if record.modified_input is not None else original_input
            return ApprovalVerdict.allow(updated, request_id=record.id)
        return ApprovalVerdict.deny(
            record.deny_reason or DEFAULT_DENY_REASON, request_id=record.id,
        )
