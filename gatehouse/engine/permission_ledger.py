"""In-memory ledger of tool-approval requests.

The ledger is the single source of truth for pending approvals. Every
mutation happens under one lock, so concurrent decisions on the same
request resolve to exactly one winner. Readers get snapshots; callers
never hold a reference to the live record.

Watchers registered with ``watch()`` are notified after the lock is
released, from whichever thread performed the decision. The approval
bridge uses this for push wake-ups and still polls as a fallback.
"""
from __future__ import annotations

import dataclasses
import logging
import threading
from collections.abc import Callable
from typing import Any

from .errors import (
    DecisionConflictError,
    InvalidActionError,
    InvalidToolNameError,
    RequestNotFoundError,
)
from .models import DecisionAction, PermissionRequest, PermissionStatus, utc_timestamp

logger = logging.getLogger(__name__)

Watcher = Callable[[PermissionRequest], None]

DEFAULT_DENY_REASON = "Permission denied by user"


class PermissionLedger:
    """Thread-safe request-id -> PermissionRequest store."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: dict[str, PermissionRequest] = {}
        self._watchers: dict[str, list[Watcher]] = {}

    def add_permission_request(
        self,
        tool_name: str,
        tool_input: Any,
        session_id: str,
    ) -> PermissionRequest:
        """Record a new pending request and return a snapshot of it."""
        if not isinstance(tool_name, str) or not tool_name.strip():
            raise InvalidToolNameError(tool_name)
        record = PermissionRequest(
            tool_name=tool_name,
            tool_input=tool_input,
            session_id=session_id,
        )
        with self._lock:
            self._records[record.id] = record
            snapshot = dataclasses.replace(record)
        logger.info(
            "Permission request %s: session=%s tool=%s",
            record.id[:8], session_id[:12], tool_name,
        )
        return snapshot

    def get_permission_request(self, request_id: str) -> PermissionRequest | None:
        with self._lock:
            record = self._records.get(request_id)
            return dataclasses.replace(record) if record else None

    def get_permission_requests(
        self,
        session_id: str | None = None,
        status: PermissionStatus | str | None = None,
    ) -> list[PermissionRequest]:
        """Matching records in creation order; None matches everything."""
        if status is not None:
            status = PermissionStatus(status)
        with self._lock:
            return [
                dataclasses.replace(r)
                for r in self._records.values()
                if (session_id is None or r.session_id == session_id)
                and (status is None or r.status == status)
            ]

    def update_status(
        self,
        request_id: str,
        new_status: PermissionStatus | str,
        modified_input: Any = None,
        deny_reason: str | None = None,
    ) -> bool:
        """Resolve a pending request.

        Returns False, changing nothing, when the request is unknown,
        already resolved, or sealed by the bridge.
        """
        new_status = PermissionStatus(new_status)
        if new_status is PermissionStatus.PENDING:
            raise ValueError("Cannot transition a permission request to pending")

        with self._lock:
            record = self._records.get(request_id)
            if record is None or record.status is not PermissionStatus.PENDING or record.sealed:
                return False
            record.status = new_status
            record.decided_at = utc_timestamp()
            if new_status is PermissionStatus.APPROVED:
                record.modified_input = modified_input
            else:
                record.deny_reason = deny_reason or DEFAULT_DENY_REASON
            snapshot = dataclasses.replace(record)
            watchers = self._watchers.pop(request_id, [])

        logger.info(
            "Permission request %s %s (tool=%s)",
            request_id[:8], new_status.value, snapshot.tool_name,
        )
        self._notify(watchers, snapshot)
        return True

    def decide(
        self,
        request_id: str,
        action: DecisionAction | str,
        modified_input: Any = None,
        deny_reason: str | None = None,
    ) -> PermissionRequest:
        """Apply a human decision, raising on every kind of refusal."""
        try:
            action = DecisionAction(action)
        except ValueError:
            raise InvalidActionError(action) from None

        if action is DecisionAction.APPROVE:
            ok = self.update_status(
                request_id, PermissionStatus.APPROVED, modified_input=modified_input,
            )
        else:
            ok = self.update_status(
                request_id, PermissionStatus.DENIED, deny_reason=deny_reason,
            )

        record = self.get_permission_request(request_id)
        if record is None:
            raise RequestNotFoundError(request_id)
        if not ok:
            if record.sealed and record.status is PermissionStatus.PENDING:
                reason = "the agent already received a verdict"
            else:
                reason = f"already {record.status.value}"
            logger.warning(
                "Rejected late decision %s on %s: %s",
                action.value, request_id[:8], reason,
            )
            raise DecisionConflictError(request_id, reason)
        return record

    def seal(self, request_id: str) -> bool:
        """Mark a still-pending request as answered without a decision.

        Returns False when a decision won the race; the caller must then
        honour that decision instead.
        """
        with self._lock:
            record = self._records.get(request_id)
            if record is None or record.status is not PermissionStatus.PENDING:
                return False
            record.sealed = True
            self._watchers.pop(request_id, None)
        return True

    def watch(self, request_id: str, callback: Watcher) -> Callable[[], None]:
        """Call *callback* once the request is resolved.

        Fires immediately if it already is. Returns an unsubscribe function.
        """
        with self._lock:
            record = self._records.get(request_id)
            if record is None:
                raise RequestNotFoundError(request_id)
            resolved = record.status is not PermissionStatus.PENDING
            if not resolved:
                self._watchers.setdefault(request_id, []).append(callback)
            snapshot = dataclasses.replace(record)
        if resolved:
            self._notify([callback], snapshot)

        def unsubscribe() -> None:
            with self._lock:
                callbacks = self._watchers.get(request_id)
                if callbacks and callback in callbacks:
                    callbacks.remove(callback)
                    if not callbacks:
                        del self._watchers[request_id]

        return unsubscribe

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def pending_count(self) -> int:
        with self._lock:
            return sum(
                1 for r in self._records.values()
                if r.status is PermissionStatus.PENDING and not r.sealed
            )

    @staticmethod
    def _notify(watchers: list[Watcher], snapshot: PermissionRequest) -> None:
        for watcher in watchers:
            try:
                watcher(snapshot)
            except Exception:
                logger.exception("Permission watcher failed for %s", snapshot.id[:8])
