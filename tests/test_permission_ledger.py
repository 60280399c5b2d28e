from __future__ import annotations

import threading

import pytest

from gatehouse.engine.errors import (
    DecisionConflictError,
    InvalidActionError,
    InvalidToolNameError,
    RequestNotFoundError,
)
from gatehouse.engine.models import PermissionStatus
from gatehouse.engine.permission_ledger import DEFAULT_DENY_REASON, PermissionLedger


def test_add_permission_request_creates_pending_record() -> None:
    ledger = PermissionLedger()
    record = ledger.add_permission_request("Bash", {"command": "ls"}, "s1")

    assert record.status is PermissionStatus.PENDING
    assert record.tool_name == "Bash"
    assert record.tool_input == {"command": "ls"}
    payload = record.to_dict()
    assert payload["sessionId"] == "s1"
    assert payload["streamingId"] == "s1"
    assert payload["status"] == "pending"
    assert payload["createdAt"]
    assert len(ledger) == 1


@pytest.mark.parametrize("name", ["", "   "])
def test_empty_tool_name_is_rejected(name: str) -> None:
    ledger = PermissionLedger()
    with pytest.raises(InvalidToolNameError):
        ledger.add_permission_request(name, {}, "s1")
    assert len(ledger) == 0


def test_get_permission_requests_filters() -> None:
    ledger = PermissionLedger()
    a = ledger.add_permission_request("Bash", {}, "s1")
    b = ledger.add_permission_request("Edit", {}, "s1")
    c = ledger.add_permission_request("Bash", {}, "s2")
    ledger.update_status(b.id, PermissionStatus.APPROVED)

    assert [r.id for r in ledger.get_permission_requests()] == [a.id, b.id, c.id]
    assert [r.id for r in ledger.get_permission_requests(session_id="s1")] == [a.id, b.id]
    assert [r.id for r in ledger.get_permission_requests(status="pending")] == [a.id, c.id]
    assert [
        r.id for r in ledger.get_permission_requests(session_id="s1", status=PermissionStatus.APPROVED)
    ] == [b.id]


def test_update_status_only_once() -> None:
    ledger = PermissionLedger()
    record = ledger.add_permission_request("Bash", {"command": "ls"}, "s1")

    assert ledger.update_status(record.id, "approved", modified_input={"command": "ls -la"})
    assert not ledger.update_status(record.id, "denied", deny_reason="too late")

    stored = ledger.get_permission_request(record.id)
    assert stored.status is PermissionStatus.APPROVED
    assert stored.modified_input == {"command": "ls -la"}
    assert stored.deny_reason is None
    assert stored.decided_at


def test_update_status_unknown_request_is_noop() -> None:
    ledger = PermissionLedger()
    assert ledger.update_status("missing", PermissionStatus.DENIED) is False


def test_update_status_rejects_pending_target() -> None:
    ledger = PermissionLedger()
    record = ledger.add_permission_request("Bash", {}, "s1")
    with pytest.raises(ValueError):
        ledger.update_status(record.id, PermissionStatus.PENDING)


def test_concurrent_decisions_have_exactly_one_winner() -> None:
    ledger = PermissionLedger()
    record = ledger.add_permission_request("Bash", {}, "s1")
    barrier = threading.Barrier(16)
    results: list[tuple[str, bool]] = []
    lock = threading.Lock()

    def decide(i: int) -> None:
        status = "approved" if i % 2 else "denied"
        barrier.wait()
        ok = ledger.update_status(record.id, status, deny_reason=f"worker {i}")
        with lock:
            results.append((status, ok))

    threads = [threading.Thread(target=decide, args=(i,)) for i in range(16)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    winners = [status for status, ok in results if ok]
    assert len(winners) == 1
    assert ledger.get_permission_request(record.id).status.value == winners[0]


def test_decide_errors() -> None:
    ledger = PermissionLedger()
    record = ledger.add_permission_request("Bash", {}, "s1")

    with pytest.raises(InvalidActionError):
        ledger.decide(record.id, "maybe")
    with pytest.raises(RequestNotFoundError):
        ledger.decide("missing", "approve")

    denied = ledger.decide(record.id, "deny")
    assert denied.status is PermissionStatus.DENIED
    assert denied.deny_reason == DEFAULT_DENY_REASON

    with pytest.raises(DecisionConflictError):
        ledger.decide(record.id, "approve")
    assert ledger.get_permission_request(record.id).status is PermissionStatus.DENIED


def test_sealed_request_rejects_late_decision_and_stays_pending() -> None:
    ledger = PermissionLedger()
    record = ledger.add_permission_request("Bash", {}, "s1")

    assert ledger.seal(record.id)
    with pytest.raises(DecisionConflictError) as excinfo:
        ledger.decide(record.id, "approve")
    assert "already received a verdict" in str(excinfo.value)

    stored = ledger.get_permission_request(record.id)
    assert stored.status is PermissionStatus.PENDING
    assert stored.sealed
    assert stored.to_dict()["verdictDelivered"] is True
    assert ledger.pending_count() == 0


def test_seal_loses_to_earlier_decision() -> None:
    ledger = PermissionLedger()
    record = ledger.add_permission_request("Bash", {}, "s1")
    ledger.decide(record.id, "approve")
    assert ledger.seal(record.id) is False
    assert ledger.get_permission_request(record.id).sealed is False


def test_watch_notifies_once_on_resolution() -> None:
    ledger = PermissionLedger()
    record = ledger.add_permission_request("Bash", {}, "s1")
    seen: list[str] = []

    ledger.watch(record.id, lambda r: seen.append(r.status.value))
    ledger.decide(record.id, "approve")
    ledger.update_status(record.id, "denied")

    assert seen == ["approved"]


def test_watch_unsubscribe_and_already_resolved() -> None:
    ledger = PermissionLedger()
    first = ledger.add_permission_request("Bash", {}, "s1")
    seen: list[str] = []

    unsubscribe = ledger.watch(first.id, lambda r: seen.append(r.id))
    unsubscribe()
    unsubscribe()
    ledger.decide(first.id, "deny")
    assert seen == []

    ledger.watch(first.id, lambda r: seen.append(r.id))
    assert seen == [first.id]

    with pytest.raises(RequestNotFoundError):
        ledger.watch("missing", lambda r: None)


def test_snapshots_do_not_alias_ledger_state() -> None:
    ledger = PermissionLedger()
    record = ledger.add_permission_request("Bash", {}, "s1")
    record.status = PermissionStatus.APPROVED
    assert ledger.get_permission_request(record.id).status is PermissionStatus.PENDING
