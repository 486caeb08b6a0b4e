from pathlib import Path

import pytest

from phasegate.approval import ApprovalGateService, GateError
from phasegate.registry import default_registry
from phasegate.state import StateStore


def _service(tmp_path: Path) -> ApprovalGateService:
    service = ApprovalGateService(default_registry(), StateStore(tmp_path))
    service.initialize_gates_for_project("shop")
    return service


def test_initialize_creates_one_pending_record_per_gate(tmp_path: Path) -> None:
    service = _service(tmp_path)

    gates = service.get_project_gates("shop")

    assert [gate.gate_name for gate in gates] == [
        "stack_approved",
        "prd_approved",
        "architecture_approved",
        "handoff_acknowledged",
    ]
    assert {gate.status for gate in gates} == {"pending"}
    assert service.initialize_gates_for_project("shop") == gates


def test_should_auto_approve_thresholds(tmp_path: Path) -> None:
    service = _service(tmp_path)

    assert service.should_auto_approve("architecture_approved", 96) is True
    assert service.should_auto_approve("architecture_approved", 95) is True
    assert service.should_auto_approve("architecture_approved", 94) is False
    assert service.should_auto_approve("stack_approved", 100) is False
    assert service.should_auto_approve("unknown_gate", 100) is False


def test_blocking_gate_controls_can_proceed(tmp_path: Path) -> None:
    service = _service(tmp_path)

    assert service.is_gate_blocking("stack_approved") is True
    assert service.is_gate_blocking("prd_approved") is False
    assert service.can_proceed_from_phase("shop", "STACK_SELECTION") is False
    assert service.can_proceed_from_phase("shop", "SPEC_PM") is True
    assert service.can_proceed_from_phase("shop", "ANALYSIS") is True

    record = service.approve_gate("shop", "stack_approved", "cto", notes="looks sane")

    assert record.status == "approved"
    assert record.approved_by == "cto"
    assert record.approved_at
    assert service.check_gate_status("shop", "stack_approved") == "approved"
    assert service.can_proceed_from_phase("shop", "STACK_SELECTION") is True


def test_score_above_threshold_auto_approves(tmp_path: Path) -> None:
    service = _service(tmp_path)

    record = service.approve_gate("shop", "architecture_approved", "reviewer-bot", score=97)

    assert record.status == "auto_approved"
    assert record.score == 97


def test_rejected_gate_is_terminal(tmp_path: Path) -> None:
    service = _service(tmp_path)
    service.reject_gate("shop", "stack_approved", "cto", "too expensive")

    assert service.check_gate_status("shop", "stack_approved") == "rejected"
    assert service.can_proceed_from_phase("shop", "STACK_SELECTION") is False
    with pytest.raises(GateError, match="already rejected"):
        service.approve_gate("shop", "stack_approved", "cto")


def test_second_decision_observes_the_first(tmp_path: Path) -> None:
    first = _service(tmp_path)
    second = ApprovalGateService(default_registry(), StateStore(tmp_path))

    first.approve_gate("shop", "stack_approved", "alice")

    with pytest.raises(GateError, match="already approved"):
        second.reject_gate("shop", "stack_approved", "bob", "changed my mind")


def test_unknown_gate_raises(tmp_path: Path) -> None:
    service = _service(tmp_path)

    with pytest.raises(GateError, match="Unknown gate"):
        service.approve_gate("shop", "nope", "alice")
    assert service.get_gate_definition("nope") is None


def test_reset_gates_for_phases_returns_them_to_pending(tmp_path: Path) -> None:
    service = _service(tmp_path)
    service.approve_gate("shop", "stack_approved", "cto")
    service.approve_gate("shop", "prd_approved", "pm")

    reset = service.reset_gates_for_phases("shop", ["SPEC_PM"])

    assert reset == ["prd_approved"]
    assert service.check_gate_status("shop", "prd_approved") == "pending"
    assert service.check_gate_status("shop", "stack_approved") == "approved"
