from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Literal

from phasegate.registry import GateDefinition, PhaseRegistry
from phasegate.state.store import StateStore, utcnow_iso

logger = logging.getLogger(__name__)

GateStatus = Literal["pending", "approved", "rejected", "auto_approved"]
SATISFIED_STATUSES = frozenset({"approved", "auto_approved"})


class GateError(RuntimeError):
    """Raised for unknown gates and for decisions on gates that are no longer pending."""


@dataclass(slots=True)
class ApprovalGateRecord:
    project_id: str
    gate_name: str
    phase: str
    blocking: bool
    stakeholder_role: str
    status: GateStatus = "pending"
    approved_by: str | None = None
    approved_at: str | None = None
    rejection_reason: str | None = None
    score: int | None = None
    notes: str | None = None
    created_at: str = ""
    updated_at: str = ""

    @property
    def satisfied(self) -> bool:
        return self.status in SATISFIED_STATUSES

    def to_dict(self) -> dict[str, Any]:
        return {
            "project_id": self.project_id,
            "gate_name": self.gate_name,
            "phase": self.phase,
            "blocking": self.blocking,
            "stakeholder_role": self.stakeholder_role,
            "status": self.status,
            "approved_by": self.approved_by,
            "approved_at": self.approved_at,
            "rejection_reason": self.rejection_reason,
            "score": self.score,
            "notes": self.notes,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> ApprovalGateRecord:
        return cls(
            project_id=str(payload["project_id"]),
            gate_name=str(payload["gate_name"]),
            phase=str(payload["phase"]),
            blocking=bool(payload.get("blocking", False)),
            stakeholder_role=str(payload.get("stakeholder_role", "")),
            status=payload.get("status", "pending"),
            approved_by=payload.get("approved_by"),
            approved_at=payload.get("approved_at"),
            rejection_reason=payload.get("rejection_reason"),
            score=payload.get("score"),
            notes=payload.get("notes"),
            created_at=str(payload.get("created_at", "")),
            updated_at=str(payload.get("updated_at", "")),
        )


class ApprovalGateService:
    """Per-project gate records, persisted in the ``gates`` namespace.

    Decisions are read-modify-write updates against the store's revision
    counter, so of two concurrent decisions on one gate exactly one wins and
    the other sees a non-pending gate.
    """

    NAMESPACE = "gates"

    def __init__(self, registry: PhaseRegistry, state: StateStore) -> None:
        self.registry = registry
        self.state = state

    def get_gate_definition(self, gate_name: str) -> GateDefinition | None:
        return self.registry.gate(gate_name)

    def _require_definition(self, gate_name: str) -> GateDefinition:
        definition = self.registry.gate(gate_name)
        if definition is None:
            raise GateError(f"Unknown gate: {gate_name}")
        return definition

    def _new_record(self, project_id: str, definition: GateDefinition) -> ApprovalGateRecord:
        now = utcnow_iso()
        return ApprovalGateRecord(
            project_id=project_id,
            gate_name=definition.name,
            phase=definition.phase,
            blocking=definition.blocking,
            stakeholder_role=definition.stakeholder_role,
            created_at=now,
            updated_at=now,
        )

    def initialize_gates_for_project(self, project_id: str) -> list[ApprovalGateRecord]:
        def _updater(payload: Any) -> dict[str, Any]:
            data = payload if isinstance(payload, dict) else {}
            gates = data.setdefault(project_id, {})
            for definition in self.registry.gates:
                if definition.name not in gates:
                    gates[definition.name] = self._new_record(project_id, definition).to_dict()
            return data

        self.state.update_json(self.NAMESPACE, _updater, default={})
        logger.info(
            "Initialized %d approval gate(s) for project %s", len(self.registry.gates), project_id
        )
        return self.get_project_gates(project_id)

    def _project_records(self, project_id: str) -> dict[str, dict[str, Any]]:
        payload = self.state.get_json(self.NAMESPACE, default={})
        records = payload.get(project_id, {}) if isinstance(payload, dict) else {}
        return records if isinstance(records, dict) else {}

    def get_project_gates(self, project_id: str) -> list[ApprovalGateRecord]:
        records = self._project_records(project_id)
        order = [gate.name for gate in self.registry.gates]
        return [
            ApprovalGateRecord.from_dict(records[name]) for name in order if name in records
        ]

    def check_gate_status(self, project_id: str, gate_name: str) -> GateStatus | None:
        record = self._project_records(project_id).get(gate_name)
        if not record:
            return None
        return record.get("status", "pending")

    def is_gate_blocking(self, gate_name: str) -> bool:
        definition = self.registry.gate(gate_name)
        return bool(definition and definition.blocking)

    def should_auto_approve(self, gate_name: str, score: float | None) -> bool:
        definition = self.registry.gate(gate_name)
        if definition is None or definition.auto_approve_threshold is None or score is None:
            return False
        return score >= definition.auto_approve_threshold

    def _decide(
        self,
        project_id: str,
        gate_name: str,
        apply: Callable[[ApprovalGateRecord], None],
    ) -> ApprovalGateRecord:
        definition = self._require_definition(gate_name)
        decided: list[ApprovalGateRecord] = []

        def _updater(payload: Any) -> dict[str, Any]:
            decided.clear()
            data = payload if isinstance(payload, dict) else {}
            gates = data.setdefault(project_id, {})
            raw = gates.get(gate_name)
            record = (
                ApprovalGateRecord.from_dict(raw)
                if raw
                else self._new_record(project_id, definition)
            )
            if record.status != "pending":
                raise GateError(
                    f"Gate {gate_name} for project {project_id} is already {record.status}"
                )
            apply(record)
            record.updated_at = utcnow_iso()
            gates[gate_name] = record.to_dict()
            decided.append(record)
            return data

        self.state.update_json(self.NAMESPACE, _updater, default={})
        return decided[0]

    def approve_gate(
        self,
        project_id: str,
        gate_name: str,
        approved_by: str,
        *,
        score: int | None = None,
        notes: str | None = None,
    ) -> ApprovalGateRecord:
        auto = score is not None and self.should_auto_approve(gate_name, score)

        def _apply(record: ApprovalGateRecord) -> None:
            record.status = "auto_approved" if auto else "approved"
            record.approved_by = approved_by
            record.approved_at = utcnow_iso()
            record.score = score
            record.notes = notes

        record = self._decide(project_id, gate_name, _apply)
        logger.info(
            "Gate %s %s for project %s by %s",
            gate_name,
            record.status,
            project_id,
            approved_by,
        )
        return record

    def reject_gate(
        self, project_id: str, gate_name: str, rejected_by: str, reason: str
    ) -> ApprovalGateRecord:
        def _apply(record: ApprovalGateRecord) -> None:
            record.status = "rejected"
            record.approved_by = rejected_by
            record.rejection_reason = reason

        record = self._decide(project_id, gate_name, _apply)
        logger.info("Gate %s rejected for project %s by %s: %s", gate_name, project_id, rejected_by, reason)
        return record

    def reset_gates_for_phases(self, project_id: str, phases: list[str]) -> list[str]:
        """Return gates of ``phases`` to pending; used when those phases are rolled back."""
        targets = {gate.name for gate in self.registry.gates if gate.phase in phases}
        reset: list[str] = []

        def _updater(payload: Any) -> dict[str, Any]:
            reset.clear()
            data = payload if isinstance(payload, dict) else {}
            gates = data.setdefault(project_id, {})
            for name in sorted(targets):
                definition = self.registry.gate(name)
                if definition is None:
                    continue
                current = gates.get(name)
                if current and current.get("status") == "pending":
                    continue
                record = self._new_record(project_id, definition)
                if current:
                    record.created_at = current.get("created_at") or record.created_at
                gates[name] = record.to_dict()
                reset.append(name)
            return data

        if targets:
            self.state.update_json(self.NAMESPACE, _updater, default={})
        if reset:
            logger.info("Reset gate(s) %s for project %s", ", ".join(reset), project_id)
        return reset

    def unsatisfied_blocking_gates(self, project_id: str, phase: str) -> list[str]:
        records = self._project_records(project_id)
        unsatisfied = []
        for gate in self.registry.gates_for_phase(phase):
            if not gate.blocking:
                continue
            status = (records.get(gate.name) or {}).get("status", "pending")
            if status not in SATISFIED_STATUSES:
                unsatisfied.append(gate.name)
        return unsatisfied

    def can_proceed_from_phase(self, project_id: str, phase: str) -> bool:
        return not self.unsatisfied_blocking_gates(project_id, phase)
