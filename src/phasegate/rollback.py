from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from phasegate.state.artifacts import ArtifactRecord, ArtifactStore
from phasegate.state.snapshots import Snapshot, SnapshotStore, snapshot_payload
from phasegate.state.store import git_blob_id

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RollbackCheck:
    can_rollback: bool
    reason: str = ""
    depth: int = 0


@dataclass(slots=True)
class RollbackResult:
    success: bool
    target_phase: str
    phases_completed: list[str] = field(default_factory=list)
    current_phase: str | None = None
    removed_phases: list[str] = field(default_factory=list)
    snapshot_id: str | None = None
    commit_id: str | None = None
    restored_artifacts: list[str] = field(default_factory=list)
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "target_phase": self.target_phase,
            "phases_completed": list(self.phases_completed),
            "current_phase": self.current_phase,
            "removed_phases": list(self.removed_phases),
            "snapshot_id": self.snapshot_id,
            "commit_id": self.commit_id,
            "restored_artifacts": list(self.restored_artifacts),
            "error": self.error,
        }


@dataclass(slots=True)
class RollbackPreview:
    target_phase: str
    phases_to_remove: list[str]
    artifacts: list[str]
    commit_id: str
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "target_phase": self.target_phase,
            "phases_to_remove": list(self.phases_to_remove),
            "artifacts": list(self.artifacts),
            "commit_id": self.commit_id,
            "metadata": dict(self.metadata),
        }


class RollbackService:
    """Reverts a project to an earlier phase, snapshotting what it discards.

    The service never touches project state itself; it returns the new
    ``phases_completed`` and ``current_phase`` for the caller to apply.
    """

    def __init__(
        self,
        artifacts: ArtifactStore,
        snapshots: SnapshotStore,
        *,
        max_depth: int = 0,
    ) -> None:
        self.artifacts = artifacts
        self.snapshots = snapshots
        self.max_depth = max_depth

    def can_rollback(self, target_phase: str, phases_completed: list[str]) -> RollbackCheck:
        if target_phase not in phases_completed:
            return RollbackCheck(False, f"Phase {target_phase} not found in completed phases")
        depth = len(phases_completed) - phases_completed.index(target_phase)
        if self.max_depth and depth > self.max_depth:
            return RollbackCheck(
                False,
                f"Rollback depth {depth} exceeds maximum rollback depth of {self.max_depth}",
                depth,
            )
        return RollbackCheck(True, "", depth)

    @staticmethod
    def _phases_from(
        target_phase: str, phases_completed: list[str], current_phase: str | None
    ) -> list[str]:
        index = phases_completed.index(target_phase)
        phases = list(phases_completed[index:])
        if current_phase and current_phase not in phases:
            phases.append(current_phase)
        return phases

    def get_rollback_preview(
        self,
        project_id: str,
        target_phase: str,
        phases_completed: list[str],
        current_phase: str | None = None,
    ) -> RollbackPreview | RollbackCheck:
        check = self.can_rollback(target_phase, phases_completed)
        if not check.can_rollback:
            return check
        phases = self._phases_from(target_phase, phases_completed, current_phase)
        records = [
            record
            for phase in phases
            for record in self.artifacts.records(project_id, phase)
        ]
        return RollbackPreview(
            target_phase=target_phase,
            phases_to_remove=phases,
            artifacts=sorted({record.filename for record in records}),
            commit_id=git_blob_id(snapshot_payload(records)),
            metadata={
                "depth": check.depth,
                "artifact_versions": len(records),
                "phases_completed_after": phases_completed[: phases_completed.index(target_phase)],
            },
        )

    def rollback_to_phase(
        self,
        project_id: str,
        target_phase: str,
        phases_completed: list[str],
        *,
        confirm: bool,
        current_phase: str | None = None,
    ) -> RollbackResult:
        if not confirm:
            return RollbackResult(
                success=False,
                target_phase=target_phase,
                phases_completed=list(phases_completed),
                current_phase=current_phase,
                error="Rollback is a dangerous operation - confirmation required",
            )
        check = self.can_rollback(target_phase, phases_completed)
        if not check.can_rollback:
            return RollbackResult(
                success=False,
                target_phase=target_phase,
                phases_completed=list(phases_completed),
                current_phase=current_phase,
                error=check.reason,
            )

        phases = self._phases_from(target_phase, phases_completed, current_phase)
        records = [
            record
            for phase in phases
            for record in self.artifacts.records(project_id, phase)
        ]
        snapshot = self.snapshots.create(
            project_id,
            target_phase,
            phases,
            records,
            metadata={
                "reason": "rollback",
                "phases_completed_before": list(phases_completed),
                "current_phase_before": current_phase,
            },
        )
        removed = self.artifacts.delete_phases(project_id, phases)
        remaining = list(phases_completed[: phases_completed.index(target_phase)])
        logger.info(
            "Rolled back project %s to %s (snapshot %s, %d artifact(s) removed)",
            project_id,
            target_phase,
            snapshot.snapshot_id,
            len(removed),
        )
        return RollbackResult(
            success=True,
            target_phase=target_phase,
            phases_completed=remaining,
            current_phase=target_phase,
            removed_phases=phases,
            snapshot_id=snapshot.snapshot_id,
            commit_id=snapshot.commit_id,
            restored_artifacts=sorted(set(removed)),
        )

    def list_snapshots(self, project_id: str, phase: str | None = None) -> list[Snapshot]:
        return self.snapshots.list_for(project_id, phase)

    def restore_snapshot(self, project_id: str, snapshot_id: str) -> list[str]:
        """Write the latest captured version of each snapshot artifact back as a new version."""
        snapshot = self.snapshots.get(project_id, snapshot_id)
        if snapshot is None:
            return []
        latest: dict[tuple[str, str], ArtifactRecord] = {}
        for record in snapshot.artifacts:
            key = (record.phase, record.filename)
            if key not in latest or record.version > latest[key].version:
                latest[key] = record
        by_phase: dict[str, dict[str, str]] = {}
        for (phase, filename), record in latest.items():
            by_phase.setdefault(phase, {})[filename] = record.content
        restored: list[str] = []
        for phase, files in by_phase.items():
            restored.extend(record.filename for record in self.artifacts.save_many(project_id, phase, files))
        logger.info("Restored %d artifact(s) from snapshot %s", len(restored), snapshot_id)
        return sorted(restored)
