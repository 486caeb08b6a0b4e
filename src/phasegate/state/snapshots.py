from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any

from phasegate.state.artifacts import ArtifactRecord
from phasegate.state.store import StateStore, StateStoreError, utcnow_iso


@dataclass(frozen=True, slots=True)
class Snapshot:
    snapshot_id: str
    project_id: str
    target_phase: str
    snapshot_number: int
    phases: tuple[str, ...]
    artifacts: tuple[ArtifactRecord, ...]
    commit_id: str
    created_at: str
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def filenames(self) -> list[str]:
        return sorted({record.filename for record in self.artifacts})

    def to_dict(self) -> dict[str, Any]:
        return {
            "snapshot_id": self.snapshot_id,
            "project_id": self.project_id,
            "target_phase": self.target_phase,
            "snapshot_number": self.snapshot_number,
            "phases": list(self.phases),
            "artifacts": [record.to_dict() for record in self.artifacts],
            "commit_id": self.commit_id,
            "created_at": self.created_at,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Snapshot:
        return cls(
            snapshot_id=str(payload["snapshot_id"]),
            project_id=str(payload["project_id"]),
            target_phase=str(payload["target_phase"]),
            snapshot_number=int(payload.get("snapshot_number", 1)),
            phases=tuple(payload.get("phases", [])),
            artifacts=tuple(ArtifactRecord.from_dict(item) for item in payload.get("artifacts", [])),
            commit_id=str(payload.get("commit_id", "")),
            created_at=str(payload.get("created_at", "")),
            metadata=dict(payload.get("metadata", {})),
        )


def _sanitize_snapshot_name(value: str) -> str:
    cleaned = re.sub(r"[^a-z0-9-]+", "-", value.lower()).strip("-")
    return cleaned or "snapshot"


def snapshot_payload(records: list[ArtifactRecord]) -> str:
    """Canonical serialization used to content-address a set of artifact versions."""
    ordered = sorted(records, key=lambda item: (item.phase, item.filename, item.version))
    return json.dumps(
        [
            {
                "phase": record.phase,
                "filename": record.filename,
                "version": record.version,
                "content_hash": record.content_hash,
            }
            for record in ordered
        ],
        ensure_ascii=False,
        sort_keys=True,
        separators=(",", ":"),
    )


class SnapshotStore:
    """Append-only store of immutable snapshots per project."""

    NAMESPACE = "snapshots"

    def __init__(self, state: StateStore) -> None:
        self.state = state

    def create(
        self,
        project_id: str,
        target_phase: str,
        phases: list[str],
        records: list[ArtifactRecord],
        metadata: dict[str, Any] | None = None,
    ) -> Snapshot:
        commit_id = self.state.write_blob(snapshot_payload(records))
        created: list[Snapshot] = []

        def _updater(payload: Any) -> dict[str, Any]:
            created.clear()
            data = payload if isinstance(payload, dict) else {}
            history = data.setdefault(project_id, [])
            number = 1 + sum(1 for item in history if item.get("target_phase") == target_phase)
            snapshot_id = (
                f"snap-{_sanitize_snapshot_name(project_id)}-"
                f"{_sanitize_snapshot_name(target_phase)}-{number}-{commit_id[:8]}"
            )
            if any(item.get("snapshot_id") == snapshot_id for item in history):
                raise StateStoreError(f"Snapshot already exists: {snapshot_id}")
            snapshot = Snapshot(
                snapshot_id=snapshot_id,
                project_id=project_id,
                target_phase=target_phase,
                snapshot_number=number,
                phases=tuple(phases),
                artifacts=tuple(records),
                commit_id=commit_id,
                created_at=utcnow_iso(),
                metadata=dict(metadata or {}),
            )
            history.append(snapshot.to_dict())
            created.append(snapshot)
            return data

        self.state.update_json(self.NAMESPACE, _updater, default={})
        return created[0]

    def list_for(self, project_id: str, phase: str | None = None) -> list[Snapshot]:
        """Snapshots for ``project_id``, latest first."""
        payload = self.state.get_json(self.NAMESPACE, default={})
        history = payload.get(project_id, []) if isinstance(payload, dict) else []
        snapshots = [Snapshot.from_dict(item) for item in history if isinstance(item, dict)]
        if phase is not None:
            snapshots = [item for item in snapshots if item.target_phase == phase]
        return list(reversed(snapshots))

    def get(self, project_id: str, snapshot_id: str) -> Snapshot | None:
        for snapshot in self.list_for(project_id):
            if snapshot.snapshot_id == snapshot_id:
                return snapshot
        return None
