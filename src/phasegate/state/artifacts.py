from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from typing import Any

from phasegate.state.store import StateStore, utcnow_iso

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ArtifactRecord:
    project_id: str
    phase: str
    filename: str
    version: int
    content: str
    size: int
    content_hash: str
    created_at: str
    updated_at: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "project_id": self.project_id,
            "phase": self.phase,
            "filename": self.filename,
            "version": self.version,
            "content": self.content,
            "size": self.size,
            "content_hash": self.content_hash,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> ArtifactRecord:
        return cls(
            project_id=str(payload["project_id"]),
            phase=str(payload["phase"]),
            filename=str(payload["filename"]),
            version=int(payload["version"]),
            content=str(payload.get("content", "")),
            size=int(payload.get("size", 0)),
            content_hash=str(payload.get("content_hash", "")),
            created_at=str(payload.get("created_at", "")),
            updated_at=str(payload.get("updated_at", "")),
        )


def content_hash(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


class ArtifactStore:
    """Versioned artifacts keyed by (project, phase, version, filename).

    Saving a filename again appends a new version; the current content of a
    filename is always its highest version.
    """

    NAMESPACE = "artifacts"

    def __init__(self, state: StateStore) -> None:
        self.state = state

    def _project_tree(self, project_id: str) -> dict[str, dict[str, list[dict[str, Any]]]]:
        payload = self.state.get_json(self.NAMESPACE, default={})
        tree = payload.get(project_id, {}) if isinstance(payload, dict) else {}
        return tree if isinstance(tree, dict) else {}

    def save(self, project_id: str, phase: str, filename: str, content: str) -> ArtifactRecord:
        return self.save_many(project_id, phase, {filename: content})[0]

    def save_many(
        self, project_id: str, phase: str, artifacts: dict[str, str]
    ) -> list[ArtifactRecord]:
        saved: list[ArtifactRecord] = []

        def _updater(payload: Any) -> dict[str, Any]:
            saved.clear()
            data = payload if isinstance(payload, dict) else {}
            phases = data.setdefault(project_id, {})
            files = phases.setdefault(phase, {})
            now = utcnow_iso()
            for filename, content in artifacts.items():
                versions = files.setdefault(filename, [])
                latest = versions[-1] if versions else None
                record = ArtifactRecord(
                    project_id=project_id,
                    phase=phase,
                    filename=filename,
                    version=(int(latest["version"]) + 1) if latest else 1,
                    content=content,
                    size=len(content.encode("utf-8")),
                    content_hash=content_hash(content),
                    created_at=latest["created_at"] if latest else now,
                    updated_at=now,
                )
                versions.append(record.to_dict())
                saved.append(record)
            return data

        self.state.update_json(self.NAMESPACE, _updater, default={})
        logger.debug(
            "Saved %d artifact(s) for %s/%s", len(saved), project_id, phase
        )
        return saved

    def versions(self, project_id: str, phase: str, filename: str) -> list[ArtifactRecord]:
        files = self._project_tree(project_id).get(phase, {})
        return [ArtifactRecord.from_dict(item) for item in files.get(filename, [])]

    def get(
        self, project_id: str, phase: str, filename: str, version: int | None = None
    ) -> ArtifactRecord | None:
        versions = self.versions(project_id, phase, filename)
        if not versions:
            return None
        if version is None:
            return versions[-1]
        for record in versions:
            if record.version == version:
                return record
        return None

    def current(self, project_id: str, phase: str) -> dict[str, str]:
        files = self._project_tree(project_id).get(phase, {})
        return {
            filename: str(versions[-1].get("content", ""))
            for filename, versions in files.items()
            if versions
        }

    def accumulated(self, project_id: str, phases: list[str]) -> dict[str, str]:
        """Merge the current artifacts of ``phases``; later phases win on name clashes."""
        merged: dict[str, str] = {}
        for phase in phases:
            merged.update(self.current(project_id, phase))
        return merged

    def records(self, project_id: str, phase: str | None = None) -> list[ArtifactRecord]:
        tree = self._project_tree(project_id)
        phases = [phase] if phase is not None else list(tree)
        result: list[ArtifactRecord] = []
        for name in phases:
            for versions in tree.get(name, {}).values():
                result.extend(ArtifactRecord.from_dict(item) for item in versions)
        return result

    def missing(self, project_id: str, phase: str, required: tuple[str, ...]) -> list[str]:
        present = self.current(project_id, phase)
        return [name for name in required if name not in present]

    def delete_phases(self, project_id: str, phases: list[str]) -> list[str]:
        """Remove every version of every artifact of ``phases`` and return the filenames."""
        removed: list[str] = []

        def _updater(payload: Any) -> dict[str, Any]:
            removed.clear()
            data = payload if isinstance(payload, dict) else {}
            tree = data.get(project_id, {})
            for phase in phases:
                files = tree.pop(phase, None) or {}
                removed.extend(sorted(files))
            return data

        self.state.update_json(self.NAMESPACE, _updater, default={})
        return removed
