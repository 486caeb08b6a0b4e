from __future__ import annotations

import hashlib
import json
import os
import subprocess
import time
from collections.abc import Callable
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any


class StateStoreError(RuntimeError):
    """Raised when shared-state operations fail."""


class ConcurrentUpdateError(StateStoreError):
    """Raised when a write observes a newer revision than the one it read."""


def utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def git_blob_id(content: str) -> str:
    """Content address of ``content`` computed the way ``git hash-object`` does."""
    payload = content.encode("utf-8")
    header = f"blob {len(payload)}\0".encode()
    return hashlib.sha1(header + payload).hexdigest()


class StateStore:
    """Revisioned JSON documents, one per namespace.

    Documents live in ``git notes`` attached to an anchor blob when the root is
    a git work tree, and in ``.phasegate/state/<namespace>.json`` otherwise.
    Every document is wrapped in an envelope carrying a revision counter that
    ``set_json`` checks for optimistic concurrency.
    """

    NAMESPACES = {"projects", "gates", "artifacts", "snapshots", "metrics", "decisions"}
    SCHEMA_VERSION = 1
    UPDATE_ATTEMPTS = 4

    def __init__(self, root: Path, *, backend_mode: str = "local") -> None:
        if backend_mode not in {"notes", "local"}:
            raise StateStoreError(f"Unsupported state backend mode: {backend_mode}")
        self.root = root.resolve()
        self.local_state_dir = self.root / ".phasegate" / "state"
        self.local_state_dir.mkdir(parents=True, exist_ok=True)
        self.anchor_file = self.root / ".phasegate" / "anchor"
        self.lock_file = self.local_state_dir / ".lock"
        git_available = backend_mode == "notes" and self._is_git_repo()
        self._backend_mode = "notes" if git_available else "local"

    @property
    def git_enabled(self) -> bool:
        return self._backend_mode == "notes"

    @property
    def backend_mode(self) -> str:
        return self._backend_mode

    def _is_git_repo(self) -> bool:
        try:
            proc = subprocess.run(
                ["git", "--no-pager", "rev-parse", "--is-inside-work-tree"],
                cwd=self.root,
                text=True,
                capture_output=True,
            )
        except FileNotFoundError:
            return False
        return proc.returncode == 0 and proc.stdout.strip() == "true"

    def _run_git(
        self,
        args: list[str],
        input_text: str | None = None,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        proc = subprocess.run(
            ["git", "--no-pager", *args],
            cwd=self.root,
            text=True,
            capture_output=True,
            input=input_text,
        )
        if check and proc.returncode != 0:
            raise StateStoreError(proc.stderr.strip() or proc.stdout.strip())
        return proc

    @classmethod
    def _validate_namespace(cls, namespace: str) -> None:
        if namespace not in cls.NAMESPACES:
            raise StateStoreError(f"Unsupported namespace: {namespace}")

    def _local_file(self, namespace: str) -> Path:
        return self.local_state_dir / f"{namespace}.json"

    @staticmethod
    def _notes_ref(namespace: str) -> str:
        return f"refs/notes/phasegate/{namespace}"

    def _anchor_object(self) -> str:
        if self.anchor_file.exists():
            return self.anchor_file.read_text(encoding="utf-8").strip()
        anchor = self.write_blob("phasegate-state-anchor\n")
        self.anchor_file.write_text(anchor, encoding="utf-8")
        return anchor

    def write_blob(self, content: str) -> str:
        """Store ``content`` content-addressed and return its blob id.

        With git available the blob is written to the object database, so the
        returned id can be inspected with ``git cat-file -p``.
        """
        if not self.git_enabled:
            return git_blob_id(content)
        proc = self._run_git(["hash-object", "-w", "--stdin"], input_text=content)
        return proc.stdout.strip()

    @contextmanager
    def _state_lock(self, timeout_seconds: float = 3.0):
        start = time.monotonic()
        while True:
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if time.monotonic() - start > timeout_seconds:
                    raise StateStoreError("Timed out waiting for state lock.") from exc
                time.sleep(0.02)

        try:
            yield
        finally:
            try:
                self.lock_file.unlink()
            except FileNotFoundError:
                pass

    def _read_raw_json(self, namespace: str) -> Any:
        if self.git_enabled:
            proc = self._run_git(
                ["notes", "--ref", self._notes_ref(namespace), "show", self._anchor_object()],
                check=False,
            )
            content = proc.stdout.strip() if proc.returncode == 0 else ""
        else:
            local_file = self._local_file(namespace)
            content = local_file.read_text(encoding="utf-8") if local_file.exists() else ""
        if not content:
            return None
        try:
            return json.loads(content)
        except json.JSONDecodeError:
            return None

    def _write_raw_json(self, namespace: str, payload: Any) -> None:
        serialized = json.dumps(payload, ensure_ascii=False, separators=(",", ":"))
        if self.git_enabled:
            self._run_git(
                [
                    "notes",
                    "--ref",
                    self._notes_ref(namespace),
                    "add",
                    "-f",
                    "-F",
                    "-",
                    self._anchor_object(),
                ],
                input_text=serialized,
            )
            return
        target = self._local_file(namespace)
        staging = target.with_suffix(".json.tmp")
        staging.write_text(serialized, encoding="utf-8")
        os.replace(staging, target)

    def _normalize_envelope(self, raw_payload: Any, default: Any) -> dict[str, Any]:
        if (
            isinstance(raw_payload, dict)
            and "schema_version" in raw_payload
            and "data" in raw_payload
            and "revision" in raw_payload
        ):
            return {
                "schema_version": int(raw_payload.get("schema_version") or self.SCHEMA_VERSION),
                "revision": int(raw_payload.get("revision") or 1),
                "updated_at": raw_payload.get("updated_at") or utcnow_iso(),
                "data": raw_payload.get("data", default),
            }
        # Bare payloads written before envelopes existed are treated as revision 1.
        return {
            "schema_version": self.SCHEMA_VERSION,
            "revision": 1,
            "updated_at": utcnow_iso(),
            "data": default if raw_payload is None else raw_payload,
        }

    def get_envelope(self, namespace: str, default: Any | None = None) -> dict[str, Any]:
        self._validate_namespace(namespace)
        default_value = {} if default is None else default
        return self._normalize_envelope(self._read_raw_json(namespace), default_value)

    def get_json(self, namespace: str, default: Any | None = None) -> Any:
        return self.get_envelope(namespace, default=default).get("data")

    def set_json(self, namespace: str, data: Any, expected_revision: int | None = None) -> int:
        self._validate_namespace(namespace)
        with self._state_lock():
            current_revision = int(self.get_envelope(namespace).get("revision", 1))
            if expected_revision is not None and expected_revision != current_revision:
                raise ConcurrentUpdateError(
                    f"Concurrent state update detected for namespace '{namespace}'."
                )
            envelope = {
                "schema_version": self.SCHEMA_VERSION,
                "revision": current_revision + 1,
                "updated_at": utcnow_iso(),
                "data": data,
            }
            self._write_raw_json(namespace, envelope)
            return current_revision + 1

    def update_json(
        self,
        namespace: str,
        updater: Callable[[Any], Any],
        default: Any | None = None,
    ) -> Any:
        """Read-modify-write ``namespace`` retrying when another writer got in first.

        ``updater`` may raise to abort the update; nothing is written in that case.
        """
        default_value = {} if default is None else default
        last_error: StateStoreError | None = None
        for _ in range(self.UPDATE_ATTEMPTS):
            current = self.get_envelope(namespace, default=default_value)
            updated = updater(current.get("data", default_value))
            try:
                self.set_json(namespace, updated, expected_revision=int(current["revision"]))
                return updated
            except ConcurrentUpdateError as exc:
                last_error = exc
                time.sleep(0.01)
        raise StateStoreError(str(last_error) if last_error else "State update failed.")

    def get_decisions(self) -> list[dict[str, Any]]:
        payload = self.get_json("decisions", default={"decisions": []})
        decisions = payload.get("decisions", []) if isinstance(payload, dict) else []
        return decisions if isinstance(decisions, list) else []

    def add_decision(self, decision: dict[str, Any], *, limit: int = 500) -> None:
        def _updater(payload: Any) -> dict[str, Any]:
            result = payload if isinstance(payload, dict) else {"decisions": []}
            result.setdefault("decisions", [])
            result["decisions"].append(decision)
            result["decisions"] = result["decisions"][-limit:]
            return result

        self.update_json("decisions", _updater, default={"decisions": []})

    def get_metrics(self) -> dict[str, Any]:
        metrics = self.get_json("metrics", default={})
        return metrics if isinstance(metrics, dict) else {}

    def record_event(self, key: str, event: dict[str, Any], *, limit: int = 200) -> None:
        """Append ``event`` to the bounded ``key`` history in the metrics namespace."""

        def _updater(payload: Any) -> dict[str, Any]:
            metrics = payload if isinstance(payload, dict) else {}
            history = metrics.get(key, [])
            if not isinstance(history, list):
                history = []
            entry = dict(event)
            entry.setdefault("at", utcnow_iso())
            history.append(entry)
            metrics[key] = history[-limit:]
            counter = f"{event.get('event', 'unknown')}_count"
            counters = metrics.setdefault("counters", {})
            counters[counter] = int(counters.get(counter, 0)) + 1
            return metrics

        self.update_json("metrics", _updater, default={})
