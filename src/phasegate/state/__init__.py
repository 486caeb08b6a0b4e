from phasegate.state.artifacts import ArtifactRecord, ArtifactStore
from phasegate.state.snapshots import Snapshot, SnapshotStore
from phasegate.state.store import ConcurrentUpdateError, StateStore, StateStoreError

__all__ = [
    "ArtifactRecord",
    "ArtifactStore",
    "ConcurrentUpdateError",
    "Snapshot",
    "SnapshotStore",
    "StateStore",
    "StateStoreError",
]
