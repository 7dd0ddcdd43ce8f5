"""Sync engine package for local-first reconciliation against a remote service."""

from localfirst_sync.sync.state import (
    PROVISIONAL_PREFIX,
    Entity,
    LocalStore,
    TombstoneTracker,
    compute_content_hash,
    compute_fingerprint,
    is_provisional_id,
    new_provisional_id,
)
from localfirst_sync.sync.pending import PendingUploadTracker
from localfirst_sync.sync.conflict import ConflictDetector, ConflictType
from localfirst_sync.sync.differ import EntityPartition, SyncDiffer
from localfirst_sync.sync.engine import (
    ReconcileOutcome,
    ReconcileReport,
    RemoteClient,
    SyncEngine,
    SyncResult,
    SyncStatus,
)

__all__ = [
    "PROVISIONAL_PREFIX",
    "ConflictDetector",
    "ConflictType",
    "Entity",
    "EntityPartition",
    "LocalStore",
    "PendingUploadTracker",
    "ReconcileOutcome",
    "ReconcileReport",
    "RemoteClient",
    "SyncDiffer",
    "SyncEngine",
    "SyncResult",
    "SyncStatus",
    "TombstoneTracker",
    "compute_content_hash",
    "compute_fingerprint",
    "is_provisional_id",
    "new_provisional_id",
]
