"""Conflict resolution for entities present both locally and remotely.

``updatedAt`` is the only signal.  Remote wins ties: a local write that
raced a remote write to the same timestamp is dropped.  Flag it if
timestamps coarser than the edit rate ever make ties common.
"""

from __future__ import annotations

from enum import StrEnum

from localfirst_sync.sync.state import Entity


class ConflictType(StrEnum):
    """Which side of a shared entity is authoritative."""

    LOCAL_NEWER = "local_newer"
    REMOTE_NEWER = "remote_newer"
    SAME = "same"


class ConflictDetector:
    """Classifies a ``(local, remote)`` pair by modification time."""

    def detect(self, local: Entity, remote: Entity) -> ConflictType:
        """Compare ``updatedAt`` of both versions.

        Returns:
            - ``LOCAL_NEWER`` -- local must be pushed and kept.
            - ``REMOTE_NEWER`` -- remote must be adopted.
            - ``SAME`` -- equal timestamps; remote is adopted.
        """
        if local.updated_at > remote.updated_at:
            return ConflictType.LOCAL_NEWER
        if local.updated_at < remote.updated_at:
            return ConflictType.REMOTE_NEWER
        return ConflictType.SAME

    def local_wins(self, local: Entity, remote: Entity) -> bool:
        return self.detect(local, remote) == ConflictType.LOCAL_NEWER
