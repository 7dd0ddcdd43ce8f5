"""Sync engine reconciling one entity type's local cache with the remote
service of record.

A reconcile pass pulls the remote listing, merges it with the local
snapshot by id, pushes local-newer entities and uploads entities that only
exist locally, then commits the merged snapshot in one write.  The engine
is the only writer of its LocalStore.
"""

from __future__ import annotations

import logging
from datetime import datetime
from enum import StrEnum
from typing import Any, Protocol

from pydantic import BaseModel, ValidationError

from localfirst_sync.api_client.connectivity import ConnectivityMonitor
from localfirst_sync.errors import RemoteError
from localfirst_sync.sync.conflict import ConflictDetector
from localfirst_sync.sync.differ import SyncDiffer
from localfirst_sync.sync.pending import PendingUploadTracker
from localfirst_sync.sync.state import (
    PROVISIONAL_PREFIX,
    Entity,
    LocalStore,
    TombstoneTracker,
    compute_fingerprint,
    is_provisional_id,
    new_provisional_id,
    utc_now,
)

logger = logging.getLogger(__name__)


class RemoteClient(Protocol):
    """What the engine needs from the remote side of one entity type."""

    async def list(self, scope: str = "") -> list[Entity]: ...

    async def create(self, payload: dict[str, Any]) -> Entity: ...

    async def update(self, entity_id: str, payload: dict[str, Any]) -> Entity: ...

    async def delete(self, entity_id: str) -> None: ...


# ------------------------------------------------------------------
# Result / Status models
# ------------------------------------------------------------------


class ReconcileOutcome(StrEnum):
    COMPLETED = "completed"
    OFFLINE = "offline"
    ABORTED = "aborted"


class ReconcileReport(BaseModel):
    """What one reconcile pass did."""

    entity_type: str
    scope: str = ""
    outcome: ReconcileOutcome = ReconcileOutcome.COMPLETED
    message: str = ""
    adopted: int = 0
    pushed: int = 0
    push_failed: int = 0
    created: int = 0
    create_failed: int = 0
    skipped_in_flight: int = 0
    dropped: int = 0
    deletes_retried: int = 0
    total: int = 0

    @property
    def success(self) -> bool:
        return self.outcome == ReconcileOutcome.COMPLETED

    def summary(self) -> str:
        if not self.success:
            return f"{self.entity_type}: {self.outcome.value} ({self.message})"
        return (
            f"{self.entity_type}: {self.total} cached, {self.adopted} adopted, "
            f"{self.pushed} pushed, {self.created} created, {self.dropped} dropped"
            + (f", {self.push_failed + self.create_failed} failed" if self.push_failed or self.create_failed else "")
        )


class SyncResult(BaseModel):
    """Outcome of a local explicit action (create, update, delete)."""

    success: bool
    message: str
    entity_id: str = ""
    entity: dict[str, Any] | None = None


class SyncStatus(BaseModel):
    """Status snapshot for one entity type."""

    entity_type: str
    cached: int
    provisional: int
    tombstoned: int
    in_memory_only: bool = False
    last_reconciled_at: datetime | None = None
    last_outcome: ReconcileOutcome | None = None


# ------------------------------------------------------------------
# Engine
# ------------------------------------------------------------------


class SyncEngine:
    """Orchestrates pull, merge and push for one entity type.

    ``reconcile`` may be called again while a previous call is suspended
    on a remote request.  Each call reads the store at its start and
    commits a full snapshot at its end; the PendingUploadTracker keeps
    overlapping calls from creating the same entity twice.

    Args:
        entity_type: Name of the entity type (for logs and reports).
        remote: Remote CRUD client for the entity type.
        store: The entity type's LocalStore.
        tombstones: The entity type's TombstoneTracker.
        pending: Upload tracker, usually shared process-wide.
        connectivity: Consulted once at the top of each reconcile.
        fingerprint_fields: Fields identifying a not-yet-uploaded entity.
        provisional_prefix: Prefix marking locally generated ids.
        retry_remote_deletes: Re-issue the delete for tombstoned ids the
            remote still lists.
    """

    def __init__(
        self,
        entity_type: str,
        remote: RemoteClient,
        store: LocalStore,
        tombstones: TombstoneTracker,
        pending: PendingUploadTracker | None = None,
        *,
        connectivity: ConnectivityMonitor | None = None,
        fingerprint_fields: tuple[str, ...] = ("name", "createdAt"),
        provisional_prefix: str = PROVISIONAL_PREFIX,
        retry_remote_deletes: bool = True,
    ) -> None:
        self._entity_type = entity_type
        self._remote = remote
        self._store = store
        self._tombstones = tombstones
        self._pending = pending or PendingUploadTracker()
        self._connectivity = connectivity or ConnectivityMonitor()
        self._fingerprint_fields = fingerprint_fields
        self._provisional_prefix = provisional_prefix
        self._retry_remote_deletes = retry_remote_deletes
        self._conflict_detector = ConflictDetector()
        self._differ = SyncDiffer()
        self._last_report: ReconcileReport | None = None
        self._last_reconciled_at: datetime | None = None

    @property
    def entity_type(self) -> str:
        return self._entity_type

    @property
    def store(self) -> LocalStore:
        return self._store

    @property
    def tombstones(self) -> TombstoneTracker:
        return self._tombstones

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def entities(self) -> list[Entity]:
        """Every cached entity, for rendering."""
        return self._store.load()

    def get(self, entity_id: str) -> Entity | None:
        return self._store.get(entity_id)

    def is_provisional(self, entity_id: str) -> bool:
        return is_provisional_id(entity_id, self._provisional_prefix)

    def get_status(self) -> SyncStatus:
        entities = self._store.load()
        return SyncStatus(
            entity_type=self._entity_type,
            cached=len(entities),
            provisional=sum(1 for e in entities if self.is_provisional(e.id)),
            tombstoned=len(self._tombstones.ids()),
            in_memory_only=self._store.in_memory_only,
            last_reconciled_at=self._last_reconciled_at,
            last_outcome=self._last_report.outcome if self._last_report else None,
        )

    # ------------------------------------------------------------------
    # Reconcile
    # ------------------------------------------------------------------

    async def reconcile(self, scope: str = "") -> ReconcileReport:
        """Run one pull-merge-push pass.  Never raises.

        Args:
            scope: Scope passed to the remote ``list`` call.

        Returns:
            A ``ReconcileReport``.  When the remote listing cannot be
            fetched the outcome is ``ABORTED`` and the store is untouched.
        """
        report = ReconcileReport(entity_type=self._entity_type, scope=scope)
        try:
            await self._reconcile(scope, report)
        except Exception as exc:
            logger.exception("Reconcile of %s failed unexpectedly", self._entity_type)
            report.outcome = ReconcileOutcome.ABORTED
            report.message = f"Unexpected error: {exc}"

        self._last_report = report
        if report.success:
            self._last_reconciled_at = utc_now()
        return report

    async def _reconcile(self, scope: str, report: ReconcileReport) -> None:
        if not self._connectivity.is_online():
            logger.info("Offline - skipping reconcile of %s", self._entity_type)
            report.outcome = ReconcileOutcome.OFFLINE
            report.message = "offline"
            return

        # 1. Snapshot the store, then fetch the remote set.  Any failure
        # leaves the store untouched.
        snapshot = self._store.load()
        try:
            remote_entities = await self._remote.list(scope)
        except RemoteError as exc:
            logger.error("Cannot list remote %s, keeping local cache: %s", self._entity_type, exc)
            report.outcome = ReconcileOutcome.ABORTED
            report.message = str(exc)
            return

        # 2. Partition.  Writes made while the listing was in flight are
        # folded back in at commit.
        partition = self._differ.partition(snapshot, remote_entities)
        merged: dict[str, Entity] = {}

        # 3. Present on both sides: newest updatedAt wins, remote on ties.
        for entity_id, (local, remote) in partition.both.items():
            if self._tombstones.is_deleted(entity_id):
                await self._retry_delete(entity_id, report)
                continue
            if self._conflict_detector.local_wins(local, remote):
                merged[entity_id] = local
                try:
                    await self._remote.update(entity_id, local.payload())
                    report.pushed += 1
                    logger.debug("Pushed newer local %s %s", self._entity_type, entity_id)
                except RemoteError as exc:
                    report.push_failed += 1
                    logger.warning(
                        "Local %s %s is newer but push failed, will retry: %s",
                        self._entity_type, entity_id, exc,
                    )
            else:
                merged[entity_id] = remote
                if remote != local:
                    report.adopted += 1

        # 4./5. Only on remote: adopt unless the user deleted it here.
        for remote in partition.remote_only:
            if self._tombstones.is_deleted(remote.id):
                await self._retry_delete(remote.id, report)
                continue
            merged[remote.id] = remote
            report.adopted += 1

        # 6. Only local: upload provisional entities, drop the rest.
        for local in partition.local_only:
            await self._reconcile_local_only(local, merged, report)

        # 7. Commit.
        final = self._fold_concurrent_writes(snapshot, merged, remote_entities)
        self._store.replace(final)
        report.total = len(final)
        self._release_adopted_creates(final, remote_entities)
        logger.info("Reconciled %s: %s", self._entity_type, report.summary())

    async def _reconcile_local_only(
        self,
        local: Entity,
        merged: dict[str, Entity],
        report: ReconcileReport,
    ) -> None:
        if self._tombstones.is_deleted(local.id):
            report.dropped += 1
            return
        if not self.is_provisional(local.id):
            logger.debug("%s %s was deleted remotely, removing", self._entity_type, local.id)
            report.dropped += 1
            return

        fingerprint = compute_fingerprint(local, self._fingerprint_fields)
        known_id = self._pending.created_id(fingerprint)
        if known_id is not None:
            # An overlapping pass already created it; fold the stale copy in.
            if known_id not in merged:
                merged[known_id] = local.merged_with({"id": known_id})
            return

        if not self._pending.try_begin_upload(fingerprint):
            merged[local.id] = local
            report.skipped_in_flight += 1
            return

        try:
            created = await self._remote.create(local.payload())
        except RemoteError as exc:
            merged[local.id] = local
            report.create_failed += 1
            logger.warning(
                "Failed to upload local %s %s, will retry: %s",
                self._entity_type, local.id, exc,
            )
            return
        finally:
            self._pending.end_upload(fingerprint)

        self._pending.record_created(fingerprint, created.id)
        report.created += 1
        if await self._deleted_during_upload(local.id, created.id):
            return
        merged[created.id] = local.merged_with(created.to_json_dict())
        logger.debug("Uploaded %s %s as %s", self._entity_type, local.id, created.id)

    async def _retry_delete(self, entity_id: str, report: ReconcileReport) -> None:
        if not self._retry_remote_deletes:
            return
        try:
            await self._remote.delete(entity_id)
            report.deletes_retried += 1
        except RemoteError as exc:
            logger.warning(
                "Retry of remote delete for %s %s failed: %s",
                self._entity_type, entity_id, exc,
            )

    async def _deleted_during_upload(self, provisional_id: str, remote_id: str) -> bool:
        """Carry a tombstone over to the remote id if the user deleted the
        entity while its upload was in flight."""
        if not self._tombstones.is_deleted(provisional_id):
            return False
        self._tombstones.mark_deleted(remote_id)
        try:
            await self._remote.delete(remote_id)
        except RemoteError as exc:
            logger.warning(
                "Could not delete %s %s removed during upload: %s",
                self._entity_type, remote_id, exc,
            )
        return True

    def _release_adopted_creates(self, final: list[Entity], remote_entities: list[Entity]) -> None:
        # Once the listing carries the created id, no stale copy needs the mapping.
        keep = {
            compute_fingerprint(e, self._fingerprint_fields)
            for e in final
            if self.is_provisional(e.id)
        }
        released = self._pending.release_created({e.id for e in remote_entities}, keep)
        if released:
            logger.debug("Forgot %d adopted %s upload(s)", released, self._entity_type)

    def _fold_concurrent_writes(
        self,
        snapshot: list[Entity],
        merged: dict[str, Entity],
        remote_entities: list[Entity],
    ) -> list[Entity]:
        """Order the merged result and keep local writes made mid-pass.

        Entities written to the store after the pass read its snapshot
        (local creates, or ids an overlapping pass committed) and local
        edits newer than what the pass merged are kept.  A provisional id
        that left the store mid-pass was swapped for its remote id or
        deleted, so it is not written back.  Tombstoned ids never survive.
        """
        before = {entity.id: entity for entity in snapshot}
        current_entities = self._store.load()
        current_ids = {entity.id for entity in current_entities}
        for entity_id in before:
            if entity_id not in current_ids and self.is_provisional(entity_id):
                merged.pop(entity_id, None)

        for current in current_entities:
            original = before.get(current.id)
            if original is None:
                if current.id not in merged:
                    merged[current.id] = current
            elif current != original:
                chosen = merged.get(current.id)
                if chosen is not None and current.updated_at > chosen.updated_at:
                    merged[current.id] = current

        order = {entity.id: i for i, entity in enumerate(remote_entities)}
        return sorted(
            (e for e in merged.values() if not self._tombstones.is_deleted(e.id)),
            key=lambda e: order.get(e.id, len(order)),
        )

    # ------------------------------------------------------------------
    # Local explicit actions
    # ------------------------------------------------------------------

    async def create_local(self, payload: dict[str, Any]) -> SyncResult:
        """Create an entity locally, then try to create it remotely.

        The entity is visible in the store immediately under a provisional
        id.  A failed upload still succeeds locally; the next reconcile
        retries it.
        """
        now = utc_now()
        data = {key: value for key, value in payload.items() if key not in ("id", "updatedAt")}
        data.setdefault("createdAt", now.isoformat())
        data["id"] = new_provisional_id(self._provisional_prefix)
        data["updatedAt"] = now
        try:
            entity = Entity.model_validate(data)
        except ValidationError as exc:
            return SyncResult(success=False, message=f"Invalid entity: {exc}")

        self._store.replace([*self._store.load(), entity])
        saved_locally = SyncResult(
            success=True,
            message="Saved locally; will upload on next sync",
            entity_id=entity.id,
            entity=entity.to_json_dict(),
        )
        if not self._connectivity.is_online():
            return saved_locally

        fingerprint = compute_fingerprint(entity, self._fingerprint_fields)
        if not self._pending.try_begin_upload(fingerprint):
            return saved_locally
        try:
            created = await self._remote.create(entity.payload())
        except RemoteError as exc:
            logger.warning("Failed to save %s remotely, will sync later: %s", self._entity_type, exc)
            return saved_locally
        finally:
            self._pending.end_upload(fingerprint)

        self._pending.record_created(fingerprint, created.id)
        if await self._deleted_during_upload(entity.id, created.id):
            return SyncResult(success=True, message="Created and deleted", entity_id=created.id)

        uploaded = entity.merged_with(created.to_json_dict())
        self._store.replace(
            [uploaded if e.id == entity.id else e for e in self._store.load()]
        )
        logger.info("Created %s %s", self._entity_type, uploaded.id)
        return SyncResult(
            success=True,
            message=f"Created {self._entity_type} {uploaded.id}",
            entity_id=uploaded.id,
            entity=uploaded.to_json_dict(),
        )

    async def update_local(self, entity_id: str, changes: dict[str, Any]) -> SyncResult:
        """Apply *changes* locally, bump ``updatedAt`` and push them.

        Returns a failed result if the entity is unknown or the remote
        update fails; in the latter case the local write is kept and the
        next reconcile pushes it again.
        """
        existing = self._store.get(entity_id)
        if existing is None:
            return SyncResult(
                success=False,
                message=f"{self._entity_type} {entity_id} not found",
                entity_id=entity_id,
            )

        fields = {key: value for key, value in changes.items() if key not in ("id", "updatedAt")}
        fields["updatedAt"] = utc_now().isoformat()
        try:
            updated = existing.merged_with(fields)
        except ValidationError as exc:
            return SyncResult(success=False, message=f"Invalid changes: {exc}", entity_id=entity_id)

        self._store.replace(
            [updated if e.id == entity_id else e for e in self._store.load()]
        )
        result = SyncResult(
            success=True,
            message=f"Updated {self._entity_type} {entity_id}",
            entity_id=entity_id,
            entity=updated.to_json_dict(),
        )
        if self.is_provisional(entity_id) or not self._connectivity.is_online():
            result.message = "Saved locally; will sync later"
            return result

        try:
            await self._remote.update(entity_id, updated.payload())
        except RemoteError as exc:
            logger.error(
                "Failed to update %s %s remotely; change is only saved locally: %s",
                self._entity_type, entity_id, exc,
            )
            result.success = False
            result.message = f"Saved locally but remote update failed: {exc}"
        return result

    async def delete_local(self, entity_id: str) -> SyncResult:
        """Delete locally, tombstone the id and try the remote delete.

        The tombstone keeps the entity from coming back even if the remote
        delete fails; reconcile re-issues it.
        """
        if self._store.get(entity_id) is None:
            return SyncResult(
                success=False,
                message=f"{self._entity_type} {entity_id} not found",
                entity_id=entity_id,
            )

        self._tombstones.mark_deleted(entity_id)
        self._store.replace([e for e in self._store.load() if e.id != entity_id])
        logger.info("Marked %s %s as deleted", self._entity_type, entity_id)

        result = SyncResult(
            success=True,
            message=f"Deleted {self._entity_type} {entity_id}",
            entity_id=entity_id,
        )
        if self.is_provisional(entity_id) or not self._connectivity.is_online():
            return result
        try:
            await self._remote.delete(entity_id)
        except RemoteError as exc:
            logger.warning(
                "Failed to delete %s %s remotely, will retry on sync: %s",
                self._entity_type, entity_id, exc,
            )
            result.message += " locally; remote delete pending"
        return result
