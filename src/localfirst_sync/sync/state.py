"""Local persistence for synced entities using JSON-backed Pydantic models.

Each entity type owns two files under the state directory: the cached
snapshot of its entities and the ids the local user deleted.  Both are
rewritten in full on every mutation and moved into place atomically, so
readers never observe a partially written file.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
    field_validator,
)

from localfirst_sync.errors import StorageFailure

logger = logging.getLogger(__name__)

PROVISIONAL_PREFIX = "tmp-"


class Entity(BaseModel):
    """A syncable record.

    Only ``id`` and ``updatedAt`` matter to the sync algorithm; every other
    field is carried through verbatim as entity-type-specific payload.
    """

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: str
    updated_at: datetime = Field(alias="updatedAt")

    @field_validator("updated_at")
    @classmethod
    def _assume_utc(cls, value: datetime) -> datetime:
        # Naive and aware timestamps cannot be compared.
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    def to_json_dict(self) -> dict[str, Any]:
        """Serialize with wire field names (``updatedAt``) and JSON types."""
        return self.model_dump(mode="json", by_alias=True)

    def payload(self) -> dict[str, Any]:
        """The body sent to the remote service: everything except ``id``."""
        data = self.to_json_dict()
        data.pop("id", None)
        return data

    def merged_with(self, fields: dict[str, Any]) -> Entity:
        """Return a copy with *fields* (wire names) laid over this entity."""
        data = self.to_json_dict()
        data.update(fields)
        return Entity.model_validate(data)


_ENTITY_LIST = TypeAdapter(list[Entity])


def new_provisional_id(prefix: str = PROVISIONAL_PREFIX) -> str:
    """Generate a local identifier for an entity not yet created remotely."""
    return f"{prefix}{uuid.uuid4().hex}"


def is_provisional_id(entity_id: str, prefix: str = PROVISIONAL_PREFIX) -> bool:
    return entity_id.startswith(prefix)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def compute_content_hash(content: str) -> str:
    """Compute a SHA-256 hash of a string after normalizing line endings.

    Args:
        content: The text content to hash.

    Returns:
        Hex-encoded SHA-256 digest string.
    """
    normalized = content.replace("\r\n", "\n").replace("\r", "\n")
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


def compute_fingerprint(entity: Entity, fields: tuple[str, ...]) -> str:
    """Derive the stable upload key for a not-yet-created entity.

    The fingerprint is built from content that does not change when the
    provisional id is swapped for a remote one (by default the entity's
    ``name`` and ``createdAt``).  Entities carrying none of *fields* fall
    back to their provisional id.

    Args:
        entity: The local-only entity.
        fields: Wire field names contributing to the fingerprint.

    Returns:
        A hex digest, or the entity id when no field is present.
    """
    data = entity.to_json_dict()
    values = [data.get(name) for name in fields]
    if all(value is None for value in values):
        return entity.id
    return compute_content_hash(json.dumps(values, sort_keys=True, default=str))


class _JsonDocument:
    """A single JSON file replaced atomically on every write."""

    def __init__(self, path: Path) -> None:
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    def read(self) -> str | None:
        """Return the raw file content, or ``None`` if it does not exist yet.

        Raises:
            StorageFailure: If the file exists but cannot be read.
        """
        try:
            if not self._path.exists() or self._path.stat().st_size == 0:
                return None
            return self._path.read_text(encoding="utf-8")
        except OSError as exc:
            raise StorageFailure(f"Cannot read {self._path}: {exc}") from exc

    def write(self, content: str) -> None:
        """Write *content* to a sibling temp file, then move it into place.

        Raises:
            StorageFailure: If any step of the write fails.
        """
        tmp = self._path.with_name(self._path.name + ".tmp")
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(content, encoding="utf-8")
            os.replace(tmp, self._path)
        except OSError as exc:
            raise StorageFailure(f"Cannot write {self._path}: {exc}") from exc


class LocalStore:
    """Persistent cache of all entities of one type.

    The snapshot is loaded from disk on first access and then served from
    memory; every :meth:`replace` rewrites the whole file.  Storage errors
    are never raised to callers: a failed read or write switches the store
    to in-memory mode for the rest of the process, leaving the file as it
    was (a failed read starts from an empty cache).

    Args:
        state_dir: Directory holding the state files.
        entity_type: Name of the entity type; used as the file key.
    """

    def __init__(self, state_dir: Path, entity_type: str) -> None:
        self._entity_type = entity_type
        self._document = _JsonDocument(Path(state_dir) / f"{entity_type}.json")
        self._entities: dict[str, Entity] | None = None
        self._in_memory_only = False

    @property
    def entity_type(self) -> str:
        return self._entity_type

    @property
    def path(self) -> Path:
        return self._document.path

    @property
    def in_memory_only(self) -> bool:
        return self._in_memory_only

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _ensure_loaded(self) -> dict[str, Entity]:
        if self._entities is None:
            self._entities = {}
            try:
                raw = self._document.read()
                if raw is not None:
                    for entity in _ENTITY_LIST.validate_json(raw):
                        self._entities[entity.id] = entity
            except (StorageFailure, ValidationError) as exc:
                self._in_memory_only = True
                logger.warning(
                    "Could not load cached %s, starting empty in memory: %s",
                    self._entity_type, exc,
                )
        return self._entities

    def load(self) -> list[Entity]:
        """Return every cached entity."""
        return list(self._ensure_loaded().values())

    def get(self, entity_id: str) -> Entity | None:
        return self._ensure_loaded().get(entity_id)

    def replace(self, entities: list[Entity]) -> None:
        """Swap the whole snapshot for *entities* and persist it.

        Args:
            entities: The complete new content of the store.  Later
                entries win if two share an id.
        """
        self._ensure_loaded()
        self._entities = {entity.id: entity for entity in entities}
        if self._in_memory_only:
            return
        content = _ENTITY_LIST.dump_json(
            list(self._entities.values()), by_alias=True, indent=2
        ).decode("utf-8")
        try:
            self._document.write(content + "\n")
        except StorageFailure as exc:
            self._in_memory_only = True
            logger.warning(
                "Cache for %s is now in-memory only for this session: %s",
                self._entity_type, exc,
            )


class TombstoneTracker:
    """Persistent set of entity ids the local user deleted.

    Ids are only ever added by normal operation.  :meth:`reset` exists for
    administrative cleanup and is never called by the sync engine.

    Args:
        state_dir: Directory holding the state files.
        entity_type: Name of the entity type; used as the file key.
    """

    def __init__(self, state_dir: Path, entity_type: str) -> None:
        self._entity_type = entity_type
        self._document = _JsonDocument(
            Path(state_dir) / f"{entity_type}.deleted.json"
        )
        self._ids: set[str] | None = None
        self._in_memory_only = False

    @property
    def path(self) -> Path:
        return self._document.path

    def _ensure_loaded(self) -> set[str]:
        if self._ids is None:
            self._ids = set()
            try:
                raw = self._document.read()
                if raw is not None:
                    self._ids.update(str(i) for i in json.loads(raw))
            except (StorageFailure, ValueError, TypeError) as exc:
                self._in_memory_only = True
                logger.warning(
                    "Could not load tombstones for %s, starting empty in memory: %s",
                    self._entity_type, exc,
                )
        return self._ids

    def _save(self) -> None:
        if self._in_memory_only:
            return
        content = json.dumps(sorted(self._ensure_loaded()), indent=2)
        try:
            self._document.write(content + "\n")
        except StorageFailure as exc:
            self._in_memory_only = True
            logger.warning(
                "Tombstones for %s are now in-memory only for this session: %s",
                self._entity_type, exc,
            )

    def mark_deleted(self, entity_id: str) -> None:
        ids = self._ensure_loaded()
        if entity_id in ids:
            return
        ids.add(entity_id)
        self._save()

    def is_deleted(self, entity_id: str) -> bool:
        return entity_id in self._ensure_loaded()

    def ids(self) -> set[str]:
        return set(self._ensure_loaded())

    def reset(self, entity_ids: list[str] | None = None) -> int:
        """Forget tombstones.

        Args:
            entity_ids: Ids to clear.  ``None`` clears every tombstone.

        Returns:
            How many tombstones were removed.
        """
        ids = self._ensure_loaded()
        if entity_ids is None:
            removed = len(ids)
            ids.clear()
        else:
            removed = len(ids & set(entity_ids))
            ids.difference_update(entity_ids)
        if removed:
            self._save()
        return removed
