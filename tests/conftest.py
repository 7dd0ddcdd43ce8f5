"""Shared fixtures for localfirst-sync tests."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import pytest

from localfirst_sync.errors import RemoteUnavailable
from localfirst_sync.sync import (
    Entity,
    LocalStore,
    PendingUploadTracker,
    SyncEngine,
    TombstoneTracker,
)


def ts(seconds: int) -> datetime:
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def entity(entity_id: str, updated_at: int, **fields: Any) -> Entity:
    return Entity.model_validate({"id": entity_id, "updatedAt": updated_at, **fields})


class FakeRemote:
    """In-memory stand-in for one entity type's remote API.

    ``list_gate``/``create_gate`` suspend the matching call until set, so
    tests can interleave reconcile passes deterministically.  Gates queued
    in ``create_gates`` are handed out one per ``create`` call, in order.
    """

    def __init__(self, entities: list[Entity] | None = None) -> None:
        self.records: dict[str, dict[str, Any]] = {
            e.id: e.to_json_dict() for e in entities or []
        }
        self.calls: list[tuple[str, Any]] = []
        self.next_ids: list[str] = []
        self.list_error: Exception | None = None
        self.create_error: Exception | None = None
        self.delete_error: Exception | None = None
        self.update_errors: set[str] = set()
        self.list_gate: asyncio.Event | None = None
        self.create_gate: asyncio.Event | None = None
        self.create_gates: list[asyncio.Event] = []
        self._counter = 0

    def count(self, operation: str) -> int:
        return sum(1 for name, _ in self.calls if name == operation)

    async def list(self, scope: str = "") -> list[Entity]:
        self.calls.append(("list", scope))
        if self.list_error is not None:
            raise self.list_error
        listing = [Entity.model_validate(data) for data in self.records.values()]
        if self.list_gate is not None:
            await self.list_gate.wait()
        return listing

    async def create(self, payload: dict[str, Any]) -> Entity:
        self.calls.append(("create", payload))
        if self.create_gates:
            await self.create_gates.pop(0).wait()
        if self.create_gate is not None:
            await self.create_gate.wait()
        if self.create_error is not None:
            raise self.create_error
        if self.next_ids:
            new_id = self.next_ids.pop(0)
        else:
            self._counter += 1
            new_id = f"srv-{self._counter}"
        self.records[new_id] = {"id": new_id, **payload}
        return Entity.model_validate(self.records[new_id])

    async def update(self, entity_id: str, payload: dict[str, Any]) -> Entity:
        self.calls.append(("update", entity_id))
        await asyncio.sleep(0)
        if entity_id in self.update_errors:
            raise RemoteUnavailable(f"update of {entity_id} failed", 503)
        self.records[entity_id] = {"id": entity_id, **payload}
        return Entity.model_validate(self.records[entity_id])

    async def delete(self, entity_id: str) -> None:
        self.calls.append(("delete", entity_id))
        if self.delete_error is not None:
            raise self.delete_error
        self.records.pop(entity_id, None)


@pytest.fixture
def remote() -> FakeRemote:
    return FakeRemote()


@pytest.fixture
def make_engine(tmp_path: Path):
    """Build a SyncEngine for ``plans`` with state under ``tmp_path``."""

    def factory(remote: FakeRemote, **kwargs: Any) -> SyncEngine:
        return SyncEngine(
            "plans",
            remote,
            LocalStore(tmp_path, "plans"),
            TombstoneTracker(tmp_path, "plans"),
            kwargs.pop("pending", None) or PendingUploadTracker(),
            **kwargs,
        )

    return factory
