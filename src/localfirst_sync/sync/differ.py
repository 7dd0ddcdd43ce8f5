"""Partitioning of local and remote entity sets by id."""

from __future__ import annotations

from dataclasses import dataclass, field

from localfirst_sync.sync.state import Entity


@dataclass
class EntityPartition:
    """Local and remote entities grouped by where their id appears.

    ``both`` maps an id to its ``(local, remote)`` pair.
    """

    both: dict[str, tuple[Entity, Entity]] = field(default_factory=dict)
    local_only: list[Entity] = field(default_factory=list)
    remote_only: list[Entity] = field(default_factory=list)


class SyncDiffer:
    """Stateless helper comparing a local snapshot with a remote listing."""

    @staticmethod
    def partition(local: list[Entity], remote: list[Entity]) -> EntityPartition:
        """Split entities into present-in-both, local-only and remote-only.

        Ordering follows the remote listing first, then the local snapshot,
        so repeated passes over the same inputs produce the same order.

        Args:
            local: The current LocalStore snapshot.
            remote: The entities returned by the remote ``list`` call.

        Returns:
            An ``EntityPartition``.
        """
        local_by_id = {entity.id: entity for entity in local}
        remote_ids: set[str] = set()
        result = EntityPartition()

        for remote_entity in remote:
            if remote_entity.id in remote_ids:
                continue
            remote_ids.add(remote_entity.id)
            local_entity = local_by_id.get(remote_entity.id)
            if local_entity is None:
                result.remote_only.append(remote_entity)
            else:
                result.both[remote_entity.id] = (local_entity, remote_entity)

        result.local_only = [
            entity for entity in local if entity.id not in remote_ids
        ]
        return result
