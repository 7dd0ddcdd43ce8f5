"""MCP tools for reconciling entity caches and inspecting sync status."""

from __future__ import annotations

from typing import Any

from mcp.server.fastmcp import FastMCP

from localfirst_sync.hub import SyncHub


def register_sync_tools(mcp: FastMCP, hub: SyncHub) -> None:
    """Register reconcile, read and delete tools with the MCP server."""

    @mcp.tool()
    async def reconcile(
        entity_type: str | None = None,
        scope: str | None = None,
    ) -> list[dict[str, Any]]:
        """Reconcile the local cache with the remote service.

        Pulls the remote listing, merges by last-write-wins on updatedAt,
        pushes newer local edits and uploads entities created offline.

        Args:
            entity_type: Entity type to reconcile. All types if omitted.
            scope: Scope for the remote listing. Configured default if omitted.
        """
        names = [entity_type] if entity_type else None
        reports = await hub.reconcile_all(names, scope)
        return [report.model_dump(mode="json") for report in reports]

    @mcp.tool()
    def list_entities(entity_type: str) -> list[dict[str, Any]]:
        """List the cached entities of one type, as last reconciled.

        Args:
            entity_type: Entity type to list.
        """
        return [entity.to_json_dict() for entity in hub.engine(entity_type).entities()]

    @mcp.tool()
    def get_sync_status(entity_type: str | None = None) -> list[dict[str, Any]]:
        """Check cached, provisional and tombstoned counts per entity type.

        Args:
            entity_type: Optional entity type. All types if omitted.
        """
        names = [entity_type] if entity_type else hub.entity_types
        return [hub.engine(name).get_status().model_dump(mode="json") for name in names]

    @mcp.tool()
    async def delete_entity(entity_type: str, entity_id: str) -> dict[str, Any]:
        """Delete an entity locally and remotely.

        The id is tombstoned so a stale remote copy is never re-adopted.

        Args:
            entity_type: Entity type of the entity.
            entity_id: Id of the entity to delete.
        """
        result = await hub.engine(entity_type).delete_local(entity_id)
        return result.model_dump()
