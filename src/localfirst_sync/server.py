"""MCP server exposing the local-first sync engine as tools.

Run with:
    uv run localfirst-sync-mcp
    # or
    python -m localfirst_sync.server
"""

from __future__ import annotations

from mcp.server.fastmcp import FastMCP

from localfirst_sync.api_client import ApiClient
from localfirst_sync.config import settings
from localfirst_sync.hub import SyncHub
from localfirst_sync.tools.sync_tools import register_sync_tools

mcp = FastMCP(
    "localfirst-sync",
    instructions=(
        "Local-first sync server. Use these tools to reconcile the local "
        "entity cache with the remote service, read cached entities, and "
        "delete entities without them being resurrected by stale copies."
    ),
)


def _initialize() -> SyncHub:
    """Initialize all components and register tools."""
    settings.validate()

    api = ApiClient()
    hub = SyncHub(api, settings.state_dir, scope=settings.scope)

    register_sync_tools(mcp, hub)
    return hub


def main() -> None:
    """Entry point for the MCP server."""
    _initialize()
    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
