"""Local-first entity cache synchronized with a remote REST service."""

from localfirst_sync.hub import SyncHub

__all__ = ["SyncHub"]
