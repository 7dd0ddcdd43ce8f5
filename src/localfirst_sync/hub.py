"""Composition root tying entity types, engines and the event channel together.

``SyncHub`` builds exactly one LocalStore, TombstoneTracker and SyncEngine
per entity type (lazily, on first use) and shares a single
PendingUploadTracker and ConnectivityMonitor between them.  Push
notifications from the EventChannel are turned into background reconcile
runs for the affected entity types; the channel itself never writes local
state.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from localfirst_sync.api_client import ApiClient, ConnectivityMonitor, EventChannel, ServerEvent
from localfirst_sync.api_client.events import ANY_EVENT
from localfirst_sync.config import EntityTypeConfig
from localfirst_sync.sync import (
    LocalStore,
    PendingUploadTracker,
    ReconcileReport,
    SyncEngine,
    TombstoneTracker,
)

logger = logging.getLogger(__name__)


class SyncHub:
    """Per-process registry of sync engines.

    Args:
        api: The remote client; its entity types define what is synced.
        state_dir: Directory for every entity type's state files.
        connectivity: Shared online/offline flag.
        scope: Default scope for reconcile and watch.
    """

    def __init__(
        self,
        api: ApiClient,
        state_dir: str | Path,
        *,
        connectivity: ConnectivityMonitor | None = None,
        scope: str = "",
    ) -> None:
        self._api = api
        self._state_dir = Path(state_dir)
        self._connectivity = connectivity or ConnectivityMonitor()
        self._scope = scope
        self._pending = PendingUploadTracker()
        self._configs: dict[str, EntityTypeConfig] = {
            config.name: config for config in api.entity_types
        }
        self._engines: dict[str, SyncEngine] = {}
        self._channel: EventChannel | None = None
        self._running: dict[str, asyncio.Task[None]] = {}
        self._rerun: set[str] = set()

    @property
    def api(self) -> ApiClient:
        return self._api

    @property
    def entity_types(self) -> list[str]:
        return list(self._configs)

    @property
    def connectivity(self) -> ConnectivityMonitor:
        return self._connectivity

    @property
    def channel(self) -> EventChannel | None:
        return self._channel

    def engine(self, entity_type: str) -> SyncEngine:
        """The engine for *entity_type*, created on first use.

        Raises:
            KeyError: If the entity type is not configured.
        """
        if entity_type not in self._engines:
            config = self._configs.get(entity_type)
            if config is None:
                raise KeyError(f"Unknown entity type: {entity_type}")
            self._engines[entity_type] = SyncEngine(
                entity_type,
                self._api.entities(entity_type),
                LocalStore(self._state_dir, entity_type),
                TombstoneTracker(self._state_dir, entity_type),
                self._pending,
                connectivity=self._connectivity,
                fingerprint_fields=config.fingerprint_fields,
            )
        return self._engines[entity_type]

    # ------------------------------------------------------------------
    # On-demand sync
    # ------------------------------------------------------------------

    async def reconcile(self, entity_type: str, scope: str | None = None) -> ReconcileReport:
        return await self.engine(entity_type).reconcile(self._scope if scope is None else scope)

    async def reconcile_all(
        self,
        entity_types: list[str] | None = None,
        scope: str | None = None,
    ) -> list[ReconcileReport]:
        """Reconcile several entity types concurrently; they are independent."""
        names = entity_types or self.entity_types
        return list(await asyncio.gather(*(self.reconcile(name, scope) for name in names)))

    # ------------------------------------------------------------------
    # Push-triggered sync
    # ------------------------------------------------------------------

    def entity_types_for_event(self, event: ServerEvent) -> list[str]:
        """Entity types a notification affects.

        Types subscribe by event name in their config.  Any event whose
        payload names a configured type under ``entityType`` also
        triggers it.
        """
        names = [
            config.name for config in self._configs.values() if event.event in config.events
        ]
        if isinstance(event.data, dict):
            named = event.data.get("entityType")
            if named in self._configs and named not in names:
                names.append(named)
        return names

    def bind_channel(self, channel: EventChannel) -> None:
        self._channel = channel
        channel.on(ANY_EVENT, self._on_event)

    async def watch(
        self,
        credential: str,
        scope: str | None = None,
        *,
        path: str | None = None,
    ) -> EventChannel:
        """Open (or re-scope) the push channel and react to its events.

        Args:
            credential: Token sent with the stream request.
            scope: Fills ``{scope}`` in the stream path.
            path: Stream path, e.g. ``/api/sse/organizations/{scope}``.
                Defaults to ``SYNC_EVENTS_PATH``.  A different path than
                the bound channel's replaces that channel.
        """
        if self._channel is not None and path is not None and path != self._channel.path:
            logger.info("Switching event stream from %s to %s", self._channel.path, path)
            await self._channel.disconnect()
            self._channel = None
        if self._channel is None:
            self.bind_channel(self._api.event_channel(path, connectivity=self._connectivity))
        assert self._channel is not None  # noqa: S101
        await self._channel.connect(self._scope if scope is None else scope, credential)
        return self._channel

    def _on_event(self, event: ServerEvent) -> None:
        for entity_type in self.entity_types_for_event(event):
            logger.debug("%s event triggers reconcile of %s", event.event, entity_type)
            self.trigger(entity_type)

    def trigger(self, entity_type: str) -> None:
        """Schedule a background reconcile, coalescing bursts of triggers.

        While a triggered run is in progress further triggers collapse
        into one follow-up run.  The task is independent of the channel,
        so disconnecting never cancels it.
        """
        if entity_type in self._running:
            self._rerun.add(entity_type)
            return
        task = asyncio.create_task(self._run_triggered(entity_type))
        self._running[entity_type] = task

    async def _run_triggered(self, entity_type: str) -> None:
        try:
            while True:
                self._rerun.discard(entity_type)
                await self.reconcile(entity_type)
                if entity_type not in self._rerun:
                    return
        finally:
            self._running.pop(entity_type, None)

    async def drain(self) -> None:
        """Wait for every triggered reconcile to finish."""
        while self._running:
            await asyncio.gather(*list(self._running.values()))

    async def aclose(self) -> None:
        if self._channel is not None:
            await self._channel.disconnect()
        await self.drain()
