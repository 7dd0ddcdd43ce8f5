"""Composed API client exposing per-entity-type sub-clients.

``ApiClient`` is the single entry point for all remote operations.  It
builds the underlying ``httpx.AsyncClient`` via ``auth.build_http_client``
and hands out one ``EntitiesClient`` per entity type plus event channels
sharing the same connection pool.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any

import httpx

from localfirst_sync.api_client.auth import build_http_client
from localfirst_sync.api_client.connectivity import ConnectivityMonitor
from localfirst_sync.api_client.entities import EntitiesClient
from localfirst_sync.api_client.events import EventChannel
from localfirst_sync.config import EntityTypeConfig, settings


class ApiClient:
    """Unified remote client composing per-entity-type sub-clients.

    Instantiate with no arguments to use settings from environment
    variables, or pass explicit values for testing.

    Usage::

        async with ApiClient() as api:
            plans = await api.entities("plans").list(user_id)
            channel = api.event_channel()

    Args:
        base_url: Optional override for ``SYNC_API_URL``.
        token: Optional override for ``SYNC_API_TOKEN``.
        timeout: Optional override for ``SYNC_HTTP_TIMEOUT``.
        transport: Optional httpx transport (tests use ``MockTransport``).
        entity_types: Entity types to expose. Defaults to
            ``settings.entity_types``.
    """

    def __init__(
        self,
        *,
        base_url: str | None = None,
        token: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        entity_types: list[EntityTypeConfig] | None = None,
    ) -> None:
        self._http: httpx.AsyncClient = build_http_client(
            base_url=base_url,
            token=token,
            timeout=timeout,
            transport=transport,
        )
        self._entity_types = {
            config.name: config for config in (entity_types or settings.entity_types)
        }
        self._entities: dict[str, EntitiesClient] = {}

    @property
    def entity_types(self) -> list[EntityTypeConfig]:
        return list(self._entity_types.values())

    # ------------------------------------------------------------------
    # Sub-client accessors (lazy-initialized)
    # ------------------------------------------------------------------

    def entities(self, entity_type: str) -> EntitiesClient:
        """CRUD operations for *entity_type*.

        Raises:
            KeyError: If the entity type is not configured.
        """
        if entity_type not in self._entities:
            config = self._entity_types.get(entity_type)
            if config is None:
                raise KeyError(f"Unknown entity type: {entity_type}")
            self._entities[entity_type] = EntitiesClient(self._http, config)
        return self._entities[entity_type]

    def event_channel(
        self,
        path: str | None = None,
        *,
        connectivity: ConnectivityMonitor | None = None,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
    ) -> EventChannel:
        """A new push channel using the configured reconnect policy."""
        kwargs: dict[str, Any] = {}
        if sleep is not None:
            kwargs["sleep"] = sleep
        return EventChannel(
            self._http,
            path or settings.events_path,
            connectivity=connectivity,
            base_delay_ms=settings.reconnect_base_ms,
            max_delay_ms=settings.reconnect_max_ms,
            max_attempts=settings.reconnect_max_attempts,
            connect_timeout=settings.http_timeout,
            **kwargs,
        )

    async def aclose(self) -> None:
        await self._http.aclose()

    async def __aenter__(self) -> ApiClient:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.aclose()
