"""CRUD operations for one entity type against the remote REST service.

Wraps ``GET/POST {path}`` and ``PUT|PATCH/DELETE {path}/{id}``.  Every
transport or HTTP failure is translated into the package error taxonomy
here, so callers only ever see ``RemoteError`` subclasses.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx
from pydantic import ValidationError

from localfirst_sync.config import EntityTypeConfig
from localfirst_sync.errors import RemoteError, RemoteUnavailable, Unauthorized
from localfirst_sync.sync.state import Entity

logger = logging.getLogger(__name__)


class EntitiesClient:
    """Remote list/create/update/delete for a single entity type.

    Args:
        http: A configured ``httpx.AsyncClient`` (see ``build_http_client``).
        entity_type: Addressing details for the entity type.
    """

    def __init__(self, http: httpx.AsyncClient, entity_type: EntityTypeConfig) -> None:
        self._http = http
        self._entity_type = entity_type

    @property
    def entity_type(self) -> str:
        return self._entity_type.name

    # ------------------------------------------------------------------
    # List
    # ------------------------------------------------------------------

    async def list(self, scope: str = "") -> list[Entity]:
        """Fetch every entity of this type visible in *scope*.

        Args:
            scope: Optional scope (e.g. user or organization id), sent as
                the ``scope`` query parameter when non-empty.

        Returns:
            The remote entities.  Both a bare JSON array and an object
            wrapping it under ``items`` or ``data`` are accepted.

        Raises:
            RemoteUnavailable: On network errors, timeouts and 5xx.
            Unauthorized: On 401/403.
            RemoteError: On any other failure, including malformed bodies.
        """
        params = {"scope": scope} if scope else None
        response = await self._request(
            "GET", self._entity_type.path, f"list {self.entity_type}", params=params
        )
        body = self._json(response, f"list {self.entity_type}")
        if isinstance(body, dict):
            body = body.get("items", body.get("data"))
        if not isinstance(body, list):
            raise RemoteError(
                f"Unexpected list response for {self.entity_type}",
                response.status_code,
            )
        return [self._parse_entity(item, f"list {self.entity_type}") for item in body]

    # ------------------------------------------------------------------
    # Create / update / delete
    # ------------------------------------------------------------------

    async def create(self, payload: dict[str, Any]) -> Entity:
        """Create an entity.  The server assigns ``id`` and ``updatedAt``."""
        operation = f"create {self.entity_type}"
        response = await self._request(
            "POST", self._entity_type.path, operation, json=payload
        )
        return self._parse_entity(self._json(response, operation), operation)

    async def update(self, entity_id: str, payload: dict[str, Any]) -> Entity:
        """Overwrite an entity with *payload*.

        An empty success response is treated as an echo of the request.
        """
        operation = f"update {self.entity_type} {entity_id}"
        response = await self._request(
            self._entity_type.update_method.upper(),
            self._item_path(entity_id),
            operation,
            json=payload,
        )
        if not response.content:
            return self._parse_entity({**payload, "id": entity_id}, operation)
        return self._parse_entity(self._json(response, operation), operation)

    async def delete(self, entity_id: str) -> None:
        """Delete an entity.  Deleting an id that is already gone succeeds."""
        operation = f"delete {self.entity_type} {entity_id}"
        await self._request(
            "DELETE", self._item_path(entity_id), operation, missing_ok=True
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _item_path(self, entity_id: str) -> str:
        return f"{self._entity_type.path.rstrip('/')}/{entity_id}"

    async def _request(
        self,
        method: str,
        url: str,
        operation: str,
        *,
        missing_ok: bool = False,
        **kwargs: Any,
    ) -> httpx.Response:
        try:
            response = await self._http.request(method, url, **kwargs)
        except httpx.TransportError as exc:
            raise RemoteUnavailable(f"Network error during '{operation}': {exc}") from exc
        if missing_ok and response.status_code == 404:
            logger.debug("'%s' found nothing to delete", operation)
            return response
        self._check_response(response, operation)
        return response

    @staticmethod
    def _check_response(response: httpx.Response, operation: str) -> None:
        """Raise the matching ``RemoteError`` if the response indicates failure."""
        status = response.status_code
        if status < 400:
            return
        message = f"API error during '{operation}': status={status}"
        if status in (401, 403):
            raise Unauthorized(message, status)
        if status >= 500 or status in (408, 429):
            raise RemoteUnavailable(message, status)
        raise RemoteError(message, status)

    @staticmethod
    def _json(response: httpx.Response, operation: str) -> Any:
        try:
            return response.json()
        except ValueError as exc:
            raise RemoteError(
                f"Malformed JSON during '{operation}'", response.status_code
            ) from exc

    @staticmethod
    def _parse_entity(data: Any, operation: str) -> Entity:
        try:
            return Entity.model_validate(data)
        except ValidationError as exc:
            raise RemoteError(f"Malformed entity during '{operation}': {exc}") from exc
