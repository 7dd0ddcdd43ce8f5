"""Server-Sent Events push channel with bounded reconnection.

The channel holds one long-lived ``text/event-stream`` request open for a
scope, decodes named JSON events and hands them to registered callbacks.
It never touches local state itself.  Connection failures drive an explicit
state machine::

    DISCONNECTED -> CONNECTING -> CONNECTED
                        ^             |
                        |             v
                    RECONNECTING <- failure
                        |
                        v
                  DISCONNECTED (retries exhausted or disconnect())

The retry counter lives on the channel, so switching scope mid-backoff
simply cancels the old task and starts a fresh one.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from collections import defaultdict
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

import httpx

from localfirst_sync.api_client.connectivity import ConnectivityMonitor
from localfirst_sync.errors import RemoteError, RemoteUnavailable, Unauthorized

logger = logging.getLogger(__name__)

CONNECTED_EVENT = "connected"
ANY_EVENT = "*"


class ChannelState(StrEnum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


@dataclass(frozen=True)
class ServerEvent:
    """One dispatched event: its name, decoded JSON payload and optional id."""

    event: str
    data: Any
    id: str | None = None


EventCallback = Callable[[ServerEvent], Awaitable[None] | None]


def backoff_delay(attempt: int, base_ms: int = 1000, max_ms: int = 30000) -> float:
    """Seconds to wait before retry number ``attempt + 1``."""
    return min(base_ms * (2**attempt), max_ms) / 1000


async def parse_sse(lines: AsyncIterator[str]) -> AsyncIterator[tuple[str, str, str | None]]:
    """Decode an SSE line stream into ``(event, data, id)`` tuples.

    Comment lines (``:heartbeat``) are skipped, multi-line ``data`` fields
    are joined with newlines, and events without an ``event`` field are
    named ``message``.  ``retry`` is ignored: reconnection timing belongs
    to the channel.
    """
    event_name = ""
    data_lines: list[str] = []
    event_id: str | None = None

    async for raw in lines:
        line = raw.rstrip("\r\n")
        if not line:
            if data_lines:
                yield event_name or "message", "\n".join(data_lines), event_id
            event_name = ""
            data_lines = []
            continue
        if line.startswith(":"):
            continue
        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if field == "event":
            event_name = value
        elif field == "data":
            data_lines.append(value)
        elif field == "id":
            event_id = value

    if data_lines:
        yield event_name or "message", "\n".join(data_lines), event_id


class EventChannel:
    """Reconnecting SSE subscription for one scope at a time.

    Args:
        http: The shared ``httpx.AsyncClient``.
        path: Stream path; a ``{scope}`` placeholder is filled on connect.
        connectivity: Consulted once per :meth:`connect`.
        base_delay_ms: First reconnect delay.
        max_delay_ms: Reconnect delay cap.
        max_attempts: Reconnects allowed after a failure before the channel
            gives up and stays disconnected.  A ``connected`` event resets
            the count.
        connect_timeout: Seconds allowed to establish the stream.
        sleep: Awaitable sleep used between attempts (injectable for tests).
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        path: str,
        *,
        connectivity: ConnectivityMonitor | None = None,
        base_delay_ms: int = 1000,
        max_delay_ms: int = 30000,
        max_attempts: int = 5,
        connect_timeout: float = 10.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._http = http
        self._path = path
        self._connectivity = connectivity or ConnectivityMonitor()
        self._base_delay_ms = base_delay_ms
        self._max_delay_ms = max_delay_ms
        self._max_attempts = max_attempts
        self._connect_timeout = connect_timeout
        self._sleep = sleep

        self._callbacks: dict[str, list[EventCallback]] = defaultdict(list)
        self._state = ChannelState.DISCONNECTED
        self._attempt = 0
        self._scope: str | None = None
        self._credential = ""
        self._task: asyncio.Task[None] | None = None

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def state(self) -> ChannelState:
        return self._state

    @property
    def attempt(self) -> int:
        return self._attempt

    @property
    def path(self) -> str:
        return self._path

    @property
    def scope(self) -> str | None:
        return self._scope

    @property
    def is_live(self) -> bool:
        return self._task is not None and not self._task.done()

    # ------------------------------------------------------------------
    # Subscription
    # ------------------------------------------------------------------

    def on(self, event_name: str, callback: EventCallback) -> None:
        """Register *callback* for *event_name* (``"*"`` for every event)."""
        self._callbacks[event_name].append(callback)

    async def connect(self, scope: str, credential: str) -> None:
        """Open the stream for *scope*, replacing any channel for another scope.

        A missing credential means "not authenticated yet" and is a no-op,
        as is being offline.  Connecting again to the live scope does
        nothing.
        """
        if not credential:
            logger.info("No credential yet, not opening event channel")
            return
        if not self._connectivity.is_online():
            logger.info("Offline, not opening event channel for %s", scope or "<all>")
            return
        if self.is_live:
            if scope == self._scope:
                return
            await self.disconnect()

        self._scope = scope
        self._credential = credential
        self._attempt = 0
        self._state = ChannelState.CONNECTING
        self._task = asyncio.create_task(self._run())

    async def disconnect(self) -> None:
        """Cancel any pending reconnect and close the stream.  Idempotent."""
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if self._state != ChannelState.DISCONNECTED:
            logger.info("Event channel for %s disconnected", self._scope or "<all>")
        self._state = ChannelState.DISCONNECTED
        self._attempt = 0

    async def wait_closed(self) -> None:
        """Wait until the channel stops on its own (retries exhausted)."""
        if self._task is not None:
            await asyncio.wait({self._task})

    # ------------------------------------------------------------------
    # Connection loop
    # ------------------------------------------------------------------

    async def _run(self) -> None:
        while True:
            self._state = ChannelState.CONNECTING
            try:
                await self._stream_once()
                reason = "stream closed by server"
            except Exception as exc:
                reason = str(exc) or type(exc).__name__

            if self._attempt >= self._max_attempts:
                logger.error(
                    "Event channel for %s failed after %d reconnect attempts (%s); giving up",
                    self._scope or "<all>", self._attempt, reason,
                )
                self._state = ChannelState.DISCONNECTED
                return

            delay = backoff_delay(self._attempt, self._base_delay_ms, self._max_delay_ms)
            self._state = ChannelState.RECONNECTING
            logger.warning(
                "Event channel for %s lost (%s); reconnecting in %.1fs (attempt %d)",
                self._scope or "<all>", reason, delay, self._attempt + 1,
            )
            await self._sleep(delay)
            self._attempt += 1

    async def _stream_once(self) -> None:
        path = self._path.format(scope=self._scope) if "{scope}" in self._path else self._path
        timeout = httpx.Timeout(self._connect_timeout, read=None)
        try:
            async with self._http.stream(
                "GET",
                path,
                params={"token": self._credential},
                headers={"Accept": "text/event-stream"},
                timeout=timeout,
            ) as response:
                status = response.status_code
                if status in (401, 403):
                    raise Unauthorized(f"Event stream rejected: status={status}", status)
                if status >= 400:
                    raise RemoteError(f"Event stream failed: status={status}", status)
                async for name, data, event_id in parse_sse(response.aiter_lines()):
                    await self._dispatch(name, data, event_id)
        except httpx.TransportError as exc:
            raise RemoteUnavailable(f"Event stream network error: {exc}") from exc

    async def _dispatch(self, name: str, raw_data: str, event_id: str | None) -> None:
        try:
            data = json.loads(raw_data) if raw_data else None
        except json.JSONDecodeError:
            logger.warning("Dropping %s event with malformed payload", name)
            return

        if name == CONNECTED_EVENT:
            self._state = ChannelState.CONNECTED
            self._attempt = 0
            logger.info("Event channel connected to %s", self._scope or "<all>")

        event = ServerEvent(event=name, data=data, id=event_id)
        for callback in [*self._callbacks.get(name, []), *self._callbacks.get(ANY_EVENT, [])]:
            try:
                result = callback(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Event callback for %s failed", name)
