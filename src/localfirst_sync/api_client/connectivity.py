"""Single source of truth for whether the remote service should be tried."""

from __future__ import annotations

import logging

logger = logging.getLogger(__name__)


class ConnectivityMonitor:
    """Online/offline flag consulted once at the start of each reconcile
    and each channel connect, instead of before every remote call.

    The host application flips it from whatever signal it has (OS network
    events, a failed health check, a user toggle).

    Args:
        online: Initial state.
    """

    def __init__(self, online: bool = True) -> None:
        self._online = online

    def is_online(self) -> bool:
        return self._online

    def set_online(self, online: bool) -> None:
        if online != self._online:
            logger.info("Connectivity changed: %s", "online" if online else "offline")
        self._online = online
