from localfirst_sync.api_client.auth import build_http_client
from localfirst_sync.api_client.client import ApiClient
from localfirst_sync.api_client.connectivity import ConnectivityMonitor
from localfirst_sync.api_client.entities import EntitiesClient
from localfirst_sync.api_client.events import (
    ChannelState,
    EventChannel,
    ServerEvent,
    backoff_delay,
    parse_sse,
)

__all__ = [
    "ApiClient",
    "ChannelState",
    "ConnectivityMonitor",
    "EntitiesClient",
    "EventChannel",
    "ServerEvent",
    "backoff_delay",
    "build_http_client",
    "parse_sse",
]
