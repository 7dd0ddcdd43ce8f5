"""Construction of the shared HTTP client.

The credential is handed to us already valid; refreshing or re-issuing it
is the caller's job.  This module only attaches it to every REST request
as a bearer token.
"""

from __future__ import annotations

import httpx

from localfirst_sync.config import settings


def build_http_client(
    *,
    base_url: str | None = None,
    token: str | None = None,
    timeout: float | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> httpx.AsyncClient:
    """Build a configured ``httpx.AsyncClient`` for the remote service.

    Parameters default to the values in ``settings`` so callers can simply
    call ``build_http_client()`` with no arguments during normal operation.
    Explicit overrides are accepted for testing.

    Args:
        base_url: Service root URL. Falls back to ``settings.api_url``.
        token: Bearer credential. Falls back to ``settings.api_token``.
        timeout: Per-request timeout in seconds. Falls back to
            ``settings.http_timeout``.
        transport: Optional transport, e.g. ``httpx.MockTransport`` in tests.

    Returns:
        An ``httpx.AsyncClient`` ready for API calls.

    Raises:
        ValueError: If base_url or token are empty after resolving defaults.
    """
    resolved_base_url = base_url or settings.api_url
    resolved_token = token or settings.api_token
    resolved_timeout = timeout if timeout is not None else settings.http_timeout

    if not resolved_base_url:
        raise ValueError(
            "API base URL is required. Set SYNC_API_URL env var or pass base_url explicitly."
        )
    if not resolved_token:
        raise ValueError(
            "API token is required. Set SYNC_API_TOKEN env var or pass token explicitly."
        )

    return httpx.AsyncClient(
        base_url=resolved_base_url,
        headers={
            "Authorization": f"Bearer {resolved_token}",
            "Accept": "application/json",
        },
        timeout=httpx.Timeout(resolved_timeout),
        transport=transport,
    )
