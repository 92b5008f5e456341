"""Shared outbound HTTP client for Emby calls."""

from __future__ import annotations

import httpx


def create_http_client() -> httpx.AsyncClient:
    """Create the connection pool shared by the resolver and the reverse proxy.

    Only connect and pool waits are bounded; the resolver passes its own
    per-call timeout.
    """

    return httpx.AsyncClient(
        timeout=httpx.Timeout(None, connect=30.0, pool=30.0),
        follow_redirects=False,
    )
