"""In-process upstream routing.

Tests (and embedded deployments) can point the gateway at an ASGI app or an
``httpx.MockTransport`` instead of the network by registering a transport for
the upstream's host.
"""

from __future__ import annotations

import logging
from typing import Optional

import httpx

logger = logging.getLogger("chatrelay")

_TRANSPORTS: dict[str, httpx.AsyncBaseTransport] = {}


def _host_key(url: str) -> Optional[str]:
    try:
        parsed = httpx.URL(url)
    except httpx.InvalidURL:
        return None
    if not parsed.host:
        return None
    return f"{parsed.host}:{parsed.port}" if parsed.port else parsed.host


def register_upstream_transport(base_url: str, transport: httpx.AsyncBaseTransport) -> None:
    """Send every upstream call aimed at ``base_url``'s host through ``transport``."""
    key = _host_key(base_url)
    if key is None:
        raise ValueError(f"Cannot route transport for URL without a host: {base_url!r}")
    _TRANSPORTS[key] = transport
    logger.debug(f"Upstream calls to {key} now use {transport.__class__.__name__}")


def clear_upstream_transports() -> None:
    _TRANSPORTS.clear()


def get_upstream_transport(url: str) -> Optional[httpx.AsyncBaseTransport]:
    """Registered transport for ``url``'s host, or None to use the network."""
    if not url:
        return None
    key = _host_key(url)
    return _TRANSPORTS.get(key) if key else None
