"""Holds the process-wide upstream client so routes can reach it without
importing the application module."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from ..upstream import UpstreamClient

_client: "UpstreamClient | None" = None


def set_upstream_client(client: "UpstreamClient | None") -> None:
    """Set (or clear) the global upstream client."""
    global _client
    _client = client


def get_upstream_client() -> "UpstreamClient":
    """Get the global upstream client."""
    if _client is None:
        raise RuntimeError("Upstream client not initialized. Did you call create_app?")
    return _client
