"""Upstream chat completions client."""

from .client import (
    ACCOUNT_TYPE_URLS,
    UpstreamClient,
    UpstreamSettings,
    UpstreamStream,
    get_upstream_settings,
    sanitize_token,
)

__all__ = [
    "ACCOUNT_TYPE_URLS",
    "UpstreamClient",
    "UpstreamSettings",
    "UpstreamStream",
    "get_upstream_settings",
    "sanitize_token",
]
