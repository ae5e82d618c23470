"""Configuration helpers for the adaptive rate limiter."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping


# Default values
DEFAULT_INTERVAL_MS = 250
DEFAULT_BURST = 8
DEFAULT_MAX_QUEUE = 100


@dataclass
class RateLimitSettings:
    """Resolved rate limiter configuration."""

    enabled: bool = True
    interval_ms: float = DEFAULT_INTERVAL_MS
    burst: int = DEFAULT_BURST
    max_queue: int = DEFAULT_MAX_QUEUE


def get_rate_limit_settings(config: Mapping[str, Any] | None) -> RateLimitSettings:
    """Read the ``rate_limit`` section of the config with fallbacks.

    Invalid or missing values fall back to the built-in defaults; burst and
    queue size are clamped to at least 1.
    """
    section = (config or {}).get("rate_limit") or {}
    if not isinstance(section, Mapping):
        section = {}

    enabled = section.get("enabled", True)
    return RateLimitSettings(
        enabled=bool(enabled) if enabled is not None else True,
        interval_ms=max(0.0, _get_float(section, "interval_ms", DEFAULT_INTERVAL_MS)),
        burst=max(1, _get_int(section, "burst", DEFAULT_BURST)),
        max_queue=max(1, _get_int(section, "max_queue", DEFAULT_MAX_QUEUE)),
    )


def _get_int(config: Mapping[str, Any], key: str, default: int) -> int:
    """Get an integer value from config with fallback."""
    value = config.get(key)
    if value is None:
        return default
    try:
        return int(value)
    except (ValueError, TypeError):
        return default


def _get_float(config: Mapping[str, Any], key: str, default: float) -> float:
    """Get a float value from config with fallback."""
    value = config.get(key)
    if value is None:
        return default
    try:
        return float(value)
    except (ValueError, TypeError):
        return default
