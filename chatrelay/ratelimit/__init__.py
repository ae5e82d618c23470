"""Adaptive rate limiting in front of every upstream call.

This module provides:
- A virtual-schedule limiter with burst tolerance
- Cooldown/backoff driven by upstream 429 responses
- Bounded waiting with explicit cancellation

Usage:
    from chatrelay.ratelimit import CancelToken, get_rate_limiter

    token = CancelToken()
    waited_ms = await get_rate_limiter().acquire(token)
    response = await send_upstream()
    if response.status_code == 429:
        await get_rate_limiter().report_throttled(response.headers.get("retry-after"))
    else:
        await get_rate_limiter().report_success()
"""

from __future__ import annotations

from .cancel import CancelToken, watch_disconnect
from .config import RateLimitSettings, get_rate_limit_settings
from .exceptions import RateLimitCancelled, RateLimitError, RateLimitQueueFull
from .limiter import AdaptiveRateLimiter, compute_backoff_ms, parse_retry_after_ms

__all__ = [
    "AdaptiveRateLimiter",
    "CancelToken",
    "RateLimitCancelled",
    "RateLimitError",
    "RateLimitQueueFull",
    "RateLimitSettings",
    "compute_backoff_ms",
    "configure_rate_limiter",
    "get_rate_limit_settings",
    "get_rate_limiter",
    "parse_retry_after_ms",
    "reset_rate_limiter",
    "watch_disconnect",
]


_limiter: AdaptiveRateLimiter | None = None


def get_rate_limiter() -> AdaptiveRateLimiter:
    """Get the singleton AdaptiveRateLimiter instance."""
    global _limiter
    if _limiter is None:
        _limiter = AdaptiveRateLimiter()
    return _limiter


def configure_rate_limiter(settings: RateLimitSettings) -> AdaptiveRateLimiter:
    """Replace the singleton with one built from ``settings``."""
    global _limiter
    _limiter = AdaptiveRateLimiter(
        interval_ms=settings.interval_ms,
        burst=settings.burst,
        max_queue=settings.max_queue,
    )
    return _limiter


def reset_rate_limiter() -> None:
    """Reset the singleton (for testing)."""
    global _limiter
    _limiter = None
