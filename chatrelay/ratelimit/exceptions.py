"""Custom exceptions for upstream admission control."""

from __future__ import annotations


class RateLimitError(Exception):
    """Base exception for rate-limiter errors."""

    pass


class RateLimitQueueFull(RateLimitError):
    """Raised when too many callers are already waiting for admission."""

    pass


class RateLimitCancelled(RateLimitError):
    """Raised when a caller's cancel token fires while it waits for admission."""

    pass
