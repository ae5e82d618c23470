"""Core module initialization."""

from .exceptions import ConfigurationError, InvalidRequestError, ProxyError, UpstreamError
from .ids import is_valid_id, sanitize_id
from .registry import get_upstream_client, set_upstream_client
from .sse import detect_stream_error, format_sse_event, iter_sse_json

__all__ = [
    "ConfigurationError",
    "InvalidRequestError",
    "ProxyError",
    "UpstreamError",
    "detect_stream_error",
    "format_sse_event",
    "get_upstream_client",
    "is_valid_id",
    "iter_sse_json",
    "sanitize_id",
    "set_upstream_client",
]
