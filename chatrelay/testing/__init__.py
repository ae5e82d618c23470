"""Testing utilities for in-process gateway simulations."""

from .fake_upstream import (
    FakeUpstream,
    UpstreamResponse,
    build_chat_response,
    build_stream_chunks,
)
from .proxy_harness import ProxyHarness

__all__ = [
    "FakeUpstream",
    "ProxyHarness",
    "UpstreamResponse",
    "build_chat_response",
    "build_stream_chunks",
]
