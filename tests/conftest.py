"""Pytest configuration and fixtures for testing."""

from __future__ import annotations

import asyncio
from typing import Any, Generator

import pytest


# =============================================================================
# Global State Fixtures
# =============================================================================


@pytest.fixture
def clear_transport_registry() -> Generator[None, None, None]:
    """Clear upstream transport registry after test.

    Use this fixture in tests that register fake transports.
    """
    from chatrelay.core.upstream_transport import clear_upstream_transports

    yield
    clear_upstream_transports()


@pytest.fixture
def reset_rate_limit() -> Generator[None, None, None]:
    """Reset the rate limiter singleton before and after test."""
    from chatrelay.ratelimit import reset_rate_limiter

    reset_rate_limiter()
    yield
    reset_rate_limiter()


# =============================================================================
# Limiter Helpers
# =============================================================================


async def hold_lock(limiter: Any, seconds: float) -> None:
    """Keep the limiter's scheduler lock busy for ``seconds``."""
    async with limiter._lock:
        await asyncio.sleep(seconds)


# =============================================================================
# Fake Clock
# =============================================================================


class FakeClock:
    """Virtual millisecond clock whose ``sleep`` just advances time.

    Records every requested sleep so tests can assert on computed waits.
    """

    def __init__(self, start_ms: float = 1_000_000.0) -> None:
        self.now_ms = start_ms
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now_ms

    def advance(self, ms: float) -> None:
        self.now_ms += ms

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now_ms += seconds * 1000


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


# =============================================================================
# Harness Configuration Builders
# =============================================================================


def build_gateway_config(
    *,
    rate_limit_enabled: bool = False,
    interval_ms: float = 250,
    burst: int = 8,
    max_queue: int = 100,
    api_key: str | None = None,
) -> dict[str, Any]:
    """Build a config for harness tests.

    Args:
        rate_limit_enabled: Install the adaptive rate limiter
        interval_ms: Limiter inter-arrival interval
        burst: Limiter burst size
        max_queue: Limiter queue bound
        api_key: Inbound API key (None = auth disabled)

    Returns:
        Config dict for ProxyHarness
    """
    config: dict[str, Any] = {
        "rate_limit": {
            "enabled": rate_limit_enabled,
            "interval_ms": interval_ms,
            "burst": burst,
            "max_queue": max_queue,
        },
    }
    if api_key:
        config["auth"] = {"api_key": api_key}
    return config


# =============================================================================
# Harness Fixtures
# =============================================================================


@pytest.fixture
def harness() -> Generator[Any, None, None]:
    """Gateway harness wired to a fake upstream, rate limiter disabled.

    Usage:
        async def test_x(harness):
            harness.upstream.enqueue_chat_response("Hi")
            async with harness.make_async_client() as client:
                ...
    """
    from chatrelay.testing import ProxyHarness

    with ProxyHarness(build_gateway_config()) as proxy:
        yield proxy
