"""Explicit cancellation tokens for blocking admission calls."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

logger = logging.getLogger("chatrelay")

DISCONNECT_POLL_INTERVAL = 0.5


class CancelToken:
    """A one-shot cancellation signal shared between a caller and a waiter.

    Usage:
        token = CancelToken()
        waited_ms = await limiter.acquire(token)
        ...
        token.cancel()  # from anywhere else, e.g. a disconnect watcher
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        """Fire the token (idempotent)."""
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        """Block until the token fires."""
        await self._event.wait()


def watch_disconnect(
    token: CancelToken,
    disconnect_checker: Callable[[], Awaitable[bool]],
    interval: float = DISCONNECT_POLL_INTERVAL,
) -> "asyncio.Task[None]":
    """Poll ``disconnect_checker`` in the background and fire ``token`` on disconnect.

    The caller owns the returned task and must cancel it once the guarded
    operation is over.
    """

    async def _watch() -> None:
        while not token.cancelled:
            if await disconnect_checker():
                logger.info("Client disconnected, cancelling pending admission")
                token.cancel()
                return
            await asyncio.sleep(interval)

    return asyncio.ensure_future(_watch())
