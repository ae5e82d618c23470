"""Adaptive rate limiter guarding every upstream call."""

from __future__ import annotations

import asyncio
import logging
import math
import time
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Awaitable, Callable, Optional, TypeVar

from .cancel import CancelToken
from .config import DEFAULT_BURST, DEFAULT_INTERVAL_MS, DEFAULT_MAX_QUEUE
from .exceptions import RateLimitCancelled, RateLimitQueueFull

logger = logging.getLogger("chatrelay")

BASE_BACKOFF_MS = 1_000
MAX_BACKOFF_MS = 60_000
MAX_BACKOFF_EXPONENT = 6

T = TypeVar("T")


def _monotonic_ms() -> float:
    return time.monotonic() * 1000


def parse_retry_after_ms(
    value: Optional[str], now: Optional[datetime] = None
) -> Optional[float]:
    """Parse a ``retry-after`` header into milliseconds.

    Accepts delta-seconds (fractions allowed) or an HTTP date. Returns None
    when the header is absent or unparseable.
    """
    if not value:
        return None

    raw = value.strip()
    if not raw:
        return None

    try:
        seconds = float(raw)
    except (TypeError, ValueError):
        seconds = None
    if seconds is not None:
        if math.isfinite(seconds) and seconds >= 0:
            return float(round(seconds * 1000))
        return None

    try:
        retry_dt = parsedate_to_datetime(raw)
    except (TypeError, ValueError, IndexError):
        return None
    if retry_dt is None:
        return None
    if retry_dt.tzinfo is None:
        retry_dt = retry_dt.replace(tzinfo=timezone.utc)

    current = now or datetime.now(timezone.utc)
    return max(0.0, (retry_dt - current).total_seconds() * 1000)


def compute_backoff_ms(consecutive_429: int) -> float:
    """Exponential backoff used when upstream gives no usable retry-after."""
    exponent = max(0, min(consecutive_429 - 1, MAX_BACKOFF_EXPONENT))
    return float(min(MAX_BACKOFF_MS, BASE_BACKOFF_MS * 2**exponent))


class AdaptiveRateLimiter:
    """Smooths the upstream request rate and absorbs upstream throttling.

    Admission follows a virtual schedule: ``theoretical_arrival_ms`` moves
    forward by ``interval_ms`` for every admitted caller, and a caller may go
    immediately while it is at most ``burst - 1`` intervals ahead of the
    clock. Upstream 429s push a cooldown floor under that schedule.

    Thread Safety:
    - Scheduler state is only touched while holding one asyncio.Lock
    - The admission decision is made under the lock, the wait happens outside it
    - Cancellation is honoured both while queued for the lock and while sleeping
    """

    def __init__(
        self,
        interval_ms: float = DEFAULT_INTERVAL_MS,
        burst: int = DEFAULT_BURST,
        max_queue: int = DEFAULT_MAX_QUEUE,
        clock: Optional[Callable[[], float]] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ) -> None:
        self.interval_ms = float(interval_ms)
        self.burst = max(1, int(burst))
        self.max_queue = max(1, int(max_queue))
        self._clock = clock or _monotonic_ms
        self._sleep = sleep or asyncio.sleep

        self._lock = asyncio.Lock()
        self._waiters = 0

        self.theoretical_arrival_ms = 0.0
        self.cooldown_until_ms = 0.0
        self.consecutive_429_count = 0

    @property
    def queue_depth(self) -> int:
        """Number of callers currently inside ``acquire``."""
        return self._waiters

    async def acquire(self, cancel_token: Optional[CancelToken] = None) -> float:
        """Wait until the next upstream request may be sent.

        Args:
            cancel_token: Optional token; firing it aborts the wait.

        Returns:
            The number of milliseconds the caller was scheduled to wait.

        Raises:
            RateLimitQueueFull: If ``max_queue`` callers are already waiting.
            RateLimitCancelled: If the token fired before admission.
        """
        if cancel_token is not None and cancel_token.cancelled:
            raise RateLimitCancelled("Request cancelled before rate limiter admission")

        if self._waiters >= self.max_queue:
            logger.warning(
                "Rate limiter queue full (%d waiting), rejecting request",
                self._waiters,
            )
            raise RateLimitQueueFull(
                f"Rate limiter queue is full ({self.max_queue} requests waiting)"
            )

        self._waiters += 1
        try:
            wait_ms = await self._run_locked(self._schedule, cancel_token)
            if wait_ms > 0:
                logger.warning(
                    "Adaptive rate limiter waiting %.2f seconds before sending request",
                    wait_ms / 1000,
                )
                await self._wait(wait_ms / 1000, cancel_token)
            return wait_ms
        finally:
            self._waiters -= 1

    async def report_throttled(self, retry_after: Optional[str] = None) -> float:
        """Record an upstream 429 and push the cooldown floor forward.

        Args:
            retry_after: Raw ``retry-after`` header value, if upstream sent one.

        Returns:
            The cooldown applied, in milliseconds.
        """
        retry_after_ms = parse_retry_after_ms(retry_after)

        def _apply() -> float:
            self.consecutive_429_count += 1
            penalty_ms = (
                retry_after_ms
                if retry_after_ms is not None
                else compute_backoff_ms(self.consecutive_429_count)
            )
            cooldown_ms = max(1.0, penalty_ms)
            cooldown_until = self._clock() + cooldown_ms

            self.cooldown_until_ms = max(self.cooldown_until_ms, cooldown_until)
            self.theoretical_arrival_ms = max(
                self.theoretical_arrival_ms, self.cooldown_until_ms
            )
            return cooldown_ms

        cooldown_ms = await self._run_locked(_apply)
        logger.warning(
            "Upstream returned 429 (%d in a row). Applying adaptive cooldown for %.2f seconds.",
            self.consecutive_429_count,
            cooldown_ms / 1000,
        )
        return cooldown_ms

    async def report_success(self) -> None:
        """Record a successful upstream call."""

        def _apply() -> None:
            self.consecutive_429_count = 0
            if self._clock() >= self.cooldown_until_ms:
                self.cooldown_until_ms = 0.0

        await self._run_locked(_apply)

    def _schedule(self) -> float:
        """Compute this caller's delay and advance the schedule.

        Must be called while holding self._lock.
        """
        now = self._clock()
        allowed_at = max(
            self.cooldown_until_ms,
            self.theoretical_arrival_ms - (self.burst - 1) * self.interval_ms,
        )

        if now < allowed_at:
            wait_ms = float(math.ceil(allowed_at - now))
            self.theoretical_arrival_ms = (
                max(self.theoretical_arrival_ms, allowed_at) + self.interval_ms
            )
            return wait_ms

        self.theoretical_arrival_ms = (
            max(now, self.theoretical_arrival_ms) + self.interval_ms
        )
        return 0.0

    async def _run_locked(
        self,
        fn: Callable[[], T],
        cancel_token: Optional[CancelToken] = None,
    ) -> T:
        """Run ``fn`` inside the critical section."""
        await self._lock_acquire(cancel_token)
        try:
            return fn()
        finally:
            self._lock.release()

    async def _lock_acquire(self, cancel_token: Optional[CancelToken]) -> None:
        if cancel_token is None:
            await self._lock.acquire()
            return

        acquire_task = asyncio.ensure_future(self._lock.acquire())
        cancel_task = asyncio.ensure_future(cancel_token.wait())
        try:
            await asyncio.wait(
                {acquire_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED
            )
        except BaseException:
            self._abandon_lock_request(acquire_task)
            raise
        finally:
            cancel_task.cancel()

        if cancel_token.cancelled:
            self._abandon_lock_request(acquire_task)
            raise RateLimitCancelled("Request cancelled while queued for the rate limiter")

    def _abandon_lock_request(self, acquire_task: "asyncio.Future[bool]") -> None:
        """Drop a pending lock acquisition without ever keeping the lock."""
        if acquire_task.done():
            self._release_if_acquired(acquire_task)
            return
        acquire_task.cancel()
        acquire_task.add_done_callback(self._release_if_acquired)

    def _release_if_acquired(self, acquire_task: "asyncio.Future[bool]") -> None:
        if acquire_task.cancelled() or acquire_task.exception() is not None:
            return
        self._lock.release()

    async def _wait(self, seconds: float, cancel_token: Optional[CancelToken]) -> None:
        if cancel_token is None:
            await self._sleep(seconds)
            return

        sleep_task = asyncio.ensure_future(self._sleep(seconds))
        cancel_task = asyncio.ensure_future(cancel_token.wait())
        try:
            done, _ = await asyncio.wait(
                {sleep_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            for task in (sleep_task, cancel_task):
                if not task.done():
                    task.cancel()

        if sleep_task not in done:
            raise RateLimitCancelled("Request cancelled while waiting for its rate limiter slot")
