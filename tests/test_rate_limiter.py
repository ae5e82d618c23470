"""Tests for the adaptive rate limiter."""

import asyncio
import time
from datetime import datetime, timedelta, timezone
from email.utils import format_datetime

import pytest

from chatrelay.ratelimit import (
    AdaptiveRateLimiter,
    CancelToken,
    RateLimitCancelled,
    RateLimitQueueFull,
    compute_backoff_ms,
    configure_rate_limiter,
    get_rate_limit_settings,
    get_rate_limiter,
    parse_retry_after_ms,
    watch_disconnect,
)

from conftest import hold_lock


def _elapsed_ms(start: float) -> float:
    return (time.monotonic() - start) * 1000


class TestParseRetryAfter:
    """Tests for retry-after header parsing."""

    def test_seconds(self):
        assert parse_retry_after_ms("2") == 2000
        assert parse_retry_after_ms("0.05") == 50
        assert parse_retry_after_ms(" 1.5 ") == 1500

    def test_missing_or_garbage(self):
        assert parse_retry_after_ms(None) is None
        assert parse_retry_after_ms("") is None
        assert parse_retry_after_ms("soon") is None
        assert parse_retry_after_ms("-3") is None

    def test_http_date(self):
        now = datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
        header = format_datetime(now + timedelta(seconds=30), usegmt=True)
        assert parse_retry_after_ms(header, now=now) == pytest.approx(30_000)

    def test_http_date_in_past_is_zero(self):
        now = datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
        header = format_datetime(now - timedelta(seconds=30), usegmt=True)
        assert parse_retry_after_ms(header, now=now) == 0


class TestBackoff:
    def test_exponential_growth(self):
        assert compute_backoff_ms(1) == 1000
        assert compute_backoff_ms(2) == 2000
        assert compute_backoff_ms(3) == 4000

    def test_capped(self):
        assert compute_backoff_ms(7) == 60_000
        assert compute_backoff_ms(50) == 60_000


class TestScheduling:
    """Deterministic tests driven by a fake clock."""

    @pytest.mark.asyncio
    async def test_burst_admitted_without_waiting(self, fake_clock):
        limiter = AdaptiveRateLimiter(
            interval_ms=250, burst=8, clock=fake_clock, sleep=fake_clock.sleep
        )
        waits = [await limiter.acquire() for _ in range(8)]
        assert waits == [0.0] * 8
        assert fake_clock.sleeps == []

    @pytest.mark.asyncio
    async def test_request_after_burst_waits_one_interval(self, fake_clock):
        limiter = AdaptiveRateLimiter(
            interval_ms=250, burst=8, clock=fake_clock, sleep=fake_clock.sleep
        )
        for _ in range(8):
            await limiter.acquire()

        waited = await limiter.acquire()
        assert waited == 250
        assert fake_clock.sleeps == [0.25]

    @pytest.mark.asyncio
    async def test_schedule_recovers_when_idle(self, fake_clock):
        limiter = AdaptiveRateLimiter(
            interval_ms=100, burst=2, clock=fake_clock, sleep=fake_clock.sleep
        )
        await limiter.acquire()
        await limiter.acquire()
        fake_clock.advance(1_000)
        assert await limiter.acquire() == 0.0

    @pytest.mark.asyncio
    async def test_throttle_sets_cooldown_from_retry_after(self, fake_clock):
        limiter = AdaptiveRateLimiter(clock=fake_clock, sleep=fake_clock.sleep)
        cooldown = await limiter.report_throttled("3")

        assert cooldown == 3000
        assert limiter.consecutive_429_count == 1
        assert limiter.cooldown_until_ms == fake_clock() + 3000
        assert limiter.theoretical_arrival_ms >= limiter.cooldown_until_ms
        assert await limiter.acquire() == 3000

    @pytest.mark.asyncio
    async def test_throttle_without_header_uses_backoff(self, fake_clock):
        limiter = AdaptiveRateLimiter(clock=fake_clock, sleep=fake_clock.sleep)
        assert await limiter.report_throttled(None) == 1000
        assert await limiter.report_throttled("not-a-date") == 2000
        assert limiter.consecutive_429_count == 2

    @pytest.mark.asyncio
    async def test_zero_retry_after_still_applies_minimum(self, fake_clock):
        limiter = AdaptiveRateLimiter(clock=fake_clock, sleep=fake_clock.sleep)
        assert await limiter.report_throttled("0") == 1

    @pytest.mark.asyncio
    async def test_cooldown_never_moves_backward(self, fake_clock):
        limiter = AdaptiveRateLimiter(clock=fake_clock, sleep=fake_clock.sleep)
        await limiter.report_throttled("10")
        first_floor = limiter.cooldown_until_ms
        await limiter.report_throttled("1")
        assert limiter.cooldown_until_ms == first_floor

    @pytest.mark.asyncio
    async def test_success_resets_counter_and_clears_elapsed_cooldown(self, fake_clock):
        limiter = AdaptiveRateLimiter(clock=fake_clock, sleep=fake_clock.sleep)
        await limiter.report_throttled("1")
        await limiter.report_success()
        assert limiter.consecutive_429_count == 0
        assert limiter.cooldown_until_ms > 0

        fake_clock.advance(2_000)
        await limiter.report_success()
        assert limiter.cooldown_until_ms == 0

    @pytest.mark.asyncio
    async def test_already_cancelled_token_raises(self, fake_clock):
        limiter = AdaptiveRateLimiter(clock=fake_clock, sleep=fake_clock.sleep)
        token = CancelToken()
        token.cancel()
        with pytest.raises(RateLimitCancelled):
            await limiter.acquire(token)
        assert limiter.queue_depth == 0


class TestRealTime:
    """Wall-clock properties, checked with tolerance."""

    @pytest.mark.asyncio
    async def test_burst_completes_within_one_interval(self):
        limiter = AdaptiveRateLimiter(interval_ms=250, burst=8)
        start = time.monotonic()
        await asyncio.gather(*(limiter.acquire() for _ in range(8)))
        assert _elapsed_ms(start) < 250

    @pytest.mark.asyncio
    async def test_request_after_burst_is_delayed(self):
        limiter = AdaptiveRateLimiter(interval_ms=100, burst=4)
        await asyncio.gather(*(limiter.acquire() for _ in range(4)))

        start = time.monotonic()
        await limiter.acquire()
        assert _elapsed_ms(start) >= 100 - 25

    @pytest.mark.asyncio
    async def test_retry_after_cooldown(self):
        limiter = AdaptiveRateLimiter()
        await limiter.report_throttled("0.05")

        start = time.monotonic()
        await limiter.acquire()
        assert _elapsed_ms(start) >= 40

    @pytest.mark.asyncio
    async def test_cancel_while_sleeping(self):
        limiter = AdaptiveRateLimiter(interval_ms=500, burst=1)
        await limiter.acquire()

        token = CancelToken()
        asyncio.get_running_loop().call_later(0.02, token.cancel)

        start = time.monotonic()
        with pytest.raises(RateLimitCancelled):
            await limiter.acquire(token)
        assert _elapsed_ms(start) < 500
        assert limiter.queue_depth == 0

    @pytest.mark.asyncio
    async def test_cancel_while_waiting_for_lock(self):
        limiter = AdaptiveRateLimiter()
        holder = asyncio.ensure_future(hold_lock(limiter, 0.1))
        await asyncio.sleep(0)

        token = CancelToken()
        asyncio.get_running_loop().call_later(0.02, token.cancel)

        start = time.monotonic()
        with pytest.raises(RateLimitCancelled):
            await limiter.acquire(token)
        assert _elapsed_ms(start) < 100
        assert limiter.queue_depth == 0
        await holder

    @pytest.mark.asyncio
    async def test_cancelled_waiter_does_not_block_later_callers(self):
        limiter = AdaptiveRateLimiter()
        holder = asyncio.ensure_future(hold_lock(limiter, 0.08))
        await asyncio.sleep(0)

        token = CancelToken()
        asyncio.get_running_loop().call_later(0.02, token.cancel)
        with pytest.raises(RateLimitCancelled):
            await limiter.acquire(token)

        await holder
        await asyncio.sleep(0.02)

        start = time.monotonic()
        await limiter.acquire()
        assert _elapsed_ms(start) < 50
        assert not limiter._lock.locked()

    @pytest.mark.asyncio
    async def test_queue_full_rejects_immediately(self):
        limiter = AdaptiveRateLimiter(max_queue=5)
        holder = asyncio.ensure_future(hold_lock(limiter, 0.2))
        await asyncio.sleep(0)

        token = CancelToken()
        pending = [asyncio.ensure_future(limiter.acquire(token)) for _ in range(5)]
        await asyncio.sleep(0)
        assert limiter.queue_depth == 5

        start = time.monotonic()
        with pytest.raises(RateLimitQueueFull):
            await limiter.acquire(token)
        assert _elapsed_ms(start) < 20

        token.cancel()
        results = await asyncio.gather(*pending, return_exceptions=True)
        assert all(isinstance(r, RateLimitCancelled) for r in results)
        assert limiter.queue_depth == 0
        await holder


class TestWatchDisconnect:
    @pytest.mark.asyncio
    async def test_fires_token_on_disconnect(self):
        token = CancelToken()
        calls = 0

        async def checker() -> bool:
            nonlocal calls
            calls += 1
            return calls >= 2

        task = watch_disconnect(token, checker, interval=0.01)
        await asyncio.wait_for(token.wait(), timeout=1)
        assert token.cancelled
        await task

    @pytest.mark.asyncio
    async def test_can_be_stopped(self):
        token = CancelToken()

        async def checker() -> bool:
            return False

        task = watch_disconnect(token, checker, interval=0.01)
        await asyncio.sleep(0.03)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert not token.cancelled


class TestSingleton:
    def test_configure_replaces_instance(self, reset_rate_limit):
        default = get_rate_limiter()
        settings = get_rate_limit_settings(
            {"rate_limit": {"interval_ms": "50", "burst": 3, "max_queue": "oops"}}
        )
        configured = configure_rate_limiter(settings)

        assert configured is not default
        assert get_rate_limiter() is configured
        assert configured.interval_ms == 50
        assert configured.burst == 3
        assert configured.max_queue == 100

    def test_settings_defaults(self):
        settings = get_rate_limit_settings({})
        assert settings.enabled is True
        assert settings.interval_ms == 250
        assert settings.burst == 8
        assert settings.max_queue == 100
