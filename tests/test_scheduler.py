"""Unit tests for RateLimitedScheduler.

Covers chunking and ordering, the per-chunk concurrency cap, adaptive
inter-chunk delays, per-request retry with capped backoff, and failure
capture. Sleep and clock are injected, so nothing actually waits.
"""

from __future__ import annotations

import asyncio

import httpx
import pytest

from conftest import RecordingSleep
from src.dealsync.deals.crm.scheduler import RateLimitedScheduler
from src.dealsync.deals.schemas import RateLimitConfig


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


# ── Chunking ─────────────────────────────────────────────────────────────────


class TestChunking:
    async def test_results_preserve_request_order(self, fake_sleep):
        scheduler = RateLimitedScheduler(RateLimitConfig(batch_size=3), sleep=fake_sleep)

        async def send(n: int) -> int:
            # Later requests finish first within a chunk
            await asyncio.sleep(0.001 * (10 - n))
            return n * 10

        outcome = await scheduler.run(list(range(8)), send)

        assert outcome.results == [n * 10 for n in range(8)]
        assert outcome.errors == []

    async def test_in_flight_requests_never_exceed_batch_size(self, fake_sleep):
        scheduler = RateLimitedScheduler(RateLimitConfig(batch_size=4), sleep=fake_sleep)
        in_flight = 0
        peak = 0

        async def send(n: int) -> int:
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0)
            in_flight -= 1
            return n

        await scheduler.run(list(range(10)), send)

        assert peak == 4

    async def test_empty_request_list(self, fake_sleep):
        scheduler = RateLimitedScheduler(RateLimitConfig(), sleep=fake_sleep)

        async def send(n: int) -> int:
            raise AssertionError("should not be called")

        outcome = await scheduler.run([], send)

        assert outcome.results == []
        assert outcome.errors == []
        assert fake_sleep.calls == []


# ── Adaptive Delay ───────────────────────────────────────────────────────────


class TestAdaptiveDelay:
    async def test_fast_chunk_waits_out_interval_plus_buffer(self):
        sleep = RecordingSleep()
        clock = FakeClock()
        config = RateLimitConfig(batch_size=10, min_batch_interval=0.7, safety_buffer=0.05)
        scheduler = RateLimitedScheduler(config, sleep=sleep, clock=clock)

        async def send(n: int) -> int:
            return n

        await scheduler.run(list(range(25)), send)

        # Three chunks: delay after the first two, none after the last
        assert sleep.calls == [pytest.approx(0.75), pytest.approx(0.75)]

    async def test_partially_elapsed_interval_shortens_delay(self):
        sleep = RecordingSleep()
        clock = FakeClock()
        config = RateLimitConfig(batch_size=2, min_batch_interval=0.7, safety_buffer=0.05)
        scheduler = RateLimitedScheduler(config, sleep=sleep, clock=clock)

        async def send(n: int) -> int:
            clock.now += 0.25
            return n

        await scheduler.run([1, 2, 3], send)

        # Chunk took 0.5s: 0.7 - 0.5 + 0.05
        assert sleep.calls == [pytest.approx(0.25)]

    async def test_slow_chunk_adds_no_delay(self):
        sleep = RecordingSleep()
        clock = FakeClock()
        scheduler = RateLimitedScheduler(RateLimitConfig(batch_size=2), sleep=sleep, clock=clock)

        async def send(n: int) -> int:
            clock.now += 1.0
            return n

        await scheduler.run([1, 2, 3, 4], send)

        assert sleep.calls == []


# ── Retry & Failure Capture ──────────────────────────────────────────────────


class TestRetry:
    async def test_transient_error_retried_until_success(self, fake_sleep):
        scheduler = RateLimitedScheduler(RateLimitConfig(max_retries=3), sleep=fake_sleep)
        attempts: dict[int, int] = {}

        async def send(n: int) -> str:
            attempts[n] = attempts.get(n, 0) + 1
            if n == 1 and attempts[n] < 3:
                raise httpx.ConnectError("reset")
            return f"ok-{n}"

        outcome = await scheduler.run([0, 1, 2], send)

        assert outcome.results == ["ok-0", "ok-1", "ok-2"]
        assert outcome.errors == []
        assert attempts == {0: 1, 1: 3, 2: 1}

    async def test_backoff_doubles_and_is_capped(self, fake_sleep):
        config = RateLimitConfig(max_retries=4, retry_base_delay=1.0, retry_max_delay=3.0)
        scheduler = RateLimitedScheduler(config, sleep=fake_sleep)

        async def send(n: int) -> str:
            raise httpx.ReadTimeout("slow")

        await scheduler.run([0], send)

        assert fake_sleep.calls == [1.0, 2.0, 3.0]

    async def test_exhausted_request_reported_not_raised(self, fake_sleep):
        scheduler = RateLimitedScheduler(RateLimitConfig(max_retries=3), sleep=fake_sleep)

        async def send(n: int) -> str:
            if n == 2:
                raise httpx.HTTPStatusError(
                    "503",
                    request=httpx.Request("GET", "http://crm.test"),
                    response=httpx.Response(503),
                )
            return f"ok-{n}"

        outcome = await scheduler.run([1, 2, 3], send)

        assert outcome.results == ["ok-1", "ok-3"]
        assert len(outcome.errors) == 1
        failure = outcome.errors[0]
        assert failure.url == "2"
        assert failure.attempts == 3
        assert "503" in failure.error

    async def test_hung_request_times_out_and_fails(self, fake_sleep):
        config = RateLimitConfig(max_retries=2, request_timeout=0.01)
        scheduler = RateLimitedScheduler(config, sleep=fake_sleep)

        async def send(n: int) -> str:
            await asyncio.Event().wait()
            return "never"

        outcome = await scheduler.run([7], send)

        assert outcome.results == []
        assert outcome.errors[0].attempts == 2
        assert "TimeoutError" in outcome.errors[0].error
