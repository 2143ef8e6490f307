"""Rate-limited batch scheduler for remote API requests.

Runs a list of independent requests in fixed-size chunks. Every request in
a chunk is issued concurrently and the chunk settles completely before the
next one starts. Between chunks the scheduler sleeps just long enough to
keep chunk starts at least ``min_batch_interval`` apart (plus a safety
buffer), so a slow chunk adds no extra delay.

Each request is retried with capped exponential backoff via tenacity.
Exhausted requests are reported as RequestFailure entries; the scheduler
itself never raises for a failed request.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable, Sequence
from typing import Any, Generic, TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from src.dealsync.deals.schemas import FetchOutcome, RateLimitConfig, RequestFailure

logger = structlog.get_logger(__name__)

RequestT = TypeVar("RequestT")


class RateLimitedScheduler(Generic[RequestT]):
    """Executes request descriptors under a per-chunk concurrency cap.

    Args:
        config: Batch size, minimum chunk interval, retry and timeout settings.
        sleep: Awaitable sleep, injectable for tests.
        clock: Monotonic clock in seconds, injectable for tests.
    """

    def __init__(
        self,
        config: RateLimitConfig,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config
        self._sleep = sleep
        self._clock = clock

    @property
    def config(self) -> RateLimitConfig:
        return self._config

    async def run(
        self,
        requests: Sequence[RequestT],
        send: Callable[[RequestT], Awaitable[Any]],
    ) -> FetchOutcome:
        """Send every request and collect payloads and failures.

        Successful payloads are returned in request order; failed requests
        are excluded from ``results`` and listed in ``errors``.
        """
        outcome = FetchOutcome()
        batch_size = self._config.batch_size
        total_batches = (len(requests) + batch_size - 1) // batch_size

        for batch_number, start in enumerate(range(0, len(requests), batch_size), start=1):
            chunk = requests[start : start + batch_size]
            chunk_started = self._clock()

            logger.debug(
                "scheduler.batch_started",
                batch=batch_number,
                total_batches=total_batches,
                requests=len(chunk),
            )

            settled = await asyncio.gather(
                *(self._send_with_retry(request, send) for request in chunk)
            )
            for payload, failure in settled:
                if failure is not None:
                    outcome.errors.append(failure)
                else:
                    outcome.results.append(payload)

            is_last = start + batch_size >= len(requests)
            if not is_last:
                elapsed = self._clock() - chunk_started
                delay = max(
                    0.0,
                    self._config.min_batch_interval - elapsed + self._config.safety_buffer,
                )
                if delay > 0:
                    logger.debug(
                        "scheduler.adaptive_delay",
                        batch=batch_number,
                        elapsed_seconds=round(elapsed, 3),
                        delay_seconds=round(delay, 3),
                    )
                    await self._sleep(delay)

        logger.info(
            "scheduler.run_complete",
            requests=len(requests),
            succeeded=len(outcome.results),
            failed=len(outcome.errors),
        )
        return outcome

    async def _send_with_retry(
        self,
        request: RequestT,
        send: Callable[[RequestT], Awaitable[Any]],
    ) -> tuple[Any, RequestFailure | None]:
        """Send one request with retries; never raises."""
        attempts = 0
        payload: Any = None
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._config.max_retries),
            wait=wait_exponential(
                multiplier=self._config.retry_base_delay,
                max=self._config.retry_max_delay,
            ),
            retry=retry_if_exception_type(Exception),
            sleep=self._sleep,
            before_sleep=self._log_retry(request),
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    payload = await asyncio.wait_for(
                        send(request), timeout=self._config.request_timeout
                    )
        except Exception as exc:
            logger.error(
                "scheduler.request_failed",
                request=str(request),
                attempts=attempts,
                error=repr(exc),
            )
            return None, RequestFailure(url=str(request), error=repr(exc), attempts=attempts)
        return payload, None

    def _log_retry(self, request: RequestT) -> Callable[[RetryCallState], None]:
        def before_sleep(retry_state: RetryCallState) -> None:
            exc = retry_state.outcome.exception() if retry_state.outcome else None
            logger.warning(
                "scheduler.request_retry",
                request=str(request),
                attempt=retry_state.attempt_number,
                max_attempts=self._config.max_retries,
                wait_seconds=retry_state.next_action.sleep if retry_state.next_action else None,
                error=repr(exc),
            )

        return before_sleep
