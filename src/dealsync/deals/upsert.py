"""Batch upsert engine -- parallel, contention-tolerant writes to deals_cache.

Rows are split into batches of ``batch_size``; batches are committed in
groups of ``parallel_batches`` running concurrently, each batch in its own
transaction. A fixed ``group_delay`` separates consecutive groups.

Per-batch lifecycle:

    pending -> committing -> committed
                          -> retrying -> committing
                          -> failed

Only lock contention (SQLSTATE 40P01 deadlock, 40001 serialization
failure) moves a batch to ``retrying``; any other error fails the batch
immediately. A failed batch never affects its siblings.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from src.dealsync.deals.schemas import BatchFailure, BatchState, UpsertConfig, UpsertResult

logger = structlog.get_logger(__name__)

CONTENTION_SQLSTATES = frozenset({"40P01", "40001"})

BatchWriter = Callable[[Sequence[Mapping[str, Any]]], Awaitable[tuple[int, int]]]

_TRANSITIONS: dict[BatchState, frozenset[BatchState]] = {
    BatchState.PENDING: frozenset({BatchState.COMMITTING}),
    BatchState.COMMITTING: frozenset(
        {BatchState.COMMITTED, BatchState.RETRYING, BatchState.FAILED}
    ),
    BatchState.RETRYING: frozenset({BatchState.COMMITTING}),
    BatchState.COMMITTED: frozenset(),
    BatchState.FAILED: frozenset(),
}


def is_contention_error(exc: BaseException) -> bool:
    """True if ``exc`` (or a wrapped driver error) carries a contention SQLSTATE.

    Checks the SQLAlchemy ``orig`` attribute and the ``__cause__`` chain so
    both raw asyncpg errors and DBAPIError wrappers are recognized.
    """
    seen: set[int] = set()
    pending: list[BaseException | None] = [exc]
    while pending:
        current = pending.pop()
        if current is None or id(current) in seen:
            continue
        seen.add(id(current))
        for attr in ("sqlstate", "pgcode"):
            code = getattr(current, attr, None)
            if isinstance(code, str) and code in CONTENTION_SQLSTATES:
                return True
        orig = getattr(current, "orig", None)
        if isinstance(orig, BaseException):
            pending.append(orig)
        pending.append(current.__cause__)
    return False


@dataclass
class _Batch:
    index: int
    rows: Sequence[Mapping[str, Any]]
    state: BatchState = BatchState.PENDING
    attempts: int = 0
    inserted: int = 0
    updated: int = 0
    error: str | None = None
    history: list[BatchState] = field(default_factory=lambda: [BatchState.PENDING])

    def advance(self, new_state: BatchState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise RuntimeError(
                f"batch {self.index}: illegal transition {self.state.value} -> {new_state.value}"
            )
        self.state = new_state
        self.history.append(new_state)


class BatchUpsertEngine:
    """Commits normalized rows through a batch writer.

    Args:
        writer: Async callable persisting one batch in one transaction and
            returning (inserted, updated). Usually
            ``DealCacheRepository.upsert_deals``.
        config: Batch size, parallelism, group delay, retry settings.
        sleep: Awaitable sleep, injectable for tests.
    """

    def __init__(
        self,
        writer: BatchWriter,
        config: UpsertConfig | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._writer = writer
        self._config = config or UpsertConfig()
        self._sleep = sleep

    @property
    def config(self) -> UpsertConfig:
        return self._config

    async def upsert(self, rows: Sequence[Mapping[str, Any]]) -> UpsertResult:
        """Write every row, returning totals and the list of failed batches."""
        size = self._config.batch_size
        batches = [
            _Batch(index=number, rows=rows[start : start + size])
            for number, start in enumerate(range(0, len(rows), size))
        ]
        if not batches:
            return UpsertResult()

        parallel = self._config.parallel_batches
        groups = [batches[i : i + parallel] for i in range(0, len(batches), parallel)]

        logger.info(
            "upsert.started",
            rows=len(rows),
            batches=len(batches),
            groups=len(groups),
        )

        for group_number, group in enumerate(groups, start=1):
            await asyncio.gather(*(self._commit(batch) for batch in group))
            logger.debug(
                "upsert.group_complete",
                group=group_number,
                total_groups=len(groups),
                committed=sum(1 for b in group if b.state is BatchState.COMMITTED),
            )
            if group_number < len(groups) and self._config.group_delay > 0:
                await self._sleep(self._config.group_delay)

        committed = [b for b in batches if b.state is BatchState.COMMITTED]
        result = UpsertResult(
            inserted=sum(b.inserted for b in committed),
            updated=sum(b.updated for b in committed),
            batches=len(batches),
            failures=[
                BatchFailure(
                    batch_index=b.index,
                    size=len(b.rows),
                    error=b.error or "unknown error",
                    attempts=b.attempts,
                )
                for b in batches
                if b.state is BatchState.FAILED
            ],
        )
        result.upserted = result.inserted + result.updated

        logger.info(
            "upsert.complete",
            upserted=result.upserted,
            inserted=result.inserted,
            updated=result.updated,
            failed_batches=len(result.failures),
        )
        return result

    async def _commit(self, batch: _Batch) -> None:
        """Drive one batch to committed or failed; never raises."""
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._config.max_retries),
            wait=wait_exponential(
                multiplier=self._config.retry_base_delay,
                max=self._config.retry_max_delay,
            ),
            retry=retry_if_exception(is_contention_error),
            sleep=self._sleep,
            before_sleep=self._on_contention(batch),
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    batch.advance(BatchState.COMMITTING)
                    batch.attempts = attempt.retry_state.attempt_number
                    batch.inserted, batch.updated = await self._writer(batch.rows)
        except Exception as exc:
            batch.error = repr(exc)
            batch.advance(BatchState.FAILED)
            logger.error(
                "upsert.batch_failed",
                batch=batch.index,
                size=len(batch.rows),
                attempts=batch.attempts,
                contention=is_contention_error(exc),
                error=batch.error,
            )
            return

        batch.advance(BatchState.COMMITTED)
        logger.debug(
            "upsert.batch_committed",
            batch=batch.index,
            inserted=batch.inserted,
            updated=batch.updated,
            attempts=batch.attempts,
        )

    def _on_contention(self, batch: _Batch) -> Callable[[RetryCallState], None]:
        def before_sleep(retry_state: RetryCallState) -> None:
            batch.advance(BatchState.RETRYING)
            exc = retry_state.outcome.exception() if retry_state.outcome else None
            logger.warning(
                "upsert.contention_retry",
                batch=batch.index,
                attempt=retry_state.attempt_number,
                max_attempts=self._config.max_retries,
                wait_seconds=retry_state.next_action.sleep if retry_state.next_action else None,
                error=repr(exc),
            )

        return before_sleep
