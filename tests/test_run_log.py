"""Unit tests for SyncRunLog state transitions."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from src.dealsync.deals.errors import InvalidRunTransitionError
from src.dealsync.deals.run_log import SyncRunLog
from src.dealsync.deals.schemas import SyncCounters, SyncRunStatus

T0 = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


class SteppingClock:
    """Returns T0, then T0 + step, T0 + 2*step, ..."""

    def __init__(self, step_seconds: float) -> None:
        self._next = T0
        self._step = timedelta(seconds=step_seconds)

    def __call__(self) -> datetime:
        current = self._next
        self._next += self._step
        return current


class TestSyncRunLog:
    async def test_start_creates_running_row(self, repo):
        run_log = SyncRunLog(repo, clock=SteppingClock(1))

        log_id = await run_log.start()

        assert run_log.status is SyncRunStatus.RUNNING
        stored = repo.logs[log_id]
        assert stored.sync_status is SyncRunStatus.RUNNING
        assert stored.sync_started_at == T0
        assert stored.sync_completed_at is None

    async def test_complete_records_counters_and_rounded_duration(self, repo):
        run_log = SyncRunLog(repo, clock=SteppingClock(42.6))
        log_id = await run_log.start()

        await run_log.complete(SyncCounters(processed=100, added=60, updated=40, deleted=5))

        stored = repo.logs[log_id]
        assert stored.sync_status is SyncRunStatus.COMPLETED
        assert stored.sync_duration_seconds == 43
        assert stored.deals_processed == 100
        assert stored.deals_added == 60
        assert stored.deals_updated == 40
        assert stored.deals_deleted == 5
        assert stored.sync_completed_at == T0 + timedelta(seconds=42.6)

    async def test_fail_records_error_message(self, repo):
        run_log = SyncRunLog(repo, clock=SteppingClock(3))
        log_id = await run_log.start()

        await run_log.fail(RuntimeError("connection pool exhausted"))

        stored = repo.logs[log_id]
        assert stored.sync_status is SyncRunStatus.FAILED
        assert stored.error_message == "connection pool exhausted"
        assert stored.sync_duration_seconds == 3

    async def test_terminal_state_is_final(self, repo):
        run_log = SyncRunLog(repo, clock=SteppingClock(1))
        await run_log.start()
        await run_log.complete(SyncCounters())

        with pytest.raises(InvalidRunTransitionError):
            await run_log.fail("late failure")
        with pytest.raises(InvalidRunTransitionError):
            await run_log.complete(SyncCounters())

    async def test_cannot_finish_before_start(self, repo):
        run_log = SyncRunLog(repo)

        with pytest.raises(InvalidRunTransitionError, match="not started"):
            await run_log.complete(SyncCounters())

    async def test_cannot_start_twice(self, repo):
        run_log = SyncRunLog(repo)
        await run_log.start()

        with pytest.raises(InvalidRunTransitionError):
            await run_log.start()
