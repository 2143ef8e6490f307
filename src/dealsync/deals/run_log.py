"""Run log for one sync execution (one deals_sync_log row).

The row is created as ``running`` before any remote fetch and finalized
exactly once, as ``completed`` with counters or ``failed`` with an error
message. Terminal states are final.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone
from typing import TYPE_CHECKING

import structlog

from src.dealsync.deals.errors import InvalidRunTransitionError
from src.dealsync.deals.schemas import SyncCounters, SyncRunStatus

if TYPE_CHECKING:
    from src.dealsync.deals.repository import DealCacheRepository

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SyncRunLog:
    """Tracks a single run through running -> completed | failed.

    Args:
        repository: Persistence for deals_sync_log rows.
        clock: Returns the current time (timezone-aware), injectable for tests.
    """

    def __init__(
        self,
        repository: DealCacheRepository,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._repository = repository
        self._clock = clock
        self.log_id: str | None = None
        self.status: SyncRunStatus | None = None
        self.started_at: datetime | None = None
        self.duration_seconds: int | None = None

    async def start(self) -> str:
        """Insert the ``running`` row. Must be called once, before any fetch."""
        if self.status is not None:
            raise InvalidRunTransitionError(
                f"run log already started (status={self.status.value})"
            )
        self.started_at = self._clock()
        self.log_id = await self._repository.create_sync_log(self.started_at)
        self.status = SyncRunStatus.RUNNING
        logger.info("run_log.started", sync_log_id=self.log_id)
        return self.log_id

    async def complete(self, counters: SyncCounters) -> None:
        """Finalize as ``completed`` with the run's counters."""
        completed_at = self._finish(SyncRunStatus.COMPLETED)
        await self._repository.complete_sync_log(
            self.log_id, completed_at, counters, self.duration_seconds
        )
        self.status = SyncRunStatus.COMPLETED
        logger.info(
            "run_log.completed",
            sync_log_id=self.log_id,
            duration_seconds=self.duration_seconds,
            **counters.model_dump(),
        )

    async def fail(self, error: BaseException | str) -> None:
        """Finalize as ``failed``, recording the error message."""
        completed_at = self._finish(SyncRunStatus.FAILED)
        message = str(error) or type(error).__name__
        await self._repository.fail_sync_log(
            self.log_id, completed_at, message, self.duration_seconds
        )
        self.status = SyncRunStatus.FAILED
        logger.error(
            "run_log.failed",
            sync_log_id=self.log_id,
            duration_seconds=self.duration_seconds,
            error=message,
        )

    def _finish(self, target: SyncRunStatus) -> datetime:
        if self.status is not SyncRunStatus.RUNNING:
            current = self.status.value if self.status else "not started"
            raise InvalidRunTransitionError(
                f"cannot move run log from {current} to {target.value}"
            )
        completed_at = self._clock()
        self.duration_seconds = round((completed_at - self.started_at).total_seconds())
        return completed_at
