"""Exceptions that abort a sync run.

Transient failures (a single page request, a single upsert batch) never
raise out of their stage; they are captured as data. Only the structural
failures below terminate a run and mark the run log as failed.
"""

from __future__ import annotations

from typing import Any


class SyncError(Exception):
    """Base class for fatal sync errors."""


class CRMConfigurationError(SyncError):
    """Remote CRM base URL or API token is not configured."""


class CRMResponseError(SyncError):
    """Remote CRM returned an unusable response (probe failed or malformed shape)."""


class SyncInProgressError(SyncError):
    """Another run holds the sync lease."""

    def __init__(self, lock_name: str, holder: str | None = None) -> None:
        self.lock_name = lock_name
        self.holder = holder
        super().__init__(f"Sync already in progress (lock={lock_name})")


class InvalidRunTransitionError(SyncError):
    """A run log entry was moved out of a terminal state or finalized twice."""


class SyncRunFailedError(SyncError):
    """A run aborted after it started; carries the progress made so far.

    Args:
        message: Human-readable cause, also written to the run log.
        summary: Partial SyncSummary at the point of failure.
        duration_seconds: Elapsed time until the failure.
        sync_log_id: Run-log row marked failed, if one was created.
    """

    def __init__(
        self,
        message: str,
        summary: Any = None,
        duration_seconds: float = 0.0,
        sync_log_id: str | None = None,
    ) -> None:
        self.summary = summary
        self.duration_seconds = duration_seconds
        self.sync_log_id = sync_log_id
        super().__init__(message)
