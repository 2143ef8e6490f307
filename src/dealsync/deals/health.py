"""Deal cache health grading from the run log and cache counts.

Provides:
- HealthStatus: healthy < warning < critical
- CacheHealth: Response model for GET /api/v1/deals/health
- evaluate_cache_health(): Pure grading over pre-fetched data
- check_cache_health(): Loads the data through DealCacheRepository and grades it

Grading (the worst matching rule wins):
- critical: no run recorded, no completed run, or last completion > 120 min ago
- warning: last completion > 45 min ago, latest run failed, a run has been
  ``running`` for > 10 min, fewer than 10 synced deals, or a success rate
  below 80% over the recent history
"""

from __future__ import annotations

import time
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any

import structlog
from pydantic import BaseModel, ConfigDict, Field

from src.dealsync.deals.schemas import SyncLogRead, SyncRunStatus

if TYPE_CHECKING:
    from src.dealsync.deals.repository import DealCacheRepository

logger = structlog.get_logger(__name__)

WARNING_AFTER_MINUTES = 45
CRITICAL_AFTER_MINUTES = 120
STUCK_RUN_MINUTES = 10
MIN_CACHED_DEALS = 10
MIN_SUCCESS_RATE = 80.0
HISTORY_SIZE = 5
RECENT_CLOSING_DAYS = 30


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"


_SEVERITY = {HealthStatus.HEALTHY: 0, HealthStatus.WARNING: 1, HealthStatus.CRITICAL: 2}


class CacheStats(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    total_deals: int = Field(default=0, alias="totalDeals")
    recent_deals: int = Field(default=0, alias="recentDeals")
    last_sync_at: datetime | None = Field(default=None, alias="lastSyncAt")
    last_sync_status: str = Field(default="unknown", alias="lastSyncStatus")
    last_sync_duration: int | None = Field(default=None, alias="lastSyncDuration")
    minutes_since_last_sync: int | None = Field(default=None, alias="minutesSinceLastSync")


class SyncStats(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success_rate: int = Field(default=0, alias="successRate")
    total_syncs: int = Field(default=0, alias="totalSyncs")
    last_error: str | None = Field(default=None, alias="lastError")
    is_running: bool = Field(default=False, alias="isRunning")


class CacheHealth(BaseModel):
    """Health report for the deal cache."""

    model_config = ConfigDict(populate_by_name=True)

    status: HealthStatus
    timestamp: datetime
    response_time_ms: int = Field(default=0, alias="responseTimeMs")
    issues: list[str] = Field(default_factory=list)
    cache: CacheStats = Field(default_factory=CacheStats)
    sync: SyncStats = Field(default_factory=SyncStats)
    history: list[dict[str, Any]] = Field(default_factory=list)

    def to_response(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


def _minutes_between(later: datetime, earlier: datetime) -> float:
    return (later - earlier).total_seconds() / 60


def evaluate_cache_health(
    latest: SyncLogRead | None,
    last_completed: SyncLogRead | None,
    history: list[SyncLogRead],
    total_deals: int,
    recent_deals: int,
    now: datetime,
    response_time_ms: int = 0,
) -> CacheHealth:
    """Grade cache freshness. Pure; all inputs are already loaded."""
    status = HealthStatus.HEALTHY
    issues: list[str] = []

    def flag(level: HealthStatus, issue: str) -> None:
        nonlocal status
        issues.append(issue)
        if _SEVERITY[level] > _SEVERITY[status]:
            status = level

    minutes_since: float | None = None
    completed_at = last_completed.sync_completed_at if last_completed else None

    if latest is None:
        flag(HealthStatus.CRITICAL, "No sync records found")
    elif completed_at is None:
        flag(HealthStatus.CRITICAL, "No completed sync found")
    else:
        minutes_since = _minutes_between(now, completed_at)
        if minutes_since > CRITICAL_AFTER_MINUTES:
            flag(
                HealthStatus.CRITICAL,
                f"Last sync was {round(minutes_since)} minutes ago - sync may be broken",
            )
        elif minutes_since > WARNING_AFTER_MINUTES:
            flag(HealthStatus.WARNING, f"Last sync was {round(minutes_since)} minutes ago")

    if latest is not None:
        if latest.sync_status is SyncRunStatus.FAILED:
            flag(
                HealthStatus.WARNING,
                f"Last sync failed: {latest.error_message or 'Unknown error'}",
            )
        if latest.sync_status is SyncRunStatus.RUNNING:
            running_for = _minutes_between(now, latest.sync_started_at)
            if running_for > STUCK_RUN_MINUTES:
                flag(
                    HealthStatus.WARNING,
                    f"Sync has been running for {round(running_for)} minutes",
                )

    if total_deals < MIN_CACHED_DEALS:
        flag(HealthStatus.WARNING, f"Only {total_deals} deals in cache")

    completed_runs = sum(1 for s in history if s.sync_status is SyncRunStatus.COMPLETED)
    success_rate = (completed_runs / len(history) * 100) if history else 0.0
    if history and success_rate < MIN_SUCCESS_RATE:
        flag(HealthStatus.WARNING, f"Low sync success rate: {success_rate:.1f}%")

    return CacheHealth(
        status=status,
        timestamp=now,
        response_time_ms=response_time_ms,
        issues=issues,
        cache=CacheStats(
            total_deals=total_deals,
            recent_deals=recent_deals,
            last_sync_at=completed_at,
            last_sync_status=latest.sync_status.value if latest else "unknown",
            last_sync_duration=last_completed.sync_duration_seconds if last_completed else None,
            minutes_since_last_sync=round(minutes_since) if minutes_since is not None else None,
        ),
        sync=SyncStats(
            success_rate=round(success_rate),
            total_syncs=len(history),
            last_error=latest.error_message if latest else None,
            is_running=latest is not None and latest.sync_status is SyncRunStatus.RUNNING,
        ),
        history=[
            {
                "startedAt": s.sync_started_at.isoformat(),
                "completedAt": s.sync_completed_at.isoformat() if s.sync_completed_at else None,
                "status": s.sync_status.value,
                "dealsProcessed": s.deals_processed,
                "durationSeconds": s.sync_duration_seconds,
                "error": s.error_message,
            }
            for s in history
        ],
    )


async def check_cache_health(
    repository: DealCacheRepository,
    now: datetime | None = None,
) -> CacheHealth:
    """Load run-log history and cache counts, then grade them."""
    started = time.perf_counter()
    now = now or datetime.now(timezone.utc)

    history = await repository.list_sync_logs(limit=HISTORY_SIZE)
    latest = history[0] if history else None
    last_completed = await repository.get_latest_sync_log(SyncRunStatus.COMPLETED)
    total_deals = await repository.count_deals(sync_status="synced")
    recent_deals = await repository.count_recent_deals(
        (now - timedelta(days=RECENT_CLOSING_DAYS)).date()
    )

    health = evaluate_cache_health(
        latest=latest,
        last_completed=last_completed,
        history=history,
        total_deals=total_deals,
        recent_deals=recent_deals,
        now=now,
        response_time_ms=round((time.perf_counter() - started) * 1000),
    )
    logger.info("health.cache_checked", status=health.status.value, issues=len(health.issues))
    return health
