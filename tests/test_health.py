"""Unit tests for deal cache health grading."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from conftest import InMemoryDealCacheRepository
from src.dealsync.deals.health import HealthStatus, check_cache_health, evaluate_cache_health
from src.dealsync.deals.schemas import SyncCounters, SyncLogRead, SyncRunStatus

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def _log(
    minutes_ago: float,
    status: SyncRunStatus = SyncRunStatus.COMPLETED,
    error: str | None = None,
) -> SyncLogRead:
    started = NOW - timedelta(minutes=minutes_ago)
    return SyncLogRead(
        id=f"log-{minutes_ago}",
        sync_started_at=started,
        sync_completed_at=None if status is SyncRunStatus.RUNNING else started,
        sync_status=status,
        error_message=error,
        deals_processed=100,
        sync_duration_seconds=30,
    )


def _grade(history: list[SyncLogRead], total_deals: int = 500):
    latest = history[0] if history else None
    completed = [s for s in history if s.sync_status is SyncRunStatus.COMPLETED]
    return evaluate_cache_health(
        latest=latest,
        last_completed=completed[0] if completed else None,
        history=history,
        total_deals=total_deals,
        recent_deals=12,
        now=NOW,
    )


class TestEvaluateCacheHealth:
    def test_fresh_sync_is_healthy(self):
        health = _grade([_log(10)])

        assert health.status is HealthStatus.HEALTHY
        assert health.issues == []
        assert health.cache.minutes_since_last_sync == 10
        assert health.sync.success_rate == 100

    def test_no_records_is_critical(self):
        health = _grade([], total_deals=0)

        assert health.status is HealthStatus.CRITICAL
        assert "No sync records found" in health.issues
        assert health.cache.last_sync_status == "unknown"

    def test_stale_sync_is_warning(self):
        health = _grade([_log(60)])

        assert health.status is HealthStatus.WARNING
        assert health.issues == ["Last sync was 60 minutes ago"]

    def test_very_stale_sync_is_critical(self):
        health = _grade([_log(180)])

        assert health.status is HealthStatus.CRITICAL
        assert "sync may be broken" in health.issues[0]

    def test_failed_latest_uses_last_completed_for_freshness(self):
        health = _grade([_log(5, SyncRunStatus.FAILED, "Probe failed"), _log(20)])

        assert health.status is HealthStatus.WARNING
        assert "Last sync failed: Probe failed" in health.issues
        assert health.cache.minutes_since_last_sync == 20
        assert health.sync.last_error == "Probe failed"

    def test_only_failed_runs_is_critical(self):
        health = _grade([_log(5, SyncRunStatus.FAILED)])

        assert health.status is HealthStatus.CRITICAL
        assert "No completed sync found" in health.issues
        assert "Last sync failed: Unknown error" in health.issues

    def test_stuck_run_is_warning(self):
        health = _grade([_log(15, SyncRunStatus.RUNNING), _log(30)])

        assert health.status is HealthStatus.WARNING
        assert health.sync.is_running is True
        assert "Sync has been running for 15 minutes" in health.issues

    def test_short_running_run_is_not_flagged(self):
        health = _grade([_log(2, SyncRunStatus.RUNNING), _log(30), _log(60), _log(90), _log(120)])

        assert health.status is HealthStatus.HEALTHY

    def test_low_deal_count_is_warning(self):
        health = _grade([_log(5)], total_deals=3)

        assert health.status is HealthStatus.WARNING
        assert "Only 3 deals in cache" in health.issues

    def test_low_success_rate_is_warning(self):
        history = [
            _log(5),
            _log(35, SyncRunStatus.FAILED),
            _log(65, SyncRunStatus.FAILED),
            _log(95),
        ]

        health = _grade(history)

        assert health.sync.success_rate == 50
        assert "Low sync success rate: 50.0%" in health.issues

    def test_response_uses_camel_case(self):
        body = _grade([_log(10)]).to_response()

        assert body["status"] == "healthy"
        assert body["cache"]["recentDeals"] == 12
        assert body["sync"]["totalSyncs"] == 1
        assert body["history"][0]["dealsProcessed"] == 100


class TestCheckCacheHealth:
    async def test_loads_from_repository(self):
        repo = InMemoryDealCacheRepository(now=NOW)
        log_id = await repo.create_sync_log(NOW - timedelta(minutes=50))
        await repo.complete_sync_log(log_id, NOW - timedelta(minutes=49), SyncCounters(), 60)
        repo.rows["1"] = {"deal_id": "1", "sync_status": "synced", "closing_date": NOW.date()}

        health = await check_cache_health(repo, now=NOW)

        assert health.status is HealthStatus.WARNING
        assert health.cache.total_deals == 1
        assert health.cache.recent_deals == 1
        assert "Last sync was 49 minutes ago" in health.issues
