"""Unit tests for the sync run metrics helper.

Tests cover:
- Success and error run counters per mode
- Lease rejections counted under their own status
- Upserted row and failed batch counters fed from the tracker dict
- Fetch error counters per collection
- Last-success gauge only moves for real (non-dry) runs
"""

from __future__ import annotations

import pytest

from src.dealsync.core.monitoring import (
    deal_sync_failed_batches_total,
    deal_sync_fetch_errors_total,
    deal_sync_last_success_timestamp,
    deal_sync_records_upserted_total,
    deal_sync_runs_total,
    get_metrics_response,
    track_sync_run,
)
from src.dealsync.deals.errors import SyncInProgressError


class TestTrackSyncRun:
    async def test_success_counts_run_and_rows(self):
        runs_before = deal_sync_runs_total.labels(status="success", mode="sync")._value.get()
        inserted_before = deal_sync_records_upserted_total.labels(kind="inserted")._value.get()
        updated_before = deal_sync_records_upserted_total.labels(kind="updated")._value.get()
        failed_before = deal_sync_failed_batches_total._value.get()

        async with track_sync_run("sync") as tracker:
            tracker["inserted"] = 7
            tracker["updated"] = 3
            tracker["failed_batches"] = 1

        assert deal_sync_runs_total.labels(status="success", mode="sync")._value.get() == runs_before + 1
        assert deal_sync_records_upserted_total.labels(kind="inserted")._value.get() == inserted_before + 7
        assert deal_sync_records_upserted_total.labels(kind="updated")._value.get() == updated_before + 3
        assert deal_sync_failed_batches_total._value.get() == failed_before + 1
        assert deal_sync_last_success_timestamp._value.get() > 0

    async def test_error_counted_and_reraised(self):
        before = deal_sync_runs_total.labels(status="error", mode="sync")._value.get()

        with pytest.raises(RuntimeError):
            async with track_sync_run("sync"):
                raise RuntimeError("probe failed")

        assert deal_sync_runs_total.labels(status="error", mode="sync")._value.get() == before + 1

    async def test_lease_rejection_counted_apart_from_errors(self):
        rejected_before = deal_sync_runs_total.labels(status="rejected", mode="sync")._value.get()
        errors_before = deal_sync_runs_total.labels(status="error", mode="sync")._value.get()

        with pytest.raises(SyncInProgressError):
            async with track_sync_run("sync"):
                raise SyncInProgressError("deals_sync", "other-run")

        assert deal_sync_runs_total.labels(status="rejected", mode="sync")._value.get() == rejected_before + 1
        assert deal_sync_runs_total.labels(status="error", mode="sync")._value.get() == errors_before

    async def test_fetch_errors_per_collection(self):
        before = deal_sync_fetch_errors_total.labels(collection="dealCustomFieldData")._value.get()

        async with track_sync_run("dry_run") as tracker:
            tracker["fetch_errors"] = {"deals": 0, "dealCustomFieldData": 2}

        after = deal_sync_fetch_errors_total.labels(collection="dealCustomFieldData")._value.get()
        assert after == before + 2

    async def test_dry_run_does_not_touch_last_success(self):
        deal_sync_last_success_timestamp.set(0)

        async with track_sync_run("dry_run"):
            pass

        assert deal_sync_last_success_timestamp._value.get() == 0


class TestMetricsResponse:
    def test_exposition_contains_sync_metrics(self):
        response = get_metrics_response()

        assert b"deal_sync_runs_total" in response.body
        assert response.media_type.startswith("text/plain")
