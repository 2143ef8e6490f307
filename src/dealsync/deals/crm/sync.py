"""Deal sync engine -- pulls deals and custom field data, joins, and upserts.

One run, in order:
1. Take the sync lease (skipped for dry runs).
2. Create the ``running`` run-log entry (skipped for dry runs).
3. Optionally clear deals_cache (``clear_first``, never in a dry run).
4. Fetch /deals (capped unless ``all_deals``), then /dealCustomFieldData.
   The two fetches run one after the other so they share one rate budget.
5. Validate, dedupe, join with the allow-listed custom fields, dedupe again.
6. Dry run: report counters plus a sample. Otherwise batch-upsert and
   complete the run log.

Transient page and batch failures are counted in the summary. Anything
else aborts the run: the run log is marked ``failed`` and
SyncRunFailedError is raised carrying the partial summary.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable, Mapping
from contextlib import AsyncExitStack
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

import structlog

from src.dealsync.core.monitoring import track_sync_run
from src.dealsync.deals.crm.activecampaign import (
    CUSTOM_FIELD_DATA_COLLECTION,
    DEALS_COLLECTION,
)
from src.dealsync.deals.crm.adapter import CRMSource
from src.dealsync.deals.crm.field_mapping import (
    DEFAULT_CUSTOM_FIELD_MAP,
    build_custom_field_index,
)
from src.dealsync.deals.crm.pagination import PageRequest, PaginatedFetcher
from src.dealsync.deals.crm.scheduler import RateLimitedScheduler
from src.dealsync.deals.errors import SyncInProgressError, SyncRunFailedError
from src.dealsync.deals.lock import SyncLease
from src.dealsync.deals.normalizer import dedupe_by_key, normalize_deals, parse_raw_deals
from src.dealsync.deals.run_log import SyncRunLog
from src.dealsync.deals.schemas import (
    RateLimitConfig,
    SyncCounters,
    SyncOptions,
    SyncPerformance,
    SyncReport,
    SyncRunStatus,
    SyncSummary,
    UpsertConfig,
)
from src.dealsync.deals.upsert import BatchUpsertEngine

if TYPE_CHECKING:
    from src.dealsync.deals.repository import DealCacheRepository

logger = structlog.get_logger(__name__)

SAMPLE_SIZE = 3


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _per_second(count: int, seconds: float) -> float:
    return round(count / seconds, 2) if seconds > 0 else 0.0


class DealSyncEngine:
    """Runs the deal sync pipeline against a CRM source and the deal cache.

    Args:
        source: Remote CRM collection source.
        repository: Persistence for deals_cache, run log and lease.
        rate_limit: Fetch scheduler settings.
        upsert: Batch upsert settings.
        custom_field_map: Allow-listed custom field id -> deals_cache column.
        page_size: Items per page request.
        lock_ttl_seconds: Lease expiry, bounding how long a crashed run blocks.
        sleep: Awaitable sleep shared by scheduler and upsert engine.
        clock: Monotonic clock (seconds) for durations and throughput.
        wall_clock: Timezone-aware "now" for run-log and row timestamps.
    """

    def __init__(
        self,
        source: CRMSource,
        repository: DealCacheRepository,
        rate_limit: RateLimitConfig | None = None,
        upsert: UpsertConfig | None = None,
        custom_field_map: Mapping[int, str] | None = None,
        page_size: int = 100,
        lock_ttl_seconds: int = 300,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._source = source
        self._repository = repository
        self._rate_limit = rate_limit or RateLimitConfig()
        self._field_map = dict(
            DEFAULT_CUSTOM_FIELD_MAP if custom_field_map is None else custom_field_map
        )
        self._clock = clock
        self._wall_clock = wall_clock

        scheduler: RateLimitedScheduler[PageRequest] = RateLimitedScheduler(
            self._rate_limit, sleep=sleep, clock=clock
        )
        self._fetcher = PaginatedFetcher(source, scheduler, page_size=page_size)
        self._upserter = BatchUpsertEngine(repository.upsert_deals, upsert, sleep=sleep)
        self._lease = SyncLease(repository, ttl_seconds=lock_ttl_seconds)

    @property
    def lease(self) -> SyncLease:
        return self._lease

    async def run(self, options: SyncOptions | None = None) -> SyncReport:
        """Execute one sync run.

        Raises:
            SyncInProgressError: Another run holds the lease.
            SyncRunFailedError: The lease could not be taken, or the run
                started but could not finish.
        """
        options = options or SyncOptions()
        mode = "dry_run" if options.dry_run else "sync"
        logger.info(
            "sync.started",
            mode=mode,
            clear_first=options.clear_first,
            all_deals=options.all_deals,
            max_deals=options.deal_cap,
        )

        async with track_sync_run(mode) as tracker:
            if options.dry_run:
                return await self._run_guarded(options, tracker, run_log=None)
            async with AsyncExitStack() as stack:
                await self._enter_lease(stack)
                run_log = SyncRunLog(self._repository, clock=self._wall_clock)
                return await self._run_guarded(options, tracker, run_log=run_log)

    async def _enter_lease(self, stack: AsyncExitStack) -> None:
        """Hold the lease for the rest of ``stack``.

        Raises:
            SyncInProgressError: Another run holds the lease.
            SyncRunFailedError: The lease row could not be written.
        """
        started = self._clock()
        try:
            await stack.enter_async_context(self._lease.hold())
        except SyncInProgressError:
            raise
        except Exception as exc:
            duration = round(self._clock() - started, 2)
            message = f"Could not acquire sync lease: {str(exc) or type(exc).__name__}"
            logger.error(
                "sync.lease_failed",
                lock=self._lease.name,
                error=repr(exc),
                duration_seconds=duration,
            )
            raise SyncRunFailedError(
                message, summary=SyncSummary(), duration_seconds=duration
            ) from exc

    async def _run_guarded(
        self,
        options: SyncOptions,
        tracker: dict[str, Any],
        run_log: SyncRunLog | None,
    ) -> SyncReport:
        started = self._clock()
        summary = SyncSummary()
        try:
            if run_log is not None:
                await run_log.start()
            return await self._execute(options, summary, started, tracker, run_log)
        except Exception as exc:
            duration = round(self._clock() - started, 2)
            summary.sync_duration_seconds = duration
            if run_log is not None and run_log.status is SyncRunStatus.RUNNING:
                await self._record_failure(run_log, exc)
            message = str(exc) or type(exc).__name__
            logger.error(
                "sync.failed",
                error=message,
                error_type=type(exc).__name__,
                duration_seconds=duration,
                processed_deals=summary.processed_deals,
            )
            raise SyncRunFailedError(
                message,
                summary=summary,
                duration_seconds=duration,
                sync_log_id=run_log.log_id if run_log else None,
            ) from exc

    async def _record_failure(self, run_log: SyncRunLog, exc: Exception) -> None:
        try:
            await run_log.fail(exc)
        except Exception as log_exc:
            # The original error is re-raised by the caller
            logger.error(
                "sync.run_log_write_failed",
                sync_log_id=run_log.log_id,
                error=repr(log_exc),
            )

    async def _execute(
        self,
        options: SyncOptions,
        summary: SyncSummary,
        started: float,
        tracker: dict[str, Any],
        run_log: SyncRunLog | None,
    ) -> SyncReport:
        self._source.ensure_configured()

        deleted = 0
        if options.clear_first and not options.dry_run:
            deleted = await self._repository.clear_deals()
            summary.deals_deleted = deleted

        # ── Fetch ───────────────────────────────────────────────────────
        phase_started = self._clock()
        deals_fetch = await self._fetcher.fetch_all(DEALS_COLLECTION, cap=options.deal_cap)
        deals_elapsed = self._clock() - phase_started
        summary.total_deals = len(deals_fetch.items)
        summary.deal_errors = len(deals_fetch.errors)
        tracker["fetch_errors"][DEALS_COLLECTION] = len(deals_fetch.errors)

        raw_deals, skipped = parse_raw_deals(deals_fetch.items)
        unique_deals, api_duplicates = dedupe_by_key(raw_deals, key=lambda d: d.id)
        if api_duplicates:
            logger.warning("sync.api_duplicates_removed", removed=api_duplicates)

        phase_started = self._clock()
        fields_fetch = await self._fetcher.fetch_all(CUSTOM_FIELD_DATA_COLLECTION)
        fields_elapsed = self._clock() - phase_started
        summary.total_custom_field_entries = len(fields_fetch.items)
        summary.custom_field_errors = len(fields_fetch.errors)
        tracker["fetch_errors"][CUSTOM_FIELD_DATA_COLLECTION] = len(fields_fetch.errors)

        # ── Join & normalize ────────────────────────────────────────────
        index = build_custom_field_index(fields_fetch.items, self._field_map.keys())
        normalized, post_duplicates = normalize_deals(
            unique_deals, index, self._field_map, synced_at=self._wall_clock()
        )
        summary.target_custom_field_entries = index.target_entries
        summary.deals_with_custom_fields = sum(1 for d in normalized if d.deal_id in index)
        summary.processed_deals = len(normalized)
        summary.api_duplicates_removed = api_duplicates
        summary.duplicates_removed = api_duplicates + post_duplicates
        summary.invalid_records = skipped + index.invalid_entries
        summary.performance = SyncPerformance(
            deals_per_second=_per_second(len(deals_fetch.items), deals_elapsed),
            custom_fields_per_second=_per_second(len(fields_fetch.items), fields_elapsed),
        )

        logger.info(
            "sync.normalized",
            total_deals=summary.total_deals,
            processed_deals=summary.processed_deals,
            deals_with_custom_fields=summary.deals_with_custom_fields,
            duplicates_removed=summary.duplicates_removed,
            invalid_records=summary.invalid_records,
        )

        if options.dry_run:
            summary.rate_limit = {
                "batchSize": self._rate_limit.batch_size,
                "minBatchIntervalMs": round(self._rate_limit.min_batch_interval * 1000),
                "safetyBufferMs": round(self._rate_limit.safety_buffer * 1000),
                "maxRetries": self._rate_limit.max_retries,
            }
            summary.sample_processed_deals = [
                deal.model_dump(mode="json") for deal in normalized[:SAMPLE_SIZE]
            ]
            summary.sync_duration_seconds = round(self._clock() - started, 2)
            logger.info("sync.dry_run_complete", processed_deals=summary.processed_deals)
            return SyncReport(
                success=True,
                dry_run=True,
                message=(
                    f"Dry run complete: {summary.processed_deals} deals processed, "
                    "nothing written"
                ),
                summary=summary,
            )

        # ── Upsert ──────────────────────────────────────────────────────
        phase_started = self._clock()
        result = await self._upserter.upsert([deal.to_row() for deal in normalized])
        upsert_elapsed = self._clock() - phase_started
        tracker["inserted"] = result.inserted
        tracker["updated"] = result.updated
        tracker["failed_batches"] = len(result.failures)

        summary.deals_upserted = result.upserted
        summary.failed_batches = len(result.failures)
        summary.performance.upserts_per_second = _per_second(result.upserted, upsert_elapsed)

        await run_log.complete(
            SyncCounters(
                processed=len(normalized),
                added=result.inserted,
                updated=result.updated,
                deleted=deleted,
            )
        )
        summary.sync_duration_seconds = round(self._clock() - started, 2)

        message = f"Sync complete: {result.upserted} deals upserted"
        if result.failures:
            message += f", {len(result.failures)} batches failed"

        logger.info(
            "sync.complete",
            sync_log_id=run_log.log_id,
            upserted=result.upserted,
            inserted=result.inserted,
            updated=result.updated,
            failed_batches=len(result.failures),
            duration_seconds=summary.sync_duration_seconds,
        )
        return SyncReport(
            success=True,
            dry_run=False,
            message=message,
            sync_log_id=run_log.log_id,
            summary=summary,
        )
