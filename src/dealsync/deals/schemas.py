"""Pydantic schemas for deal synchronization -- raw CRM payloads, normalized rows, run results.

Defines all structured types for the sync pipeline:
- Enums: SyncRunStatus, BatchState
- Configuration: RateLimitConfig, UpsertConfig, SyncOptions
- Raw CRM payloads: RawDeal, CustomFieldEntry
- Normalized output: NormalizedDeal (one row of deals_cache)
- Stage results: RequestFailure, FetchOutcome, BatchFailure, UpsertResult
- Run log: SyncLogRead, SyncCounters
- Trigger response: SyncPerformance, SyncSummary, SyncReport
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ── Enums ───────────────────────────────────────────────────────────────────


class SyncRunStatus(str, Enum):
    """Lifecycle of a deals_sync_log row."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class BatchState(str, Enum):
    """Lifecycle of a single upsert batch."""

    PENDING = "pending"
    COMMITTING = "committing"
    RETRYING = "retrying"
    COMMITTED = "committed"
    FAILED = "failed"


# ── Configuration ───────────────────────────────────────────────────────────


class RateLimitConfig(BaseModel):
    """Knobs for the rate-limited batch scheduler (seconds, not ms)."""

    batch_size: int = Field(default=10, ge=1)
    min_batch_interval: float = Field(default=0.7, ge=0)
    safety_buffer: float = Field(default=0.05, ge=0)
    max_retries: int = Field(default=3, ge=1)
    retry_base_delay: float = Field(default=1.0, ge=0)
    retry_max_delay: float = Field(default=3.0, ge=0)
    request_timeout: float = Field(default=30.0, gt=0)


class UpsertConfig(BaseModel):
    """Knobs for the batch upsert engine (seconds, not ms)."""

    batch_size: int = Field(default=100, ge=1)
    parallel_batches: int = Field(default=5, ge=1)
    group_delay: float = Field(default=0.05, ge=0)
    max_retries: int = Field(default=3, ge=1)
    retry_base_delay: float = Field(default=1.0, ge=0)
    retry_max_delay: float = Field(default=5.0, ge=0)


class SyncOptions(BaseModel):
    """Trigger parameters for a single sync run."""

    clear_first: bool = False
    dry_run: bool = False
    all_deals: bool = False
    max_deals: int = Field(default=1000, ge=1)

    @property
    def deal_cap(self) -> int | None:
        """Upper bound on fetched deals, or None in all-deals mode."""
        return None if self.all_deals else self.max_deals


# ── Raw CRM Payloads ────────────────────────────────────────────────────────


class RawDeal(BaseModel):
    """One item from the remote /deals collection.

    Only the fields the sync needs are declared; everything else the API
    sends is ignored. Numeric ids are coerced to strings so that "42" and
    42 key the same deal.
    """

    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)

    id: str = Field(min_length=1)
    title: str | None = None
    value: int = 0
    currency: str | None = None
    status: str | None = None
    stage: str | None = None
    cdate: datetime | None = None
    mdate: datetime | None = None
    contact: str | None = None
    organization: str | None = None

    @field_validator("value", mode="before")
    @classmethod
    def _parse_minor_units(cls, v: Any) -> int:
        """Value arrives as a string of minor units (cents); blanks mean zero."""
        if v is None or v == "":
            return 0
        try:
            amount = Decimal(str(v))
        except InvalidOperation as exc:
            raise ValueError(f"invalid deal value: {v!r}") from exc
        if not amount.is_finite():
            raise ValueError(f"non-finite deal value: {v!r}")
        return int(amount)

    @field_validator("cdate", "mdate", mode="before")
    @classmethod
    def _blank_timestamp(cls, v: Any) -> Any:
        return None if v == "" else v


class CustomFieldEntry(BaseModel):
    """One item from the remote /dealCustomFieldData collection."""

    model_config = ConfigDict(
        extra="ignore", coerce_numbers_to_str=True, populate_by_name=True
    )

    deal_id: str = Field(alias="dealId", min_length=1)
    custom_field_id: int = Field(alias="customFieldId")
    field_value: str = Field(default="", alias="fieldValue")

    @field_validator("field_value", mode="before")
    @classmethod
    def _none_to_empty(cls, v: Any) -> Any:
        return "" if v is None else v


# ── Normalized Output ───────────────────────────────────────────────────────


class NormalizedDeal(BaseModel):
    """Flat deals_cache row: deal attributes plus joined custom fields."""

    deal_id: str
    title: str = ""
    value: int = 0
    currency: str = "BRL"
    status: str | None = None
    stage_id: str | None = None
    closing_date: date | None = None
    created_date: datetime | None = None
    custom_field_value: str | None = None
    custom_field_id: str | None = None
    estado: str | None = None
    quantidade_de_pares: str | None = None
    vendedor: str | None = None
    designer: str | None = None
    utm_source: str | None = None
    utm_medium: str | None = None
    custom_field_54: str | None = None
    contact_id: str | None = None
    organization_id: str | None = None
    api_updated_at: datetime | None = None
    last_synced_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    sync_status: str = "synced"

    def to_row(self) -> dict[str, Any]:
        """Column mapping for an INSERT into deals_cache."""
        return self.model_dump()


# ── Stage Results ───────────────────────────────────────────────────────────


class RequestFailure(BaseModel):
    """A request that exhausted its retries."""

    url: str
    error: str
    attempts: int = 0


class FetchOutcome(BaseModel):
    """Settled results of a scheduled batch of requests."""

    results: list[Any] = Field(default_factory=list)
    errors: list[RequestFailure] = Field(default_factory=list)


class CollectionFetch(BaseModel):
    """Everything retrieved from one paginated collection."""

    total: int = 0
    pages: int = 0
    items: list[dict[str, Any]] = Field(default_factory=list)
    errors: list[RequestFailure] = Field(default_factory=list)


class BatchFailure(BaseModel):
    """An upsert batch that ended in the failed state."""

    batch_index: int
    size: int
    error: str
    attempts: int


class UpsertResult(BaseModel):
    """Outcome of the batch upsert stage."""

    upserted: int = 0
    inserted: int = 0
    updated: int = 0
    batches: int = 0
    failures: list[BatchFailure] = Field(default_factory=list)


# ── Run Log ─────────────────────────────────────────────────────────────────


class SyncCounters(BaseModel):
    """Aggregate counters written to the run log on completion."""

    processed: int = 0
    added: int = 0
    updated: int = 0
    deleted: int = 0


class SyncLogRead(BaseModel):
    """Schema for reading a deals_sync_log row."""

    id: str
    sync_started_at: datetime
    sync_completed_at: datetime | None = None
    sync_status: SyncRunStatus = SyncRunStatus.RUNNING
    deals_processed: int = 0
    deals_added: int = 0
    deals_updated: int = 0
    deals_deleted: int = 0
    error_message: str | None = None
    sync_duration_seconds: int | None = None


# ── Trigger Response ────────────────────────────────────────────────────────


class SyncPerformance(BaseModel):
    """Throughput figures for a run."""

    model_config = ConfigDict(populate_by_name=True)

    deals_per_second: float = Field(default=0.0, alias="dealsPerSecond")
    custom_fields_per_second: float = Field(default=0.0, alias="customFieldsPerSecond")
    upserts_per_second: float | None = Field(default=None, alias="upsertsPerSecond")


class SyncSummary(BaseModel):
    """Counters reported back to the caller of the sync trigger."""

    model_config = ConfigDict(populate_by_name=True)

    total_deals: int = Field(default=0, alias="totalDeals")
    total_custom_field_entries: int = Field(default=0, alias="totalCustomFieldEntries")
    target_custom_field_entries: int = Field(default=0, alias="targetCustomFieldEntries")
    deals_with_custom_fields: int = Field(default=0, alias="dealsWithCustomFields")
    processed_deals: int = Field(default=0, alias="processedDeals")
    duplicates_removed: int = Field(default=0, alias="duplicatesRemoved")
    api_duplicates_removed: int = Field(default=0, alias="apiDuplicatesRemoved")
    invalid_records: int = Field(default=0, alias="invalidRecords")
    deals_upserted: int | None = Field(default=None, alias="dealsUpserted")
    deals_deleted: int | None = Field(default=None, alias="dealsDeleted")
    failed_batches: int | None = Field(default=None, alias="failedBatches")
    deal_errors: int = Field(default=0, alias="dealErrors")
    custom_field_errors: int = Field(default=0, alias="customFieldErrors")
    sync_duration_seconds: float = Field(default=0.0, alias="syncDurationSeconds")
    performance: SyncPerformance = Field(default_factory=SyncPerformance)
    rate_limit: dict[str, Any] | None = Field(default=None, alias="rateLimit")
    sample_processed_deals: list[dict[str, Any]] | None = Field(
        default=None, alias="sampleProcessedDeals"
    )


class SyncReport(BaseModel):
    """Full result of one sync run, as returned by the trigger endpoint."""

    model_config = ConfigDict(populate_by_name=True)

    success: bool
    dry_run: bool = Field(alias="dryRun")
    message: str
    sync_log_id: str | None = Field(default=None, alias="syncLogId")
    summary: SyncSummary

    def to_response(self) -> dict[str, Any]:
        """camelCase JSON payload with unset optional counters omitted."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)
