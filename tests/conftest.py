"""Shared test doubles for the deal sync tests.

Provides:
- FakeCRMSource: In-memory counted collections with injectable page failures
- InMemoryDealCacheRepository: DealCacheRepository double (cache, run log, lease)
- RecordingSleep: Awaitable sleep that records requested delays without waiting
- make_deals() / make_field_entries(): Raw CRM payload factories

No real database or network is used anywhere in the suite.
"""

from __future__ import annotations

import uuid
from collections.abc import Mapping, Sequence
from datetime import date, datetime, timedelta, timezone
from typing import Any

import httpx
import pytest

from src.dealsync.deals.crm.adapter import CRMSource
from src.dealsync.deals.errors import CRMConfigurationError
from src.dealsync.deals.schemas import SyncCounters, SyncLogRead, SyncRunStatus


# ── Remote CRM Double ────────────────────────────────────────────────────────


class FakeCRMSource(CRMSource):
    """Serves ``{collection: [...], meta: {total}}`` pages from memory.

    Args:
        collections: collection name -> full item list.
        page_failures: (collection, offset) -> number of times that page
            request fails before succeeding. Probes (limit=1) never fail.
        configured: When False, ensure_configured() raises.
    """

    def __init__(
        self,
        collections: Mapping[str, list[dict[str, Any]]],
        page_failures: Mapping[tuple[str, int], int] | None = None,
        configured: bool = True,
    ) -> None:
        self.collections = {k: list(v) for k, v in collections.items()}
        self.page_failures = dict(page_failures or {})
        self.configured = configured
        self.calls: list[tuple[str, int, int]] = []
        self.closed = False

    def ensure_configured(self) -> None:
        if not self.configured:
            raise CRMConfigurationError("Missing CRM credentials: set AC_BASE_URL and AC_API_TOKEN")

    async def get_page(self, collection: str, limit: int, offset: int) -> dict[str, Any]:
        self.calls.append((collection, limit, offset))
        key = (collection, offset)
        if limit != 1 and self.page_failures.get(key, 0) > 0:
            self.page_failures[key] -= 1
            raise httpx.ConnectError(f"connection reset fetching {collection}@{offset}")
        items = self.collections.get(collection, [])
        # The real API reports meta.total as a string
        return {collection: items[offset : offset + limit], "meta": {"total": str(len(items))}}

    def page_calls(self, collection: str) -> list[tuple[int, int]]:
        """(limit, offset) of non-probe requests for ``collection``."""
        return [(lim, off) for col, lim, off in self.calls if col == collection and lim != 1]

    async def aclose(self) -> None:
        self.closed = True


# ── Repository Double ────────────────────────────────────────────────────────


class InMemoryDealCacheRepository:
    """In-memory DealCacheRepository for testing without database."""

    def __init__(self, now: datetime | None = None) -> None:
        self.rows: dict[str, dict[str, Any]] = {}
        self.logs: dict[str, SyncLogRead] = {}
        self.locks: dict[str, tuple[str, datetime]] = {}
        self.upsert_calls: list[int] = []
        self.upsert_errors: list[Exception] = []
        self._now = now

    def now(self) -> datetime:
        return self._now or datetime.now(timezone.utc)

    def advance(self, seconds: float) -> None:
        self._now = self.now() + timedelta(seconds=seconds)

    # ── Deals Cache ─────────────────────────────────────────────────────

    async def upsert_deals(self, rows: Sequence[Mapping[str, Any]]) -> tuple[int, int]:
        self.upsert_calls.append(len(rows))
        if self.upsert_errors:
            raise self.upsert_errors.pop(0)
        inserted = updated = 0
        for row in rows:
            if row["deal_id"] in self.rows:
                updated += 1
            else:
                inserted += 1
            self.rows[row["deal_id"]] = dict(row)
        return inserted, updated

    async def clear_deals(self) -> int:
        deleted = len(self.rows)
        self.rows.clear()
        return deleted

    async def count_deals(self, sync_status: str | None = "synced") -> int:
        return sum(
            1 for r in self.rows.values() if sync_status is None or r["sync_status"] == sync_status
        )

    async def count_recent_deals(self, closing_since: date) -> int:
        return sum(
            1
            for r in self.rows.values()
            if r["sync_status"] == "synced"
            and r.get("closing_date") is not None
            and r["closing_date"] >= closing_since
        )

    # ── Sync Log ────────────────────────────────────────────────────────

    async def create_sync_log(self, started_at: datetime) -> str:
        log_id = str(uuid.uuid4())
        self.logs[log_id] = SyncLogRead(id=log_id, sync_started_at=started_at)
        return log_id

    async def complete_sync_log(
        self,
        log_id: str,
        completed_at: datetime,
        counters: SyncCounters,
        duration_seconds: int,
    ) -> None:
        self.logs[log_id] = self.logs[log_id].model_copy(
            update={
                "sync_completed_at": completed_at,
                "sync_status": SyncRunStatus.COMPLETED,
                "deals_processed": counters.processed,
                "deals_added": counters.added,
                "deals_updated": counters.updated,
                "deals_deleted": counters.deleted,
                "sync_duration_seconds": duration_seconds,
            }
        )

    async def fail_sync_log(
        self,
        log_id: str,
        completed_at: datetime,
        error_message: str,
        duration_seconds: int,
    ) -> None:
        self.logs[log_id] = self.logs[log_id].model_copy(
            update={
                "sync_completed_at": completed_at,
                "sync_status": SyncRunStatus.FAILED,
                "error_message": error_message,
                "sync_duration_seconds": duration_seconds,
            }
        )

    async def get_latest_sync_log(
        self, status: SyncRunStatus | None = None
    ) -> SyncLogRead | None:
        logs = [l for l in self.logs.values() if status is None or l.sync_status is status]
        return max(logs, key=lambda l: l.sync_started_at, default=None)

    async def list_sync_logs(self, limit: int = 5) -> list[SyncLogRead]:
        return sorted(self.logs.values(), key=lambda l: l.sync_started_at, reverse=True)[:limit]

    # ── Sync Locks ──────────────────────────────────────────────────────

    async def acquire_lock(self, name: str, holder: str, ttl_seconds: int) -> bool:
        now = self.now()
        current = self.locks.get(name)
        if current is not None and current[1] >= now:
            return False
        self.locks[name] = (holder, now + timedelta(seconds=ttl_seconds))
        return True

    async def get_lock_holder(self, name: str) -> str | None:
        current = self.locks.get(name)
        if current is None or current[1] < self.now():
            return None
        return current[0]

    async def release_lock(self, name: str, holder: str) -> bool:
        current = self.locks.get(name)
        if current is None or current[0] != holder:
            return False
        del self.locks[name]
        return True

    async def force_release_lock(self, name: str) -> bool:
        return self.locks.pop(name, None) is not None


# ── Sleep Double ─────────────────────────────────────────────────────────────


class RecordingSleep:
    """Drop-in for asyncio.sleep that records delays and returns immediately."""

    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)

    @property
    def positive(self) -> list[float]:
        return [c for c in self.calls if c > 0]


# ── Payload Factories ────────────────────────────────────────────────────────


def make_deals(count: int, start: int = 1) -> list[dict[str, Any]]:
    """Raw /deals items with string ids ``start``..``start+count-1``."""
    return [
        {
            "id": str(i),
            "title": f"Deal {i}",
            "value": str(i * 1000),
            "currency": "brl",
            "status": "1",
            "stage": "3",
            "cdate": "2024-01-10T09:00:00-03:00",
            "mdate": "2024-02-01T12:30:00-03:00",
            "contact": str(500 + i),
            "organization": None,
        }
        for i in range(start, start + count)
    ]


def make_field_entry(deal_id: int | str, field_id: int, value: str) -> dict[str, Any]:
    return {"dealId": str(deal_id), "customFieldId": str(field_id), "fieldValue": value}


# ── Fixtures ─────────────────────────────────────────────────────────────────


@pytest.fixture
def fake_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def repo() -> InMemoryDealCacheRepository:
    return InMemoryDealCacheRepository()
