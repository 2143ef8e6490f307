"""Unit tests for the sync lease."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from conftest import InMemoryDealCacheRepository
from src.dealsync.deals.errors import SyncInProgressError
from src.dealsync.deals.lock import DEFAULT_LOCK_NAME, SyncLease


@pytest.fixture
def clocked_repo() -> InMemoryDealCacheRepository:
    return InMemoryDealCacheRepository(now=datetime(2024, 6, 1, tzinfo=timezone.utc))


class TestSyncLease:
    async def test_second_holder_is_rejected(self, clocked_repo):
        lease = SyncLease(clocked_repo, ttl_seconds=300)
        first = await lease.acquire()

        with pytest.raises(SyncInProgressError) as exc_info:
            await lease.acquire()

        assert exc_info.value.lock_name == DEFAULT_LOCK_NAME
        assert exc_info.value.holder == first

    async def test_release_frees_the_lease(self, clocked_repo):
        lease = SyncLease(clocked_repo)
        token = await lease.acquire()

        assert await lease.release(token) is True
        assert await lease.acquire() != token

    async def test_release_by_non_holder_is_ignored(self, clocked_repo):
        lease = SyncLease(clocked_repo)
        await lease.acquire("holder-a")

        assert await lease.release("holder-b") is False
        assert await clocked_repo.get_lock_holder(DEFAULT_LOCK_NAME) == "holder-a"

    async def test_expired_lease_can_be_taken_over(self, clocked_repo):
        lease = SyncLease(clocked_repo, ttl_seconds=300)
        await lease.acquire("crashed-run")

        clocked_repo.advance(301)

        assert await lease.acquire("next-run") == "next-run"

    async def test_hold_releases_on_error(self, clocked_repo):
        lease = SyncLease(clocked_repo)

        with pytest.raises(RuntimeError):
            async with lease.hold():
                assert DEFAULT_LOCK_NAME in clocked_repo.locks
                raise RuntimeError("boom")

        assert clocked_repo.locks == {}

    async def test_hold_survives_failed_release(self, clocked_repo):
        async def broken_release(name, holder):
            raise ConnectionError("db dropped")

        clocked_repo.release_lock = broken_release
        lease = SyncLease(clocked_repo, ttl_seconds=300)

        async with lease.hold() as token:
            result = token

        assert clocked_repo.locks[DEFAULT_LOCK_NAME][0] == result
        clocked_repo.advance(301)
        assert await lease.acquire("next-run") == "next-run"
