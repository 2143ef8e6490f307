"""Deal sync module -- persistence models, schemas, and the batch pipeline stages.

Provides SQLAlchemy models (DealCache, DealSyncLog, SyncLock), Pydantic
schemas (raw CRM payloads, normalized rows, run reports), the normalizer,
the batch upsert engine, the run log, the sync lease, cache health grading,
and DealCacheRepository for async persistence.
"""
