"""CRM integration layer -- rate-limited, paginated pull from the remote CRM.

Provides:
- CRMSource: Abstract read-only collection source
- ActiveCampaignSource: httpx client for the v3 list endpoints
- RateLimitedScheduler: Chunked concurrent requests with adaptive delay and retries
- PaginatedFetcher: Probe-then-page retrieval of counted collections
- build_custom_field_index: Allow-listed deal -> custom field join index
- DealSyncEngine: End-to-end sync orchestration
"""

from src.dealsync.deals.crm.activecampaign import (
    CUSTOM_FIELD_DATA_COLLECTION,
    DEALS_COLLECTION,
    ActiveCampaignSource,
)
from src.dealsync.deals.crm.adapter import CRMSource
from src.dealsync.deals.crm.field_mapping import (
    DEFAULT_CUSTOM_FIELD_MAP,
    TARGET_CUSTOM_FIELD_IDS,
    CustomFieldIndex,
    build_custom_field_index,
)
from src.dealsync.deals.crm.pagination import PageRequest, PaginatedFetcher, plan_pages
from src.dealsync.deals.crm.scheduler import RateLimitedScheduler
from src.dealsync.deals.crm.sync import DealSyncEngine

__all__ = [
    "CRMSource",
    "ActiveCampaignSource",
    "DEALS_COLLECTION",
    "CUSTOM_FIELD_DATA_COLLECTION",
    "RateLimitedScheduler",
    "PageRequest",
    "PaginatedFetcher",
    "plan_pages",
    "CustomFieldIndex",
    "build_custom_field_index",
    "DEFAULT_CUSTOM_FIELD_MAP",
    "TARGET_CUSTOM_FIELD_IDS",
    "DealSyncEngine",
]
