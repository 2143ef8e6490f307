"""ActiveCampaign CRM source -- v3 REST API over httpx.

Implements CRMSource for the ``/api/3/<collection>`` list endpoints.
Authentication is a static ``Api-Token`` header. Retries and rate limiting
are not handled here; the batch scheduler owns both so that every page
request shares a single rate-limit budget.
"""

from __future__ import annotations

from typing import Any

import httpx
import structlog

from src.dealsync.deals.crm.adapter import CRMSource
from src.dealsync.deals.errors import CRMConfigurationError

logger = structlog.get_logger(__name__)

DEALS_COLLECTION = "deals"
CUSTOM_FIELD_DATA_COLLECTION = "dealCustomFieldData"


class ActiveCampaignSource(CRMSource):
    """Read-only client for ActiveCampaign list endpoints.

    Credentials are checked lazily (``ensure_configured``) so that the
    application can start without them and a sync attempt fails with a
    recorded run-log entry instead of a startup crash.

    Args:
        base_url: Account URL, e.g. ``https://acme.api-us1.com``.
        api_token: Value for the ``Api-Token`` header.
        timeout: Per-request timeout in seconds.
        transport: Optional httpx transport (tests pass ``httpx.MockTransport``).
    """

    def __init__(
        self,
        base_url: str,
        api_token: str,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_token = api_token
        self._client = httpx.AsyncClient(
            headers={
                "Api-Token": api_token,
                "Content-Type": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )

    def ensure_configured(self) -> None:
        if not self._base_url or not self._api_token:
            raise CRMConfigurationError(
                "Missing CRM credentials: set AC_BASE_URL and AC_API_TOKEN"
            )

    async def get_page(self, collection: str, limit: int, offset: int) -> dict[str, Any]:
        """GET one page; raises httpx errors on transport failure or non-2xx."""
        self.ensure_configured()
        url = f"{self._base_url}/api/3/{collection}"
        response = await self._client.get(
            url, params={"limit": limit, "offset": offset}
        )
        if response.is_error:
            logger.warning(
                "activecampaign.http_error",
                collection=collection,
                offset=offset,
                status_code=response.status_code,
                body=response.text[:500],
            )
        response.raise_for_status()
        return response.json()

    async def aclose(self) -> None:
        await self._client.aclose()
