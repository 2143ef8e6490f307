"""CRM source abstract base class -- the read-only interface the sync engine pulls from.

Every remote CRM backend exposes counted, offset-paginated collections
returning ``{<collection>: [...], "meta": {"total": N}}``. The sync engine
only ever reads through this interface, so tests can substitute an
in-memory source without touching the network.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any


class CRMSource(ABC):
    """Abstract interface for a paginated, read-only CRM collection source.

    Methods:
        get_page: Fetch one page of a collection by limit/offset.
        ensure_configured: Raise if the source cannot be used (missing credentials).
        aclose: Release network resources.
    """

    @abstractmethod
    async def get_page(self, collection: str, limit: int, offset: int) -> dict[str, Any]:
        """Fetch one page of ``collection``; raise on transport error or non-2xx."""
        ...

    def ensure_configured(self) -> None:
        """Raise CRMConfigurationError if the source lacks credentials."""
        return None

    async def aclose(self) -> None:
        """Release any held connections."""
        return None
