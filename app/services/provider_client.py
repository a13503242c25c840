"""
Shared shapes for provider API clients consumed by the sync stage.

A client lists references page by page (``list_items_since``) and fetches
individual items (``fetch_item``). Listing may already carry the full
item, in which case the sync stage skips the fetch.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol


@dataclass(slots=True)
class ProviderItem:
    source_id: str
    payload: dict[str, Any]
    occurred_at: datetime | None
    # Value of the field the listing filters on; drives the cursor high-water mark
    cursor_value: datetime | None = None


@dataclass(slots=True)
class ProviderEntry:
    ref: str
    item: ProviderItem | None = None


@dataclass(slots=True)
class ProviderPage:
    entries: list[ProviderEntry] = field(default_factory=list)
    next_page_token: str | None = None


class ProviderClient(Protocol):
    provider: str

    async def list_items_since(
        self,
        access_token: str,
        since: datetime | None,
        page_token: str | None = None,
        query: str | None = None,
        page_size: int = 100,
    ) -> ProviderPage: ...

    async def fetch_item(self, access_token: str, ref: str) -> ProviderItem: ...
