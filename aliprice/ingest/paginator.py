"""Drive a product query forward page by page, deduplicating by product id."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional, Protocol

from aliprice.config import Settings, settings
from aliprice.ingest.catalog_client import MAX_PAGE_SIZE
from aliprice.ingest.negotiator import NegotiationResult
from aliprice.ingest.normalizer import ProductRecord, matches_category

logger = logging.getLogger(__name__)


class ProductPageSource(Protocol):
    async def query_products_page(
        self,
        page_no: int,
        page_size: int = ...,
        category_id: Optional[int | str] = ...,
        keywords: Optional[str] = ...,
        sort: Optional[str] = ...,
    ) -> NegotiationResult[ProductRecord]:
        ...


@dataclass
class CatalogQuery:
    """What to crawl: a category, a keyword search, or both."""

    category_id: Optional[int | str] = None
    keywords: Optional[str] = None
    start_page: int = 1
    page_size: int = MAX_PAGE_SIZE
    max_pages: Optional[int] = None
    sort: Optional[str] = None
    min_sold: int = 0

    def __post_init__(self):
        self.page_size = max(1, min(self.page_size, MAX_PAGE_SIZE))
        self.start_page = max(1, self.start_page)

    def describe(self) -> str:
        parts = []
        if self.category_id not in (None, ""):
            parts.append(f"category={self.category_id}")
        if self.keywords:
            parts.append(f"keywords={self.keywords!r}")
        return " ".join(parts) or "all"


@dataclass
class PageStats:
    pages: int = 0
    server_items: int = 0
    kept_items: int = 0


class Paginator:
    """
    Pages through a product query until the server runs dry.

    Stops on a page with zero items, a page shorter than the page size
    (assumed final; a short page in the middle would end the crawl early),
    or the page ceiling. Only the category/min-sold filtered items of each
    page are kept, but the stop decision uses the unfiltered count.
    """

    def __init__(
        self,
        source: ProductPageSource,
        page_delay: Optional[float] = None,
        config: Settings = settings,
    ):
        self.source = source
        self.page_delay = config.page_delay_seconds if page_delay is None else page_delay
        self.default_max_pages = config.max_pages

    async def collect(self, query: CatalogQuery) -> list[ProductRecord]:
        """
        Collect every distinct product the query yields.

        Returns:
            One record per product id, the last-seen record for duplicates
        """
        max_pages = query.max_pages or self.default_max_pages
        seen: dict[str, ProductRecord] = {}
        stats = PageStats()
        page_no = query.start_page

        while stats.pages < max_pages:
            if stats.pages:
                await asyncio.sleep(self.page_delay)

            result = await self.source.query_products_page(
                page_no,
                page_size=query.page_size,
                category_id=query.category_id,
                keywords=query.keywords,
                sort=query.sort,
            )
            stats.pages += 1
            items = result.items
            stats.server_items += len(items)

            kept = [
                item for item in items
                if item.id and matches_category(item, query.category_id) and item.sold >= query.min_sold
            ]
            stats.kept_items += len(kept)
            for item in kept:
                seen[str(item.id)] = item

            logger.debug(
                f"[{query.describe()}] page {page_no}: {len(items)} items, {len(kept)} kept"
            )

            if not items or len(items) < query.page_size:
                break
            page_no += 1
        else:
            logger.info(f"[{query.describe()}] stopped at page ceiling ({max_pages})")

        logger.info(
            f"[{query.describe()}] {stats.pages} pages, {stats.server_items} server items, "
            f"{len(seen)} distinct kept"
        )
        return list(seen.values())
